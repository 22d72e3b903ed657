"""
Shared utilities: configuration, logging, compression
"""
