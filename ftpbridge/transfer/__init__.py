"""
Transfer engine: sessions, throttling, scheduling and the command surface
"""
