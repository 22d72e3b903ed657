"""
Progress tracking for transfers
"""

from .progress_manager import ProgressManager

__all__ = ['ProgressManager']
