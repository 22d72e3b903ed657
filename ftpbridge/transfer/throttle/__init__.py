"""
Bandwidth throttling components
"""

from .rate_limiter import RateLimiter, chunk_size_for
from .limit_registry import LimitRegistry

__all__ = ['RateLimiter', 'chunk_size_for', 'LimitRegistry']
