"""
Security module: rate limiting.
"""

from shared.security.rate_limit import limiter, rate_limit_exceeded_handler

__all__ = ["limiter", "rate_limit_exceeded_handler"]
