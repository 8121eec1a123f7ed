"""
Common utilities shared across routers.
"""

from .deps import get_uow, get_providers

__all__ = ["get_uow", "get_providers"]
