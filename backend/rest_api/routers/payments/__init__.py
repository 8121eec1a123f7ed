"""
Payment routers - /api/payments/*
Payment creation, verification and gateway webhooks.
"""

from .routes import router

__all__ = ["router"]
