"""
Order routers - /api/orders/*
Customer order intake, lifecycle updates and bill generation.
"""

from .routes import router

__all__ = ["router"]
