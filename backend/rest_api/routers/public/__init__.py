"""
Public routers - No authentication required.
- /api/health - Health check (also the offline client's liveness check)
"""

from .health import router as health_router

__all__ = ["health_router"]
