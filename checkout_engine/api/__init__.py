"""API layer module.

Contains FastAPI routers and request/response schemas.
"""

from checkout_engine.api.checkouts import router as checkouts_router
from checkout_engine.api.health import router as health_router

__all__ = [
    "checkouts_router",
    "health_router",
]
