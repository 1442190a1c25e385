"""
API Routes Module
"""
from .aggregates import router as aggregates_router
from .health import router as health_router

__all__ = [
    "aggregates_router",
    "health_router",
]
