"""
API Routes Module
"""
from .health import router as health_router
from .jobs import router as jobs_router
from .metrics import router as metrics_router

__all__ = [
    "health_router",
    "jobs_router",
    "metrics_router",
]
