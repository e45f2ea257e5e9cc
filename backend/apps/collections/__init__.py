"""Collections app module.

Provides the FastAPI router for cron triggers and inbound webhooks.
"""

from .api import router as collections_router  # re-export for app integration

__all__ = [
    "collections_router",
]
