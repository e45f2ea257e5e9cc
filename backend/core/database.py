"""Shared SQLAlchemy engine for the service process."""

from __future__ import annotations

from functools import lru_cache

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.core.config import settings


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create (and cache) the SQLAlchemy engine for ``settings.database_url``."""
    return sa.create_engine(settings.database_url, future=True, pool_pre_ping=True)
