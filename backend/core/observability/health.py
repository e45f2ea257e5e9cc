"""Health and readiness endpoints."""

from importlib.metadata import PackageNotFoundError, version
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.core.database import get_engine

router = APIRouter()


def get_version() -> str:
    """Get installed distribution version."""
    try:
        return version("dunning-outreach")
    except PackageNotFoundError:
        return "dev"


def check_database() -> str:
    """Check database connectivity with light query."""
    try:
        with get_engine().connect() as conn:
            row = conn.execute(text("SELECT 1 AS health_check")).first()
            return "OK" if row and row.health_check == 1 else "FAIL"
    except SQLAlchemyError:
        return "FAIL"


@router.get("/health/ready")
def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database()

    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
