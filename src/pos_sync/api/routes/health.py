"""
Health check endpoints for monitoring application status.
"""

import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from pos_sync import __version__
from pos_sync.core.models import utcnow
from pos_sync.database.connection import get_db
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, Any]:
    """
    Basic liveness check.

    Returns 200 whenever the process is serving requests.
    """
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "service": "pos-sync",
        "version": __version__,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(response: Response, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Readiness check: the database must answer.
    """
    checks = {"database": _check_database(db)}

    all_healthy = all(check["status"] == "healthy" for check in checks.values())
    if not all_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "healthy" if all_healthy else "unhealthy",
        "timestamp": utcnow().isoformat(),
        "checks": checks,
    }


def _check_database(db: Session) -> Dict[str, Any]:
    start = time.time()
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "response_time_ms": round((time.time() - start) * 1000, 2),
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
        }
