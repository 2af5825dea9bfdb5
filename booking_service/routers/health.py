"""
Health Check Endpoints

- /health, /health/live - Liveness check (is process running)
- /health/ready - Readiness check (can we reach the database)
"""

import time
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import __version__
from ..config import settings
from ..database import get_db
from ..utils.clock import isoformat, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "down", "error": str(e)[:100]}

    return {
        "status": "up",
        "latency_ms": round(latency_ms, 2),
        "type": db.get_bind().dialect.name,
    }


@router.get("")
@router.get("/live")
def liveness():
    return {"status": "healthy", "version": __version__, "timestamp": isoformat(utcnow())}


@router.get("/ready")
def readiness(db: Session = Depends(get_db)):
    database = get_db_health(db)
    ready = database["status"] == "up"
    body = {
        "status": "ready" if ready else "not_ready",
        "environment": settings.environment,
        "checks": {
            "database": database,
            "stripe": {"status": "configured" if settings.stripe_secret_key else "not_configured"},
        },
    }
    return JSONResponse(status_code=200 if ready else 503, content=body)
