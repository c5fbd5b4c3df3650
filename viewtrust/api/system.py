"""
System Router - Health checks
"""
from datetime import datetime, timezone

import redis
from fastapi import APIRouter
from sqlalchemy import text

from viewtrust.config import settings
from viewtrust.db.database import SessionLocal

router = APIRouter(tags=["System"])


@router.get("/health")
def health_check():
    """Status of the database and the Redis broker."""
    database_status = "unhealthy"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database_status = "healthy"
    except Exception:
        pass
    finally:
        db.close()

    redis_status = "unhealthy"
    worker_queue_depth = 0
    try:
        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        r.ping()
        redis_status = "healthy"
        worker_queue_depth = r.llen("celery") or 0
    except Exception:
        pass

    return {
        "status": "healthy" if database_status == "healthy" else "degraded",
        "database": database_status,
        "redis": redis_status,
        "worker_queue_depth": worker_queue_depth,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
