from fastapi import APIRouter, Depends, HTTPException
import logging

from budgetsync.dependencies import get_record_store
from budgetsync.domain.interfaces import RecordStore

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health/live")
async def liveness():
    """Liveness probe: Service is running."""
    return {"status": "ok", "checks": {"api": "ok"}}


@router.get("/health/ready")
async def readiness(store: RecordStore = Depends(get_record_store)):
    """Readiness probe: durable store reachable."""
    health = {"status": "ok", "checks": {}}

    try:
        ok = await store.ping()
    except Exception as e:
        logger.error(f"Health check failed (store): {e}")
        ok = False
    health["checks"]["store"] = "ok" if ok else "failed"

    if not ok:
        health["status"] = "failed"
        raise HTTPException(status_code=503, detail=health)

    return health
