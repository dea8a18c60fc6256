"""
System health and administration router.
"""

import time

from fastapi import APIRouter, Depends

from crmsync.auth.dependencies import get_current_user_id
from crmsync.models.enums import EntityType
from crmsync.services import storage_dependency
from crmsync.storage import StorageBackend, StorageError
from crmsync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

# Track startup time for uptime calculation
_startup_time = time.time()


@router.get("/health")
async def system_health(storage: StorageBackend = Depends(storage_dependency)):
    """
    Get system health status.
    Checks database connectivity and reports synced row counts.
    """
    uptime = time.time() - _startup_time

    db_status = "healthy"
    counts: dict[str, int] = {}
    try:
        for entity_type in EntityType:
            counts[entity_type.value] = storage.count_records(entity_type)
    except StorageError as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "success": True,
        "data": {
            "status": "healthy" if db_status == "healthy" else "degraded",
            "uptime_seconds": round(uptime, 1),
            "database": db_status,
            "record_counts": counts,
        },
    }


@router.delete("/data")
async def clear_synced_data(
    user_id: str = Depends(get_current_user_id),
    storage: StorageBackend = Depends(storage_dependency),
):
    """
    Delete every synced customer, invoice and bank transaction.
    Sync cursors of the caller are reset so the next sync starts over.
    """
    deleted = storage.clear_synced_data()
    storage.clear_sync_cursors(user_id)
    logger.warning("synced_data_cleared_by_user", user_id=user_id, **deleted)
    return {"success": True, "deleted": deleted}
