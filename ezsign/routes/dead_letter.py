"""
Dead letter queue admin routes.

Lets operators inspect failed jobs, re-queue them, or discard them.
All endpoints require an admin token.
"""
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ezsign.database import get_db, get_job_queue
from ezsign.dependencies.auth import TokenPayload, require_admin
from ezsign.errors import DeadLetterEntryNotFound, InvalidDeadLetterTransition
from ezsign.models.dead_letter import DeadLetterStatus
from ezsign.queue import JobQueue
from ezsign.services.dead_letter_service import DeadLetterQueueService

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/admin/dlq",
    tags=["dead-letter-queue"],
    dependencies=[Depends(require_admin)],
)


class BatchRequest(BaseModel):
    """Request model for batch retry/discard."""
    ids: list[str] = Field(min_length=1, max_length=100)


class CleanupRequest(BaseModel):
    """Request model for deleting old resolved/discarded entries."""
    older_than_days: int = Field(default=30, ge=1)


def get_dlq_service(
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
) -> DeadLetterQueueService:
    return DeadLetterQueueService(db, queue)


@router.get("/stats")
async def get_stats(service: DeadLetterQueueService = Depends(get_dlq_service)):
    """Counts by status and queue, and the range of failure times."""
    return await service.get_stats()


@router.get("/queues")
async def get_queue_names(service: DeadLetterQueueService = Depends(get_dlq_service)):
    """Queue names that have dead-lettered jobs, for filtering."""
    return {"queues": await service.get_queue_names()}


@router.get("/")
async def list_entries(
    queue: str | None = None,
    entry_status: DeadLetterStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sort_by: Literal["failed_at", "created_at", "retry_count"] = "failed_at",
    sort_order: Literal["asc", "desc"] = "desc",
    service: DeadLetterQueueService = Depends(get_dlq_service),
):
    """List entries with filters and pagination."""
    entries, total = await service.list_entries(
        queue_name=queue,
        status=entry_status,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return {
        "entries": [entry.to_dict() for entry in entries],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(entries) < total,
        },
    }


@router.get("/{entry_id}")
async def get_entry(entry_id: str, service: DeadLetterQueueService = Depends(get_dlq_service)):
    entry = await service.get_by_id(entry_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ entry not found")
    return entry.to_dict()


@router.post("/{entry_id}/retry")
async def retry_entry(
    entry_id: str,
    service: DeadLetterQueueService = Depends(get_dlq_service),
    admin: TokenPayload = Depends(require_admin),
):
    """Re-queue a failed job with a fresh attempt budget."""
    try:
        new_job_id = await service.retry_job(entry_id)
    except DeadLetterEntryNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ entry not found")
    except InvalidDeadLetterTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info("dlq_retry_requested", dlq_id=entry_id, new_job_id=new_job_id, admin_id=admin.sub)
    return {"message": "Job re-queued", "new_job_id": new_job_id}


@router.post("/{entry_id}/discard")
async def discard_entry(
    entry_id: str,
    service: DeadLetterQueueService = Depends(get_dlq_service),
    admin: TokenPayload = Depends(require_admin),
):
    """Mark a failed job as discarded."""
    try:
        await service.discard_job(entry_id)
    except DeadLetterEntryNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ entry not found")
    except InvalidDeadLetterTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info("dlq_discard_requested", dlq_id=entry_id, admin_id=admin.sub)
    return {"message": "Job discarded"}


@router.post("/retry-batch")
async def retry_batch(request: BatchRequest, service: DeadLetterQueueService = Depends(get_dlq_service)):
    return await service.retry_batch(request.ids)


@router.post("/discard-batch")
async def discard_batch(request: BatchRequest, service: DeadLetterQueueService = Depends(get_dlq_service)):
    return {"discarded": await service.discard_batch(request.ids)}


@router.post("/cleanup")
async def cleanup(request: CleanupRequest, service: DeadLetterQueueService = Depends(get_dlq_service)):
    """Delete resolved and discarded entries older than the cutoff."""
    return {"deleted": await service.cleanup(request.older_than_days)}
