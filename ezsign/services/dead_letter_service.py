"""
Dead Letter Queue Service

Keeps jobs that used up their attempts so an operator can inspect them,
re-queue them or discard them.
"""
import traceback
from datetime import timedelta
from typing import Any, Literal

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ezsign.errors import DeadLetterEntryNotFound, InvalidDeadLetterTransition
from ezsign.models.base import utcnow
from ezsign.models.dead_letter import DeadLetterEntry, DeadLetterStatus
from ezsign.queue import FailedJob, JobQueue, job_from_dict
from ezsign.routes.metrics import track_dead_letter
from ezsign.sentry_config import capture_exception

logger = structlog.get_logger(__name__)

SortField = Literal["failed_at", "created_at", "retry_count"]
SortOrder = Literal["asc", "desc"]

_SORT_COLUMNS = {
    "failed_at": DeadLetterEntry.failed_at,
    "created_at": DeadLetterEntry.created_at,
    "retry_count": DeadLetterEntry.retry_count,
}


class DeadLetterQueueService:
    """Service for managing dead-lettered jobs."""

    def __init__(self, db: AsyncSession, queue: JobQueue | None = None):
        self.db = db
        self.queue = queue

    async def add_to_dlq(
        self,
        queue_name: str,
        job_id: str,
        job_data: dict[str, Any],
        attempts_made: int,
        max_attempts: int,
        job_name: str | None = None,
        error_message: str | None = None,
        error_stack: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DeadLetterEntry:
        """
        Record a failed job.

        Returns:
            Newly created DeadLetterEntry with status=failed
        """
        entry = DeadLetterEntry(
            queue_name=queue_name,
            job_id=job_id,
            job_name=job_name,
            job_data=job_data,
            error_message=error_message,
            error_stack=error_stack,
            attempts_made=attempts_made,
            max_attempts=max_attempts,
            status=DeadLetterStatus.FAILED,
            failed_at=utcnow(),
            job_metadata=metadata,
        )
        self.db.add(entry)
        await self.db.commit()
        await self.db.refresh(entry)

        track_dead_letter(queue_name)
        logger.info(
            "dlq_entry_added",
            dlq_id=entry.id,
            queue_name=queue_name,
            job_id=job_id,
            error=error_message,
        )
        return entry

    async def add_failed_job(self, job: FailedJob, error: BaseException, queue_name: str) -> DeadLetterEntry:
        """Snapshot a failed queue job together with its last error."""
        return await self.add_to_dlq(
            queue_name=queue_name,
            job_id=job.job_id,
            job_name=job.name,
            job_data=job.data,
            error_message=str(error) or error.__class__.__name__,
            error_stack="".join(traceback.format_exception(error)),
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            metadata=job.metadata,
        )

    async def get_by_id(self, entry_id: str) -> DeadLetterEntry | None:
        """Get entry by ID."""
        stmt = (
            select(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_entries(
        self,
        queue_name: str | None = None,
        status: DeadLetterStatus | None = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: SortField = "failed_at",
        sort_order: SortOrder = "desc",
    ) -> tuple[list[DeadLetterEntry], int]:
        """
        List entries with filtering and pagination.

        Returns:
            (entries, total matching entries)
        """
        conditions = []
        if queue_name:
            conditions.append(DeadLetterEntry.queue_name == queue_name)
        if status is not None:
            conditions.append(DeadLetterEntry.status == status)

        count_stmt = select(func.count()).select_from(DeadLetterEntry).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar_one()

        column = _SORT_COLUMNS[sort_by]
        stmt = (
            select(DeadLetterEntry)
            .where(*conditions)
            .order_by(column.asc() if sort_order == "asc" else column.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def get_stats(self) -> dict[str, Any]:
        """Totals by status, failed entries by queue, and the failed_at range."""
        by_status = {status.value: 0 for status in DeadLetterStatus}
        status_stmt = select(DeadLetterEntry.status, func.count()).group_by(DeadLetterEntry.status)
        for status, count in (await self.db.execute(status_stmt)).all():
            by_status[DeadLetterStatus(status).value] = count

        queue_stmt = (
            select(DeadLetterEntry.queue_name, func.count())
            .where(DeadLetterEntry.status == DeadLetterStatus.FAILED)
            .group_by(DeadLetterEntry.queue_name)
        )
        by_queue = {name: count for name, count in (await self.db.execute(queue_stmt)).all()}

        range_stmt = select(
            func.min(DeadLetterEntry.failed_at),
            func.max(DeadLetterEntry.failed_at),
        ).where(DeadLetterEntry.status == DeadLetterStatus.FAILED)
        oldest, newest = (await self.db.execute(range_stmt)).one()

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_queue": by_queue,
            "oldest_failed_at": oldest,
            "newest_failed_at": newest,
        }

    async def update_status(self, entry_id: str, status: DeadLetterStatus) -> bool:
        stmt = (
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry_id)
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount > 0

    async def retry_job(self, entry_id: str) -> str:
        """
        Re-queue a failed job with a fresh attempt budget.

        The entry moves failed -> retrying -> resolved, or back to failed
        if the job cannot be queued.

        Returns:
            The new queue job id
        """
        if self.queue is None:
            raise RuntimeError("DeadLetterQueueService needs a JobQueue to retry jobs")

        entry = await self.get_by_id(entry_id)
        if entry is None:
            raise DeadLetterEntryNotFound(f"DLQ entry not found: {entry_id}")
        if entry.status != DeadLetterStatus.FAILED:
            raise InvalidDeadLetterTransition(f"Cannot retry job with status: {entry.status.value}")

        queue_name = entry.queue_name
        job_data = dict(entry.job_data)

        # Claim the entry; a concurrent retry loses here
        claim = (
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry_id, DeadLetterEntry.status == DeadLetterStatus.FAILED)
            .values(status=DeadLetterStatus.RETRYING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        claimed = await self.db.execute(claim)
        await self.db.commit()
        if claimed.rowcount == 0:
            raise InvalidDeadLetterTransition("DLQ entry is no longer in failed status")

        try:
            new_job_id = await self.queue.enqueue(job_from_dict(job_data))
            if new_job_id is None:
                raise RuntimeError("Queue refused the job")
        except Exception as e:
            await self.update_status(entry_id, DeadLetterStatus.FAILED)
            logger.error("dlq_retry_failed", dlq_id=entry_id, queue_name=queue_name, error=str(e))
            raise

        stmt = (
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry_id)
            .values(
                status=DeadLetterStatus.RESOLVED,
                retried_at=utcnow(),
                retry_count=DeadLetterEntry.retry_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()

        logger.info("dlq_job_retried", dlq_id=entry_id, new_job_id=new_job_id, queue_name=queue_name)
        return new_job_id

    async def retry_batch(self, entry_ids: list[str]) -> dict[str, list]:
        """Retry several entries; one failure does not stop the rest."""
        succeeded: list[str] = []
        failed: list[dict[str, str]] = []

        for entry_id in entry_ids:
            try:
                await self.retry_job(entry_id)
            except Exception as e:
                failed.append({"id": entry_id, "error": str(e) or e.__class__.__name__})
            else:
                succeeded.append(entry_id)

        return {"succeeded": succeeded, "failed": failed}

    async def discard_job(self, entry_id: str) -> None:
        """Mark a failed entry as discarded without retrying it."""
        stmt = (
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry_id, DeadLetterEntry.status == DeadLetterStatus.FAILED)
            .values(status=DeadLetterStatus.DISCARDED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount == 0:
            entry = await self.get_by_id(entry_id)
            if entry is None:
                raise DeadLetterEntryNotFound(f"DLQ entry not found: {entry_id}")
            raise InvalidDeadLetterTransition(f"Cannot discard job with status: {entry.status.value}")

        logger.info("dlq_job_discarded", dlq_id=entry_id)

    async def discard_batch(self, entry_ids: list[str]) -> int:
        """Discard every failed entry among entry_ids; returns how many changed."""
        if not entry_ids:
            return 0
        stmt = (
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id.in_(entry_ids), DeadLetterEntry.status == DeadLetterStatus.FAILED)
            .values(status=DeadLetterStatus.DISCARDED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        logger.info("dlq_jobs_discarded", count=result.rowcount, ids=entry_ids)
        return result.rowcount

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Delete resolved and discarded entries older than the cutoff."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        stmt = (
            delete(DeadLetterEntry)
            .where(
                DeadLetterEntry.status.in_([DeadLetterStatus.RESOLVED, DeadLetterStatus.DISCARDED]),
                DeadLetterEntry.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        logger.info("dlq_cleanup", deleted=result.rowcount, older_than_days=older_than_days)
        return result.rowcount

    async def get_queue_names(self) -> list[str]:
        """Distinct queue names that have entries."""
        stmt = select(DeadLetterEntry.queue_name).distinct().order_by(DeadLetterEntry.queue_name)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())


async def move_to_dead_letter_queue(
    session_factory: async_sessionmaker[AsyncSession],
    job: FailedJob,
    error: BaseException,
    queue_name: str,
) -> DeadLetterEntry | None:
    """
    Failure-handler hook: dead-letter a job in its own session.

    Never raises; a DLQ write failure must not replace the job's own error.
    """
    try:
        async with session_factory() as db:
            return await DeadLetterQueueService(db).add_failed_job(job, error, queue_name)
    except Exception as e:
        logger.error(
            "dlq_write_failed",
            queue_name=queue_name,
            job_id=job.job_id,
            error=str(e),
            original_error=str(error),
        )
        capture_exception(e)
        return None
