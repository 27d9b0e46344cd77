"""
Reminder Service

Schedules, cancels and tracks deadline reminders. Each reminder row is
backed by one delayed job on the deadline-reminders queue; the worker
re-checks document and signer state when the job fires.
"""
import math
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ezsign.errors import DocumentNotFound
from ezsign.models.base import as_utc, utcnow
from ezsign.models.document import (
    DEFAULT_REMINDER_SETTINGS,
    Document,
    DocumentStatus,
    Signer,
    SignerStatus,
)
from ezsign.models.reminder import DocumentReminder, ReminderType
from ezsign.queue import JobQueue, QueueName, ReminderJob

logger = structlog.get_logger(__name__)

DAY = timedelta(days=1)


def reminder_job_id(reminder_id: str) -> str:
    return f"reminder-{reminder_id}"


def days_until(expires_at: datetime, now: datetime | None = None) -> int:
    """Whole days left before expiry, rounded up."""
    remaining = as_utc(expires_at) - (now or utcnow())
    return math.ceil(remaining / DAY)


class ReminderService:
    """Service for document deadline reminders."""

    def __init__(self, db: AsyncSession, queue: JobQueue):
        self.db = db
        self.queue = queue

    async def schedule_reminders_for_document(self, document_id: str) -> list[DocumentReminder]:
        """
        Schedule one reminder per interval for every pending signer.

        Nothing is scheduled when the document has no expiry or reminders
        are disabled. Reminder times already in the past are skipped, and a
        failure for one signer does not stop the others.

        Returns:
            Reminders created by this call
        """
        document = await self.db.get(Document, document_id)
        if document is None:
            raise DocumentNotFound(f"Document not found: {document_id}")

        if document.expires_at is None:
            logger.debug("reminders_skipped_no_expiry", document_id=document_id)
            return []

        reminder_settings = document.reminder_settings or DEFAULT_REMINDER_SETTINGS
        if not reminder_settings.get("enabled", True):
            logger.debug("reminders_disabled", document_id=document_id)
            return []

        expires_at = as_utc(document.expires_at)
        intervals = reminder_settings.get("intervals", DEFAULT_REMINDER_SETTINGS["intervals"])

        stmt = select(Signer.id).where(
            Signer.document_id == document_id,
            Signer.status == SignerStatus.PENDING,
        )
        signer_ids = list((await self.db.execute(stmt)).scalars().all())

        now = utcnow()
        created = []
        for days in intervals:
            reminder_time = expires_at - timedelta(days=days)
            if reminder_time <= now:
                continue
            reminder_type = ReminderType.for_interval(days)

            for signer_id in signer_ids:
                try:
                    reminder = await self.schedule_reminder(document_id, signer_id, reminder_type, reminder_time)
                except Exception as e:
                    await self.db.rollback()
                    logger.warning(
                        "reminder_schedule_failed",
                        document_id=document_id,
                        signer_id=signer_id,
                        reminder_type=reminder_type.value,
                        error=str(e),
                    )
                    continue
                if reminder is not None:
                    created.append(reminder)

        logger.info("reminders_scheduled", document_id=document_id, reminder_count=len(created))
        return created

    async def schedule_reminder(
        self,
        document_id: str,
        signer_id: str | None,
        reminder_type: ReminderType,
        scheduled_for: datetime,
    ) -> DocumentReminder | None:
        """
        Insert a reminder row and queue its delayed job.

        Returns:
            The new reminder, or None if one already exists for
            (document, signer, type)
        """
        signer_clause = DocumentReminder.signer_id.is_(None) if signer_id is None else DocumentReminder.signer_id == signer_id
        existing_stmt = select(DocumentReminder.id).where(
            DocumentReminder.document_id == document_id,
            signer_clause,
            DocumentReminder.reminder_type == reminder_type,
        )
        if (await self.db.execute(existing_stmt)).first() is not None:
            logger.debug(
                "reminder_already_scheduled",
                document_id=document_id,
                signer_id=signer_id,
                reminder_type=reminder_type.value,
            )
            return None

        reminder = DocumentReminder(
            document_id=document_id,
            signer_id=signer_id,
            reminder_type=reminder_type,
            scheduled_for=scheduled_for,
        )
        self.db.add(reminder)
        await self.db.commit()
        await self.db.refresh(reminder)

        delay = max(as_utc(scheduled_for) - utcnow(), timedelta(0))
        job = ReminderJob(
            document_id=document_id,
            signer_id=signer_id,
            reminder_type=reminder_type.value,
            reminder_id=reminder.id,
        )
        wanted_id = reminder_job_id(reminder.id)
        try:
            job_id = await self.queue.enqueue(job, job_id=wanted_id, defer_by=delay) or wanted_id
        except Exception:
            # No job behind it; drop the row so a later call can schedule again
            await self.db.delete(reminder)
            await self.db.commit()
            raise

        reminder.job_id = job_id
        await self.db.commit()

        logger.debug(
            "reminder_scheduled",
            reminder_id=reminder.id,
            document_id=document_id,
            signer_id=signer_id,
            reminder_type=reminder_type.value,
            scheduled_for=scheduled_for.isoformat(),
            job_id=job_id,
        )
        return reminder

    async def _cancel(self, condition, **log_context) -> int:
        stmt = select(DocumentReminder.id, DocumentReminder.job_id).where(
            condition,
            DocumentReminder.sent_at.is_(None),
        )
        rows = (await self.db.execute(stmt)).all()

        cancelled = 0
        for reminder_id, job_id in rows:
            try:
                if job_id:
                    await self.queue.remove(QueueName.DEADLINE_REMINDERS, job_id)
                await self.db.execute(
                    delete(DocumentReminder)
                    .where(DocumentReminder.id == reminder_id)
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                logger.warning("reminder_cancel_failed", reminder_id=reminder_id, error=str(e), **log_context)
                continue
            cancelled += 1

        logger.info("reminders_cancelled", cancelled=cancelled, **log_context)
        return cancelled

    async def cancel_reminders_for_document(self, document_id: str) -> int:
        """Cancel every unsent reminder of a document (completed, cancelled, ...)."""
        return await self._cancel(DocumentReminder.document_id == document_id, document_id=document_id)

    async def cancel_reminders_for_signer(self, signer_id: str) -> int:
        """Cancel a signer's unsent reminders, e.g. once they have signed."""
        return await self._cancel(DocumentReminder.signer_id == signer_id, signer_id=signer_id)

    async def mark_reminder_as_sent(self, reminder_id: str) -> None:
        stmt = (
            update(DocumentReminder)
            .where(DocumentReminder.id == reminder_id, DocumentReminder.sent_at.is_(None))
            .values(sent_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def get_pending_reminders(self, document_id: str) -> list[DocumentReminder]:
        """Unsent reminders, soonest first."""
        stmt = (
            select(DocumentReminder)
            .where(DocumentReminder.document_id == document_id, DocumentReminder.sent_at.is_(None))
            .order_by(DocumentReminder.scheduled_for.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_sent_reminders(self, document_id: str) -> list[DocumentReminder]:
        """Sent reminders, most recent first."""
        stmt = (
            select(DocumentReminder)
            .where(DocumentReminder.document_id == document_id, DocumentReminder.sent_at.is_not(None))
            .order_by(DocumentReminder.sent_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_reminder_by_id(self, reminder_id: str) -> DocumentReminder | None:
        stmt = (
            select(DocumentReminder)
            .where(DocumentReminder.id == reminder_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_expiring_soon_documents(self, user_id: str, days_ahead: int = 7) -> list[dict[str, Any]]:
        """
        Pending documents of a user that expire within days_ahead.

        Returns:
            Dicts with id, title, expires_at, days_until_expiration and
            pending_signers_count, soonest expiry first
        """
        now = utcnow()
        pending_signers = func.count(Signer.id)
        stmt = (
            select(Document.id, Document.title, Document.expires_at, pending_signers)
            .outerjoin(
                Signer,
                and_(Signer.document_id == Document.id, Signer.status == SignerStatus.PENDING),
            )
            .where(
                Document.user_id == user_id,
                Document.status == DocumentStatus.PENDING,
                Document.expires_at.is_not(None),
                Document.expires_at > now,
                Document.expires_at <= now + timedelta(days=days_ahead),
            )
            .group_by(Document.id, Document.title, Document.expires_at)
            .order_by(Document.expires_at.asc())
        )
        rows = (await self.db.execute(stmt)).all()

        return [
            {
                "id": doc_id,
                "title": title,
                "expires_at": as_utc(expires_at),
                "days_until_expiration": days_until(expires_at, now),
                "pending_signers_count": count,
            }
            for doc_id, title, expires_at, count in rows
        ]
