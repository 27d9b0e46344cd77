"""
Webhook Event Store

Persists delivery state for webhook events. Every status change is a
single-row UPDATE; the database's row atomicity is the only locking.
"""
from datetime import datetime, timedelta
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ezsign.models.base import utcnow
from ezsign.models.webhook import Webhook, WebhookEvent, WebhookEventStatus

MAX_DELIVERY_ATTEMPTS = 3

# Indexed by attempts made; not a formula, so timings stay exact
RETRY_BACKOFF_LADDER = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=30),
)


def calculate_next_retry(
    attempts: int,
    now: datetime | None = None,
    max_attempts: int = MAX_DELIVERY_ATTEMPTS,
) -> datetime | None:
    """
    Next informational retry time for an event.

    0 -> +1 min, 1 -> +5 min, 2 -> +30 min; None once attempts >= max_attempts.
    Indexes past the end of the ladder reuse its last step.
    """
    if attempts >= max_attempts:
        return None
    step = RETRY_BACKOFF_LADDER[min(max(attempts, 0), len(RETRY_BACKOFF_LADDER) - 1)]
    return (now or utcnow()) + step


class WebhookEventStore:
    """Data access for webhook_events."""

    def __init__(self, db: AsyncSession, max_attempts: int = MAX_DELIVERY_ATTEMPTS):
        self.db = db
        self.max_attempts = max_attempts

    async def create_event(self, webhook_id: str, event_type: str, payload: dict) -> WebhookEvent:
        """
        Record a new pending event for one webhook.

        Args:
            webhook_id: Owning webhook
            event_type: Event type string, e.g. "document.completed"
            payload: Immutable snapshot of the domain entity

        Returns:
            Newly created WebhookEvent
        """
        event = WebhookEvent(
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            status=WebhookEventStatus.PENDING,
            attempts=0,
        )
        self.db.add(event)
        await self.db.commit()
        await self.db.refresh(event)
        return event

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        """Get event by ID."""
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_event_with_webhook(self, event_id: str) -> tuple[WebhookEvent, Webhook] | None:
        """Load an event together with the webhook it is addressed to."""
        stmt = (
            select(WebhookEvent, Webhook)
            .join(Webhook, WebhookEvent.webhook_id == Webhook.id)
            .where(WebhookEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def increment_attempts(self, event_id: str) -> None:
        """Count an attempt before the network call is made."""
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(attempts=WebhookEvent.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def mark_delivered(
        self,
        event_id: str,
        status_code: int,
        response_body: str | None,
        response_time_ms: int,
    ) -> None:
        """Set status=delivered and clear retry scheduling."""
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookEventStatus.DELIVERED,
                response_status=status_code,
                response_body=response_body,
                response_time_ms=response_time_ms,
                error_message=None,
                next_retry_at=None,
                last_attempt_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def mark_failed(
        self,
        event_id: str,
        status_code: int | None,
        error_message: str,
        response_body: str | None,
        response_time_ms: int,
        attempts: int,
    ) -> datetime | None:
        """
        Record a failed attempt and the informational next retry time.

        A delivered event is never moved back to failed, and the attempts
        counter never goes down.

        Returns:
            The next_retry_at written (None when retries are exhausted)
        """
        next_retry_at = calculate_next_retry(attempts, max_attempts=self.max_attempts)
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.status != WebhookEventStatus.DELIVERED,
            )
            .values(
                status=WebhookEventStatus.FAILED,
                response_status=status_code,
                error_message=error_message,
                response_body=response_body,
                response_time_ms=response_time_ms,
                attempts=case(
                    (WebhookEvent.attempts > attempts, WebhookEvent.attempts),
                    else_=attempts,
                ),
                next_retry_at=next_retry_at,
                last_attempt_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()
        return next_retry_at

    async def list_events(
        self,
        webhook_id: str,
        status: WebhookEventStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookEvent], int]:
        """Page through a webhook's events, newest first."""
        conditions = [WebhookEvent.webhook_id == webhook_id]
        if status is not None:
            conditions.append(WebhookEvent.status == status)

        count_stmt = select(func.count()).select_from(WebhookEvent).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = (
            select(WebhookEvent)
            .where(*conditions)
            .order_by(WebhookEvent.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def find_due_retries(self, now: datetime | None = None, limit: int = 100) -> list[WebhookEvent]:
        """Failed events whose informational retry time has passed."""
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.FAILED,
                WebhookEvent.next_retry_at.is_not(None),
                WebhookEvent.next_retry_at <= (now or utcnow()),
            )
            .order_by(WebhookEvent.next_retry_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
