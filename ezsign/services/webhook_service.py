"""
Webhook Service

Fans domain events out to subscribed webhooks and drives each delivery
attempt: load, count the attempt, send, record, decide on retry.
"""
import enum
import ipaddress
from typing import Any
from urllib.parse import urlparse

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ezsign.errors import (
    InvalidWebhookEvents,
    InvalidWebhookUrl,
    WebhookEventNotFound,
    WebhookLimitExceeded,
    WebhookNotFound,
)
from ezsign.models.webhook import WILDCARD_EVENT, Webhook, WebhookEvent, WebhookEventStatus
from ezsign.queue import JobQueue, WebhookDeliveryJob
from ezsign.routes.metrics import track_webhook_delivery
from ezsign.services.delivery_transport import DeliveryResult, DeliveryTransport
from ezsign.services.signature import generate_secret
from ezsign.services.webhook_event_store import MAX_DELIVERY_ATTEMPTS, WebhookEventStore

logger = structlog.get_logger(__name__)

VALID_EVENTS = frozenset({
    "document.created",
    "document.sent",
    "document.viewed",
    "document.signed",
    "document.completed",
    "document.cancelled",
    "template.created",
    "signer.declined",
})
MAX_EVENTS_PER_WEBHOOK = 20
MAX_WEBHOOKS_PER_USER = 10


class DeliveryOutcome(str, enum.Enum):
    """Result of processing one webhook event."""
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED_PERMANENT = "failed_permanent"
    NOT_FOUND = "not_found"
    ALREADY_DELIVERED = "already_delivered"


class WebhookDeliveryService:
    """Orchestrates delivery of webhook events."""

    def __init__(
        self,
        db: AsyncSession,
        transport: DeliveryTransport,
        queue: JobQueue,
        max_attempts: int = MAX_DELIVERY_ATTEMPTS,
    ):
        self.db = db
        self.transport = transport
        self.queue = queue
        self.max_attempts = max_attempts
        self.store = WebhookEventStore(db, max_attempts=max_attempts)
        # Outcome details of the most recent attempt made by process_webhook_event
        self.last_result: DeliveryResult | None = None

    async def process_webhook_event(self, event_id: str) -> DeliveryOutcome:
        """
        Make one delivery attempt for an event.

        Remote failures are recorded on the event and reported through the
        returned outcome. Database errors propagate to the caller.
        """
        log = logger.bind(event_id=event_id)
        self.last_result = None

        loaded = await self.store.get_event_with_webhook(event_id)
        if loaded is None:
            log.error("webhook_event_not_found")
            return DeliveryOutcome.NOT_FOUND

        event, webhook = loaded
        if event.status == WebhookEventStatus.DELIVERED:
            # Duplicate job after a crash between send and ack
            log.info("webhook_event_already_delivered", attempts=event.attempts)
            return DeliveryOutcome.ALREADY_DELIVERED

        attempts_before = event.attempts or 0
        event_type = event.event_type
        payload = event.payload
        url = webhook.url
        secret = webhook.secret

        await self.store.increment_attempts(event_id)
        attempt = attempts_before + 1

        result = await self.transport.deliver(
            url=url,
            secret=secret,
            event_type=event_type,
            payload=payload,
            event_id=event_id,
        )
        self.last_result = result

        if result.success:
            await self.store.mark_delivered(
                event_id,
                status_code=result.status_code,
                response_body=result.response_body,
                response_time_ms=result.response_time_ms,
            )
            track_webhook_delivery(event_type, "delivered", result.response_time_ms)
            log.info(
                "webhook_delivered",
                event_type=event_type,
                status_code=result.status_code,
                attempt=attempt,
                delivery_id=result.delivery_id,
                response_time_ms=result.response_time_ms,
            )
            return DeliveryOutcome.DELIVERED

        retry = self.transport.should_retry(result.status_code) and attempt < self.max_attempts

        await self.store.mark_failed(
            event_id,
            status_code=result.status_code,
            error_message=result.error_message or "Delivery failed",
            response_body=result.response_body,
            response_time_ms=result.response_time_ms,
            attempts=attempt,
        )

        if retry:
            track_webhook_delivery(event_type, "retry", result.response_time_ms)
            log.warning(
                "webhook_delivery_failed_will_retry",
                event_type=event_type,
                status_code=result.status_code,
                error=result.error_message,
                attempt=attempt,
                max_attempts=self.max_attempts,
            )
            return DeliveryOutcome.RETRY_SCHEDULED

        track_webhook_delivery(event_type, "failed", result.response_time_ms)
        log.error(
            "webhook_delivery_failed_permanently",
            event_type=event_type,
            status_code=result.status_code,
            error=result.error_message,
            attempt=attempt,
        )
        return DeliveryOutcome.FAILED_PERMANENT

    async def trigger(self, user_id: str, event_type: str, payload: dict[str, Any]) -> list[str]:
        """
        Queue an event for every active webhook of a user listening to it.

        Args:
            user_id: Owner of the webhooks
            event_type: Event type string, e.g. "document.completed"
            payload: Snapshot of the domain entity

        Returns:
            IDs of the events that were queued
        """
        stmt = (
            select(Webhook)
            .where(Webhook.user_id == user_id, Webhook.active.is_(True))
            .order_by(Webhook.created_at)
        )
        result = await self.db.execute(stmt)
        webhooks = [w for w in result.scalars().all() if w.listens_to(event_type)]

        if not webhooks:
            logger.info("webhook_trigger_no_subscribers", user_id=user_id, event_type=event_type)
            return []

        logger.info("webhook_trigger", user_id=user_id, event_type=event_type, webhooks=len(webhooks))

        queued = []
        for webhook_id in [w.id for w in webhooks]:
            try:
                event = await self.store.create_event(webhook_id, event_type, payload)
                await self.queue.enqueue(WebhookDeliveryJob(event_id=event.id))
            except Exception as e:
                # One bad webhook must not stop the fan-out
                await self.db.rollback()
                logger.error(
                    "webhook_queue_failed",
                    webhook_id=webhook_id,
                    event_type=event_type,
                    error=str(e),
                )
                continue
            queued.append(event.id)
            logger.info("webhook_event_queued", event_id=event.id, webhook_id=webhook_id)

        return queued

    async def retry_event(self, event_id: str) -> str | None:
        """
        Re-queue a failed event for another attempt.

        Returns:
            Queue job id, or None if the event is already delivered
        """
        event = await self.store.get_event(event_id)
        if event is None:
            raise WebhookEventNotFound(f"Webhook event not found: {event_id}")
        if event.status == WebhookEventStatus.DELIVERED:
            return None

        job_id = await self.queue.enqueue(WebhookDeliveryJob(event_id=event_id))
        logger.info("webhook_event_requeued", event_id=event_id, job_id=job_id, attempts=event.attempts)
        return job_id


def validate_webhook_url(url: str, allow_http_localhost: bool = False) -> str:
    """
    Check that a URL can receive webhooks.

    HTTPS is required; plain HTTP is accepted only for localhost when
    allowed. Private IPv4 ranges are rejected.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidWebhookUrl("Invalid URL format")

    host = parsed.hostname
    is_localhost = host in ("localhost", "127.0.0.1")
    if parsed.scheme == "http" and not (allow_http_localhost and is_localhost):
        raise InvalidWebhookUrl(
            "HTTPS is required for webhook URLs (HTTP only allowed for localhost in development)"
        )

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return url
    if address.version == 4 and (address.is_private or address.is_link_local) and not address.is_loopback:
        raise InvalidWebhookUrl("Webhook URL cannot point to private IP addresses")
    return url


def validate_events(events: list[str]) -> list[str]:
    if not events:
        raise InvalidWebhookEvents("At least one event is required")
    if len(events) > MAX_EVENTS_PER_WEBHOOK:
        raise InvalidWebhookEvents(f"Maximum {MAX_EVENTS_PER_WEBHOOK} events allowed per webhook")
    invalid = [e for e in events if e != WILDCARD_EVENT and e not in VALID_EVENTS]
    if invalid:
        raise InvalidWebhookEvents(f"Invalid events: {', '.join(invalid)}")
    return list(dict.fromkeys(events))


class WebhookSubscriptionService:
    """
    Service for managing webhook subscriptions.

    All lookups are scoped to the owning user.
    """

    def __init__(self, db: AsyncSession, allow_http_localhost: bool = False):
        self.db = db
        self.allow_http_localhost = allow_http_localhost

    async def create_webhook(
        self,
        user_id: str,
        url: str,
        events: list[str],
        secret: str | None = None,
        active: bool = True,
    ) -> Webhook:
        """Create a subscription; a secret is generated unless one is given."""
        validate_webhook_url(url, self.allow_http_localhost)
        events = validate_events(events)

        count_stmt = select(func.count()).select_from(Webhook).where(Webhook.user_id == user_id)
        existing = (await self.db.execute(count_stmt)).scalar_one()
        if existing >= MAX_WEBHOOKS_PER_USER:
            raise WebhookLimitExceeded(f"Maximum {MAX_WEBHOOKS_PER_USER} webhooks allowed per user")

        webhook = Webhook(
            user_id=user_id,
            url=url,
            events=events,
            secret=secret or generate_secret(),
            active=active,
        )
        self.db.add(webhook)
        await self.db.commit()
        await self.db.refresh(webhook)

        logger.info("webhook_created", webhook_id=webhook.id, user_id=user_id, events=events)
        return webhook

    async def list_webhooks(self, user_id: str, active: bool | None = None) -> list[Webhook]:
        """List a user's webhooks, newest first."""
        stmt = select(Webhook).where(Webhook.user_id == user_id)
        if active is not None:
            stmt = stmt.where(Webhook.active.is_(active))
        stmt = stmt.order_by(Webhook.created_at.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_webhook(self, webhook_id: str, user_id: str) -> Webhook:
        stmt = select(Webhook).where(Webhook.id == webhook_id, Webhook.user_id == user_id)
        result = await self.db.execute(stmt)
        webhook = result.scalar_one_or_none()
        if webhook is None:
            raise WebhookNotFound(f"Webhook not found: {webhook_id}")
        return webhook

    async def update_webhook(
        self,
        webhook_id: str,
        user_id: str,
        url: str | None = None,
        events: list[str] | None = None,
        active: bool | None = None,
    ) -> Webhook:
        """Change url, events or active flag. The secret is never rotated here."""
        webhook = await self.get_webhook(webhook_id, user_id)

        if url is not None:
            webhook.url = validate_webhook_url(url, self.allow_http_localhost)
        if events is not None:
            webhook.events = validate_events(events)
        if active is not None:
            webhook.active = active

        await self.db.commit()
        await self.db.refresh(webhook)
        logger.info("webhook_updated", webhook_id=webhook_id, user_id=user_id)
        return webhook

    async def delete_webhook(self, webhook_id: str, user_id: str) -> None:
        """Delete a subscription and, by cascade, its events."""
        webhook = await self.get_webhook(webhook_id, user_id)
        await self.db.delete(webhook)
        await self.db.commit()
        logger.info("webhook_deleted", webhook_id=webhook_id, user_id=user_id)

    async def get_delivery_stats(self, webhook_id: str, user_id: str) -> dict[str, int]:
        """Delivery counts by status for one webhook."""
        await self.get_webhook(webhook_id, user_id)

        stmt = (
            select(WebhookEvent.status, func.count())
            .where(WebhookEvent.webhook_id == webhook_id)
            .group_by(WebhookEvent.status)
        )
        counts = {status: count for status, count in (await self.db.execute(stmt)).all()}
        return {
            "total_deliveries": sum(counts.values()),
            "successful_deliveries": counts.get(WebhookEventStatus.DELIVERED, 0),
            "failed_deliveries": counts.get(WebhookEventStatus.FAILED, 0),
            "pending_deliveries": counts.get(WebhookEventStatus.PENDING, 0),
        }
