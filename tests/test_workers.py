"""Job wrapper behaviour: retries, permanent failure and dead-lettering."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from arq import Retry
from sqlalchemy.exc import SQLAlchemyError

from ezsign.errors import JobAttemptsExhausted, UnknownJobKind, WebhookDeliveryFailed
from ezsign.models.dead_letter import DeadLetterStatus
from ezsign.models.webhook import WebhookEventStatus
from ezsign.queue import ReminderJob, WebhookDeliveryJob
from ezsign.services.dead_letter_service import DeadLetterQueueService
from ezsign.services.delivery_transport import DeliveryTransport
from ezsign.services.rate_limiter import SlidingWindowRateLimiter
from ezsign.services.webhook_event_store import WebhookEventStore
from ezsign.workers import reminder_worker, webhook_worker
from ezsign.workers.common import run_job, wait_for_rate_limit

QUEUE = "webhook-delivery"


class RetryableError(Exception):
    retryable = True


class PermanentError(Exception):
    retryable = False


def make_ctx(session_factory, job_try=1, **extra):
    return {"job_try": job_try, "job_id": "job-1", "session_factory": session_factory, **extra}


def failing(exc):
    async def handler(ctx, job):
        raise exc
    return handler


async def dlq_entries(session_factory):
    async with session_factory() as db:
        entries, _ = await DeadLetterQueueService(db).list_entries()
    return entries


async def test_run_job_returns_handler_result(session_factory):
    async def handler(ctx, job):
        return job.event_id

    result = await run_job(make_ctx(session_factory), {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, handler)

    assert result == "e"


@pytest.mark.parametrize("job_try,defer_ms", [(1, 1000), (2, 2000)])
async def test_run_job_retries_with_backoff(session_factory, job_try, defer_ms):
    ctx = make_ctx(session_factory, job_try=job_try)

    with pytest.raises(Retry) as exc_info:
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, failing(RetryableError("503")))

    assert exc_info.value.defer_score == defer_ms
    assert await dlq_entries(session_factory) == []


async def test_run_job_last_attempt_dead_letters(session_factory):
    ctx = make_ctx(session_factory, job_try=3)

    with pytest.raises(RetryableError):
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, failing(RetryableError("503")))

    [entry] = await dlq_entries(session_factory)
    assert entry.queue_name == QUEUE
    assert entry.job_id == "job-1"
    assert entry.job_name == "deliver_webhook"
    assert entry.job_data == {"kind": "webhook_delivery", "event_id": "e"}
    assert entry.attempts_made == 3
    assert entry.status == DeadLetterStatus.FAILED


async def test_run_job_permanent_error_stops_early_without_dead_letter(session_factory):
    ctx = make_ctx(session_factory, job_try=1)

    with pytest.raises(PermanentError):
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, failing(PermanentError("404")))

    assert await dlq_entries(session_factory) == []


async def test_run_job_dead_letter_write_failure_keeps_original_error():
    ctx = make_ctx(MagicMock(side_effect=RuntimeError("database down")), job_try=3)

    with pytest.raises(RetryableError, match="503"):
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, failing(RetryableError("503")))


async def test_run_job_unknown_kind(session_factory):
    with pytest.raises(UnknownJobKind):
        await run_job(make_ctx(session_factory), {"kind": "mystery"}, QUEUE, failing(RetryableError()))


async def slow(ctx, job):
    await asyncio.sleep(5)


async def test_run_job_timeout_is_retried(session_factory):
    ctx = make_ctx(session_factory, job_try=1)

    with pytest.raises(Retry):
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, slow, timeout=0.05)

    assert await dlq_entries(session_factory) == []


async def test_run_job_timeout_on_last_attempt_dead_letters(session_factory):
    ctx = make_ctx(session_factory, job_try=3)

    with pytest.raises(TimeoutError):
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, slow, timeout=0.05)

    [entry] = await dlq_entries(session_factory)
    assert entry.error_message == "TimeoutError"
    assert entry.attempts_made == 3


async def test_run_job_rate_limit_wait_counts_toward_timeout(session_factory):
    limiter = MagicMock(spec=SlidingWindowRateLimiter)
    limiter.acquire = AsyncMock(return_value=(False, 0.01))
    handler = AsyncMock()
    ctx = make_ctx(session_factory, job_try=1, rate_limiter=limiter)

    with pytest.raises(Retry):
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, handler, timeout=0.05)

    handler.assert_not_awaited()


async def test_run_job_after_interrupted_last_attempt_dead_letters(session_factory):
    handler = AsyncMock()
    ctx = make_ctx(session_factory, job_try=4)

    with pytest.raises(JobAttemptsExhausted):
        await run_job(ctx, {"kind": "webhook_delivery", "event_id": "e"}, QUEUE, handler)

    handler.assert_not_awaited()
    [entry] = await dlq_entries(session_factory)
    assert entry.attempts_made == 4
    assert entry.job_data == {"kind": "webhook_delivery", "event_id": "e"}
    assert "interrupted" in entry.error_message


async def test_wait_for_rate_limit_waits_for_slot():
    limiter = MagicMock(spec=SlidingWindowRateLimiter)
    limiter.acquire = AsyncMock(side_effect=[(False, 0.01), (True, 0.0)])

    await wait_for_rate_limit({"rate_limiter": limiter}, QUEUE)

    assert limiter.acquire.await_count == 2


# ============================================
# Webhook worker end to end
# ============================================

def worker_ctx(session_factory, job_queue, status_code, job_try):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status_code)))
    return make_ctx(session_factory, job_try=job_try, transport=DeliveryTransport(client), job_queue=job_queue)


async def test_webhook_worker_retries_then_dead_letters(db, session_factory, job_queue, webhook):
    event = await WebhookEventStore(db).create_event(webhook.id, "document.completed", {"id": "doc-1"})
    payload = WebhookDeliveryJob(event_id=event.id).to_dict()

    for job_try in (1, 2):
        with pytest.raises(Retry):
            await webhook_worker.deliver_webhook(worker_ctx(session_factory, job_queue, 500, job_try), payload)

    with pytest.raises(WebhookDeliveryFailed) as exc_info:
        await webhook_worker.deliver_webhook(worker_ctx(session_factory, job_queue, 500, 3), payload)
    assert exc_info.value.retryable is False
    assert exc_info.value.status_code == 500

    stored = await WebhookEventStore(db).get_event(event.id)
    assert stored.status == WebhookEventStatus.FAILED
    assert stored.attempts == 3

    [entry] = await dlq_entries(session_factory)
    assert entry.job_data == payload
    assert entry.attempts_made == 3
    assert "HTTP 500" in entry.error_message


async def test_webhook_worker_database_error_is_retried(db, session_factory, job_queue, webhook, monkeypatch):
    event = await WebhookEventStore(db).create_event(webhook.id, "document.completed", {})
    payload = WebhookDeliveryJob(event_id=event.id).to_dict()
    monkeypatch.setattr(WebhookEventStore, "mark_failed", AsyncMock(side_effect=SQLAlchemyError("connection lost")))

    with pytest.raises(Retry) as exc_info:
        await webhook_worker.deliver_webhook(worker_ctx(session_factory, job_queue, 500, 1), payload)

    assert isinstance(exc_info.value.__cause__, SQLAlchemyError)
    stored = await WebhookEventStore(db).get_event(event.id)
    assert stored.status == WebhookEventStatus.PENDING
    assert stored.attempts == 1


async def test_webhook_worker_client_error_not_dead_lettered(db, session_factory, job_queue, webhook):
    event = await WebhookEventStore(db).create_event(webhook.id, "document.completed", {})
    payload = WebhookDeliveryJob(event_id=event.id).to_dict()

    with pytest.raises(WebhookDeliveryFailed):
        await webhook_worker.deliver_webhook(worker_ctx(session_factory, job_queue, 404, 1), payload)

    assert (await WebhookEventStore(db).get_event(event.id)).attempts == 1
    assert await dlq_entries(session_factory) == []


async def test_webhook_worker_success(db, session_factory, job_queue, webhook):
    event = await WebhookEventStore(db).create_event(webhook.id, "document.completed", {})
    payload = WebhookDeliveryJob(event_id=event.id).to_dict()

    result = await webhook_worker.deliver_webhook(worker_ctx(session_factory, job_queue, 200, 1), payload)

    assert result == "delivered"


async def test_webhook_worker_rejects_other_jobs(session_factory, job_queue):
    job = ReminderJob(document_id="d", signer_id="s", reminder_type="1_day", reminder_id="r")

    with pytest.raises(UnknownJobKind):
        await webhook_worker.handle(worker_ctx(session_factory, job_queue, 200, 1), job)


def test_webhook_worker_settings():
    settings = webhook_worker.WorkerSettings
    assert settings.queue_name == "webhook-delivery"
    assert settings.max_tries == 4
    assert settings.job_timeout == 45
    assert settings.health_check_interval == 15


def test_reminder_worker_settings():
    settings = reminder_worker.WorkerSettings
    assert settings.queue_name == "deadline-reminders"
    assert settings.functions == [reminder_worker.send_reminder]
    assert settings.max_jobs == reminder_worker.OPTIONS.concurrency
    assert settings.job_timeout == 90
