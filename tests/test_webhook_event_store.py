"""Event persistence and the fixed retry ladder."""
from datetime import datetime, timedelta, timezone

import pytest

from ezsign.models.base import as_utc
from ezsign.models.webhook import WebhookEventStatus
from ezsign.services.webhook_event_store import WebhookEventStore, calculate_next_retry

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "attempts,delay",
    [(0, timedelta(minutes=1)), (1, timedelta(minutes=5)), (2, timedelta(minutes=30))],
)
def test_calculate_next_retry_ladder(attempts, delay):
    assert calculate_next_retry(attempts, now=NOW) == NOW + delay


@pytest.mark.parametrize("attempts", [3, 4, 10])
def test_calculate_next_retry_exhausted(attempts):
    assert calculate_next_retry(attempts, now=NOW) is None


def test_calculate_next_retry_saturates_past_ladder():
    assert calculate_next_retry(5, now=NOW, max_attempts=10) == NOW + timedelta(minutes=30)


async def test_create_event_starts_pending(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {"id": "doc-1"})

    assert event.status == WebhookEventStatus.PENDING
    assert event.attempts == 0
    assert event.payload == {"id": "doc-1"}


async def test_increment_attempts(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})

    await store.increment_attempts(event.id)
    await store.increment_attempts(event.id)

    assert (await store.get_event(event.id)).attempts == 2


async def test_mark_delivered_clears_retry_state(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})
    await store.mark_failed(event.id, 500, "HTTP 500", "oops", 12, attempts=1)

    await store.mark_delivered(event.id, 200, "ok", 34)

    event = await store.get_event(event.id)
    assert event.status == WebhookEventStatus.DELIVERED
    assert event.response_status == 200
    assert event.response_body == "ok"
    assert event.response_time_ms == 34
    assert event.next_retry_at is None
    assert event.error_message is None
    assert event.last_attempt_at is not None


async def test_mark_delivered_twice_stays_delivered(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})

    await store.mark_delivered(event.id, 200, "ok", 10)
    await store.mark_delivered(event.id, 204, None, 11)

    event = await store.get_event(event.id)
    assert event.status == WebhookEventStatus.DELIVERED
    assert event.response_status == 204


async def test_mark_failed_records_next_retry(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})

    before = datetime.now(timezone.utc)
    next_retry = await store.mark_failed(event.id, 503, "HTTP 503", "busy", 50, attempts=1)

    event = await store.get_event(event.id)
    assert event.status == WebhookEventStatus.FAILED
    assert event.attempts == 1
    assert event.response_status == 503
    assert event.error_message == "HTTP 503"
    assert next_retry - before >= timedelta(minutes=5) - timedelta(seconds=1)
    assert as_utc(event.next_retry_at) == next_retry


async def test_mark_failed_exhausted_has_no_next_retry(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})

    assert await store.mark_failed(event.id, 500, "HTTP 500", None, 5, attempts=3) is None
    assert (await store.get_event(event.id)).next_retry_at is None


async def test_mark_failed_never_regresses_delivered(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})
    await store.mark_delivered(event.id, 200, "ok", 10)

    await store.mark_failed(event.id, 500, "HTTP 500", None, 5, attempts=2)

    assert (await store.get_event(event.id)).status == WebhookEventStatus.DELIVERED


async def test_mark_failed_never_lowers_attempts(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})
    for _ in range(3):
        await store.increment_attempts(event.id)

    await store.mark_failed(event.id, 500, "HTTP 500", None, 5, attempts=1)

    assert (await store.get_event(event.id)).attempts == 3


async def test_get_event_with_webhook(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})

    loaded_event, loaded_webhook = await store.get_event_with_webhook(event.id)
    assert loaded_event.id == event.id
    assert loaded_webhook.url == webhook.url
    assert await store.get_event_with_webhook("missing") is None


async def test_list_events_filters_by_status(db, webhook):
    store = WebhookEventStore(db)
    first = await store.create_event(webhook.id, "document.completed", {"n": 1})
    await store.create_event(webhook.id, "document.completed", {"n": 2})
    await store.mark_failed(first.id, 500, "HTTP 500", None, 5, attempts=1)

    events, total = await store.list_events(webhook.id)
    assert total == 2
    assert len(events) == 2

    failed, failed_total = await store.list_events(webhook.id, status=WebhookEventStatus.FAILED)
    assert failed_total == 1
    assert failed[0].id == first.id


async def test_find_due_retries(db, webhook):
    store = WebhookEventStore(db)
    event = await store.create_event(webhook.id, "document.completed", {})
    await store.mark_failed(event.id, 500, "HTTP 500", None, 5, attempts=1)

    assert await store.find_due_retries(now=datetime.now(timezone.utc)) == []
    due = await store.find_due_retries(now=datetime.now(timezone.utc) + timedelta(minutes=6))
    assert [e.id for e in due] == [event.id]
