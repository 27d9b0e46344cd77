"""Dead letter queue bookkeeping and operator actions."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

from ezsign.errors import DeadLetterEntryNotFound, InvalidDeadLetterTransition
from ezsign.models.base import utcnow
from ezsign.models.dead_letter import DeadLetterEntry, DeadLetterStatus
from ezsign.queue import FailedJob, WebhookDeliveryJob
from ezsign.services.dead_letter_service import DeadLetterQueueService, move_to_dead_letter_queue


async def add_entry(service, queue_name="webhook-delivery", event_id="evt-1"):
    return await service.add_to_dlq(
        queue_name=queue_name,
        job_id=f"job-{event_id}",
        job_name="deliver_webhook",
        job_data=WebhookDeliveryJob(event_id=event_id).to_dict(),
        attempts_made=3,
        max_attempts=3,
        error_message="Webhook delivery failed permanently",
    )


@pytest.fixture
def service(db, job_queue):
    return DeadLetterQueueService(db, job_queue)


async def test_add_to_dlq(service):
    entry = await add_entry(service)

    assert entry.status == DeadLetterStatus.FAILED
    assert entry.retry_count == 0
    assert entry.failed_at is not None
    assert (await service.get_by_id(entry.id)).job_data == {"kind": "webhook_delivery", "event_id": "evt-1"}


async def test_add_failed_job_keeps_stack(service):
    try:
        raise ValueError("endpoint exploded")
    except ValueError as e:
        error = e
    failed = FailedJob(
        job_id="42",
        name="deliver_webhook",
        data={"kind": "webhook_delivery", "event_id": "evt-9"},
        attempts_made=3,
        max_attempts=3,
        metadata={"score": 1},
    )

    entry = await service.add_failed_job(failed, error, "webhook-delivery")

    assert entry.error_message == "endpoint exploded"
    assert "ValueError" in entry.error_stack
    assert entry.job_metadata == {"score": 1}


async def test_list_entries_filters_and_paginates(service):
    for i in range(3):
        await add_entry(service, event_id=f"w{i}")
    await add_entry(service, queue_name="deadline-reminders", event_id="r0")

    entries, total = await service.list_entries(queue_name="webhook-delivery", limit=2)
    assert total == 3
    assert len(entries) == 2

    _, all_total = await service.list_entries()
    assert all_total == 4

    discarded, discarded_total = await service.list_entries(status=DeadLetterStatus.DISCARDED)
    assert discarded == []
    assert discarded_total == 0


async def test_retry_job(service, job_queue):
    entry = await add_entry(service)

    new_job_id = await service.retry_job(entry.id)

    assert new_job_id == job_queue.enqueued[0][1]
    assert job_queue.enqueued[0][0] == WebhookDeliveryJob(event_id="evt-1")
    entry = await service.get_by_id(entry.id)
    assert entry.status == DeadLetterStatus.RESOLVED
    assert entry.retry_count == 1
    assert entry.retried_at is not None


async def test_retry_job_twice_rejected(service):
    entry = await add_entry(service)
    await service.retry_job(entry.id)

    with pytest.raises(InvalidDeadLetterTransition):
        await service.retry_job(entry.id)


async def test_retry_job_missing(service):
    with pytest.raises(DeadLetterEntryNotFound):
        await service.retry_job("missing")


async def test_retry_job_enqueue_failure_reverts(service, job_queue):
    entry = await add_entry(service)
    job_queue.fail_enqueue = True

    with pytest.raises(ConnectionError):
        await service.retry_job(entry.id)

    entry = await service.get_by_id(entry.id)
    assert entry.status == DeadLetterStatus.FAILED
    assert entry.retry_count == 0


async def test_retry_requires_queue(db):
    with pytest.raises(RuntimeError):
        await DeadLetterQueueService(db).retry_job("anything")


async def test_discard_job(service):
    entry = await add_entry(service)

    await service.discard_job(entry.id)

    assert (await service.get_by_id(entry.id)).status == DeadLetterStatus.DISCARDED
    with pytest.raises(InvalidDeadLetterTransition):
        await service.discard_job(entry.id)
    with pytest.raises(InvalidDeadLetterTransition):
        await service.retry_job(entry.id)


async def test_discard_job_missing(service):
    with pytest.raises(DeadLetterEntryNotFound):
        await service.discard_job("missing")


async def test_retry_batch_reports_each_entry(service):
    first = await add_entry(service, event_id="a")
    second = await add_entry(service, event_id="b")
    await service.discard_job(second.id)

    result = await service.retry_batch([first.id, second.id, "missing"])

    assert result["succeeded"] == [first.id]
    assert [f["id"] for f in result["failed"]] == [second.id, "missing"]


async def test_discard_batch_counts_only_failed(service):
    first = await add_entry(service, event_id="a")
    second = await add_entry(service, event_id="b")
    await service.retry_job(second.id)

    assert await service.discard_batch([first.id, second.id]) == 1
    assert await service.discard_batch([]) == 0


async def test_get_stats(service):
    await add_entry(service, event_id="a")
    await add_entry(service, queue_name="deadline-reminders", event_id="b")
    discarded = await add_entry(service, event_id="c")
    await service.discard_job(discarded.id)

    stats = await service.get_stats()

    assert stats["total"] == 3
    assert stats["by_status"] == {"failed": 2, "retrying": 0, "resolved": 0, "discarded": 1}
    assert stats["by_queue"] == {"webhook-delivery": 1, "deadline-reminders": 1}
    assert stats["oldest_failed_at"] is not None
    assert stats["newest_failed_at"] is not None


async def test_get_stats_empty(service):
    stats = await service.get_stats()

    assert stats["total"] == 0
    assert stats["oldest_failed_at"] is None


async def test_cleanup_removes_old_finished_entries(db, service):
    old = await add_entry(service, event_id="old")
    recent = await add_entry(service, event_id="recent")
    still_failed = await add_entry(service, event_id="failed")
    await service.discard_batch([old.id, recent.id])
    await db.execute(
        update(DeadLetterEntry)
        .where(DeadLetterEntry.id.in_([old.id, still_failed.id]))
        .values(updated_at=utcnow() - timedelta(days=40))
    )
    await db.commit()

    assert await service.cleanup(older_than_days=30) == 1
    assert await service.get_by_id(old.id) is None
    assert await service.get_by_id(recent.id) is not None
    assert await service.get_by_id(still_failed.id) is not None


async def test_get_queue_names(service):
    await add_entry(service, queue_name="webhook-delivery", event_id="a")
    await add_entry(service, queue_name="deadline-reminders", event_id="b")
    await add_entry(service, queue_name="webhook-delivery", event_id="c")

    assert await service.get_queue_names() == ["deadline-reminders", "webhook-delivery"]


async def test_move_to_dead_letter_queue(session_factory):
    failed = FailedJob(
        job_id="7", name="deliver_webhook", data={"kind": "webhook_delivery", "event_id": "e"},
        attempts_made=3, max_attempts=3,
    )

    entry = await move_to_dead_letter_queue(session_factory, failed, RuntimeError("boom"), "webhook-delivery")

    assert entry is not None
    async with session_factory() as db:
        stored = await DeadLetterQueueService(db).get_by_id(entry.id)
    assert stored.error_message == "boom"
    assert stored.attempts_made == 3


async def test_move_to_dead_letter_queue_never_raises():
    broken_factory = MagicMock(side_effect=RuntimeError("database down"))
    failed = FailedJob(job_id="7", name="deliver_webhook", data={}, attempts_made=3, max_attempts=3)

    assert await move_to_dead_letter_queue(broken_factory, failed, ValueError("x"), "webhook-delivery") is None
