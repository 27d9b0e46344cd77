"""Dead letter queue admin API."""
import httpx
import pytest

from ezsign.main import create_app
from ezsign.queue import WebhookDeliveryJob
from ezsign.services.dead_letter_service import DeadLetterQueueService
from ezsign.services.jwt_service import JWTService

ADMIN = {"Authorization": f"Bearer {JWTService().create_token('admin-1', 'admin', 'admin@example.com')}"}
MEMBER = {"Authorization": f"Bearer {JWTService().create_token('user-1', 'member', 'user@example.com')}"}


@pytest.fixture
async def client(session_factory, job_queue):
    app = create_app(session_factory=session_factory, job_queue=job_queue)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
async def entry(db):
    return await DeadLetterQueueService(db).add_to_dlq(
        queue_name="webhook-delivery",
        job_id="job-1",
        job_name="deliver_webhook",
        job_data=WebhookDeliveryJob(event_id="evt-1").to_dict(),
        attempts_made=3,
        max_attempts=3,
        error_message="Webhook delivery failed permanently",
    )


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_requires_token(client):
    response = await client.get("/api/admin/dlq/stats")
    assert response.status_code in (401, 403)


async def test_rejects_bad_token(client):
    response = await client.get("/api/admin/dlq/stats", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


async def test_rejects_non_admin(client):
    response = await client.get("/api/admin/dlq/stats", headers=MEMBER)
    assert response.status_code == 403
    assert response.json()["detail"] == "Admin access required"


async def test_list_entries(client, entry):
    response = await client.get("/api/admin/dlq/", params={"queue": "webhook-delivery"}, headers=ADMIN)

    assert response.status_code == 200
    body = response.json()
    assert [e["id"] for e in body["entries"]] == [entry.id]
    assert body["pagination"] == {"total": 1, "limit": 50, "offset": 0, "has_more": False}


async def test_list_entries_filters_by_status(client, entry):
    response = await client.get("/api/admin/dlq/", params={"status": "discarded"}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["entries"] == []


async def test_list_entries_rejects_bad_limit(client):
    response = await client.get("/api/admin/dlq/", params={"limit": 500}, headers=ADMIN)
    assert response.status_code == 422


async def test_get_entry(client, entry):
    response = await client.get(f"/api/admin/dlq/{entry.id}", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["job_data"] == {"kind": "webhook_delivery", "event_id": "evt-1"}
    assert (await client.get("/api/admin/dlq/missing", headers=ADMIN)).status_code == 404


async def test_stats_and_queues(client, entry):
    stats = (await client.get("/api/admin/dlq/stats", headers=ADMIN)).json()
    assert stats["by_status"]["failed"] == 1
    assert stats["by_queue"] == {"webhook-delivery": 1}

    queues = (await client.get("/api/admin/dlq/queues", headers=ADMIN)).json()
    assert queues == {"queues": ["webhook-delivery"]}


async def test_retry_entry(client, entry, job_queue):
    response = await client.post(f"/api/admin/dlq/{entry.id}/retry", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["new_job_id"] == job_queue.enqueued[0][1]

    again = await client.post(f"/api/admin/dlq/{entry.id}/retry", headers=ADMIN)
    assert again.status_code == 409


async def test_retry_missing_entry(client):
    response = await client.post("/api/admin/dlq/missing/retry", headers=ADMIN)
    assert response.status_code == 404


async def test_discard_entry(client, entry):
    response = await client.post(f"/api/admin/dlq/{entry.id}/discard", headers=ADMIN)
    assert response.status_code == 200

    retry = await client.post(f"/api/admin/dlq/{entry.id}/retry", headers=ADMIN)
    assert retry.status_code == 409


async def test_batch_endpoints(client, entry):
    retried = await client.post(
        "/api/admin/dlq/retry-batch", json={"ids": [entry.id, "missing"]}, headers=ADMIN
    )
    assert retried.status_code == 200
    assert retried.json()["succeeded"] == [entry.id]
    assert retried.json()["failed"][0]["id"] == "missing"

    discarded = await client.post("/api/admin/dlq/discard-batch", json={"ids": [entry.id]}, headers=ADMIN)
    assert discarded.json() == {"discarded": 0}

    empty = await client.post("/api/admin/dlq/retry-batch", json={"ids": []}, headers=ADMIN)
    assert empty.status_code == 422


async def test_cleanup(client, entry):
    response = await client.post("/api/admin/dlq/cleanup", json={"older_than_days": 30}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == {"deleted": 0}
