"""
ARQ worker for the webhook-delivery queue.

Run with: arq ezsign.workers.webhook_worker.WorkerSettings
"""
from arq.connections import RedisSettings

from ezsign.config import settings
from ezsign.errors import UnknownJobKind, WebhookDeliveryFailed
from ezsign.queue import (
    DEFAULT_JOB_POLICY,
    JobPayload,
    QueueName,
    WebhookDeliveryJob,
    WorkerOptions,
    get_queue_timeout_config,
)
from ezsign.services.delivery_transport import DeliveryTransport
from ezsign.services.rate_limiter import SlidingWindowRateLimiter
from ezsign.services.webhook_service import DeliveryOutcome, WebhookDeliveryService
from ezsign.workers.common import close_resources, open_resources, run_job

QUEUE = QueueName.WEBHOOK_DELIVERY
TIMEOUTS = get_queue_timeout_config(QUEUE)
OPTIONS = WorkerOptions(
    concurrency=settings.WEBHOOK_WORKER_CONCURRENCY,
    rate_limit_max=settings.WEBHOOK_RATE_LIMIT_MAX,
    rate_limit_window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
)


def build_transport(ctx: dict) -> DeliveryTransport:
    return DeliveryTransport(
        ctx["http_client"],
        timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        body_limit=settings.WEBHOOK_RESPONSE_BODY_LIMIT,
        product=settings.PRODUCT_NAME,
        delivery_id_mode=settings.WEBHOOK_DELIVERY_ID_MODE,
    )


async def handle(ctx: dict, job: JobPayload) -> str:
    """
    Deliver one webhook event.

    A failed attempt is raised as WebhookDeliveryFailed so the queue can
    retry it; retryable is False once no further attempt should be made.
    """
    if not isinstance(job, WebhookDeliveryJob):
        raise UnknownJobKind(f"{QUEUE.value} cannot process {job.kind!r} jobs")

    async with ctx["session_factory"]() as db:
        service = WebhookDeliveryService(
            db,
            ctx.get("transport") or build_transport(ctx),
            ctx["job_queue"],
            max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
        )
        outcome = await service.process_webhook_event(job.event_id)
        result = service.last_result

    if outcome in (DeliveryOutcome.RETRY_SCHEDULED, DeliveryOutcome.FAILED_PERMANENT):
        retryable = outcome is DeliveryOutcome.RETRY_SCHEDULED
        status_code = result.status_code if result else None
        detail = (result.error_message if result else None) or "Delivery failed"
        next_step = "retry scheduled" if retryable else "giving up"
        raise WebhookDeliveryFailed(
            job.event_id,
            status_code,
            f"Webhook delivery failed: {detail} ({next_step})",
            retryable=retryable,
        )
    return outcome.value


async def deliver_webhook(ctx: dict, payload: dict) -> str:
    return await run_job(ctx, payload, QUEUE.value, handle, timeout=TIMEOUTS.timeout_seconds)


async def startup(ctx: dict) -> None:
    await open_resources(ctx)
    ctx["transport"] = build_transport(ctx)
    ctx["rate_limiter"] = SlidingWindowRateLimiter(
        ctx["redis"],
        limit=OPTIONS.rate_limit_max,
        window_seconds=OPTIONS.rate_limit_window_seconds,
    )


async def shutdown(ctx: dict) -> None:
    await close_resources(ctx)


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq ezsign.workers.webhook_worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = QUEUE.value
    functions = [deliver_webhook]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = OPTIONS.concurrency
    # One extra try so run_job can dead-letter a job whose last attempt was interrupted
    max_tries = DEFAULT_JOB_POLICY.attempts + 1
    # Outer lease only; run_job enforces the real timeout itself
    job_timeout = TIMEOUTS.lock_duration_seconds
    health_check_interval = TIMEOUTS.stalled_interval_seconds
    keep_result = DEFAULT_JOB_POLICY.remove_on_complete.age_seconds
