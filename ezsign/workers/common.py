"""
Shared pieces for the ARQ workers.

run_job wraps every job function: rate limit, run the handler, translate
failures into ARQ retries, and dead-letter jobs that used up their attempts.
"""
import asyncio
from typing import Any, Awaitable, Callable

import httpx
from arq import Retry

from ezsign.config import settings
from ezsign.database import create_engine, create_session_factory
from ezsign.errors import JobAttemptsExhausted
from ezsign.logging_config import configure_logging, get_logger
from ezsign.queue import (
    DEFAULT_JOB_POLICY,
    FailedJob,
    JobPayload,
    JobPolicy,
    JobQueue,
    job_from_dict,
    should_move_to_dead_letter_queue,
)
from ezsign.routes.metrics import track_job_failed, track_job_retry, track_rate_limit_deferred
from ezsign.sentry_config import capture_exception, configure_sentry
from ezsign.services.dead_letter_service import move_to_dead_letter_queue
from ezsign.services.rate_limiter import SlidingWindowRateLimiter

Handler = Callable[[dict, JobPayload], Awaitable[Any]]


async def wait_for_rate_limit(ctx: dict, queue_name: str) -> None:
    """Block until the queue's rate limiter grants a slot."""
    limiter: SlidingWindowRateLimiter | None = ctx.get("rate_limiter")
    if limiter is None:
        return
    while True:
        allowed, retry_after = await limiter.acquire(queue_name)
        if allowed:
            return
        track_rate_limit_deferred(queue_name)
        await asyncio.sleep(retry_after)


async def run_job(
    ctx: dict,
    payload: dict,
    queue_name: str,
    handler: Handler,
    policy: JobPolicy = DEFAULT_JOB_POLICY,
    timeout: float | None = None,
) -> Any:
    """
    Run one job attempt.

    Errors with retryable=False end the job at once. Anything else is
    retried with exponential backoff until the attempt budget is spent.
    On the final failure the job is dead-lettered and the error re-raised.

    timeout bounds the rate-limit wait plus the handler; running out is an
    ordinary retryable failure. ARQ's own job_timeout must be longer so its
    cancellation only fires if this one could not.
    """
    job_try = ctx.get("job_try", 1)
    log = get_logger(queue_name=queue_name, job_id=ctx.get("job_id"), job_try=job_try)

    job = job_from_dict(payload)

    if job_try > policy.attempts:
        # The previous attempt never reported back (worker crash or lease expiry)
        error = JobAttemptsExhausted(
            f"Attempt {job_try - 1} of {policy.attempts} was interrupted before it finished"
        )
        await _fail(ctx, job, error, queue_name, policy, log)
        raise error

    log.info("job_started", kind=job.kind, max_attempts=policy.attempts)
    try:
        async with asyncio.timeout(timeout):
            await wait_for_rate_limit(ctx, queue_name)
            result = await handler(ctx, job)
    except Exception as e:
        retryable = getattr(e, "retryable", True)
        if retryable and job_try < policy.attempts:
            defer = policy.backoff_delay(job_try)
            track_job_retry(queue_name)
            log.warning("job_retry_scheduled", error=str(e), defer_seconds=defer.total_seconds())
            raise Retry(defer=defer) from e

        await _fail(ctx, job, e, queue_name, policy, log)
        raise

    log.info("job_completed", kind=job.kind)
    return result


async def _fail(ctx: dict, job: JobPayload, error: Exception, queue_name: str, policy: JobPolicy, log) -> None:
    """Record a final failure and dead-letter the job once its attempts are used up."""
    track_job_failed(queue_name)
    log.error("job_failed", error=str(error) or error.__class__.__name__, error_type=error.__class__.__name__)

    failed = FailedJob.from_context(ctx, job, max_attempts=policy.attempts)
    if should_move_to_dead_letter_queue(failed):
        entry = await move_to_dead_letter_queue(ctx["session_factory"], failed, error, queue_name)
        if entry is not None:
            log.info("job_moved_to_dead_letter_queue", dlq_id=entry.id)
            capture_exception(error)


async def open_resources(ctx: dict) -> None:
    """Create the handles every job needs and store them on the ARQ context."""
    configure_logging(settings.LOG_LEVEL)
    configure_sentry()

    engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    ctx["engine"] = engine
    ctx["session_factory"] = create_session_factory(engine)
    ctx["http_client"] = httpx.AsyncClient()
    # ARQ puts its own Redis pool on the context
    ctx["job_queue"] = JobQueue(ctx["redis"])


async def close_resources(ctx: dict) -> None:
    client: httpx.AsyncClient | None = ctx.get("http_client")
    if client is not None:
        await client.aclose()
    engine = ctx.get("engine")
    if engine is not None:
        await engine.dispose()
