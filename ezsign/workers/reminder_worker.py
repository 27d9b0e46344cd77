"""
ARQ worker for the deadline-reminders queue.

Reminders are scheduled days ahead, so the job is only a hint: document
and signer state are checked again right before anything is sent.

Run with: arq ezsign.workers.reminder_worker.WorkerSettings
"""
from typing import Any

import structlog
from arq.connections import RedisSettings
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ezsign.config import Settings, settings
from ezsign.errors import EmailSenderNotConfigured, UnknownJobKind
from ezsign.models.document import Document, DocumentStatus, Signer, SignerStatus
from ezsign.queue import (
    DEFAULT_JOB_POLICY,
    JobPayload,
    JobQueue,
    QueueName,
    ReminderJob,
    WorkerOptions,
    get_queue_timeout_config,
)
from ezsign.routes.metrics import track_reminder_sent, track_reminder_skipped
from ezsign.services.email import LogOnlyEmailSender, ReminderEmail, ReminderEmailSender, signing_url
from ezsign.services.rate_limiter import SlidingWindowRateLimiter
from ezsign.services.reminder_service import ReminderService, days_until
from ezsign.workers.common import close_resources, open_resources, run_job

logger = structlog.get_logger(__name__)

QUEUE = QueueName.DEADLINE_REMINDERS
TIMEOUTS = get_queue_timeout_config(QUEUE)
OPTIONS = WorkerOptions(
    concurrency=settings.REMINDER_WORKER_CONCURRENCY,
    rate_limit_max=settings.REMINDER_RATE_LIMIT_MAX,
    rate_limit_window_seconds=settings.REMINDER_RATE_LIMIT_WINDOW_SECONDS,
)


def _skipped(reason: str, **context) -> dict[str, Any]:
    track_reminder_skipped(reason)
    logger.info("reminder_skipped", reason=reason, **context)
    return {"skipped": True, "reason": reason}


async def process_reminder(
    db: AsyncSession,
    queue: JobQueue,
    job: ReminderJob,
    email_sender: ReminderEmailSender,
    app_url: str = settings.APP_URL,
) -> dict[str, Any]:
    """
    Send one reminder if it is still relevant.

    Returns:
        {"sent": True, "days_remaining": n} or {"skipped": True, "reason": ...}
    """
    reminders = ReminderService(db, queue)
    context = {"document_id": job.document_id, "signer_id": job.signer_id, "reminder_id": job.reminder_id}

    reminder = await reminders.get_reminder_by_id(job.reminder_id)
    if reminder is not None and reminder.sent_at is not None:
        return _skipped("already_sent", **context)

    stmt = (
        select(Document)
        .where(Document.id == job.document_id)
        .execution_options(populate_existing=True)
    )
    document = (await db.execute(stmt)).unique().scalar_one_or_none()
    if document is None:
        return _skipped("document_not_found", **context)

    if document.status != DocumentStatus.PENDING:
        return _skipped("document_not_pending", status=document.status.value, **context)

    if job.signer_id is None:
        return _skipped("owner_notification_not_implemented", **context)

    stmt = (
        select(Signer)
        .where(Signer.id == job.signer_id)
        .execution_options(populate_existing=True)
    )
    signer = (await db.execute(stmt)).scalar_one_or_none()
    if signer is None:
        return _skipped("signer_not_found", **context)

    if signer.status != SignerStatus.PENDING:
        return _skipped("signer_not_pending", status=signer.status.value, **context)

    days_remaining = days_until(document.expires_at) if document.expires_at else 0
    owner = document.owner

    await email_sender.send_reminder(ReminderEmail(
        recipient_email=signer.email,
        recipient_name=signer.name,
        document_title=document.title,
        sender_name=owner.name if owner else None,
        signing_url=signing_url(app_url, signer.access_token),
        days_remaining=days_remaining,
        document_id=document.id,
        signer_id=signer.id,
        user_id=document.user_id,
    ))

    await reminders.mark_reminder_as_sent(job.reminder_id)

    track_reminder_sent(job.reminder_type)
    logger.info("reminder_sent", reminder_type=job.reminder_type, days_remaining=days_remaining, **context)
    return {"sent": True, "days_remaining": days_remaining}


async def handle(ctx: dict, job: JobPayload) -> dict[str, Any]:
    if not isinstance(job, ReminderJob):
        raise UnknownJobKind(f"{QUEUE.value} cannot process {job.kind!r} jobs")

    async with ctx["session_factory"]() as db:
        return await process_reminder(
            db,
            ctx["job_queue"],
            job,
            ctx["email_sender"],
            app_url=settings.APP_URL,
        )


async def send_reminder(ctx: dict, payload: dict) -> dict[str, Any]:
    return await run_job(ctx, payload, QUEUE.value, handle, timeout=TIMEOUTS.timeout_seconds)


def build_email_sender(config: Settings = settings) -> ReminderEmailSender:
    """
    Sender configured by REMINDER_EMAIL_SENDER.

    Without one, reminders are only logged, and still marked as sent, so
    that fallback is refused outside development.
    """
    if config.REMINDER_EMAIL_SENDER is not None:
        return config.REMINDER_EMAIL_SENDER()
    if config.ENVIRONMENT != "development":
        raise EmailSenderNotConfigured(
            f"REMINDER_EMAIL_SENDER must be set when ENVIRONMENT={config.ENVIRONMENT!r}"
        )
    logger.warning("reminder_email_sender_log_only", environment=config.ENVIRONMENT)
    return LogOnlyEmailSender()


async def startup(ctx: dict) -> None:
    await open_resources(ctx)
    if "email_sender" not in ctx:
        ctx["email_sender"] = build_email_sender()
    ctx["rate_limiter"] = SlidingWindowRateLimiter(
        ctx["redis"],
        limit=OPTIONS.rate_limit_max,
        window_seconds=OPTIONS.rate_limit_window_seconds,
    )


async def shutdown(ctx: dict) -> None:
    await close_resources(ctx)


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq ezsign.workers.reminder_worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = QUEUE.value
    functions = [send_reminder]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = OPTIONS.concurrency
    # One extra try so run_job can dead-letter a job whose last attempt was interrupted
    max_tries = DEFAULT_JOB_POLICY.attempts + 1
    # Outer lease only; run_job enforces the real timeout itself
    job_timeout = TIMEOUTS.lock_duration_seconds
    health_check_interval = TIMEOUTS.stalled_interval_seconds
    keep_result = DEFAULT_JOB_POLICY.remove_on_complete.age_seconds
