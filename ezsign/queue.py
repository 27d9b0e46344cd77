"""
Job queue adapter over ARQ (Redis).

Holds the per-queue timing table, the default job policy, the tagged job
payloads carried by each queue, and a thin JobQueue wrapper used to
enqueue and cancel jobs.
"""
import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Union

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from arq.constants import job_key_prefix

from ezsign.errors import QueueConfigError, UnknownJobKind


class QueueName(str, enum.Enum):
    """Queue names shared by producers and workers."""
    EMAIL = "email"
    PDF_PROCESSING = "pdf-processing"
    WEBHOOK_DELIVERY = "webhook-delivery"
    CLEANUP = "cleanup"
    SCHEDULED_SEND = "scheduled-send"
    DEADLINE_REMINDERS = "deadline-reminders"


@dataclass(frozen=True)
class QueueTimeoutConfig:
    """
    Timing for one queue, in milliseconds.

    timeout: max processing time for a job.
    lock_duration: exclusive-ownership lease; must be strictly longer than
        timeout or a slow job is handed to a second worker while still running.
    stalled_interval: how often abandoned jobs are looked for.
    """
    timeout: int
    lock_duration: int
    stalled_interval: int

    def __post_init__(self):
        if self.lock_duration <= self.timeout:
            raise QueueConfigError(
                f"lock_duration ({self.lock_duration}ms) must exceed timeout ({self.timeout}ms)"
            )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000

    @property
    def lock_duration_seconds(self) -> float:
        return self.lock_duration / 1000

    @property
    def stalled_interval_seconds(self) -> float:
        return self.stalled_interval / 1000


QUEUE_TIMEOUT_CONFIGS: dict[QueueName, QueueTimeoutConfig] = {
    QueueName.EMAIL: QueueTimeoutConfig(timeout=30_000, lock_duration=45_000, stalled_interval=15_000),
    QueueName.PDF_PROCESSING: QueueTimeoutConfig(timeout=300_000, lock_duration=360_000, stalled_interval=60_000),
    QueueName.WEBHOOK_DELIVERY: QueueTimeoutConfig(timeout=30_000, lock_duration=45_000, stalled_interval=15_000),
    QueueName.CLEANUP: QueueTimeoutConfig(timeout=600_000, lock_duration=720_000, stalled_interval=120_000),
    QueueName.SCHEDULED_SEND: QueueTimeoutConfig(timeout=60_000, lock_duration=90_000, stalled_interval=30_000),
    QueueName.DEADLINE_REMINDERS: QueueTimeoutConfig(timeout=60_000, lock_duration=90_000, stalled_interval=30_000),
}


def get_queue_timeout_config(queue_name: QueueName | str) -> QueueTimeoutConfig:
    """Timing table entry for a queue."""
    return QUEUE_TIMEOUT_CONFIGS[QueueName(queue_name)]


@dataclass(frozen=True)
class RetentionPolicy:
    """Keep at most `count` finished jobs, for at most `age_seconds`."""
    count: int
    age_seconds: int


@dataclass(frozen=True)
class JobPolicy:
    """Attempts and backoff applied to every job unless overridden."""
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 1000
    remove_on_complete: RetentionPolicy = RetentionPolicy(count=100, age_seconds=86_400)
    remove_on_fail: RetentionPolicy = RetentionPolicy(count=500, age_seconds=604_800)

    def backoff_delay(self, attempt: int) -> timedelta:
        """Delay before retrying after `attempt` (1-based): 1s, 2s, 4s, ..."""
        if self.backoff_type == "fixed":
            return timedelta(milliseconds=self.backoff_delay_ms)
        return timedelta(milliseconds=self.backoff_delay_ms * 2 ** max(attempt - 1, 0))


DEFAULT_JOB_POLICY = JobPolicy()


@dataclass(frozen=True)
class WorkerOptions:
    """Concurrency and rate limit for one worker process."""
    concurrency: int = 5
    rate_limit_max: int = 10
    rate_limit_window_seconds: int = 1


DEFAULT_WORKER_OPTIONS = WorkerOptions()


# ============================================
# Job payloads
# ============================================

@dataclass(frozen=True)
class WebhookDeliveryJob:
    """Deliver one webhook event."""
    kind: ClassVar[str] = "webhook_delivery"
    function_name: ClassVar[str] = "deliver_webhook"
    queue: ClassVar[QueueName] = QueueName.WEBHOOK_DELIVERY

    event_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True)
class ReminderJob:
    """Send one deadline reminder (signer_id None means the document owner)."""
    kind: ClassVar[str] = "deadline_reminder"
    function_name: ClassVar[str] = "send_reminder"
    queue: ClassVar[QueueName] = QueueName.DEADLINE_REMINDERS

    document_id: str
    signer_id: str | None
    reminder_type: str
    reminder_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}


JobPayload = Union[WebhookDeliveryJob, ReminderJob]

_JOB_KINDS: dict[str, type] = {
    WebhookDeliveryJob.kind: WebhookDeliveryJob,
    ReminderJob.kind: ReminderJob,
}


def job_from_dict(data: dict[str, Any]) -> JobPayload:
    """Rebuild a tagged job payload from its serialized form."""
    fields = dict(data)
    kind = fields.pop("kind", None)
    job_cls = _JOB_KINDS.get(kind)
    if job_cls is None:
        raise UnknownJobKind(f"Unknown job kind: {kind!r}")
    return job_cls(**fields)


# ============================================
# Failed job snapshot
# ============================================

@dataclass
class FailedJob:
    """What the failure handler knows about a job that just failed."""
    job_id: str
    name: str
    data: dict[str, Any]
    attempts_made: int
    max_attempts: int
    enqueued_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_context(
        cls,
        ctx: dict,
        job: JobPayload,
        max_attempts: int = DEFAULT_JOB_POLICY.attempts,
    ) -> "FailedJob":
        """Build from an ARQ job context."""
        enqueued_at = ctx.get("enqueue_time")
        return cls(
            job_id=str(ctx.get("job_id") or "unknown"),
            name=job.function_name,
            data=job.to_dict(),
            attempts_made=int(ctx.get("job_try", 1)),
            max_attempts=max_attempts,
            enqueued_at=enqueued_at,
            metadata={
                "enqueue_time": enqueued_at.isoformat() if enqueued_at else None,
                "score": ctx.get("score"),
            },
        )


def should_move_to_dead_letter_queue(job: FailedJob) -> bool:
    """True once the job has used its whole attempt budget."""
    return job.attempts_made >= job.max_attempts


# ============================================
# Queue wrapper
# ============================================

async def create_redis_pool(redis_url: str) -> ArqRedis:
    """Open an ARQ Redis pool."""
    return await create_pool(RedisSettings.from_dsn(redis_url))


class JobQueue:
    """Enqueue and cancel jobs on named queues."""

    def __init__(self, redis: ArqRedis, policy: JobPolicy = DEFAULT_JOB_POLICY):
        self.redis = redis
        self.policy = policy

    async def enqueue(
        self,
        job: JobPayload,
        job_id: str | None = None,
        defer_by: timedelta | None = None,
    ) -> str | None:
        """
        Put a job on its queue.

        Returns:
            The queue job id, or None if a job with that id already exists
        """
        queued = await self.redis.enqueue_job(
            job.function_name,
            job.to_dict(),
            _job_id=job_id,
            _queue_name=job.queue.value,
            _defer_by=defer_by,
        )
        if queued is None:
            return None
        return queued.job_id

    async def remove(self, queue_name: QueueName | str, job_id: str) -> bool:
        """
        Cancel a job that has not started yet.

        Returns:
            True if the job was still queued and has been removed
        """
        queue = QueueName(queue_name).value
        removed = await self.redis.zrem(queue, job_id)
        await self.redis.delete(job_key_prefix + job_id)
        return bool(removed)

    async def close(self):
        await self.redis.close()
