"""
Prometheus metrics endpoint.

Exposes delivery, queue and reminder metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# Webhook Metrics
# ============================================

webhook_deliveries = Counter(
    'webhook_deliveries_total',
    'Webhook delivery attempts by outcome',
    ['event_type', 'outcome']
)

webhook_delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Webhook delivery attempt duration in seconds',
    ['event_type'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Queue Metrics
# ============================================

jobs_retry_total = Counter(
    'queue_job_retries_total',
    'Total job retry attempts scheduled',
    ['queue_name']
)

jobs_failed = Counter(
    'queue_jobs_failed_total',
    'Total jobs that failed permanently',
    ['queue_name']
)

dead_letter_entries = Counter(
    'dead_letter_entries_total',
    'Total jobs moved to the dead letter queue',
    ['queue_name']
)

rate_limit_deferred = Counter(
    'queue_rate_limit_deferred_total',
    'Total jobs deferred by the per-queue rate limiter',
    ['queue_name']
)

# ============================================
# Reminder Metrics
# ============================================

reminders_sent = Counter(
    'reminders_sent_total',
    'Total deadline reminders sent',
    ['reminder_type']
)

reminders_skipped = Counter(
    'reminders_skipped_total',
    'Total deadline reminders skipped after re-validation',
    ['reason']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_webhook_delivery(event_type: str, outcome: str, duration_ms: int | None = None):
    """Record one webhook delivery attempt."""
    webhook_deliveries.labels(event_type=event_type, outcome=outcome).inc()
    if duration_ms is not None:
        webhook_delivery_duration.labels(event_type=event_type).observe(duration_ms / 1000)


def track_job_retry(queue_name: str):
    """Record a job retry being scheduled."""
    jobs_retry_total.labels(queue_name=queue_name).inc()


def track_job_failed(queue_name: str):
    """Record a job failing permanently."""
    jobs_failed.labels(queue_name=queue_name).inc()


def track_dead_letter(queue_name: str):
    """Record a job landing in the dead letter queue."""
    dead_letter_entries.labels(queue_name=queue_name).inc()


def track_rate_limit_deferred(queue_name: str):
    """Record a job deferred by rate limiting."""
    rate_limit_deferred.labels(queue_name=queue_name).inc()


def track_reminder_sent(reminder_type: str):
    """Record a reminder email going out."""
    reminders_sent.labels(reminder_type=reminder_type).inc()


def track_reminder_skipped(reason: str):
    """Record a reminder skipped because live state changed."""
    reminders_skipped.labels(reason=reason).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
