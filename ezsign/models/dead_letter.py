"""
Dead letter queue model.

Stores a snapshot of jobs that exhausted their queue-level attempts.
There is deliberately no foreign key into domain tables.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from ezsign.models.base import Base, TimestampMixin, string_enum


class DeadLetterStatus(str, enum.Enum):
    """Operator-facing status of a dead-lettered job."""
    FAILED = "failed"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    DISCARDED = "discarded"


class DeadLetterEntry(Base, TimestampMixin):
    """A job that failed permanently, kept for inspection and manual retry."""
    __tablename__ = "dead_letter_queue"
    __table_args__ = (
        Index("ix_dead_letter_queue_queue_status", "queue_name", "status"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False)
    job_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    job_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )
    retried_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[DeadLetterStatus] = mapped_column(
        string_enum(DeadLetterStatus),
        nullable=False,
        default=DeadLetterStatus.FAILED,
        index=True
    )
    # "metadata" is reserved on declarative classes
    job_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "job_id": self.job_id,
            "job_name": self.job_name,
            "job_data": self.job_data,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "failed_at": self.failed_at,
            "retried_at": self.retried_at,
            "retry_count": self.retry_count,
            "status": self.status.value,
            "metadata": self.job_metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self):
        return f"<DeadLetterEntry(id={self.id}, queue={self.queue_name}, status={self.status})>"
