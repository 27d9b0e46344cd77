"""
Webhook subscription and delivery event models.

One WebhookEvent row exists per (webhook, triggering domain event); its
attempts counter only ever increases.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ezsign.models.base import Base, TimestampMixin, string_enum

WILDCARD_EVENT = "*"


class WebhookEventStatus(str, enum.Enum):
    """Delivery status of a webhook event."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Webhook(Base, TimestampMixin):
    """
    Webhook subscription owned by a user.

    The secret is generated at creation and is never rotated automatically.
    """
    __tablename__ = "webhooks"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    events: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    deliveries = relationship(
        "WebhookEvent",
        back_populates="webhook",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def listens_to(self, event_type: str) -> bool:
        return event_type in self.events or WILDCARD_EVENT in self.events

    def to_public_dict(self) -> dict:
        """Serialize without exposing the full secret."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "url": self.url,
            "events": list(self.events),
            "active": self.active,
            "secret_preview": self.secret[:12] + "...",
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self):
        return f"<Webhook(id={self.id}, url={self.url}, active={self.active})>"


class WebhookEvent(Base, TimestampMixin):
    """Delivery tracking for one domain event sent to one webhook."""
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    webhook_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # Snapshot taken when the domain event fired; never rewritten
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[WebhookEventStatus] = mapped_column(
        string_enum(WebhookEventStatus),
        nullable=False,
        default=WebhookEventStatus.PENDING,
        index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True
    )
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    webhook = relationship("Webhook", back_populates="deliveries")

    def __repr__(self):
        return f"<WebhookEvent(id={self.id}, type={self.event_type}, status={self.status}, attempts={self.attempts})>"
