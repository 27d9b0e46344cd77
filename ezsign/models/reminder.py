"""
Document reminder tracking model.

A row is one scheduled future reminder; sent_at stays NULL until the
reminder worker has actually sent it.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from ezsign.models.base import Base, string_enum


class ReminderType(str, enum.Enum):
    """Reminder kinds; N_DAY means N days before expiry."""
    ONE_DAY = "1_day"
    THREE_DAY = "3_day"
    SEVEN_DAY = "7_day"
    CUSTOM = "custom"
    OWNER = "owner"

    @classmethod
    def for_interval(cls, days: int) -> "ReminderType":
        try:
            return cls(f"{days}_day")
        except ValueError:
            return cls.CUSTOM


class DocumentReminder(Base):
    """Scheduled deadline reminder for one signer (or the owner when signer_id is NULL)."""
    __tablename__ = "document_reminders"
    __table_args__ = (
        Index(
            "uq_document_reminders_document_signer_type",
            "document_id",
            "signer_id",
            "reminder_type",
            unique=True,
            postgresql_where=text("signer_id IS NOT NULL"),
            sqlite_where=text("signer_id IS NOT NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    document_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    signer_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("signers.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    reminder_type: Mapped[ReminderType] = mapped_column(
        string_enum(ReminderType),
        nullable=False
    )
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    job_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    def __repr__(self):
        return f"<DocumentReminder(id={self.id}, type={self.reminder_type}, sent_at={self.sent_at})>"
