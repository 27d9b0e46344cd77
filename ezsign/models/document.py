"""
Document, signer and user tables read by the delivery subsystem.

Only the columns the webhook and reminder paths depend on are mapped;
the rest of the schema belongs to the main application.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ezsign.models.base import Base, TimestampMixin, string_enum


class DocumentStatus(str, enum.Enum):
    """Document status enum."""
    DRAFT = "draft"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    EXPIRED = "expired"


class SignerStatus(str, enum.Enum):
    """Signer status enum."""
    PENDING = "pending"
    SIGNED = "signed"
    DECLINED = "declined"


DEFAULT_REMINDER_SETTINGS = {"enabled": True, "intervals": [1, 3, 7]}


class User(Base, TimestampMixin):
    """Document owner / webhook owner."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class Document(Base, TimestampMixin):
    """A document sent out for signing."""
    __tablename__ = "documents"

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
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        string_enum(DocumentStatus),
        nullable=False,
        default=DocumentStatus.DRAFT
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # {"enabled": bool, "intervals": [days before expiry, ...]}
    reminder_settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    owner = relationship("User", lazy="joined")
    signers = relationship(
        "Signer",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Document(id={self.id}, status={self.status})>"


class Signer(Base, TimestampMixin):
    """A recipient who must sign a document."""
    __tablename__ = "signers"

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
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[SignerStatus] = mapped_column(
        string_enum(SignerStatus),
        nullable=False,
        default=SignerStatus.PENDING
    )
    access_token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default=lambda: uuid.uuid4().hex
    )
    signing_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    document = relationship("Document", back_populates="signers")

    def __repr__(self):
        return f"<Signer(id={self.id}, status={self.status})>"
