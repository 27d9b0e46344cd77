"""
Email collaborator used by the reminder worker.

Mail delivery itself belongs to the main application; workers receive
an object with an async send_reminder(email) method that raises on
failure.
"""
from dataclasses import dataclass
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReminderEmail:
    """Everything a reminder email needs."""
    recipient_email: str
    recipient_name: str | None
    document_title: str
    sender_name: str | None
    signing_url: str
    days_remaining: int
    document_id: str
    signer_id: str
    user_id: str

    @property
    def subject(self) -> str:
        return f'Reminder: Please sign "{self.document_title}"'


class ReminderEmailSender(Protocol):
    async def send_reminder(self, email: ReminderEmail) -> None: ...


class LogOnlyEmailSender:
    """
    Development sender: logs the reminder instead of mailing it.

    Used when the worker is started without a real sender.
    """

    async def send_reminder(self, email: ReminderEmail) -> None:
        logger.info(
            "reminder_email_logged",
            to=email.recipient_email,
            subject=email.subject,
            signing_url=email.signing_url,
            days_remaining=email.days_remaining,
        )


def signing_url(app_url: str, access_token: str) -> str:
    return f"{app_url.rstrip('/')}/sign/{access_token}"
