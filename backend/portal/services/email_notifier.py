"""
Email channel – mails a stored notification to its addressees via SendGrid.

Runs after the push fan-out in the same background job. Graceful degradation:
without SENDGRID_API_KEY nothing is sent. One failed address never stops the
others; failures are logged, not raised.
"""
from __future__ import annotations

import asyncio
import html
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import From, Mail
from sqlalchemy import select

from portal.core.config import Settings, settings as default_settings
from portal.models.notification import Notification
from portal.models.user import User
from portal.services.notification_store import NotificationStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_PARALLEL_SENDS = 8

# Mail -> response; raises on failure
SendMailFunc = Callable[[Mail], Any]


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str
    html: str


@dataclass
class EmailReport:
    notification_id: uuid.UUID
    sent: int = 0
    failed: int = 0
    skipped_reason: str | None = None


def absolute_url(path: str, config: Settings = default_settings) -> str:
    if path.startswith(("http://", "https://")):
        return path
    return config.PUBLIC_APP_URL.rstrip("/") + "/" + path.lstrip("/")


def build_message(
    notification: Notification, to: str, name: str | None, config: Settings = default_settings
) -> EmailMessage:
    label = "Announcement" if notification.is_broadcast else "Notification"
    inbox_url = absolute_url("/notifications", config)
    action_url = absolute_url(notification.action_url, config) if notification.action_url else None
    action_text = notification.action_text or "View details"
    greeting = f"Hello {name}," if name else "Hello,"

    text_lines = [greeting, "", notification.title, "", notification.message, ""]
    if action_url:
        text_lines += [f"{action_text}: {action_url}", ""]
    text_lines.append(f"All notifications: {inbox_url}")

    e = html.escape
    action_html = (
        f'<p><a href="{e(action_url)}">{e(action_text)}</a></p>' if action_url else ""
    )
    body_html = (
        f"<p>{e(greeting)}</p>"
        f"<h3>{e(notification.title)}</h3>"
        f"<p>{e(notification.message)}</p>"
        f"{action_html}"
        f'<p><a href="{e(inbox_url)}">View all notifications</a></p>'
        f"<p><small>This is an automated message from {e(config.EMAIL_SENDER_NAME)}.</small></p>"
    )
    return EmailMessage(
        to=to,
        subject=f"{label}: {notification.title}",
        text="\n".join(text_lines),
        html=body_html,
    )


def to_mail(message: EmailMessage, config: Settings = default_settings) -> Mail:
    return Mail(
        from_email=From(config.SENDGRID_FROM_EMAIL, config.EMAIL_SENDER_NAME),
        to_emails=message.to,
        subject=message.subject,
        plain_text_content=message.text,
        html_content=message.html,
    )


class EmailNotifier:

    def __init__(
        self,
        db: "AsyncSession",
        send: SendMailFunc | None = None,
        config: Settings = default_settings,
    ):
        self.db = db
        self.config = config
        self.store = NotificationStore(db)
        if send is not None:
            self._send = send
        elif config.email_enabled:
            self._send = SendGridAPIClient(config.SENDGRID_API_KEY).send
        else:
            self._send = None

    async def notify_by_id(self, notification_id: uuid.UUID) -> EmailReport:
        if self._send is None:
            return EmailReport(notification_id=notification_id, skipped_reason="email_disabled")
        notification = await self.store.get(notification_id)
        if notification is None:
            return EmailReport(notification_id=notification_id, skipped_reason="not_found")
        return await self.notify(notification)

    async def notify(self, notification: Notification) -> EmailReport:
        report = EmailReport(notification_id=notification.id)
        if self._send is None:
            report.skipped_reason = "email_disabled"
            return report
        if notification.is_expired():
            report.skipped_reason = "expired"
            return report

        recipient_ids = await self.store.resolve_recipient_ids(notification)
        if not recipient_ids:
            return report
        result = await self.db.execute(
            select(User.email, User.name)
            .where(User.id.in_(recipient_ids), User.is_active.is_(True))
            .order_by(User.email)
        )
        messages = [
            build_message(notification, email, name, self.config)
            for email, name in result.all()
            if email
        ]

        semaphore = asyncio.Semaphore(MAX_PARALLEL_SENDS)

        async def send_one(message: EmailMessage) -> None:
            async with semaphore:
                await asyncio.to_thread(self._send, to_mail(message, self.config))

        results = await asyncio.gather(
            *(send_one(m) for m in messages), return_exceptions=True
        )
        for message, outcome in zip(messages, results):
            if isinstance(outcome, BaseException):
                report.failed += 1
                logger.warning("Email for notification %s to %s failed: %s", notification.id, message.to, outcome)
            else:
                report.sent += 1
        logger.info(
            "Emails for notification %s: %d/%d sent", notification.id, report.sent, len(messages),
        )
        return report
