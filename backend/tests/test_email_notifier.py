"""
Tests for EmailNotifier – addressees, message content, graceful degradation.

SendGrid is replaced by a fake send callable, so no network.
"""
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from portal.core.config import Settings
from portal.models.notification import Notification, RecipientMode
from portal.models.user import UserRole
from portal.services.email_notifier import EmailNotifier, absolute_url, build_message, to_mail
from portal.services.notification_store import NotificationDraft, NotificationStore
from tests.conftest import make_user

CONFIG = Settings(
    _env_file=None,
    SENDGRID_API_KEY="SG.test-key",
    SENDGRID_FROM_EMAIL="studio@example.com",
    EMAIL_SENDER_NAME="Studio",
    PUBLIC_APP_URL="https://portal.example.com/",
)


class FakeMailer:
    """Records every Mail handed to SendGrid; some addresses can be made to fail."""

    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()
        self.sent: list[dict] = []
        self._lock = threading.Lock()

    def __call__(self, mail) -> None:
        payload = mail.get()
        to = payload["personalizations"][0]["to"][0]["email"]
        with self._lock:
            self.sent.append(payload)
        if to in self.failing:
            raise RuntimeError("550 mailbox unavailable")

    @property
    def recipients(self) -> list[str]:
        return sorted(p["personalizations"][0]["to"][0]["email"] for p in self.sent)


async def _create(db, mode, recipient_ids=(), **kwargs):
    n = await NotificationStore(db).create(NotificationDraft(
        title="Invoice ready",
        message="Invoice #42 is available.",
        recipient_mode=mode,
        recipient_ids=set(recipient_ids),
        **kwargs,
    ))
    await db.commit()
    return n


# ── Sending ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_targeted_mails_each_active_recipient(db, client_user, other_client):
    inactive = await make_user(db, "former@test.de", UserRole.CLIENT, is_active=False)
    n = await _create(db, RecipientMode.TARGETED, [client_user.id, inactive.id])
    mailer = FakeMailer()

    report = await EmailNotifier(db, send=mailer, config=CONFIG).notify(n)

    assert report.sent == 1
    assert mailer.recipients == ["client@test.de"]
    assert mailer.sent[0]["subject"] == "Notification: Invoice ready"


@pytest.mark.asyncio
async def test_broadcast_mails_clients_not_admins(db, admin_user, client_user, other_client):
    n = await _create(db, RecipientMode.BROADCAST)
    mailer = FakeMailer()

    report = await EmailNotifier(db, send=mailer, config=CONFIG).notify(n)

    assert report.sent == 2
    assert mailer.recipients == ["client@test.de", "other@test.de"]
    assert {p["subject"] for p in mailer.sent} == {"Announcement: Invoice ready"}


@pytest.mark.asyncio
async def test_one_failing_address_does_not_stop_others(db, client_user, other_client):
    n = await _create(db, RecipientMode.TARGETED, [client_user.id, other_client.id])
    mailer = FakeMailer(failing={"client@test.de"})

    report = await EmailNotifier(db, send=mailer, config=CONFIG).notify(n)

    assert report.sent == 1
    assert report.failed == 1
    assert mailer.recipients == ["client@test.de", "other@test.de"]


# ── Skips ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_without_api_key_nothing_is_sent(db, client_user):
    n = await _create(db, RecipientMode.TARGETED, [client_user.id])

    report = await EmailNotifier(db, config=Settings(_env_file=None, SENDGRID_API_KEY="")).notify_by_id(n.id)

    assert report.skipped_reason == "email_disabled"
    assert report.sent == 0


@pytest.mark.asyncio
async def test_expired_notification_not_mailed(db, client_user):
    n = await _create(
        db, RecipientMode.TARGETED, [client_user.id],
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    mailer = FakeMailer()

    report = await EmailNotifier(db, send=mailer, config=CONFIG).notify(n)

    assert report.skipped_reason == "expired"
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_deleted_notification_skipped(db):
    report = await EmailNotifier(db, send=FakeMailer(), config=CONFIG).notify_by_id(uuid.uuid4())
    assert report.skipped_reason == "not_found"


# ── Message content ───────────────────────────────────────────────────────────

def _notification(**kwargs) -> Notification:
    fields = {
        "title": "Proofs <ready>",
        "message": "Logo & colours",
        "type": "info",
        "priority": "medium",
        "recipient_mode": "targeted",
    }
    fields.update(kwargs)
    return Notification(**fields)


def test_absolute_url_joins_public_app_url():
    assert absolute_url("/projects/7", CONFIG) == "https://portal.example.com/projects/7"
    assert absolute_url("https://elsewhere.example.org/x", CONFIG) == "https://elsewhere.example.org/x"


def test_message_links_and_escaping():
    message = build_message(
        _notification(action_url="/projects/7", action_text="Open project"), "a@b.de", "Ana", CONFIG,
    )

    assert message.subject == "Notification: Proofs <ready>"
    assert "Hello Ana," in message.text
    assert "Open project: https://portal.example.com/projects/7" in message.text
    assert "https://portal.example.com/notifications" in message.text
    assert "Proofs &lt;ready&gt;" in message.html
    assert "Logo &amp; colours" in message.html
    assert 'href="https://portal.example.com/projects/7"' in message.html


def test_message_without_action_has_only_inbox_link():
    message = build_message(_notification(), "a@b.de", None, CONFIG)

    assert message.text.startswith("Hello,")
    assert message.html.count("href=") == 1


def test_to_mail_sets_sender_and_both_bodies():
    payload = to_mail(build_message(_notification(), "a@b.de", "Ana", CONFIG), CONFIG).get()

    assert payload["from"] == {"email": "studio@example.com", "name": "Studio"}
    assert payload["subject"] == "Notification: Proofs <ready>"
    assert {c["type"] for c in payload["content"]} == {"text/plain", "text/html"}
