"""Pytest fixtures for webmail gateway tests."""

import email.utils
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence
from unittest.mock import MagicMock

import pytest

from webmail_gateway.config import (
    GatewayConfig,
    ImapConfig,
    MailboxConfig,
    ScanConfig,
    SmtpConfig,
)
from webmail_gateway.models import Message

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """Timestamp ``minutes`` after the fixed base time."""
    return BASE_TIME + timedelta(minutes=minutes)


def build_message(
    message_id: str,
    parent: Optional[str] = None,
    refs: Sequence[str] = (),
    ts: Optional[int] = None,
    thread_id: Optional[str] = None,
    subject: str = "Subject",
    sender: str = "sender@example.com",
    uid: Optional[int] = None,
    raw: Optional[bytes] = None,
) -> Message:
    return Message(
        message_id=message_id,
        subject=subject,
        sender=sender,
        date=at(ts) if ts is not None else None,
        parent_id=parent,
        references=tuple(refs),
        thread_id=thread_id,
        uid=uid,
        raw=raw,
    )


@pytest.fixture
def make_message():
    """Factory for Message objects with terse arguments."""
    return build_message


@pytest.fixture
def mock_imap_config():
    """Create a mock IMAP configuration."""
    return ImapConfig(
        host="imap.gmail.com",
        port=993,
        username="test@gmail.com",
        password="app-password",
        use_ssl=True,
    )


@pytest.fixture
def mock_smtp_config():
    """Create a mock SMTP configuration."""
    return SmtpConfig(
        host="smtp.gmail.com",
        port=465,
        username="test@gmail.com",
        password="app-password",
    )


@pytest.fixture
def mock_gateway_config(mock_imap_config, mock_smtp_config):
    """Create a mock gateway configuration."""
    return GatewayConfig(
        imap=mock_imap_config,
        smtp=mock_smtp_config,
        mailboxes=MailboxConfig(),
        scan=ScanConfig(timeout_seconds=5.0, batch_size=2),
    )


@pytest.fixture
def session_events():
    """Ordered record of session open/close and submission calls."""
    return []


@pytest.fixture
def mock_session(session_events):
    """IMAP session factory yielding a MagicMock client.

    The client is exposed as ``mock_session.client``.
    """
    client = MagicMock()

    @contextmanager
    def factory(config, batch_size=50):
        session_events.append("open")
        try:
            yield client
        finally:
            session_events.append("close")

    factory.client = client
    return factory


@pytest.fixture
def test_email_message_simple():
    """Create a simple test email message."""
    msg = MIMEText("This is a simple test email.")
    msg["From"] = "Test Sender <sender@example.com>"
    msg["To"] = "Test Recipient <recipient@example.com>"
    msg["Subject"] = "Simple Test Email"
    msg["Message-ID"] = "<simple-test-123@example.com>"
    msg["Date"] = email.utils.format_datetime(BASE_TIME)
    return msg


@pytest.fixture
def test_email_message_with_attachment():
    """Create a threaded test email message with an attachment."""
    msg = MIMEMultipart()
    msg["From"] = "Test Sender <sender@example.com>"
    msg["To"] = "Test Recipient <recipient@example.com>"
    msg["Subject"] = "Re: Email with Attachment"
    msg["Message-ID"] = "<attachment-test-123@example.com>"
    msg["In-Reply-To"] = "<parent-1@example.com>"
    msg["References"] = "<root-0@example.com> <parent-1@example.com>"
    msg["Date"] = email.utils.format_datetime(BASE_TIME)

    text_part = MIMEText("This email has an attachment.", "plain")
    msg.attach(text_part)

    attachment = MIMEApplication(b"This is attachment content")
    attachment.add_header("Content-Disposition", "attachment", filename="test.txt")
    msg.attach(attachment)

    return msg
