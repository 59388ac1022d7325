"""Tests for the MailSender, with a real SMTP server using aiosmtpd."""

import asyncio
import socket
from email import message_from_string
from typing import Any

import pytest
from aiosmtpd.controller import Controller
from aiosmtpd.smtp import AuthResult

from portmail.attachments import Resolution
from portmail.config_loader import SMTPSettings
from portmail.errors import ConfigurationError
from portmail.mailer import MailSender, body_to_html
from portmail.smtp_pool import SMTPPool


def get_free_port() -> int:
    """Find a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
    return port


def accept_any_login(server, session, envelope, mechanism, auth_data):
    return AuthResult(success=True)


class CapturingHandler:
    """SMTP handler that captures received messages."""

    def __init__(self):
        self.messages: list[dict[str, Any]] = []
        self.reject_next = False
        self.delay_seconds = 0

    async def handle_DATA(self, server, session, envelope):
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self.reject_next:
            self.reject_next = False
            return "550 Mailbox not found"
        self.messages.append({
            "from": envelope.mail_from,
            "to": envelope.rcpt_tos,
            "data": envelope.content.decode("utf-8", errors="replace"),
        })
        return "250 Message accepted for delivery"


@pytest.fixture
def smtp_handler():
    return CapturingHandler()


@pytest.fixture
def smtp_server(smtp_handler):
    """Start a fake SMTP relay with AUTH on a free port."""
    port = get_free_port()
    controller = Controller(
        smtp_handler,
        hostname="127.0.0.1",
        port=port,
        authenticator=accept_any_login,
        auth_require_tls=False,
    )
    controller.start()
    yield controller, port
    controller.stop()


def relay_settings(port, **overrides) -> SMTPSettings:
    values = {
        "host": "127.0.0.1",
        "port": port,
        "user": "agency@portmail.example",
        "password": "app-password",
        "use_tls": False,
        "timeout_seconds": 5,
    }
    values.update(overrides)
    return SMTPSettings(**values)


def test_body_to_html_only_converts_line_breaks():
    assert body_to_html("Dear Master,\nGood day,\r\n\r\nBest regards") == (
        "Dear Master,<br>Good day,<br><br>Best regards"
    )
    assert body_to_html("<b>ETA</b> 10:00") == "<b>ETA</b> 10:00"


@pytest.mark.parametrize("missing", ["user", "password", "host"])
def test_missing_credentials_fail_fast(missing):
    settings = relay_settings(25, **{missing: None})

    with pytest.raises(ConfigurationError, match=f"smtp.{missing}"):
        MailSender(settings)


def test_build_message_has_text_html_and_attachments():
    sender = MailSender(relay_settings(25, sender="ops@portmail.example"))
    msg = sender.build_message(
        "master@aurora.example",
        "MV AURORA // PRE ARRIVAL",
        "Dear Master,\nGood day,",
        [
            Resolution(reference="p/crew.pdf", filename="crew.pdf", content=b"%PDF"),
            Resolution(reference="p/gone.pdf", filename="gone.pdf", error="File not found"),
        ],
    )

    assert msg["From"] == "ops@portmail.example"
    assert msg["To"] == "master@aurora.example"
    assert msg["Message-ID"].endswith("@portmail.example>")
    assert msg.get_body(("plain",)).get_content().startswith("Dear Master,\nGood day,")
    assert "Dear Master,<br>Good day," in msg.get_body(("html",)).get_content()
    attachments = list(msg.iter_attachments())
    assert [a.get_filename() for a in attachments] == ["crew.pdf"]
    assert attachments[0].get_content_type() == "application/pdf"
    assert attachments[0].get_content() == b"%PDF"


@pytest.mark.asyncio
async def test_send_via_real_smtp(smtp_server, smtp_handler):
    _, port = smtp_server
    pool = SMTPPool()
    sender = MailSender(relay_settings(port), pool=pool)

    result = await sender.send(
        "master@aurora.example",
        "MV AURORA // PRE ARRIVAL // TEKIRDAG",
        "Dear Master,\nGood day,",
        [Resolution(reference="crew.txt", filename="crew.txt", content=b"crew list")],
    )
    await pool.close_all()

    assert result.success is True
    assert result.message_id
    assert len(smtp_handler.messages) == 1
    captured = smtp_handler.messages[0]
    assert captured["from"] == "agency@portmail.example"
    assert captured["to"] == ["master@aurora.example"]
    parsed = message_from_string(captured["data"])
    assert parsed["Subject"] == "MV AURORA // PRE ARRIVAL // TEKIRDAG"
    assert "crew.txt" in captured["data"]


@pytest.mark.asyncio
async def test_connection_is_reused_between_sends(smtp_server, smtp_handler):
    _, port = smtp_server
    pool = SMTPPool()
    sender = MailSender(relay_settings(port), pool=pool)

    await sender.send("a@fleet.example", "one", "body")
    first = next(iter(pool.pool.values()))[0]
    await sender.send("b@fleet.example", "two", "body")
    second = next(iter(pool.pool.values()))[0]
    await pool.close_all()

    assert first is second
    assert len(smtp_handler.messages) == 2


@pytest.mark.asyncio
async def test_rejected_message_is_reported(smtp_server, smtp_handler):
    _, port = smtp_server
    smtp_handler.reject_next = True
    pool = SMTPPool()
    sender = MailSender(relay_settings(port), pool=pool)

    result = await sender.send("nobody@fleet.example", "subject", "body")
    await pool.close_all()

    assert result.success is False
    assert "Mailbox not found" in result.error
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_send_timeout_is_reported(smtp_server, smtp_handler):
    _, port = smtp_server
    smtp_handler.delay_seconds = 1
    pool = SMTPPool()
    sender = MailSender(relay_settings(port, timeout_seconds=0.2), pool=pool)

    result = await sender.send("slow@fleet.example", "subject", "body")
    await pool.close_all()

    assert result.success is False
    assert result.error == "SMTP timeout after 0.2s"


@pytest.mark.asyncio
async def test_unreachable_relay_is_reported():
    port = get_free_port()
    pool = SMTPPool(connect_timeout=2)
    sender = MailSender(relay_settings(port), pool=pool)

    result = await sender.send("master@aurora.example", "subject", "body")

    assert result.success is False
    assert result.error
