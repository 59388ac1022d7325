# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP mail sender.

The MailSender turns one scheduled email into a MIME message and hands it
to the configured relay. Delivery problems come back as a
:class:`SendResult` value rather than an exception, so the dispatcher can
record them against the job and move on.

The body is plain text. An HTML alternative is added in which every line
break becomes ``<br>``; no other markup transformation is made.

Example:
    Sending an email::

        sender = MailSender(config.smtp)
        result = await sender.send(
            to="master@aurora.example",
            subject="MV AURORA // PRE ARRIVAL // TEKIRDAG",
            body="Dear Master,\\n\\nGood day,",
            attachments=[Resolution(reference="p/crew.pdf", filename="crew.pdf", content=b"...")],
        )
        if not result.success:
            print(result.error)
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

import aiosmtplib

from .attachments import Resolution, guess_mime
from .config_loader import SMTPSettings
from .logger import get_logger
from .smtp_pool import SMTPPool

LINE_BREAK_PATTERN = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class SendResult:
    """Outcome of one send attempt.

    Attributes:
        success: Whether the relay accepted the message.
        message_id: Message-ID header of the accepted message.
        error: Failure description when ``success`` is False.
    """

    success: bool
    message_id: str | None = None
    error: str | None = None


def body_to_html(body: str) -> str:
    """Render the plain-text body as HTML by converting line breaks to ``<br>``."""
    return LINE_BREAK_PATTERN.sub("<br>", body)


class MailSender:
    """Sends one email per call through an SMTP relay.

    Attributes:
        settings: Relay settings; credentials are checked at construction.
        pool: Connection pool shared across sends.
    """

    def __init__(self, settings: SMTPSettings, pool: SMTPPool | None = None, logger=None):
        """Create a sender.

        Raises:
            ConfigurationError: If host, user or password is missing.
        """
        settings.require_credentials()
        self.settings = settings
        self.pool = pool or SMTPPool()
        self.logger = logger or get_logger("MailSender")

    def build_message(
        self,
        to: str,
        subject: str,
        body: str,
        attachments: Sequence[Resolution] = (),
    ) -> EmailMessage:
        """Build the MIME message for one recipient.

        Only resolved attachments (``ok``) are attached.
        """
        domain = (self.settings.from_address or "localhost").rsplit("@", 1)[-1]
        msg = EmailMessage()
        msg["From"] = self.settings.from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid(domain=domain)
        msg.set_content(body)
        msg.add_alternative(body_to_html(body), subtype="html")
        for att in attachments:
            if not att.ok:
                continue
            maintype, subtype = guess_mime(att.filename)
            msg.add_attachment(att.content, maintype=maintype, subtype=subtype, filename=att.filename)
        return msg

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        attachments: Sequence[Resolution] = (),
    ) -> SendResult:
        """Transmit one email and report the outcome.

        SMTP errors, network errors and timeouts are returned as a failed
        :class:`SendResult`.
        """
        try:
            msg = self.build_message(to, subject, body, attachments)
        except (ValueError, TypeError) as exc:
            return SendResult(success=False, error=f"Invalid message: {exc}")

        s = self.settings
        try:
            async with self.pool.connection(s.host, s.port, s.user, s.password, use_tls=s.use_tls) as smtp:
                await asyncio.wait_for(
                    smtp.send_message(msg, sender=s.from_address),
                    timeout=s.timeout_seconds,
                )
        except asyncio.TimeoutError:
            error = f"SMTP timeout after {s.timeout_seconds}s"
            self.logger.error("Email sending failed for %s: %s", to, error)
            return SendResult(success=False, error=error)
        except (aiosmtplib.SMTPException, OSError) as exc:
            error = str(exc) or exc.__class__.__name__
            self.logger.error("Email sending failed for %s: %s", to, error)
            return SendResult(success=False, error=error)

        message_id = msg["Message-ID"]
        self.logger.debug("Email sent to %s (%s)", to, message_id)
        return SendResult(success=True, message_id=message_id)
