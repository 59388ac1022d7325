"""Shared fixtures: a file-backed job store, a local file store and a fake mail sender."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from portmail.attachments import AttachmentResolver, FilesystemFetcher
from portmail.mailer import SendResult
from portmail.persistence import Persistence

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class DummySender:
    """Mail sender double recording every call.

    Recipients listed in ``fail_for`` get a failed result, those in
    ``raise_for`` make ``send`` raise.
    """

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail_for: dict[str, str] = {}
        self.raise_for: set[str] = set()

    async def send(self, to, subject, body, attachments=()):
        self.sent.append({"to": to, "subject": subject, "body": body, "attachments": list(attachments)})
        if to in self.raise_for:
            raise RuntimeError("relay exploded")
        if to in self.fail_for:
            return SendResult(success=False, error=self.fail_for[to])
        return SendResult(success=True, message_id=f"<{len(self.sent)}@test>")


@pytest_asyncio.fixture
async def persistence(tmp_path):
    db = Persistence(str(tmp_path / "portmail.db"))
    await db.init_db()
    return db


@pytest.fixture
def files(tmp_path):
    root = tmp_path / "files"
    root.mkdir()
    return root


@pytest.fixture
def resolver(files):
    return AttachmentResolver(FilesystemFetcher(str(files)), timeout=5)


@pytest.fixture
def sender():
    return DummySender()


@pytest.fixture
def make_job(persistence):
    """Insert a pending job due ``offset`` from NOW (negative means overdue)."""

    async def _make(offset=timedelta(seconds=-1), **overrides):
        data = {
            "user_id": "u1",
            "ship_name": "MV AURORA",
            "target_email": "master@aurora.example",
            "subject": "MV AURORA // PRE ARRIVAL // TEKIRDAG",
            "message": "Dear Master,\nGood day,",
            "scheduled_time": NOW + offset,
        }
        data.update(overrides)
        return await persistence.insert_job(data)

    return _make
