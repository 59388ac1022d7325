# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence layer for PortMail.

This module provides the Persistence class that handles all database
operations of the service, including:

- Scheduled job queue (insert, due selection, claim, outcome recording)
- Cancel and retry actions on jobs
- Ship reference data (create, read, update, delete)
- Port templates and their attachments

Every job state change is a row-scoped conditional update: the ``WHERE``
clause names the status the job must currently have, and the caller
checks how many rows were affected. Two sweeps that select the same due
job therefore cannot both claim it.

The persistence layer uses aiosqlite. Each operation opens and closes its
own connection, so a file-backed database is required.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/portmail.db")
        await persistence.init_db()

        job = await persistence.insert_job({
            "user_id": "u1",
            "ship_name": "MV AURORA",
            "target_email": "master@aurora.example",
            "subject": "MV AURORA // PRE ARRIVAL",
            "scheduled_time": datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc),
        })

        due = await persistence.fetch_due_jobs(now=utc_now(), limit=50)
        if await persistence.claim_job(due[0].id):
            ...
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import aiosqlite

from .errors import NotFoundError, StoreError
from .models import AttachmentRef, JobStatus, ScheduledJob, format_ts, to_utc, utc_now

SHIP_FIELDS = ("name", "imo_number", "default_email", "vessel_type", "flag_country", "notes")
PORT_FIELDS = ("name", "email_subject", "email_body", "recipient_email")


def _new_id() -> str:
    return uuid.uuid4().hex


class Persistence:
    """Async SQLite persistence layer for jobs, ships and ports.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/portmail.db"):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    async def init_db(self) -> None:
        """Create the database schema.

        Creates tables for ships, ports, port attachments and scheduled
        jobs. This method is idempotent and adds columns introduced after
        the first release to existing databases.
        """
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS ships (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    imo_number TEXT,
                    default_email TEXT NOT NULL,
                    vessel_type TEXT,
                    flag_country TEXT,
                    notes TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS ports (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email_subject TEXT NOT NULL,
                    email_body TEXT NOT NULL,
                    recipient_email TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS port_attachments (
                    id TEXT PRIMARY KEY,
                    port_id TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_size INTEGER,
                    file_type TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (port_id) REFERENCES ports(id) ON DELETE CASCADE
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    ship_id TEXT,
                    ship_name TEXT NOT NULL,
                    target_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    message TEXT,
                    file_path TEXT,
                    file_name TEXT,
                    file_size INTEGER,
                    scheduled_time TEXT NOT NULL,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    status TEXT NOT NULL DEFAULT 'pending',
                    sent_at TEXT,
                    error_log TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (status IN ('pending', 'processing', 'sent', 'failed', 'cancelled'))
                )
                """
            )
            # Migration: ordered attachment list
            try:
                await db.execute("ALTER TABLE scheduled_jobs ADD COLUMN attachments TEXT")
            except aiosqlite.OperationalError:
                pass

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(status, scheduled_time)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_user ON scheduled_jobs(user_id, scheduled_time)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_port_attachments_port ON port_attachments(port_id)"
            )
            await db.commit()

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _job_from_row(row: aiosqlite.Row) -> ScheduledJob:
        data = dict(row)
        raw = data.get("attachments")
        data["attachments"] = json.loads(raw) if raw else []
        return ScheduledJob.model_validate(data)

    async def insert_job(self, job: dict[str, Any]) -> ScheduledJob:
        """Insert a new pending job.

        Args:
            job: Dict with keys user_id, ship_id, ship_name, target_email,
                subject, message, file_path, file_name, file_size,
                attachments (list of AttachmentRef or dicts),
                scheduled_time (datetime), timezone.

        Returns:
            The stored job.
        """
        job_id = job.get("id") or _new_id()
        now = format_ts(utc_now())
        tz_name = job.get("timezone") or "UTC"
        attachments = [
            AttachmentRef.model_validate(att).model_dump() for att in (job.get("attachments") or [])
        ]
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO scheduled_jobs
                (id, user_id, ship_id, ship_name, target_email, subject, message,
                 file_path, file_name, file_size, attachments, scheduled_time, timezone,
                 status, retry_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                """,
                (
                    job_id,
                    job["user_id"],
                    job.get("ship_id"),
                    job["ship_name"],
                    job["target_email"],
                    job["subject"],
                    job.get("message"),
                    job.get("file_path"),
                    job.get("file_name"),
                    job.get("file_size"),
                    json.dumps(attachments) if attachments else None,
                    format_ts(to_utc(job["scheduled_time"], tz_name)),
                    tz_name,
                    now,
                    now,
                ),
            )
            await db.commit()
        stored = await self.get_job(job_id)
        if stored is None:
            raise StoreError(f"Job {job_id} not found after insert")
        return stored

    async def get_job(self, job_id: str, user_id: str | None = None) -> ScheduledJob | None:
        """Fetch a job by id, optionally scoped to its owner."""
        query = "SELECT * FROM scheduled_jobs WHERE id = ?"
        params: list[Any] = [job_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return self._job_from_row(row) if row else None

    async def list_jobs(
        self,
        user_id: str | None = None,
        status: JobStatus | str | None = None,
        limit: int = 50,
    ) -> list[ScheduledJob]:
        """Return jobs, most recently scheduled first.

        Args:
            user_id: Restrict to one owner. ``None`` lists every owner.
            status: Restrict to one status. ``None`` or ``"all"`` lists all.
            limit: Maximum number of rows.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status and status != "all":
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        query = "SELECT * FROM scheduled_jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY scheduled_time DESC LIMIT ?"
        params.append(max(1, int(limit)))
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [self._job_from_row(row) for row in rows]

    async def fetch_due_jobs(self, now: datetime, limit: int) -> list[ScheduledJob]:
        """Select pending jobs whose scheduled time has passed.

        Args:
            now: Reference instant. Jobs with ``scheduled_time <= now`` are due.
            limit: Maximum number of jobs (the sweep batch size).

        Returns:
            Due jobs, earliest scheduled first.

        Raises:
            StoreError: If the query fails.
        """
        try:
            async with self._connect() as db:
                async with db.execute(
                    """
                    SELECT * FROM scheduled_jobs
                    WHERE status = 'pending' AND scheduled_time <= ?
                    ORDER BY scheduled_time ASC, created_at ASC
                    LIMIT ?
                    """,
                    (format_ts(now), max(1, int(limit))),
                ) as cur:
                    rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to fetch pending jobs: {exc}") from exc
        return [self._job_from_row(row) for row in rows]

    async def _transition(
        self,
        job_id: str,
        expected: JobStatus,
        assignments: str,
        params: tuple[Any, ...] = (),
        user_id: str | None = None,
    ) -> bool:
        """Apply ``assignments`` only if the job currently has ``expected`` status.

        Returns:
            True if exactly one row changed.

        Raises:
            StoreError: If the update fails.
        """
        query = (
            f"UPDATE scheduled_jobs SET {assignments}, updated_at = ? "
            "WHERE id = ? AND status = ?"
        )
        values: list[Any] = [*params, format_ts(utc_now()), job_id, expected.value]
        if user_id is not None:
            query += " AND user_id = ?"
            values.append(user_id)
        try:
            async with self._connect() as db:
                cursor = await db.execute(query, values)
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to update job {job_id}: {exc}") from exc

    async def claim_job(self, job_id: str) -> bool:
        """Move a job from pending to processing.

        Returns:
            True if this caller claimed the job, False if it was no longer
            pending (claimed by another sweep, cancelled, ...).
        """
        return await self._transition(job_id, JobStatus.PENDING, "status = 'processing'")

    async def mark_sent(self, job_id: str, sent_at: datetime) -> bool:
        """Record a successful delivery for a claimed job."""
        return await self._transition(
            job_id,
            JobStatus.PROCESSING,
            "status = 'sent', sent_at = ?, error_log = NULL",
            (format_ts(sent_at),),
        )

    async def mark_failed(self, job_id: str, error: str) -> bool:
        """Record a failed delivery for a claimed job and bump its retry counter."""
        return await self._transition(
            job_id,
            JobStatus.PROCESSING,
            "status = 'failed', error_log = ?, retry_count = retry_count + 1",
            (error or "Unknown error",),
        )

    async def cancel_job(self, job_id: str, user_id: str | None = None) -> bool:
        """Cancel a job that has not been claimed yet."""
        return await self._transition(job_id, JobStatus.PENDING, "status = 'cancelled'", user_id=user_id)

    async def retry_job(self, job_id: str, user_id: str | None = None) -> bool:
        """Put a failed job back in the queue.

        The error log and sent timestamp are cleared; ``retry_count`` keeps
        its value so further failures keep counting up.
        """
        return await self._transition(
            job_id,
            JobStatus.FAILED,
            "status = 'pending', error_log = NULL, sent_at = NULL",
            user_id=user_id,
        )

    async def delete_job(self, job_id: str, user_id: str | None = None) -> ScheduledJob | None:
        """Delete a job and return it, or None if it did not exist."""
        job = await self.get_job(job_id, user_id)
        if job is None:
            return None
        async with self._connect() as db:
            await db.execute("DELETE FROM scheduled_jobs WHERE id = ?", (job_id,))
            await db.commit()
        return job

    async def count_jobs(self, status: JobStatus | str, user_id: str | None = None) -> int:
        """Count jobs in one status."""
        query = "SELECT COUNT(*) FROM scheduled_jobs WHERE status = ?"
        params: list[Any] = [JobStatus(status).value]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def count_sent_since(self, since: datetime, user_id: str | None = None) -> int:
        """Count jobs delivered at or after ``since``."""
        query = "SELECT COUNT(*) FROM scheduled_jobs WHERE status = 'sent' AND sent_at >= ?"
        params: list[Any] = [format_ts(since)]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def count_file_references(self, path: str) -> int:
        """Count jobs and port attachments that still point at a stored file.

        Port templates and the jobs created from them share files, so a
        file is only removed from the file store when this returns 0.
        """
        quoted = json.dumps(path)
        async with self._connect() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM port_attachments WHERE file_path = ?", (path,)
            ) as cur:
                ports = (await cur.fetchone())[0]
            async with db.execute(
                """
                SELECT COUNT(*) FROM scheduled_jobs
                WHERE file_path = ? OR (attachments IS NOT NULL AND instr(attachments, ?) > 0)
                """,
                (path, quoted),
            ) as cur:
                jobs = (await cur.fetchone())[0]
        return int(ports) + int(jobs)

    # Ships --------------------------------------------------------------------
    async def add_ship(self, ship: dict[str, Any], created_by: str | None = None) -> dict[str, Any]:
        """Insert a ship and return the stored row."""
        ship_id = ship.get("id") or _new_id()
        now = format_ts(utc_now())
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO ships
                (id, name, imo_number, default_email, vessel_type, flag_country, notes,
                 created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (ship_id, *(ship.get(name) for name in SHIP_FIELDS), created_by, now, now),
            )
            await db.commit()
        return await self.get_ship(ship_id)

    async def get_ship(self, ship_id: str) -> dict[str, Any]:
        """Fetch a ship by id.

        Raises:
            NotFoundError: If the ship does not exist.
        """
        async with self._connect() as db:
            async with db.execute("SELECT * FROM ships WHERE id = ?", (ship_id,)) as cur:
                row = await cur.fetchone()
        if not row:
            raise NotFoundError(f"Ship '{ship_id}' not found")
        return dict(row)

    async def list_ships(self) -> list[dict[str, Any]]:
        """Return all ships ordered by name."""
        async with self._connect() as db:
            async with db.execute("SELECT * FROM ships ORDER BY name") as cur:
                rows = await cur.fetchall()
        return [dict(row) for row in rows]

    async def update_ship(self, ship_id: str, updates: dict[str, Any]) -> bool:
        """Update a ship's fields.

        Returns:
            True if the ship was found and updated, False otherwise.
        """
        return await self._update_row("ships", ship_id, updates, SHIP_FIELDS)

    async def delete_ship(self, ship_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM ships WHERE id = ?", (ship_id,))
            await db.commit()
            return cursor.rowcount > 0

    # Ports --------------------------------------------------------------------
    async def add_port(self, port: dict[str, Any], created_by: str | None = None) -> dict[str, Any]:
        """Insert a port template together with its attachments."""
        port_id = port.get("id") or _new_id()
        now = format_ts(utc_now())
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO ports
                (id, name, email_subject, email_body, recipient_email, created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (port_id, *(port.get(name) for name in PORT_FIELDS), created_by, now, now),
            )
            for att in port.get("attachments") or []:
                await db.execute(
                    """
                    INSERT INTO port_attachments
                    (id, port_id, file_path, file_name, file_size, file_type, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _new_id(),
                        port_id,
                        att["file_path"],
                        att["file_name"],
                        att.get("file_size"),
                        att.get("file_type"),
                        now,
                    ),
                )
            await db.commit()
        return await self.get_port(port_id)

    async def get_port(self, port_id: str) -> dict[str, Any]:
        """Fetch a port template with its attachments in upload order.

        Raises:
            NotFoundError: If the port does not exist.
        """
        async with self._connect() as db:
            async with db.execute("SELECT * FROM ports WHERE id = ?", (port_id,)) as cur:
                row = await cur.fetchone()
            if not row:
                raise NotFoundError(f"Port '{port_id}' not found")
            async with db.execute(
                "SELECT * FROM port_attachments WHERE port_id = ? ORDER BY created_at, rowid",
                (port_id,),
            ) as cur:
                attachments = await cur.fetchall()
        port = dict(row)
        port["attachments"] = [dict(att) for att in attachments]
        return port

    async def list_ports(self) -> list[dict[str, Any]]:
        """Return all port templates with their attachments, ordered by name."""
        async with self._connect() as db:
            async with db.execute("SELECT id FROM ports ORDER BY name") as cur:
                ids = [row["id"] for row in await cur.fetchall()]
        return [await self.get_port(port_id) for port_id in ids]

    async def update_port(self, port_id: str, updates: dict[str, Any]) -> bool:
        return await self._update_row("ports", port_id, updates, PORT_FIELDS)

    async def delete_port(self, port_id: str) -> list[dict[str, Any]]:
        """Delete a port and its attachment rows.

        Returns:
            The attachment rows that were removed, so that the caller can
            delete the files from the file store.

        Raises:
            NotFoundError: If the port does not exist.
        """
        port = await self.get_port(port_id)
        async with self._connect() as db:
            await db.execute("DELETE FROM ports WHERE id = ?", (port_id,))
            await db.commit()
        return port["attachments"]

    async def add_port_attachment(self, port_id: str, att: dict[str, Any]) -> dict[str, Any]:
        """Attach a file to an existing port template."""
        await self.get_port(port_id)
        att_id = _new_id()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO port_attachments
                (id, port_id, file_path, file_name, file_size, file_type, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    att_id,
                    port_id,
                    att["file_path"],
                    att["file_name"],
                    att.get("file_size"),
                    att.get("file_type"),
                    format_ts(utc_now()),
                ),
            )
            await db.commit()
            async with db.execute("SELECT * FROM port_attachments WHERE id = ?", (att_id,)) as cur:
                row = await cur.fetchone()
        return dict(row)

    async def delete_port_attachment(self, port_id: str, att_id: str) -> dict[str, Any] | None:
        """Remove one attachment row and return it, or None if absent."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM port_attachments WHERE id = ? AND port_id = ?", (att_id, port_id)
            ) as cur:
                row = await cur.fetchone()
            if not row:
                return None
            await db.execute("DELETE FROM port_attachments WHERE id = ?", (att_id,))
            await db.commit()
        return dict(row)

    # Helpers ------------------------------------------------------------------
    async def _update_row(
        self, table: str, row_id: str, updates: dict[str, Any], allowed: tuple[str, ...]
    ) -> bool:
        set_parts = []
        values: list[Any] = []
        for key, value in updates.items():
            if key in allowed:
                set_parts.append(f"{key} = ?")
                values.append(value)
        if not set_parts:
            return False
        set_parts.append("updated_at = ?")
        values.extend([format_ts(utc_now()), row_id])
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE {table} SET {', '.join(set_parts)} WHERE id = ?", values
            )
            await db.commit()
            return cursor.rowcount > 0
