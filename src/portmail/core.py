# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the PortMail service.

This module provides the PortMailService class, which assembles the job
store, attachment resolver, mail sender and dispatcher from one
:class:`~portmail.config_loader.ServiceConfig` and exposes them to the
API and the CLI.

Core responsibilities:
    - Running sweeps for every trigger source (HTTP, CLI, self-trigger),
      one at a time within the process
    - Command handling for jobs, ships, port templates and dashboard stats
    - Baking port templates into new jobs
    - Removing stored files that no job or port references any more
    - Starting the development self-trigger

Commands return dicts with an ``ok`` flag. Missing records, invalid
payloads and disallowed job actions come back as ``{"ok": False,
"error": ..., "code": ...}``; configuration and job store errors are
raised.

Example:
    Running the service::

        config = load_config()
        service = PortMailService(config)
        await service.start()

        report = await service.run_sweep(trigger="manual")
        result = await service.handle_command("listJobs", {"user_id": "u1"})

        await service.stop()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, time as dt_time
from typing import Any

import aiosqlite
from pydantic import ValidationError

from .attachments import AttachmentResolver
from .config_loader import ServiceConfig
from .dispatcher import Dispatcher, attachment_refs
from .errors import (
    ConfigurationError,
    InvalidRequestError,
    JobStateError,
    NotFoundError,
    StoreError,
)
from .logger import get_logger
from .mailer import MailSender
from .models import (
    AttachmentRef,
    DashboardStats,
    JobCreate,
    JobStatus,
    PortAttachmentCreate,
    PortCreate,
    PortUpdate,
    ScheduledJob,
    ShipCreate,
    ShipUpdate,
    SweepReport,
    utc_now,
)
from .persistence import Persistence
from .prometheus import SweepMetrics
from .scheduler import SelfTrigger
from .smtp_pool import SMTPPool
from .templates import render_template

ATTACHMENT_NAME_SEPARATOR = ", "


def _job_dump(job: ScheduledJob) -> dict[str, Any]:
    return job.model_dump(mode="json")


class PortMailService:
    """Service object shared by the API, the CLI and the self-trigger.

    Attributes:
        config: Configuration assembled at process start.
        persistence: Job store.
        metrics: Prometheus collector.
        pool: SMTP connection pool reused across sweeps.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        persistence: Persistence | None = None,
        resolver: AttachmentResolver | None = None,
        sender: MailSender | None = None,
        metrics: SweepMetrics | None = None,
        logger=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Create the service.

        The resolver and the mail sender are built on first use, so that a
        missing credential surfaces as a :class:`ConfigurationError` on the
        sweep that needs it instead of preventing the API from starting.

        Args:
            config: Service configuration.
            persistence: Job store; defaults to SQLite at ``storage.db_path``.
            resolver: Attachment resolver; defaults to the configured backend.
            sender: Mail sender; defaults to the configured SMTP relay.
            metrics: Prometheus collector.
            logger: Custom logger instance.
            clock: Source of the current instant.
        """
        self.config = config
        self.persistence = persistence or Persistence(config.storage.db_path)
        self.metrics = metrics or SweepMetrics()
        self.pool = SMTPPool()
        self.logger = logger or get_logger("PortMail")
        self._resolver = resolver
        self._sender = sender
        self._clock = clock
        self._sweep_lock = asyncio.Lock()
        self._self_trigger: SelfTrigger | None = None

    # ----------------------------------------------------------------- setup
    async def init(self) -> None:
        """Create the database schema."""
        await self.persistence.init_db()

    async def start(self, self_trigger: bool | None = None) -> None:
        """Initialize storage and, outside production, start the self-trigger.

        Args:
            self_trigger: Force the local self-trigger on or off. ``None``
                enables it whenever the environment is not production.
        """
        await self.init()
        enabled = (not self.config.is_production) if self_trigger is None else self_trigger
        if enabled:
            self._self_trigger = SelfTrigger(
                lambda: self.run_sweep(trigger="self"),
                interval=self.config.self_trigger_interval,
            )
            await self._self_trigger.start()

    async def stop(self) -> None:
        """Stop the self-trigger and close pooled SMTP connections."""
        if self._self_trigger is not None:
            await self._self_trigger.stop()
            self._self_trigger = None
        await self.pool.close_all()

    @property
    def resolver(self) -> AttachmentResolver:
        """Attachment resolver for the configured file store.

        Raises:
            ConfigurationError: If the file store settings are incomplete.
        """
        if self._resolver is None:
            self._resolver = AttachmentResolver.from_settings(self.config.storage)
        return self._resolver

    @property
    def sender(self) -> MailSender:
        """Mail sender for the configured relay.

        Raises:
            ConfigurationError: If SMTP credentials are missing.
        """
        if self._sender is None:
            self._sender = MailSender(self.config.smtp, pool=self.pool)
        return self._sender

    def build_dispatcher(self) -> Dispatcher:
        """Assemble a dispatcher from the current configuration.

        Raises:
            ConfigurationError: If the relay or the file store is not usable.
        """
        return Dispatcher(
            self.persistence,
            self.resolver,
            self.sender,
            batch_size=self.config.batch_size,
            metrics=self.metrics,
            log_delivery_activity=self.config.log_delivery_activity,
            clock=self._clock,
        )

    # ----------------------------------------------------------------- sweep
    async def run_sweep(self, now: datetime | None = None, trigger: str = "manual") -> SweepReport:
        """Run one dispatcher sweep.

        Sweeps started in this process run one after the other. Sweeps from
        other processes are kept apart by the job claim.

        Raises:
            ConfigurationError: Before any job is selected, when the relay
                or the file store is not configured.
            StoreError: When due jobs cannot be selected or claimed.
        """
        async with self._sweep_lock:
            try:
                dispatcher = self.build_dispatcher()
            except ConfigurationError as exc:
                self.logger.error("Sweep (%s) aborted: %s", trigger, exc)
                raise
            try:
                return await dispatcher.run_sweep(now=now, trigger=trigger)
            except StoreError as exc:
                self.logger.error("Sweep (%s) aborted: %s", trigger, exc)
                raise
            finally:
                await self.pool.cleanup()

    # -------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external command.

        Supported commands:
        - ``runSweep``: Deliver due jobs now
        - ``addJob``, ``listJobs``, ``getJob``, ``cancelJob``, ``retryJob``,
          ``deleteJob``: Scheduled job management
        - ``addShip``, ``listShips``, ``getShip``, ``updateShip``, ``deleteShip``
        - ``addPort``, ``listPorts``, ``getPort``, ``updatePort``,
          ``deletePort``, ``addPortAttachment``, ``deletePortAttachment``
        - ``stats``: Dashboard counts for one user

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters. ``user_id`` scopes job
                commands to their owner.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.

        Raises:
            ConfigurationError: If the command needs a component that is not
                configured.
            StoreError: If the job store fails during a sweep.
        """
        payload = dict(payload or {})
        try:
            return await self._dispatch_command(cmd, payload)
        except (NotFoundError, JobStateError, InvalidRequestError) as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}
        except ValidationError as exc:
            return {"ok": False, "error": exc.errors(include_url=False, include_context=False), "code": InvalidRequestError.code}

    async def _dispatch_command(self, cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        user_id = payload.pop("user_id", None)
        match cmd:
            case "runSweep":
                report = await self.run_sweep(now=payload.get("now"), trigger=payload.get("trigger", "manual"))
                return {"ok": True, **report.to_response(), "skipped": report.skipped}
            case "addJob":
                job = await self._add_job(payload, user_id)
                return {"ok": True, "job": _job_dump(job)}
            case "listJobs":
                jobs = await self.persistence.list_jobs(
                    user_id=user_id,
                    status=payload.get("status"),
                    limit=payload.get("limit") or 50,
                )
                return {"ok": True, "jobs": [_job_dump(job) for job in jobs]}
            case "getJob":
                job = await self._require_job(payload.get("id"), user_id)
                return {"ok": True, "job": _job_dump(job)}
            case "cancelJob":
                job = await self._job_action(payload.get("id"), user_id, "cancel")
                return {"ok": True, "job": _job_dump(job)}
            case "retryJob":
                job = await self._job_action(payload.get("id"), user_id, "retry")
                return {"ok": True, "job": _job_dump(job)}
            case "deleteJob":
                job = await self.persistence.delete_job(payload.get("id"), user_id)
                if job is None:
                    raise NotFoundError(f"Job '{payload.get('id')}' not found")
                removed = await self._remove_unreferenced([ref.path for ref in attachment_refs(job)[0]])
                await self._refresh_pending()
                return {"ok": True, "removed_files": removed}
            case "addShip":
                ship = ShipCreate.model_validate(payload)
                stored = await self.persistence.add_ship(ship.model_dump(), created_by=user_id)
                return {"ok": True, "ship": stored}
            case "listShips":
                return {"ok": True, "ships": await self.persistence.list_ships()}
            case "getShip":
                return {"ok": True, "ship": await self.persistence.get_ship(payload.get("id"))}
            case "updateShip":
                ship_id = payload.pop("id", None)
                updates = ShipUpdate.model_validate(payload).model_dump(exclude_none=True)
                if not await self.persistence.update_ship(ship_id, updates):
                    await self.persistence.get_ship(ship_id)
                return {"ok": True, "ship": await self.persistence.get_ship(ship_id)}
            case "deleteShip":
                if not await self.persistence.delete_ship(payload.get("id")):
                    raise NotFoundError(f"Ship '{payload.get('id')}' not found")
                return {"ok": True}
            case "addPort":
                port = PortCreate.model_validate(payload)
                stored = await self.persistence.add_port(port.model_dump(), created_by=user_id)
                return {"ok": True, "port": stored}
            case "listPorts":
                return {"ok": True, "ports": await self.persistence.list_ports()}
            case "getPort":
                return {"ok": True, "port": await self.persistence.get_port(payload.get("id"))}
            case "updatePort":
                port_id = payload.pop("id", None)
                updates = PortUpdate.model_validate(payload).model_dump(exclude_none=True)
                if not await self.persistence.update_port(port_id, updates):
                    await self.persistence.get_port(port_id)
                return {"ok": True, "port": await self.persistence.get_port(port_id)}
            case "deletePort":
                attachments = await self.persistence.delete_port(payload.get("id"))
                removed = await self._remove_unreferenced([att["file_path"] for att in attachments])
                return {"ok": True, "removed_files": removed}
            case "addPortAttachment":
                port_id = payload.pop("port_id", None)
                att = PortAttachmentCreate.model_validate(payload)
                stored = await self.persistence.add_port_attachment(port_id, att.model_dump())
                return {"ok": True, "attachment": stored}
            case "deletePortAttachment":
                att = await self.persistence.delete_port_attachment(payload.get("port_id"), payload.get("id"))
                if att is None:
                    raise NotFoundError(f"Attachment '{payload.get('id')}' not found")
                removed = await self._remove_unreferenced([att["file_path"]])
                return {"ok": True, "removed_files": removed}
            case "stats":
                stats = await self._stats(user_id)
                return {"ok": True, **stats.model_dump()}
            case _:
                return {"ok": False, "error": "unknown command"}

    # ------------------------------------------------------------------ jobs
    async def _add_job(self, payload: dict[str, Any], user_id: str | None) -> ScheduledJob:
        """Validate a job payload, bake its port template and store it."""
        if not user_id:
            raise InvalidRequestError("user_id is required to schedule a job")
        data = JobCreate.model_validate(payload)

        subject, message = data.subject, data.message
        attachments = list(data.attachments or [])
        port_name = None
        if data.port_id:
            port = await self.persistence.get_port(data.port_id)
            port_name = port["name"]
            subject = subject or port["email_subject"]
            message = message if message is not None else port["email_body"]
            if not attachments and not data.file_path:
                attachments = [
                    AttachmentRef(path=att["file_path"], name=att["file_name"], size=att.get("file_size"))
                    for att in port["attachments"]
                ]

        subject = render_template(subject, ship_name=data.ship_name, port=port_name)
        if not subject.strip():
            raise InvalidRequestError("subject is required (or give a port_id with a template)")
        message = render_template(message, ship_name=data.ship_name, port=port_name) if message else message

        record: dict[str, Any] = {
            "user_id": user_id,
            "ship_id": data.ship_id,
            "ship_name": data.ship_name,
            "target_email": data.target_email,
            "subject": subject,
            "message": message,
            "file_path": data.file_path,
            "file_name": data.file_name,
            "file_size": data.file_size,
            "attachments": attachments,
            "scheduled_time": data.scheduled_time,
            "timezone": data.timezone,
        }
        if attachments:
            sizes = [att.size for att in attachments if att.size is not None]
            record["file_path"] = attachments[0].path
            record["file_name"] = ATTACHMENT_NAME_SEPARATOR.join(att.display_name for att in attachments)
            record["file_size"] = sum(sizes) if sizes else None

        job = await self.persistence.insert_job(record)
        self.logger.info(
            "Scheduled job %s for %s at %s (%d attachment(s))",
            job.id,
            job.target_email,
            job.scheduled_time.isoformat(),
            len(attachments) or (1 if job.file_path else 0),
        )
        await self._refresh_pending()
        return job

    async def _require_job(self, job_id: str | None, user_id: str | None) -> ScheduledJob:
        job = await self.persistence.get_job(job_id, user_id) if job_id else None
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    async def _job_action(self, job_id: str | None, user_id: str | None, action: str) -> ScheduledJob:
        """Apply cancel (pending only) or retry (failed only) to a job.

        Raises:
            NotFoundError: If the job does not exist for this user.
            JobStateError: If the job is not in the status the action needs.
        """
        job = await self._require_job(job_id, user_id)
        if action == "cancel":
            changed = await self.persistence.cancel_job(job.id, user_id)
            required = JobStatus.PENDING
        else:
            changed = await self.persistence.retry_job(job.id, user_id)
            required = JobStatus.FAILED
        if not changed:
            current = await self._require_job(job.id, user_id)
            raise JobStateError(
                f"Cannot {action} job {job.id}: status is '{current.status.value}', expected '{required.value}'"
            )
        self.logger.info("Job %s: %s by %s", job.id, action, user_id or "system")
        await self._refresh_pending()
        return await self._require_job(job.id, user_id)

    async def _stats(self, user_id: str | None) -> DashboardStats:
        now = self._clock()
        start_of_day = datetime.combine(now.date(), dt_time.min, tzinfo=now.tzinfo)
        return DashboardStats(
            pending=await self.persistence.count_jobs(JobStatus.PENDING, user_id),
            sent_today=await self.persistence.count_sent_since(start_of_day, user_id),
            failed=await self.persistence.count_jobs(JobStatus.FAILED, user_id),
        )

    # ----------------------------------------------------------------- files
    async def _remove_unreferenced(self, paths: list[str]) -> int:
        """Delete stored files that nothing references any more.

        Returns:
            Number of files removed. File store problems are logged.
        """
        if not paths:
            return 0
        try:
            resolver = self.resolver
        except ConfigurationError as exc:
            self.logger.warning("File store not configured, keeping %d file(s): %s", len(paths), exc)
            return 0
        removed = 0
        for path in dict.fromkeys(paths):
            if await self.persistence.count_file_references(path):
                continue
            if await resolver.remove(path):
                removed += 1
        return removed

    async def _refresh_pending(self) -> None:
        try:
            self.metrics.set_pending(await self.persistence.count_jobs(JobStatus.PENDING))
        except aiosqlite.Error as exc:  # pragma: no cover
            self.logger.warning("Failed to refresh pending gauge: %s", exc)
