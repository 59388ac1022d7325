# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Due-job dispatcher.

This module provides the Dispatcher, the one place where scheduled jobs
are delivered. A sweep:

1. selects up to ``batch_size`` pending jobs whose scheduled time has
   passed, earliest first;
2. claims each job (pending -> processing) with a conditional update
   before doing any slow work, skipping jobs another sweep got first;
3. resolves the job's attachments, dropping the ones that cannot be read;
4. sends the email;
5. records ``sent`` (with ``sent_at``) or ``failed`` (with the error and
   an incremented ``retry_count``).

Jobs are handled one after the other. A failing job produces a
:class:`JobOutcome` value and the sweep continues with the next one. Only
job store errors on selection or claim abort a sweep; configuration is
checked by the service before the dispatcher is built.

Example:
    Running a sweep::

        dispatcher = Dispatcher(persistence, resolver, sender, batch_size=50)
        report = await dispatcher.run_sweep()
        print(report.sent, report.failed)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .attachments import AttachmentResolver, Resolution
from .config_loader import DEFAULT_BATCH_SIZE
from .errors import StoreError
from .logger import get_logger
from .mailer import MailSender
from .models import AttachmentRef, ScheduledJob, SweepError, SweepReport, to_utc, utc_now
from .persistence import Persistence
from .prometheus import SweepMetrics

FILE_NAME_SEPARATOR = ","


class OutcomeKind(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class JobOutcome:
    """Result of handling one selected job.

    Attributes:
        job_id: The job.
        kind: ``sent``, ``failed`` or ``skipped`` (claimed elsewhere).
        error: Failure message for ``failed``.
        attachments_sent: Attachments included in the email.
        attachments_missing: Attachments that could not be resolved.
    """

    job_id: str
    kind: OutcomeKind
    error: str | None = None
    attachments_sent: int = 0
    attachments_missing: int = 0


def attachment_refs(job: ScheduledJob) -> tuple[list[AttachmentRef], list[str]]:
    """Work out which files a job should carry.

    Jobs created with an ``attachments`` list carry every entry. Older
    jobs only store ``file_path`` (the first file) and may list several
    names in ``file_name`` separated by commas; for those only the first
    file can be resolved.

    Returns:
        Tuple of (resolvable references, names that have no stored path).
    """
    if job.attachments:
        return list(job.attachments), []

    names = [part.strip() for part in (job.file_name or "").split(FILE_NAME_SEPARATOR) if part.strip()]
    if not job.file_path:
        return [], names
    first = AttachmentRef(path=job.file_path, name=names[0] if names else None)
    return [first], names[1:]


class Dispatcher:
    """Delivers due scheduled jobs.

    Attributes:
        persistence: Job store.
        resolver: Attachment resolver.
        sender: Mail sender.
        batch_size: Maximum jobs selected per sweep.
        metrics: Prometheus collector.
        logger: Logger for sweep and per-job activity.
    """

    def __init__(
        self,
        persistence: Persistence,
        resolver: AttachmentResolver,
        sender: MailSender,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        metrics: SweepMetrics | None = None,
        logger=None,
        log_delivery_activity: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Create a dispatcher.

        Args:
            persistence: Job store.
            resolver: Attachment resolver.
            sender: Mail sender, already validated against its configuration.
            batch_size: Maximum jobs per sweep.
            metrics: Prometheus collector. A private one is created if None.
            logger: Custom logger instance.
            log_delivery_activity: Log each delivery at INFO instead of DEBUG.
            clock: Source of the current instant, used for the default
                sweep time and for ``sent_at``.
        """
        self.persistence = persistence
        self.resolver = resolver
        self.sender = sender
        self.batch_size = max(1, int(batch_size))
        self.metrics = metrics or SweepMetrics()
        self.logger = logger or get_logger("Dispatcher")
        self._log_delivery_activity = bool(log_delivery_activity)
        self._clock = clock

    def _activity(self, msg: str, *args) -> None:
        if self._log_delivery_activity:
            self.logger.info(msg, *args)
        else:
            self.logger.debug(msg, *args)

    async def run_sweep(self, now: datetime | None = None, trigger: str = "manual") -> SweepReport:
        """Deliver the jobs that are due at ``now``.

        Args:
            now: Reference instant; defaults to the clock. Naive values are
                taken as UTC.
            trigger: Name of the trigger source, for metrics and logs.

        Returns:
            Aggregate counts and one error entry per failed job.

        Raises:
            StoreError: If due jobs cannot be selected or a claim cannot be
                written. Jobs handled before the error keep their state.
        """
        now = to_utc(now) if now is not None else self._clock()
        self.metrics.inc_sweep(trigger)
        self.logger.debug("Sweep (%s) selecting due jobs at %s, limit %d", trigger, now.isoformat(), self.batch_size)

        jobs = await self.persistence.fetch_due_jobs(now, self.batch_size)
        report = SweepReport()
        if not jobs:
            self.logger.debug("No pending jobs to process")
            await self._refresh_pending_gauge()
            return report

        self.logger.info("Processing %d due job(s) (trigger=%s)", len(jobs), trigger)
        for job in jobs:
            outcome = await self._process_job(job)
            match outcome.kind:
                case OutcomeKind.SKIPPED:
                    report.skipped += 1
                    continue
                case OutcomeKind.SENT:
                    report.sent += 1
                case OutcomeKind.FAILED:
                    report.failed += 1
                    report.errors.append(SweepError(job_id=outcome.job_id, error=outcome.error or "Unknown error"))
            report.processed += 1

        self.logger.info(
            "Sweep complete: %d sent, %d failed, %d skipped",
            report.sent,
            report.failed,
            report.skipped,
        )
        await self._refresh_pending_gauge()
        return report

    async def _process_job(self, job: ScheduledJob) -> JobOutcome:
        """Claim, deliver and record one job."""
        if not await self.persistence.claim_job(job.id):
            self.metrics.inc_claim_conflict()
            self.logger.info("Job %s already claimed by another sweep, skipping", job.id)
            return JobOutcome(job_id=job.id, kind=OutcomeKind.SKIPPED)

        self._activity("Attempting delivery for job %s to %s (ship=%s)", job.id, job.target_email, job.ship_name)
        resolved, missing = await self._resolve_attachments(job)

        try:
            result = await self.sender.send(
                to=job.target_email,
                subject=job.subject,
                body=job.message or "",
                attachments=resolved,
            )
            error = None if result.success else (result.error or "Unknown email error")
        except Exception as exc:
            self.logger.exception("Mail sender raised for job %s", job.id)
            error = str(exc) or exc.__class__.__name__

        if error is None:
            await self._record(job, self.persistence.mark_sent(job.id, self._clock()))
            self.metrics.inc_sent()
            self._activity("Job %s sent to %s with %d attachment(s)", job.id, job.target_email, len(resolved))
            return JobOutcome(
                job_id=job.id,
                kind=OutcomeKind.SENT,
                attachments_sent=len(resolved),
                attachments_missing=missing,
            )

        await self._record(job, self.persistence.mark_failed(job.id, error))
        self.metrics.inc_failed()
        self.logger.warning("Job %s failed: %s", job.id, error)
        return JobOutcome(
            job_id=job.id,
            kind=OutcomeKind.FAILED,
            error=error,
            attachments_sent=len(resolved),
            attachments_missing=missing,
        )

    async def _resolve_attachments(self, job: ScheduledJob) -> tuple[list[Resolution], int]:
        """Resolve a job's attachments, dropping the ones that fail.

        Returns:
            Tuple of (resolved attachments, number of attachments dropped).
        """
        refs, unstored = attachment_refs(job)
        if unstored:
            self.logger.warning(
                "Job %s lists %d attachment name(s) without a stored path, sending without: %s",
                job.id,
                len(unstored),
                ", ".join(unstored),
            )
        resolved: list[Resolution] = []
        for ref in refs:
            resolution = await self.resolver.resolve(ref.path, ref.display_name)
            if resolution.ok:
                resolved.append(resolution)
        missing = len(refs) - len(resolved) + len(unstored)
        self.metrics.inc_attachment_missing(missing)
        return resolved, missing

    async def _record(self, job: ScheduledJob, update) -> None:
        """Persist an outcome; a store failure here is logged, not raised."""
        try:
            applied = await update
        except StoreError as exc:
            self.logger.error("Could not record outcome for job %s: %s", job.id, exc)
            return
        if not applied:
            self.logger.warning("Job %s left processing state during delivery; outcome not recorded", job.id)

    async def _refresh_pending_gauge(self) -> None:
        try:
            count = await self.persistence.count_jobs("pending")
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(count)
