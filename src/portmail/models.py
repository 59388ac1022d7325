# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and time helpers for the PortMail service.

This module defines the data models used for validation, serialization
and type safety across the job store, the dispatcher and the API.

Models:
    - JobStatus: Delivery state of a scheduled job
    - AttachmentRef: One file reference stored on a job
    - ScheduledJob / JobCreate / JobAction: Scheduled email jobs
    - ShipCreate / ShipUpdate: Ship payloads
    - PortCreate / PortUpdate / PortAttachmentCreate: Port email template payloads
    - SweepError / SweepReport: Result of one dispatcher sweep
    - DashboardStats: Per-user job counts

Timestamps are stored as fixed-width UTC ISO-8601 strings (see
:func:`format_ts`) so that SQL string comparison and ordering follow
chronological order.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[^@\s,;]+@[^@\s,;]+\.[^@\s,;]+$")
TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


# --------------------------------------------------------------------- time
def utc_now() -> datetime:
    """Return the current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime, tz_name: str = "UTC") -> datetime:
    """Normalise a datetime to an aware UTC instant.

    Naive values are interpreted as wall-clock time in ``tz_name``, which
    is how an operator picks a schedule in the port's local time.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo(tz_name))
    return value.astimezone(timezone.utc)


def format_ts(value: datetime) -> str:
    """Format an instant in the fixed-width storage representation."""
    return to_utc(value).strftime(TS_FORMAT)


def _check_email(value: str) -> str:
    value = value.strip()
    if not EMAIL_PATTERN.match(value):
        raise ValueError(f"invalid email address: {value!r}")
    return value


def _check_timezone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone: {value!r}") from exc
    return value


# --------------------------------------------------------------------- jobs
class JobStatus(str, Enum):
    """Delivery state of a scheduled job.

    Attributes:
        PENDING: Waiting for its scheduled time.
        PROCESSING: Claimed by a sweep, delivery in progress.
        SENT: Delivered (terminal).
        FAILED: Last delivery attempt failed, awaiting a manual retry.
        CANCELLED: Cancelled before delivery (terminal).
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AttachmentRef(BaseModel):
    """One file reference in the file store."""

    model_config = ConfigDict(extra="ignore")

    path: Annotated[str, Field(min_length=1, description="File store reference")]
    name: Annotated[str | None, Field(default=None, description="Display file name")]
    size: Annotated[int | None, Field(default=None, ge=0, description="Size in bytes")]

    @property
    def display_name(self) -> str:
        return self.name or self.path.rsplit("/", 1)[-1] or "attachment"


class ScheduledJob(BaseModel):
    """A scheduled email as stored in the job store."""

    id: str
    user_id: str
    ship_id: str | None = None
    ship_name: str
    target_email: str
    subject: str
    message: str | None = None
    file_path: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    attachments: list[AttachmentRef] = Field(default_factory=list)
    scheduled_time: datetime
    timezone: str = "UTC"
    status: JobStatus = JobStatus.PENDING
    sent_at: datetime | None = None
    error_log: str | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JobCreate(BaseModel):
    """Payload for scheduling a new email.

    Either give ``subject``/``message``/attachments directly, or give
    ``port_id`` to build them from the port template. Template variables
    (``{ship_name}``, ``{port}``) are substituted at creation time.
    """

    model_config = ConfigDict(extra="forbid")

    ship_id: str | None = None
    ship_name: Annotated[str, Field(min_length=1)]
    target_email: str
    port_id: str | None = None
    subject: str | None = None
    message: str | None = None
    file_path: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    attachments: list[AttachmentRef] | None = None
    scheduled_time: datetime
    timezone: str = "UTC"

    @field_validator("target_email")
    @classmethod
    def target_email_format(cls, v: str) -> str:
        return _check_email(v)

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        return _check_timezone(v)


class JobAction(BaseModel):
    """Payload for ``PATCH /jobs/{id}``."""

    action: Literal["cancel", "retry"]


# -------------------------------------------------------------------- ships
class ShipCreate(BaseModel):
    """Payload for registering a ship."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1)]
    imo_number: str | None = None
    default_email: str
    vessel_type: str | None = None
    flag_country: str | None = None
    notes: str | None = None

    @field_validator("default_email")
    @classmethod
    def default_email_format(cls, v: str) -> str:
        return _check_email(v)


class ShipUpdate(BaseModel):
    """Ship update payload, all fields optional."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    imo_number: str | None = None
    default_email: str | None = None
    vessel_type: str | None = None
    flag_country: str | None = None
    notes: str | None = None

    @field_validator("default_email")
    @classmethod
    def email_format(cls, v: str | None) -> str | None:
        return _check_email(v) if v is not None else v


# -------------------------------------------------------------------- ports
class PortAttachmentCreate(BaseModel):
    """File attached to a port template."""

    file_path: Annotated[str, Field(min_length=1)]
    file_name: Annotated[str, Field(min_length=1)]
    file_size: int | None = None
    file_type: str | None = None


class PortCreate(BaseModel):
    """Payload for creating a port email template."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1)]
    email_subject: Annotated[str, Field(min_length=1)]
    email_body: str
    recipient_email: str | None = None
    attachments: list[PortAttachmentCreate] = Field(default_factory=list)

    @field_validator("recipient_email")
    @classmethod
    def recipient_format(cls, v: str | None) -> str | None:
        return _check_email(v) if v else None


class PortUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    email_subject: str | None = None
    email_body: str | None = None
    recipient_email: str | None = None


# -------------------------------------------------------------------- sweep
class SweepError(BaseModel):
    """A job that failed during a sweep."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(serialization_alias="jobId")
    error: str


class SweepReport(BaseModel):
    """Aggregate result of one dispatcher sweep.

    Attributes:
        processed: Jobs claimed and attempted by this sweep.
        sent: Jobs that reached ``sent``.
        failed: Jobs that reached ``failed``.
        skipped: Selected jobs that another sweep claimed first.
        errors: One entry per failed job.
    """

    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[SweepError] = Field(default_factory=list)

    @property
    def message(self) -> str:
        if self.processed == 0 and self.skipped == 0:
            return "No pending jobs to process"
        return "Cron job completed"

    def to_response(self) -> dict[str, Any]:
        """Render the JSON body returned by the trigger endpoint."""
        return {
            "message": self.message,
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "errors": [err.model_dump(by_alias=True) for err in self.errors],
        }


class DashboardStats(BaseModel):
    pending: int = 0
    sent_today: int = 0
    failed: int = 0
