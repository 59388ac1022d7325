# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Attachment resolution for scheduled jobs.

This module provides the AttachmentResolver, the read-only view of the
file store used by the dispatcher. Given one file reference it returns a
:class:`Resolution`: either the bytes plus a display file name, or the
reason the file could not be read. It never raises for a bad reference,
a missing file or a transient backend error.

Supported backends (``storage.backend``):
- ``local`` - files below ``storage.base_dir``
- ``http`` - objects in an HTTP object storage bucket

Example:
    Resolving an attachment::

        from portmail.attachments import AttachmentResolver, FilesystemFetcher

        resolver = AttachmentResolver(FilesystemFetcher("/data/attachments"), timeout=30)
        resolution = await resolver.resolve("ports/tekirdag/crew-list.pdf")
        if resolution.ok:
            maintype, subtype = guess_mime(resolution.filename)
"""

from __future__ import annotations

import asyncio
import mimetypes
from dataclasses import dataclass

from ..config_loader import StorageSettings
from ..errors import AttachmentError, ConfigurationError
from ..logger import get_logger
from .base import AttachmentFetcherBase
from .filesystem_fetcher import FilesystemFetcher
from .http_fetcher import HttpFetcher

__all__ = [
    "AttachmentFetcherBase",
    "AttachmentResolver",
    "FilesystemFetcher",
    "HttpFetcher",
    "Resolution",
    "build_fetcher",
    "guess_mime",
    "validate_reference",
]

MAX_REFERENCE_LENGTH = 1024


@dataclass(frozen=True)
class Resolution:
    """Outcome of resolving one attachment reference.

    Attributes:
        reference: The reference that was asked for.
        filename: Display name used in the email.
        content: File bytes, or None when unresolved.
        error: Why the reference could not be resolved.
        not_found: True when the file store reported a missing file,
            False for malformed references and transient errors.
    """

    reference: str
    filename: str
    content: bytes | None = None
    error: str | None = None
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.content is not None


def guess_mime(filename: str) -> tuple[str, str]:
    """Guess the MIME type of a file from its name.

    Returns:
        Tuple of (maintype, subtype), ``application/octet-stream`` when
        unknown.
    """
    mime_type, _ = mimetypes.guess_type(filename)
    if not mime_type or "/" not in mime_type:
        return "application", "octet-stream"
    maintype, subtype = mime_type.split("/", 1)
    return maintype, subtype


def validate_reference(reference: object) -> str | None:
    """Return an error message if ``reference`` is not a usable file store path."""
    if not isinstance(reference, str):
        return "reference is not a string"
    stripped = reference.strip()
    if not stripped:
        return "empty reference"
    if len(stripped) > MAX_REFERENCE_LENGTH:
        return "reference too long"
    if "\x00" in stripped:
        return "reference contains a NUL byte"
    if "://" in stripped:
        return "references must be file store paths, not URLs"
    if any(part == ".." for part in stripped.replace("\\", "/").split("/")):
        return "reference escapes the file store"
    return None


def _display_name(reference: str, filename: str | None) -> str:
    if filename:
        return filename
    name = reference.strip().replace("\\", "/").rsplit("/", 1)[-1]
    return name or "attachment"


def build_fetcher(settings: StorageSettings) -> AttachmentFetcherBase:
    """Create the fetcher for the configured file store backend.

    Raises:
        ConfigurationError: On an unknown backend or missing settings.
    """
    if settings.backend == "local":
        return FilesystemFetcher(settings.base_dir)
    if settings.backend == "http":
        return HttpFetcher(settings.endpoint, settings.bucket, settings.token)
    raise ConfigurationError(f"Unknown storage backend '{settings.backend}'")


class AttachmentResolver:
    """Read-only access to job attachments.

    Attributes:
        fetcher: The file store backend.
        timeout: Seconds allowed for a single download.
    """

    def __init__(self, fetcher: AttachmentFetcherBase, timeout: float = 30.0, logger=None):
        self.fetcher = fetcher
        self.timeout = timeout
        self.logger = logger or get_logger("AttachmentResolver")

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> AttachmentResolver:
        return cls(build_fetcher(settings), timeout=settings.timeout_seconds)

    async def resolve(self, reference: object, filename: str | None = None) -> Resolution:
        """Fetch the bytes behind one reference.

        Args:
            reference: File store path. Anything else (None, empty, URL,
                traversal) yields an unresolved result.
            filename: Display name to use instead of the path basename.

        Returns:
            A :class:`Resolution`; check ``ok`` before using ``content``.
        """
        problem = validate_reference(reference)
        if problem is not None:
            shown = reference if isinstance(reference, str) else repr(reference)
            self.logger.warning("Unresolvable attachment reference %r: %s", shown, problem)
            return Resolution(reference=str(shown), filename=filename or "attachment", error=problem)

        path = reference.strip()  # type: ignore[union-attr]
        name = _display_name(path, filename)
        try:
            content = await asyncio.wait_for(self.fetcher.fetch(path), timeout=self.timeout)
        except AttachmentError as exc:
            self.logger.warning("Could not download file %s: %s", path, exc)
            return Resolution(reference=path, filename=name, error=str(exc), not_found=exc.not_found)
        except asyncio.TimeoutError:
            self.logger.warning("Download of %s timed out after %ss", path, self.timeout)
            return Resolution(reference=path, filename=name, error=f"download timed out after {self.timeout}s")
        except OSError as exc:
            self.logger.warning("Could not download file %s: %s", path, exc)
            return Resolution(reference=path, filename=name, error=str(exc))
        return Resolution(reference=path, filename=name, content=content)

    async def remove(self, reference: str) -> bool:
        """Delete a file from the store; used when a job or port is deleted.

        Returns:
            True if the file was removed. Invalid references and backend
            errors are logged and reported as False.
        """
        if validate_reference(reference) is not None:
            return False
        try:
            return await self.fetcher.remove(reference.strip())
        except (AttachmentError, OSError) as exc:
            self.logger.warning("Could not remove file %s: %s", reference, exc)
            return False
