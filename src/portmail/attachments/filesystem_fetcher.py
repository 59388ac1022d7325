# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Local directory file store.

Attachments are files below a base directory. Paths are always resolved
relative to that directory and must stay inside it.

Example:
    Fetching a file::

        fetcher = FilesystemFetcher(base_dir="/data/attachments")
        content = await fetcher.fetch("ports/tekirdag/pre-arrival.pdf")
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from ..errors import AttachmentError, ConfigurationError
from .base import AttachmentFetcherBase


class FilesystemFetcher(AttachmentFetcherBase):
    """Fetcher for files stored under a local base directory.

    Attributes:
        _base_dir: Root of the file store and security boundary.
    """

    def __init__(self, base_dir: str | None):
        """Initialize the filesystem fetcher.

        Args:
            base_dir: Root directory of the file store.

        Raises:
            ConfigurationError: If no base directory is given.
        """
        if not base_dir:
            raise ConfigurationError("storage.base_dir is required for the local file store")
        self._base_dir = Path(base_dir).resolve()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _resolve(self, path: str) -> Path:
        resolved = (self._base_dir / path.lstrip("/")).resolve()
        try:
            resolved.relative_to(self._base_dir)
        except ValueError:
            raise AttachmentError(f"Path '{path}' resolves outside the file store") from None
        return resolved

    async def fetch(self, path: str) -> bytes:
        resolved = self._resolve(path)
        if not resolved.is_file():
            raise AttachmentError(f"File not found: {path}", not_found=True)
        try:
            return await asyncio.to_thread(resolved.read_bytes)
        except OSError as exc:
            raise AttachmentError(f"Cannot read {path}: {exc}") from exc

    async def remove(self, path: str) -> bool:
        resolved = self._resolve(path)
        if not resolved.is_file():
            return False
        await asyncio.to_thread(resolved.unlink)
        return True
