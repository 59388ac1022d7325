"""Base interface for attachment fetchers.

Fetchers read raw bytes from one file store backend. They raise
:class:`~portmail.errors.AttachmentError` on failure; turning failures into
results is the job of :class:`~portmail.attachments.AttachmentResolver`.
"""

from __future__ import annotations


class AttachmentFetcherBase:
    """Abstract base class defining the fetcher interface."""

    async def fetch(self, path: str) -> bytes:
        """Read the content stored at ``path``.

        Args:
            path: Reference inside the file store, already validated by
                the resolver.

        Returns:
            Binary content of the file.

        Raises:
            AttachmentError: If the file does not exist (``not_found``
                set) or cannot be read.
            NotImplementedError: If called on the base class directly.
        """
        raise NotImplementedError

    async def remove(self, path: str) -> bool:
        """Delete the file stored at ``path``.

        Returns:
            True if a file was removed, False if there was nothing to remove.
        """
        raise NotImplementedError
