# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP object storage file store.

Attachments live in a bucket of an object storage service reachable over
HTTP. Objects are addressed as ``{endpoint}/object/{bucket}/{path}`` and
requests carry a bearer token.

Example:
    Fetching an object::

        fetcher = HttpFetcher(
            endpoint="https://storage.example.com/storage/v1",
            bucket="ship-attachments",
            token="service-role-key",
        )
        content = await fetcher.fetch("u1/1716900000-crew-list.pdf")
"""

from __future__ import annotations

from urllib.parse import quote

import aiohttp

from ..errors import AttachmentError, ConfigurationError
from .base import AttachmentFetcherBase


class HttpFetcher(AttachmentFetcherBase):
    """Fetcher for objects stored in an HTTP object storage bucket.

    Attributes:
        _endpoint: Storage API base URL without trailing slash.
        _bucket: Bucket name.
        _token: Bearer token, or None for public buckets.
    """

    def __init__(self, endpoint: str | None, bucket: str, token: str | None = None):
        if not endpoint:
            raise ConfigurationError("storage.endpoint is required for the http file store")
        self._endpoint = endpoint.rstrip("/")
        self._bucket = bucket
        self._token = token

    def object_url(self, path: str) -> str:
        """Build the URL of one object, percent-encoding each path segment."""
        return f"{self._endpoint}/object/{quote(self._bucket)}/{quote(path.lstrip('/'))}"

    def _headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    async def fetch(self, path: str) -> bytes:
        url = self.object_url(path)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, headers=self._headers()) as response:
                    if response.status == 404:
                        raise AttachmentError(f"Object not found: {path}", not_found=True)
                    response.raise_for_status()
                    return await response.read()
        except aiohttp.ClientError as exc:
            raise AttachmentError(f"Download of {path} failed: {exc}") from exc

    async def remove(self, path: str) -> bool:
        url = self.object_url(path)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.delete(url, headers=self._headers()) as response:
                    if response.status == 404:
                        return False
                    response.raise_for_status()
                    return True
        except aiohttp.ClientError as exc:
            raise AttachmentError(f"Removal of {path} failed: {exc}") from exc
