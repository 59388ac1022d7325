# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio-friendly SMTP connection pool.

The dispatcher sends jobs one after the other, often to the same relay.
This pool keeps one authenticated connection per relay (host, port, user,
TLS mode) and hands it out through an async context manager, so that a
sweep of fifty jobs logs in once instead of fifty times.

Connections are replaced when they exceed the TTL, fail a NOOP health
check, or raise while in use. Use of a connection is serialised with a
per-relay lock.

Example:
    Sending through the pool::

        pool = SMTPPool(ttl=300)
        async with pool.connection("smtp.gmail.com", 465, user, password, use_tls=True) as smtp:
            await smtp.send_message(message)

        # Periodically close idle connections
        await pool.cleanup()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosmtplib

from .logger import get_logger

PoolKey = tuple[str, int, "str | None", bool]


class SMTPPool:
    """SMTP connection pool keyed by relay parameters.

    Attributes:
        ttl: Maximum idle age in seconds before a connection is replaced.
        connect_timeout: Seconds allowed to connect and log in.
        pool: Mapping of relay key to (client, last_used, password).
    """

    def __init__(self, ttl: int = 300, connect_timeout: float = 15.0):
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.pool: dict[PoolKey, tuple[aiosmtplib.SMTP, float, str | None]] = {}
        self._locks: dict[PoolKey, asyncio.Lock] = {}
        self.logger = get_logger("SMTPPool")

    async def _connect(self, host: str, port: int, user: str | None, password: str | None, use_tls: bool) -> aiosmtplib.SMTP:
        """Open and authenticate a new SMTP connection.

        TLS behaviour:
        - Port 465 with use_tls: implicit TLS
        - Other ports with use_tls: STARTTLS
        - use_tls False: plain SMTP

        Raises:
            asyncio.TimeoutError: If connect and login exceed ``connect_timeout``.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        if use_tls and port == 465:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, use_tls=True, start_tls=False, timeout=10.0)
        elif use_tls:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, use_tls=False, start_tls=True, timeout=10.0)
        else:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, use_tls=False, start_tls=False, timeout=10.0)

        async def _do_connect() -> None:
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        try:
            await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        except BaseException:
            smtp.close()
            raise
        self.logger.debug("Connected to SMTP relay %s:%s", host, port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Send NOOP and report whether the server answered 250."""
        try:
            response = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False
        return getattr(response, "code", None) == 250 or (isinstance(response, tuple) and response[0] == 250)

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            smtp.close()

    async def _get(self, key: PoolKey, password: str | None) -> aiosmtplib.SMTP:
        entry = self.pool.get(key)
        if entry:
            smtp, last_used, stored_password = entry
            fresh = (time.monotonic() - last_used) < self.ttl
            if fresh and stored_password == password and await self._is_alive(smtp):
                return smtp
            self.pool.pop(key, None)
            await self._close(smtp)
        host, port, user, use_tls = key
        smtp = await self._connect(host, port, user, password, use_tls)
        self.pool[key] = (smtp, time.monotonic(), password)
        return smtp

    @asynccontextmanager
    async def connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow the pooled connection for a relay.

        A connection that raises while borrowed is closed and dropped so
        the next caller starts fresh.
        """
        key: PoolKey = (host, int(port), user, bool(use_tls))
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            smtp = await self._get(key, password)
            try:
                yield smtp
            except BaseException:
                self.pool.pop(key, None)
                await self._close(smtp)
                raise
            else:
                self.pool[key] = (smtp, time.monotonic(), password)

    async def cleanup(self) -> None:
        """Close connections idle for longer than the TTL or failing NOOP."""
        now = time.monotonic()
        for key, (smtp, last_used, _password) in list(self.pool.items()):
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                self.pool.pop(key, None)
                await self._close(smtp)

    async def close_all(self) -> None:
        """Close every pooled connection, used at shutdown."""
        for key, (smtp, _last_used, _password) in list(self.pool.items()):
            self.pool.pop(key, None)
            await self._close(smtp)
