"""Asyncio SMTP connection pool used by :class:`~async_mail_queue.transport.SMTPTransport`."""

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiosmtplib

ConnectionKey = Tuple[str, int, Optional[str], Optional[str], bool]


class SMTPPool:
    """Keep one live SMTP connection per relay and credentials."""

    def __init__(self, ttl: int = 300, connect_timeout: float = 15.0):
        """Create a pool whose idle connections expire after ``ttl`` seconds."""
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.pool: Dict[ConnectionKey, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: Optional[str], password: Optional[str], use_tls: bool) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # use_tls=True means implicit TLS (port 465); STARTTLS is not negotiated
        smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=use_tls, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception:
            pass

    async def get_connection(self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool) -> aiosmtplib.SMTP:
        """Return a pooled connection, reconnecting when stale or dead."""
        key: ConnectionKey = (host, int(port), user, password, bool(use_tls))
        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time())
                return smtp
            await self._quit(smtp)

        smtp = await self._connect(host, int(port), user, password, bool(use_tls))
        async with self.lock:
            self.pool[key] = (smtp, time.time())
        return smtp

    async def discard(self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool) -> None:
        """Drop the pooled connection for the given relay, e.g. after a send error."""
        async with self.lock:
            entry = self.pool.pop((host, int(port), user, password, bool(use_tls)), None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired = []
        for key, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(key)

        for key in expired:
            async with self.lock:
                entry = self.pool.pop(key, None)
            if entry:
                await self._quit(entry[0])

    async def close_all(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in entries:
            await self._quit(smtp)
