"""Database liveness probing for the coordinator's PostgreSQL endpoint."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from urllib.parse import unquote, urlsplit

import psycopg
from psycopg.conninfo import make_conninfo

from .errors import HealthTimeoutError

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 2000
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_CONNECT_TIMEOUT = 5.0
HEALTH_QUERY = "select current_time;"

Probe = Callable[[str], Awaitable[None]]


def conninfo_from_url(url: str, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> str:
    """Translate ``tcp://user@host:port/db`` into a libpq connection string."""
    parts = urlsplit(url)
    if parts.scheme not in {"tcp", "postgres", "postgresql"}:
        raise ValueError(f"Unsupported database URL scheme '{parts.scheme}' in {url!r}.")
    if not parts.hostname:
        raise ValueError(f"Database URL {url!r} has no host.")
    params: dict[str, object] = {
        "host": parts.hostname,
        "port": parts.port or 5432,
        "dbname": unquote(parts.path.lstrip("/")) or "postgres",
        # libpq takes whole seconds.
        "connect_timeout": max(int(round(connect_timeout)), 1),
    }
    if parts.username:
        params["user"] = unquote(parts.username)
    if parts.password:
        params["password"] = unquote(parts.password)
    return make_conninfo("", **params)


async def health_check(url: str, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
    """Connect to *url* and run a trivial query; raise on any failure."""
    conninfo = conninfo_from_url(url, connect_timeout=connect_timeout)
    async with await psycopg.AsyncConnection.connect(conninfo, autocommit=True) as conn:
        await conn.execute(HEALTH_QUERY)


@dataclass(slots=True)
class HealthPoller:
    """Poll a probe on a fixed interval until it succeeds or a deadline passes."""

    probe: Probe | None = None
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    attempts: int = field(default=0, init=False)

    async def check(self, url: str) -> None:
        """Run a single probe against *url*."""
        if self.probe is not None:
            await self.probe(url)
            return
        await health_check(url, connect_timeout=self.connect_timeout)

    async def wait_until_healthy(
        self,
        url: str,
        *,
        poll_interval_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> int:
        """Wait until a probe against *url* succeeds; return the attempt count.

        The first probe runs one interval after the call. Failed probes are
        logged at debug level and retried on the next tick. The deadline wraps
        the whole loop, so when it fires any in-flight sleep or probe is
        cancelled and no further probe is issued. A malformed *url* or a
        non-positive interval or timeout raises :class:`ValueError` before any
        probe runs.
        """
        conninfo_from_url(url, connect_timeout=self.connect_timeout)
        if poll_interval_ms is None:
            poll_interval_ms = self.poll_interval_ms
        if timeout_ms is None:
            timeout_ms = self.timeout_ms
        if poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms must be positive, got {poll_interval_ms}.")
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}.")
        interval = poll_interval_ms / 1000
        deadline_ms = timeout_ms
        self.attempts = 0
        last_error: Exception | None = None
        try:
            async with asyncio.timeout(deadline_ms / 1000):
                while True:
                    await asyncio.sleep(interval)
                    self.attempts += 1
                    try:
                        await self.check(url)
                    except Exception as exc:
                        last_error = exc
                        LOGGER.debug(
                            "health probe %d against %s failed: %s", self.attempts, url, exc
                        )
                        continue
                    LOGGER.info("database at %s healthy after %d probe(s)", url, self.attempts)
                    return self.attempts
        except TimeoutError as exc:
            LOGGER.error("database at %s not healthy after %d ms", url, deadline_ms)
            raise HealthTimeoutError(url, deadline_ms, last_error) from exc


async def wait_until_healthy(
    url: str,
    *,
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    probe: Probe | None = None,
) -> int:
    """Module-level shortcut for :meth:`HealthPoller.wait_until_healthy`."""
    poller = HealthPoller(probe=probe, poll_interval_ms=poll_interval_ms, timeout_ms=timeout_ms)
    return await poller.wait_until_healthy(url)


__all__ = [
    "HEALTH_QUERY",
    "HealthPoller",
    "Probe",
    "conninfo_from_url",
    "health_check",
    "wait_until_healthy",
]
