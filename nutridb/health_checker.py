"""Periodic background liveness probe.

The checker only reports: it logs failures and keeps counters. Read routing
in `DatabaseManager` probes the replica on every call and never consults it.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import TYPE_CHECKING

from .exceptions import DatabaseError, UnhealthyPrimaryError
from .logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)


class HealthChecker:
    """Run ``probe`` every ``interval`` seconds until stopped.

    Ticks never overlap. When a probe outlives one or more ticks, those ticks
    are skipped and the schedule stays aligned to the interval.

    Examples
    --------
    >>> checker = HealthChecker(manager.ahealth, interval=30.0, timeout=5.0)
    >>> checker.start()
    >>> ...
    >>> await checker.astop()
    """

    __slots__ = ("_failures", "_interval", "_probe", "_stop_event", "_task", "_ticks", "_timeout")

    def __init__(self, probe: Callable[[], Awaitable[object]], interval: float, timeout: float) -> None:
        if interval <= 0:
            msg = f"interval must be positive, got {interval}"
            raise ValueError(msg)
        self._probe = probe
        self._interval = interval
        self._timeout = timeout
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0
        self._failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        """Number of probes completed, successful or not."""
        return self._ticks

    @property
    def failures(self) -> int:
        return self._failures

    def start(self) -> None:
        """Schedule the loop on the running event loop. No-op if already running."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._arun(), name="nutridb-health-checker")
        logger.info("Health checker started", interval_s=self._interval, timeout_s=self._timeout)

    async def astop(self) -> None:
        """Signal the loop to stop and wait for it. Idempotent."""
        if self._task is None:
            return

        self._stop_event.set()
        task, self._task = self._task, None
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("Health checker stopped", ticks=self._ticks, failures=self._failures)

    async def _arun(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._interval

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(next_tick - loop.time(), 0.0))
            except TimeoutError:
                pass
            else:
                return

            await self._atick()

            next_tick += self._interval
            now = loop.time()
            if now > next_tick:
                skipped = int((now - next_tick) // self._interval) + 1
                next_tick += skipped * self._interval
                logger.warning("Health check overran its interval, skipping ticks", skipped=skipped)

    async def _atick(self) -> None:
        try:
            async with asyncio.timeout(self._timeout):
                await self._probe()
        except UnhealthyPrimaryError as e:
            self._failures += 1
            logger.error("Database health check failed", error=str(e))
        except TimeoutError:
            self._failures += 1
            logger.error("Database health check timed out", timeout_s=self._timeout)
        except DatabaseError as e:
            self._failures += 1
            logger.error("Database health check failed", error_type=type(e).__name__, error=str(e))
        except Exception:
            self._failures += 1
            logger.exception("Database health check raised unexpectedly")
        else:
            logger.debug("Database health check passed")
        finally:
            self._ticks += 1
