"""
Base watcher. Subclasses set ``honeypot`` and implement ``handle()``.

A watcher owns a line source, decodes each line as JSON, and hands the record
to ``handle()``. A bad line or a failing handler is logged and skipped; the
tail loop itself never stops because of one record.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from abusewatch.models import AttackContext
from abusewatch.tail import LineFollower

logger = logging.getLogger("abusewatch.watcher")

ReportFn = Callable[[str, AttackContext, object, str], Awaitable[Any]]
T = TypeVar("T")


class IpBuffer(Generic[T]):
    """Everything one attacker IP did within a fixed window.

    The flush timer starts with the buffer and is not pushed back by later
    events. The callback runs at most once, whether it is started by the timer
    or by shutdown. Every ``flush()`` call waits for that single run to finish.
    """

    def __init__(
        self,
        ip: str,
        state: T,
        delay: float,
        on_flush: Callable[["IpBuffer[T]"], Awaitable[None]],
    ) -> None:
        self.ip = ip
        self.state = state
        self.created = time.monotonic()
        self.last_seen = self.created
        self._on_flush = on_flush
        self._task: Optional[asyncio.Task] = None
        loop = asyncio.get_running_loop()
        self._handle: Optional[asyncio.TimerHandle] = loop.call_later(delay, self._expire)

    @property
    def flushed(self) -> bool:
        return self._task is not None

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def cancel(self) -> None:
        """Stop the timer. Safe to call any number of times."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _expire(self) -> None:
        self._handle = None
        self._start()

    def _start(self) -> asyncio.Task:
        if self._task is None:
            self.cancel()
            self._task = asyncio.ensure_future(self._on_flush(self))
        return self._task

    async def flush(self) -> None:
        await self._start()


class Watcher:
    honeypot: str = "base"

    def __init__(self, report: ReportFn, log_file: Optional[Path] = None, poll_interval: float = 1.0) -> None:
        self._report = report
        self.log_file = Path(log_file) if log_file is not None else None
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(f"abusewatch.{self.honeypot.lower()}")
        self._follower: Optional[LineFollower] = None

    async def run(self) -> None:
        """Follow the log file until stopped."""
        if self.log_file is None:
            raise ValueError(f"{self.honeypot}: no log file configured")
        self._follower = LineFollower(self.log_file, poll_interval=self.poll_interval)
        self.logger.info("%s » Watcher initialized (%s)", self.honeypot, self.log_file)
        async for line in self._follower:
            await self.process_line(line)

    def stop(self) -> None:
        if self._follower is not None:
            self._follower.stop()

    async def process_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as exc:
            self.logger.warning("%s -> JSON parse error: %s; faulty line: %s", self.honeypot, exc, line[:200])
            return
        if not isinstance(entry, dict):
            self.logger.warning("%s -> Expected a JSON object, got: %s", self.honeypot, line[:200])
            return
        try:
            await self.handle(entry)
        except Exception:
            self.logger.exception("%s -> Error while handling record", self.honeypot)

    async def handle(self, entry: dict[str, Any]) -> None:
        raise NotImplementedError

    async def flush(self) -> None:
        """Report everything still buffered. Stateless watchers have nothing to do."""

    def pending(self) -> int:
        return 0


class BufferedWatcher(Watcher, Generic[T]):
    """Watcher that groups records per attacker IP before reporting."""

    flush_delay: float = 600.0

    def __init__(self, report: ReportFn, log_file: Optional[Path] = None,
                 poll_interval: float = 1.0, flush_delay: Optional[float] = None) -> None:
        super().__init__(report, log_file, poll_interval)
        if flush_delay is not None:
            self.flush_delay = flush_delay
        self._buffers: dict[str, IpBuffer[T]] = {}
        # buffers whose report is still being dispatched
        self._flushing: set[IpBuffer[T]] = set()

    def new_state(self) -> T:
        raise NotImplementedError

    async def summarize(self, ip: str, state: T) -> None:
        raise NotImplementedError

    def buffer_for(self, ip: str) -> IpBuffer[T]:
        buffer = self._buffers.get(ip)
        if buffer is None or buffer.flushed:
            buffer = IpBuffer(ip, self.new_state(), self.flush_delay, self._flush_buffer)
            self._buffers[ip] = buffer
        else:
            buffer.touch()
        return buffer

    def pending(self) -> int:
        return len(self._buffers)

    async def _flush_buffer(self, buffer: IpBuffer[T]) -> None:
        if self._buffers.get(buffer.ip) is buffer:
            del self._buffers[buffer.ip]
        self._flushing.add(buffer)
        try:
            await self.summarize(buffer.ip, buffer.state)
        except Exception:
            self.logger.exception("%s -> Failed to flush buffer for %s", self.honeypot, buffer.ip)
        finally:
            self._flushing.discard(buffer)

    async def flush(self) -> None:
        """Report every pending buffer and wait for timer flushes already under way."""
        buffers = list(self._flushing) + list(self._buffers.values())
        if buffers:
            self.logger.info("%s -> Flushing %d pending IP buffer(s)", self.honeypot, len(buffers))
        for buffer in buffers:
            await buffer.flush()
