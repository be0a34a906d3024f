"""
Line source – follows an append-only log file and yields complete lines.

We poll the file size rather than rely on inotify so it works the same on
bind-mounted T-Pot volumes. Handles:
  * the file not existing yet (waits for it)
  * truncation (size drops below our offset -> restart from 0)
  * rotation (inode changes -> reopen the new file from 0)
  * a partially written last line (held back until its newline arrives)
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import AsyncIterator, Optional

logger = logging.getLogger("abusewatch.tail")

POLL_INTERVAL = 1.0  # seconds between size checks
READ_CHUNK = 1 << 20


class LineFollower:
    """Async iterator over lines appended to ``path`` after attaching."""

    def __init__(self, path: Path, poll_interval: float = POLL_INTERVAL, from_start: bool = False) -> None:
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.from_start = from_start
        self.offset = 0
        self._inode: Optional[int] = None
        self._partial = b""
        self._stopped = False

    def stop(self) -> None:
        self._stopped = True

    def __aiter__(self) -> AsyncIterator[str]:
        return self.lines()

    async def lines(self) -> AsyncIterator[str]:
        await self._attach()
        while not self._stopped:
            for line in self.poll():
                yield line
                if self._stopped:
                    return
            await asyncio.sleep(self.poll_interval)

    async def _attach(self) -> None:
        waited = False
        while not self._stopped:
            try:
                st = os.stat(self.path)
                break
            except FileNotFoundError:
                if not waited:
                    logger.info("Log file %s not found yet, waiting…", self.path)
                    waited = True
                await asyncio.sleep(self.poll_interval)
        else:
            return
        self._inode = st.st_ino
        self.offset = 0 if self.from_start else st.st_size
        logger.info("Following %s from offset %d", self.path, self.offset)

    def poll(self) -> list[str]:
        """Read whatever has been appended since the last call."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            # mid-rotation; the new file shows up on a later poll
            return []
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", self.path, exc)
            return []

        if self._inode is not None and st.st_ino != self._inode:
            logger.info("Log file %s was rotated, reopening.", self.path)
            self._inode = st.st_ino
            self.offset = 0
            self._partial = b""
        elif st.st_size < self.offset:
            logger.info("Log file %s was truncated, resetting position.", self.path)
            self.offset = 0
            self._partial = b""
        self._inode = st.st_ino

        if st.st_size == self.offset:
            return []

        try:
            with open(self.path, "rb") as fh:
                fh.seek(self.offset)
                data = fh.read(READ_CHUNK)
                self.offset = fh.tell()
        except OSError as exc:
            logger.warning("Cannot read %s: %s", self.path, exc)
            return []

        data = self._partial + data
        chunks = data.split(b"\n")
        self._partial = chunks.pop()
        return [c.decode("utf-8", errors="replace").rstrip("\r") for c in chunks]
