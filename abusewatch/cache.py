"""
Report cooldown cache.

Maps attacker IP -> unix time of the last report. Persisted as one
``<ip> <unix-seconds>`` line per entry; the whole file is rewritten (via a
temp file and rename) after every change.
"""
from __future__ import annotations

import logging
import math
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Iterable

from abusewatch.errors import PersistenceError

logger = logging.getLogger("abusewatch.cache")


def atomic_write(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` without ever leaving a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class DedupCache:
    """Allow one report per IP in each cooldown window."""

    def __init__(self, path: Path, cooldown_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self.cooldown = float(cooldown_seconds)
        self._clock = clock
        self._reported: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._reported)

    def __contains__(self, ip: object) -> bool:
        return ip in self._reported

    def last_reported(self, ip: str) -> float | None:
        return self._reported.get(ip)

    def load(self) -> int:
        """Read the cache file, skipping malformed lines. Returns entries loaded."""
        if not self.path.exists():
            logger.info("%s does not exist. No data to load.", self.path)
            return 0

        loaded = skipped = 0
        with self.path.open("r", encoding="utf-8", errors="replace") as fh:
            for line in fh:
                parts = line.split()
                if not parts:
                    continue
                if len(parts) != 2:
                    skipped += 1
                    continue
                ip, ts = parts
                try:
                    value = float(ts)
                except ValueError:
                    skipped += 1
                    continue
                if not math.isfinite(value):
                    skipped += 1
                    continue
                self._reported[ip] = max(value, self._reported.get(ip, value))
                loaded += 1

        if skipped:
            logger.warning("Skipped %d malformed line(s) in %s", skipped, self.path)
        logger.info("Loaded %d IPs from %s", loaded, self.path)
        return loaded

    def is_reported_recently(self, ip: str) -> bool:
        last = self._reported.get(ip)
        if last is None:
            return False
        return self._clock() - last < self.cooldown

    def mark_reported(self, ip: str, when: float | None = None) -> None:
        self._reported[ip] = self._clock() if when is None else when

    def mark_many(self, ips: Iterable[str]) -> None:
        now = self._clock()
        for ip in ips:
            self._reported[ip] = now

    def save(self) -> None:
        """Rewrite the cache file. Raises ``PersistenceError`` on I/O failure.

        Times are rounded up to whole seconds so a reload never shortens a cooldown.
        """
        text = "".join(f"{ip} {math.ceil(ts)}\n" for ip, ts in self._reported.items())
        try:
            atomic_write(self.path, text)
        except OSError as exc:
            raise PersistenceError(f"could not write {self.path}: {exc}") from exc
