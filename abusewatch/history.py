"""
SQLite report history.

Table
-----
reports – one row per dispatch outcome (reported, buffered, failed)
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

CREATE_REPORTS = """
CREATE TABLE IF NOT EXISTS reports (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    ts         REAL    NOT NULL,
    honeypot   TEXT    NOT NULL,
    src_ip     TEXT    NOT NULL,
    dpt        INTEGER,
    proto      TEXT    NOT NULL DEFAULT '',
    categories TEXT    NOT NULL DEFAULT '',
    outcome    TEXT    NOT NULL,
    comment    TEXT    NOT NULL DEFAULT ''
);
"""

CREATE_REPORTS_IDX = "CREATE INDEX IF NOT EXISTS idx_reports_ts ON reports(ts);"

# outcomes that count as "this IP got reported"
REPORTED_OUTCOMES = ("reported", "buffered")


class ReportHistory:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def init_db(self) -> None:
        """Create tables if they don't exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.path) as db:
            await db.execute(CREATE_REPORTS)
            await db.execute(CREATE_REPORTS_IDX)
            await db.commit()

    async def record(
        self,
        honeypot: str,
        src_ip: str,
        outcome: str,
        dpt: Optional[int] = None,
        proto: Optional[str] = None,
        categories: str = "",
        comment: str = "",
        ts: Optional[float] = None,
    ) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                """INSERT INTO reports (ts, honeypot, src_ip, dpt, proto, categories, outcome, comment)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (time.time() if ts is None else ts, honeypot, src_ip, dpt, proto or "",
                 categories, outcome, comment),
            )
            await db.commit()

    async def fetch_recent(self, limit: int = 100) -> list[dict]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM reports ORDER BY ts DESC, id DESC LIMIT ?", (limit,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def hourly_counts(self, day: datetime) -> dict[int, int]:
        """UTC hour -> number of distinct IPs reported on ``day``."""
        start = day.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
        placeholders = ",".join("?" for _ in REPORTED_OUTCOMES)
        async with aiosqlite.connect(self.path) as db:
            async with db.execute(
                f"""SELECT CAST(strftime('%H', ts, 'unixepoch') AS INTEGER) AS hour,
                           COUNT(DISTINCT src_ip)
                    FROM reports
                    WHERE ts >= ? AND ts < ? AND outcome IN ({placeholders})
                    GROUP BY hour""",
                (start.timestamp(), end.timestamp(), *REPORTED_OUTCOMES),
            ) as cursor:
                rows = await cursor.fetchall()
        return {int(hour): int(count) for hour, count in rows}
