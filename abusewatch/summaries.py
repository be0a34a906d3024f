"""Midnight summary of yesterday's reports, sent through the notifier."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from abusewatch.history import ReportHistory
from abusewatch.notify import Notifier, Severity
from abusewatch.timeutil import next_utc_midnight

logger = logging.getLogger("abusewatch.summaries")


def _plural(count: int) -> str:
    return "report" if count == 1 else "reports"


def format_summary(day: datetime, hourly: dict[int, int]) -> str:
    """Hour-by-hour report counts; the busiest hours get a flame."""
    total = sum(hourly.values())
    busiest = max(hourly.values(), default=0)
    lines = []
    for hour in sorted(hourly):
        count = hourly[hour]
        flame = " 🔥" if count == busiest and count > 1 else ""
        lines.append(f"{hour:02d}:00-{hour:02d}:59: {count} {_plural(count)}{flame}")
    body = "\n".join(lines) or "no reports"
    return (
        f"Midnight. Summary of IP address reports ({total}) from yesterday "
        f"({day.strftime('%Y-%m-%d')}).\n```{body}```"
    )


async def send_daily_summary(history: ReportHistory, notifier: Notifier, now: Optional[float] = None) -> str:
    today = datetime.fromtimestamp(time.time() if now is None else now, tz=timezone.utc)
    yesterday = today - timedelta(days=1)
    hourly = await history.hourly_counts(yesterday)
    text = format_summary(yesterday, hourly)
    logger.info("Reported IPs yesterday by hour: %s", hourly or "none")
    await notifier.send(Severity.INFO, text)
    return text


async def summary_loop(history: ReportHistory, notifier: Notifier) -> None:
    """Sleep until each UTC midnight, then send the summary."""
    while True:
        await asyncio.sleep(max(1.0, next_utc_midnight(time.time()) - time.time() + 5))
        try:
            await send_daily_summary(history, notifier)
        except Exception as exc:
            logger.exception("Daily summary failed: %s", exc)
