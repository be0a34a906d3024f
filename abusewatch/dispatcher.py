"""
Report dispatcher – the one entry point every watcher reports through.

For each ``report_ip`` call:
  1. drop it if the source IP is missing, ours, special-purpose or UDP
  2. drop it if the IP is still in its report cooldown
  3. settle the rate-limit state (a due reset sends the bulk buffer first)
  4. NORMAL  -> submit now; a quota-exceeded answer flips to LIMITED and
               parks the IP in the bulk buffer
     LIMITED -> park the IP in the bulk buffer (first write wins)

A queued IP counts as reported for the cooldown. Every step that mutates the
cache or buffer persists it before returning.
"""
from __future__ import annotations

import enum
import logging
import sqlite3
import time
from typing import Callable, Collection, Optional

from abusewatch.abuseipdb import AbuseIPDBClient
from abusewatch.bulk import BulkBuffer, BulkResult
from abusewatch.cache import DedupCache
from abusewatch.errors import PersistenceError, ReportError
from abusewatch.history import ReportHistory
from abusewatch.models import AttackContext, format_categories
from abusewatch.netinfo import is_special_purpose
from abusewatch.notify import Notifier, Severity
from abusewatch.ratelimit import RateLimiter
from abusewatch.timeutil import format_timestamp

logger = logging.getLogger("abusewatch.dispatcher")

CONNECTIONLESS = {"udp"}
BULK_RETRY_INTERVAL = 15 * 60  # seconds between bulk retries once the limit has cleared


class Outcome(str, enum.Enum):
    REPORTED = "reported"
    BUFFERED = "buffered"
    ALREADY_BUFFERED = "already_buffered"
    MISSING_IP = "missing_ip"
    OWN_IP = "own_ip"
    SPECIAL_IP = "special_ip"
    CONNECTIONLESS = "connectionless"
    COOLDOWN = "cooldown"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


def _identity(text: object) -> str:
    return "" if text is None else str(text)


class Dispatcher:
    def __init__(
        self,
        client: AbuseIPDBClient,
        cache: DedupCache,
        buffer: BulkBuffer,
        limiter: RateLimiter,
        own_ips: Collection[str] = frozenset(),
        is_special: Callable[[str], bool] = is_special_purpose,
        sanitize: Callable[[object], str] = _identity,
        notifier: Optional[Notifier] = None,
        history: Optional[ReportHistory] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.cache = cache
        self.buffer = buffer
        self.limiter = limiter
        self._own_ips = own_ips
        self._is_special = is_special
        self._sanitize = sanitize
        self._notifier = notifier
        self._history = history
        self._clock = clock
        self._in_flight: set[str] = set()
        self._releasing = False
        self._last_bulk_attempt: float | None = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def report_ip(
        self,
        honeypot: str,
        ctx: AttackContext,
        categories: object,
        comment: str,
    ) -> Outcome:
        ip = (ctx.src_ip or "").strip()
        where = f"[{ctx.dst_port or 'N/A'}/{ctx.protocol or 'N/A'}]"

        if not ip:
            logger.warning("%s -> Missing source IP", honeypot)
            return Outcome.MISSING_IP
        if ip in self._own_ips:
            logger.info("%s -> Ignoring own IP", honeypot)
            return Outcome.OWN_IP
        if self._is_special(ip):
            logger.debug("%s -> Ignoring special-purpose address %s", honeypot, ip)
            return Outcome.SPECIAL_IP
        if (ctx.transport or "").lower() in CONNECTIONLESS or (ctx.protocol or "").lower() in CONNECTIONLESS:
            logger.debug("%s -> Not reporting connectionless traffic from %s %s", honeypot, ip, where)
            return Outcome.CONNECTIONLESS
        if self.cache.is_reported_recently(ip):
            logger.debug("%s -> %s was reported recently, skipping", honeypot, ip)
            return Outcome.COOLDOWN
        if ip in self._in_flight:
            logger.debug("%s -> A report for %s is already in flight", honeypot, ip)
            return Outcome.IN_FLIGHT

        codes = format_categories(categories)
        comment = self._sanitize(comment)

        self._in_flight.add(ip)
        try:
            await self.check_rate_limit()
            if self.cache.is_reported_recently(ip):
                # the bulk report that just went out covered this IP
                return Outcome.COOLDOWN
            if self.limiter.is_limited:
                return await self._enqueue(honeypot, ip, ctx, codes, comment)
            return await self._submit(honeypot, ip, ctx, codes, comment)
        finally:
            self._in_flight.discard(ip)

    async def _submit(self, honeypot: str, ip: str, ctx: AttackContext, codes: str, comment: str) -> Outcome:
        where = f"[{ctx.dst_port or 'N/A'}/{ctx.protocol or 'N/A'}]"
        try:
            data = await self.client.report(ip, codes, comment, format_timestamp(ctx.timestamp, self._clock()))
        except ReportError as exc:
            if exc.is_quota_exceeded:
                if self.limiter.enter_limited():
                    msg = (
                        f"Daily AbuseIPDB limit reached. Buffering reports until "
                        f"{format_timestamp(self.limiter.reset_at)}."
                    )
                    logger.warning(msg)
                    self._notify(Severity.WARNING, msg)
                return await self._enqueue(honeypot, ip, ctx, codes, comment)

            logger.error("%s -> Failed to report %s %s; %s", honeypot, ip, where, exc.details())
            await self._record(honeypot, ip, ctx, codes, comment, Outcome.FAILED)
            return Outcome.FAILED

        logger.info(
            "%s -> Reported %s %s; Categories: %s; Abuse: %s%%",
            honeypot, ip, where, codes, data.get("abuseConfidenceScore", "?"),
        )
        self.cache.mark_reported(ip)
        self._save_cache()
        await self._record(honeypot, ip, ctx, codes, comment, Outcome.REPORTED)
        return Outcome.REPORTED

    async def _enqueue(self, honeypot: str, ip: str, ctx: AttackContext, codes: str, comment: str) -> Outcome:
        if not self.buffer.enqueue(ip, codes, comment, ctx.timestamp):
            logger.debug("%s -> %s is already queued for the bulk report", honeypot, ip)
            return Outcome.ALREADY_BUFFERED
        self._save_buffer()
        self.cache.mark_reported(ip)
        self._save_cache()
        logger.info("%s -> Queued %s for bulk report (%d in buffer)", honeypot, ip, len(self.buffer))
        await self._record(honeypot, ip, ctx, codes, comment, Outcome.BUFFERED)
        return Outcome.BUFFERED

    # ------------------------------------------------------------------
    # Rate limit / bulk
    # ------------------------------------------------------------------

    async def check_rate_limit(self) -> None:
        """Lazy LIMITED -> NORMAL transition; sends the buffer first when due."""
        if not self.limiter.is_limited or self._releasing:
            return
        if not self.limiter.reset_due():
            if self.limiter.status_due():
                self.log_status()
            return

        self._releasing = True
        try:
            if self.buffer and not self.limiter.bulk_sent:
                result = await self.flush_buffer()
                if result is not None:
                    self.limiter.bulk_sent = True
            self.limiter.release()
            logger.info("Daily limit reset; reporting directly again.")
            self._notify(Severity.INFO, "Daily AbuseIPDB limit reset; reporting directly again.")
        finally:
            self._releasing = False

    async def flush_buffer(self) -> Optional[BulkResult]:
        """Send the bulk buffer now. Failures leave it queued."""
        if not self.buffer:
            return None
        self._last_bulk_attempt = self._clock()
        result = await self.buffer.flush(self.client, self.cache)
        if result is None:
            self._notify(Severity.ERROR, f"Bulk report failed; {len(self.buffer)} IPs remain queued.")
            return None
        self._notify(
            Severity.INFO,
            f"Bulk report sent: {result.saved} accepted, {result.rejected} rejected.",
        )
        if result.persist_error:
            self._notify(Severity.ERROR, f"Persistence failure after bulk report: {result.persist_error}")
        return result

    async def recover(self) -> Optional[BulkResult]:
        """Startup: send whatever a previous run left in the buffer."""
        if not self.buffer or self.limiter.is_limited:
            return None
        logger.info("Found %d buffered reports from a previous run; sending bulk report.", len(self.buffer))
        return await self.flush_buffer()

    async def tick(self) -> None:
        """Periodic housekeeping: status lines, due resets, bulk retries."""
        await self.check_rate_limit()
        if self.limiter.is_limited or not self.buffer or self._releasing:
            return
        now = self._clock()
        if self._last_bulk_attempt is None or now - self._last_bulk_attempt >= BULK_RETRY_INTERVAL:
            await self.flush_buffer()

    def log_status(self) -> None:
        minutes = int(self.limiter.seconds_remaining() // 60)
        logger.info(
            "Rate limit active: %d minute(s) until reset, %d IPs in bulk buffer.",
            minutes, len(self.buffer),
        )

    def status(self) -> dict:
        return {
            "state": self.limiter.state.value,
            "reset_at": format_timestamp(self.limiter.reset_at),
            "seconds_remaining": round(self.limiter.seconds_remaining()) if self.limiter.is_limited else 0,
            "buffered": len(self.buffer),
            "cached": len(self.cache),
        }

    # ------------------------------------------------------------------
    # Persistence / side channels
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Final persistence on shutdown."""
        self._save_cache()
        self._save_buffer()

    def _save_cache(self) -> None:
        try:
            self.cache.save()
        except PersistenceError as exc:
            logger.critical("Report cache is not durable: %s", exc)
            self._notify(Severity.ERROR, f"Report cache is not durable: {exc}")

    def _save_buffer(self) -> None:
        try:
            self.buffer.persist()
        except PersistenceError as exc:
            logger.critical("Bulk buffer is not durable: %s", exc)
            self._notify(Severity.ERROR, f"Bulk buffer is not durable: {exc}")

    def _notify(self, severity: Severity, text: str) -> None:
        if self._notifier is not None:
            self._notifier.notify(severity, text)

    async def _record(
        self, honeypot: str, ip: str, ctx: AttackContext, codes: str, comment: str, outcome: Outcome
    ) -> None:
        if self._history is None:
            return
        try:
            await self._history.record(
                honeypot, ip, outcome.value, dpt=_port(ctx.dst_port), proto=ctx.protocol,
                categories=codes, comment=comment, ts=self._clock(),
            )
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Could not write report history: %s", exc)


def _port(value: object) -> Optional[int]:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
