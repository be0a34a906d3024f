"""
Bulk-report buffer.

While the daily quota is exhausted, reports are parked here (one per IP,
first write wins) and written to a CSV file after every change so a restart
does not lose them. Once the limit resets the whole buffer goes out as a
single bulk-report upload.

CSV layout: header ``IP,Categories,ReportDate,Comment``, every field quoted,
``ReportDate`` as whole-second ISO-8601. Comments keep their newlines in the
file; they are flattened to spaces only in the uploaded batch.
"""
from __future__ import annotations

import csv
import io
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from abusewatch.abuseipdb import MAX_COMMENT_LENGTH, AbuseIPDBClient
from abusewatch.cache import DedupCache, atomic_write
from abusewatch.errors import PersistenceError, ReportError
from abusewatch.models import format_categories
from abusewatch.timeutil import iso_utc, parse_timestamp

logger = logging.getLogger("abusewatch.bulk")

COLUMNS = ["IP", "Categories", "ReportDate", "Comment"]


@dataclass(frozen=True)
class BufferedReport:
    categories: str
    timestamp: datetime
    comment: str


@dataclass(frozen=True)
class BulkResult:
    submitted: int
    saved: int
    rejected: int
    persist_error: Optional[str] = None


def _to_csv(rows: Iterable[list[str]]) -> str:
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(COLUMNS)
    writer.writerows(rows)
    return out.getvalue()


class BulkBuffer:
    """IP-keyed queue of deferred reports with a durable CSV copy."""

    def __init__(self, path: Path, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self._clock = clock
        self._entries: dict[str, BufferedReport] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ip: object) -> bool:
        return ip in self._entries

    def __bool__(self) -> bool:
        return bool(self._entries)

    def items(self) -> list[tuple[str, BufferedReport]]:
        return list(self._entries.items())

    def get(self, ip: str) -> Optional[BufferedReport]:
        return self._entries.get(ip)

    def enqueue(self, ip: str, categories: object, comment: str, timestamp: object = None) -> bool:
        """Queue a report. Returns False if the IP is already queued."""
        if ip in self._entries:
            return False
        when = parse_timestamp(timestamp) or datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        self._entries[ip] = BufferedReport(
            categories=format_categories(categories),
            timestamp=when.replace(microsecond=0),
            comment=comment[:MAX_COMMENT_LENGTH],
        )
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_csv(self, flatten: bool = False) -> str:
        rows = []
        for ip, entry in self._entries.items():
            comment = entry.comment
            if flatten:
                comment = comment.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
            rows.append([ip, entry.categories, iso_utc(entry.timestamp), comment[:MAX_COMMENT_LENGTH]])
        return _to_csv(rows)

    def persist(self) -> None:
        """Write the whole buffer to disk; an empty buffer removes the file."""
        try:
            if not self._entries:
                self.path.unlink(missing_ok=True)
                return
            atomic_write(self.path, self.to_csv())
        except OSError as exc:
            raise PersistenceError(f"could not write {self.path}: {exc}") from exc

    def load(self) -> int:
        """Merge the CSV file into memory, then delete it. Bad rows are skipped."""
        if not self.path.exists():
            return 0

        loaded = skipped = 0
        try:
            with self.path.open("r", encoding="utf-8", newline="") as fh:
                reader = csv.reader(fh)
                header = next(reader, None)
                if header is not None and [h.strip() for h in header] != COLUMNS:
                    logger.warning("Unexpected header in %s: %s", self.path, header)
                for row in reader:
                    if not row or not any(cell.strip() for cell in row):
                        continue
                    if len(row) != len(COLUMNS):
                        skipped += 1
                        continue
                    ip, categories, report_date, comment = row
                    ip = ip.strip()
                    when = parse_timestamp(report_date.strip())
                    if not ip or when is None:
                        skipped += 1
                        continue
                    self._entries.setdefault(ip, BufferedReport(categories.strip(), when, comment))
                    loaded += 1
        except (OSError, csv.Error) as exc:
            logger.error("Failed to parse buffer file %s: %s", self.path, exc)
        finally:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error("Could not delete buffer file %s: %s", self.path, exc)

        if skipped:
            logger.warning("Skipped %d malformed row(s) in %s", skipped, self.path)
        logger.info("Loaded %d IPs from %s", loaded, self.path)
        return loaded

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def flush(self, client: AbuseIPDBClient, cache: DedupCache) -> Optional[BulkResult]:
        """Upload every queued report as one batch.

        On success the submitted IPs are marked in ``cache`` and dropped from
        the buffer. On failure the buffer and its file stay as they are and
        None is returned. Entries queued while the upload is in flight are
        kept for the next flush.
        """
        if not self._entries:
            return None

        batch = list(self._entries)
        payload = self.to_csv(flatten=True)
        try:
            data = await client.bulk_report(payload)
        except ReportError as exc:
            logger.error("Failed to send bulk report (%d IPs): %s", len(batch), exc.details())
            self._ensure_persisted()
            return None

        saved = int(data.get("savedReports") or 0)
        invalid = data.get("invalidReports") or []
        for fail in invalid:
            if isinstance(fail, dict):
                logger.warning(
                    "Rejected in bulk report [row %s] %s -> %s",
                    fail.get("rowNumber"), fail.get("input"), fail.get("error"),
                )
        logger.info("Sent bulk report (%d IPs): %d accepted, %d rejected", len(batch), saved, len(invalid))

        cache.mark_many(batch)
        for ip in batch:
            self._entries.pop(ip, None)

        errors = []
        for save in (cache.save, self.persist):
            try:
                save()
            except PersistenceError as exc:
                logger.critical("%s", exc)
                errors.append(str(exc))
        return BulkResult(
            submitted=len(batch), saved=saved, rejected=len(invalid),
            persist_error="; ".join(errors) or None,
        )

    def _ensure_persisted(self) -> None:
        if self.path.exists():
            return
        try:
            self.persist()
        except PersistenceError as exc:
            logger.critical("Bulk buffer is not durable: %s", exc)
