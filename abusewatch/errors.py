"""Exception types shared across abusewatch."""
from __future__ import annotations

from typing import Any


class AbuseWatchError(Exception):
    """Base class for every error raised by abusewatch."""


class ConfigError(AbuseWatchError):
    """Invalid or missing configuration. Fatal at startup."""


class PersistenceError(AbuseWatchError):
    """A cache or buffer file could not be written."""


class ReportError(AbuseWatchError):
    """The reputation API rejected a request or could not be reached."""

    def __init__(self, message: str, status: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.data = data

    @property
    def is_quota_exceeded(self) -> bool:
        """True for the 429 AbuseIPDB sends once the daily quota is used up."""
        if self.status != 429:
            return False
        return "daily rate limit" in _error_text(self.data).lower()

    def details(self) -> str:
        return _error_text(self.data) or str(self)


def _error_text(data: Any) -> str:
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list):
            return "; ".join(
                str(e.get("detail", e)) if isinstance(e, dict) else str(e) for e in errors
            )
        return str(data)
    if data is None:
        return ""
    return str(data)
