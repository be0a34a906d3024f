"""
AbuseIPDB v2 client.

Thin wrapper over ``httpx.AsyncClient``: single reports as form posts, bulk
reports as a CSV upload. Any non-2xx answer or network failure raises
``ReportError``; nothing is retried here.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from abusewatch import __version__
from abusewatch.errors import ReportError

logger = logging.getLogger("abusewatch.abuseipdb")

DEFAULT_BASE_URL = "https://api.abuseipdb.com/api/v2"
MAX_COMMENT_LENGTH = 1024
TIMEOUT = 50.0
USER_AGENT = f"Mozilla/5.0 (compatible; abusewatch/{__version__})"


class AbuseIPDBClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Key": api_key,
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
                "Cache-Control": "no-cache",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AbuseIPDBClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def report(self, ip: str, categories: str, comment: str, timestamp: str) -> dict[str, Any]:
        """Submit one report. Returns the ``data`` object of the response."""
        form = {
            "ip": ip,
            "categories": categories,
            "comment": comment[:MAX_COMMENT_LENGTH],
            "timestamp": timestamp,
        }
        body = await self._post("/report", data=form)
        return body.get("data") or {}

    async def bulk_report(self, csv_text: str) -> dict[str, Any]:
        """Upload a bulk-report CSV. Returns the ``data`` object of the response."""
        files = {"csv": ("report.csv", csv_text.encode("utf-8"), "text/csv")}
        body = await self._post("/bulk-report", files=files)
        return body.get("data") or {}

    async def _post(self, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._client.post(path, **kwargs)
        except httpx.HTTPError as exc:
            raise ReportError(f"POST {path} failed: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = resp.text

        if resp.is_error:
            raise ReportError(f"POST {path} returned HTTP {resp.status_code}", resp.status_code, body)
        if not isinstance(body, dict):
            raise ReportError(f"POST {path} returned a non-JSON body", resp.status_code, body)
        return body
