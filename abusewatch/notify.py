"""
Discord webhook notifications.

``notify()`` is fire-and-forget: it schedules the POST on the running loop
and never raises. Delivery problems are logged and otherwise ignored.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import re
from datetime import datetime, timezone
from typing import Optional

import httpx

logger = logging.getLogger("abusewatch.notify")


class Severity(enum.IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2


COLORS = {
    Severity.INFO:    0x60D06D,
    Severity.WARNING: 0xFFB02E,
    Severity.ERROR:   0xF92F60,
}

MAX_DESCRIPTION = 4000


class Notifier:
    """Posts embeds to a Discord webhook. Disabled when no URL is set."""

    def __init__(
        self,
        url: str = "",
        server_id: Optional[str] = None,
        username: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.server_id = server_id
        self.username = server_id if username == "SERVER_ID" else username
        self._client = httpx.AsyncClient(timeout=15.0, transport=transport) if url else None
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def notify(self, severity: Severity, text: str) -> None:
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; notification dropped: %s", text[:80])
            return
        task = loop.create_task(self.send(severity, text), name="notify")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send(self, severity: Severity, text: str) -> bool:
        if self._client is None:
            return False
        payload: dict = {
            "embeds": [{
                "description": re.sub(r"(\b\w+=)", r"**\1**", text)[:MAX_DESCRIPTION],
                "color": COLORS.get(Severity(severity), COLORS[Severity.INFO]),
                "footer": {"text": f"{self.server_id} • abusewatch" if self.server_id else "abusewatch"},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }],
        }
        if self.username:
            payload["username"] = self.username
        try:
            resp = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Failed to send Discord webhook: %s", exc)
            return False
        if resp.status_code not in (200, 204):
            logger.warning("Discord webhook answered HTTP %d", resp.status_code)
            return False
        return True

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=5.0)
        if self._client is not None:
            await self._client.aclose()
