"""
Dionaea watcher – one report per logged connection.

The emulated services (MSSQL, SMB, MQTT, ...) see single-shot probes, so
there is no session folding; each record is classified and dispatched as it
arrives and the cooldown cache absorbs repeats.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import ValidationError

from abusewatch.classifier import ProbeRule, classify_probe
from abusewatch.honeypots.base import ReportFn, Watcher
from abusewatch.models import AttackContext, DionaeaEvent
from abusewatch.sanitizer import IpSanitizer


class DionaeaWatcher(Watcher):
    honeypot = "DIONAEA"

    def __init__(
        self,
        report: ReportFn,
        log_file=None,
        poll_interval: float = 1.0,
        server_id: Optional[str] = None,
        sanitize: Optional[IpSanitizer] = None,
        rules: Optional[Mapping[str, ProbeRule]] = None,
    ) -> None:
        super().__init__(report, log_file, poll_interval)
        self.server_id = server_id
        self.sanitize = sanitize or IpSanitizer()
        self.rules = rules

    async def handle(self, entry: dict[str, Any]) -> None:
        if not entry.get("src_ip") or not entry.get("dst_port"):
            return
        try:
            event = DionaeaEvent.model_validate(entry)
        except ValidationError as exc:
            self.logger.warning("DIONAEA -> Invalid record: %s", exc.errors()[:1])
            return

        result = classify_probe(event, self.server_id, self.sanitize, self.rules)
        ctx = AttackContext(
            src_ip=event.src_ip,
            dst_port=event.dst_port,
            protocol=event.protocol.upper(),
            timestamp=event.timestamp,
            transport=event.connection.transport,
        )
        self.logger.debug("DIONAEA -> %s hit %s/%s", event.src_ip, event.dst_port, event.protocol)
        await self._report(self.honeypot, ctx, result.categories, result.comment)
