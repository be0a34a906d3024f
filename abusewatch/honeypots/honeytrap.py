"""
Honeytrap watcher – raw TCP/UDP payloads from attackers.json.

Scanners hit dozens of ports in seconds, so hits are counted per
(IP, port) for a fixed window and reported once per IP with the most hit
ports listed. The busiest port's payload classification stands for the IP.
"""
from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from abusewatch.classifier import classify_payload, header
from abusewatch.honeypots.base import BufferedWatcher, ReportFn
from abusewatch.models import AttackContext, Classification, HoneytrapEvent
from abusewatch.sanitizer import IpSanitizer

FLUSH_DELAY = 5 * 60  # seconds
TOP_PORTS = 6


@dataclass
class PortHits:
    count: int
    protocol: str
    timestamp: Optional[str]
    classification: Classification


class HoneytrapWatcher(BufferedWatcher[dict[int, PortHits]]):
    honeypot = "HONEYTRAP"
    flush_delay = FLUSH_DELAY

    def __init__(
        self,
        report: ReportFn,
        log_file=None,
        poll_interval: float = 1.0,
        flush_delay: Optional[float] = None,
        server_id: Optional[str] = None,
        sanitize: Optional[IpSanitizer] = None,
    ) -> None:
        super().__init__(report, log_file, poll_interval, flush_delay)
        self.server_id = server_id
        self.sanitize = sanitize or IpSanitizer()

    def new_state(self) -> dict[int, PortHits]:
        return {}

    async def handle(self, entry: dict[str, Any]) -> None:
        conn = entry.get("attack_connection")
        if not isinstance(conn, dict) or not conn.get("remote_ip") or not conn.get("local_port"):
            return
        try:
            event = HoneytrapEvent.model_validate(entry)
        except ValidationError as exc:
            self.logger.warning("HONEYTRAP -> Invalid record: %s", exc.errors()[:1])
            return

        ac = event.attack_connection
        ports = self.buffer_for(ac.remote_ip).state
        hits = ports.get(ac.local_port)
        if hits is None:
            proto = ac.protocol or "unknown"
            hits = PortHits(
                count=1,
                protocol=proto,
                timestamp=event.timestamp,
                classification=classify_payload(
                    event.payload_bytes(), ac.local_port, proto, ac.payload.length, self.sanitize
                ),
            )
            ports[ac.local_port] = hits
        else:
            hits.count += 1
        self.logger.debug("HONEYTRAP -> %s hit %s | x%d", ac.remote_ip, ac.local_port, hits.count)

    async def summarize(self, ip: str, ports: dict[int, PortHits]) -> None:
        if not ports:
            return
        ranked = Counter({port: hits.count for port, hits in ports.items()}).most_common(TOP_PORTS)
        top_port = ranked[0][0]
        top = ports[top_port]

        base = re.sub(r" on \d+/\w+", "", top.classification.comment, count=1)
        port_summary = ", ".join(f"{port} [{count}]" for port, count in ranked)
        comment = self.sanitize(
            f"{header(self.server_id)}: {base}; {port_summary} {top.protocol.upper()}"
        )
        ctx = AttackContext(src_ip=ip, dst_port=top_port, protocol=top.protocol, timestamp=top.timestamp)
        await self._report(self.honeypot, ctx, top.classification.categories, comment)
        self.logger.info("HONEYTRAP -> Flushed %s (%d port(s))", ip, len(ports))
