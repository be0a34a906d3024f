"""
Cowrie watcher – rebuilds SSH/Telnet sessions from cowrie.json.

Events are grouped per attacker IP, then per session id. Only
``cowrie.session.connect`` opens a session; anything else for an unknown
session is ignored, so a log picked up mid-session can't produce a report
without port and protocol. Each IP is reported once per window
(``flush_delay`` after its first event), covering all its sessions.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError

from abusewatch.classifier import classify_session, session_comment
from abusewatch.models import (
    COWRIE_EVENT_IDS,
    AttackSummary,
    ClientFingerprint,
    ClientVersion,
    CommandInput,
    FileDownload,
    FileUpload,
    LoginAttempt,
    Session,
    SessionClosed,
    SessionConnect,
    TunnelRequest,
    cowrie_record,
)
from abusewatch.honeypots.base import BufferedWatcher, ReportFn
from abusewatch.notify import Notifier, Severity
from abusewatch.sanitizer import IpSanitizer

REPORT_DELAY = 10 * 60  # seconds


def _add_unique(items: list[str], value: Optional[str]) -> None:
    if value and value not in items:
        items.append(value)


def merge_sessions(src_ip: str, sessions: list[Session]) -> AttackSummary:
    """Fold sessions into one summary. Scalars: first non-empty value wins."""
    summary = AttackSummary(src_ip=src_ip, session_count=len(sessions))
    creds: dict[str, None] = {}
    for s in sessions:
        if summary.dst_port is None:
            summary.dst_port = s.dst_port
        if summary.protocol is None:
            summary.protocol = s.protocol
        if summary.timestamp is None:
            summary.timestamp = s.timestamp
        if summary.client_version is None:
            summary.client_version = s.client_version
        creds.update(s.credentials)
        summary.commands.extend(s.commands)
        for fp in s.fingerprints:
            _add_unique(summary.fingerprints, fp)
        for url in s.download_urls:
            _add_unique(summary.download_urls, url)
        for digest in s.artifact_hashes:
            _add_unique(summary.artifact_hashes, digest)
        for name in s.uploads:
            _add_unique(summary.uploads, name)
        for tunnel in s.tunnels:
            _add_unique(summary.tunnels, tunnel)
    summary.credentials = list(creds)
    return summary


class CowrieWatcher(BufferedWatcher[dict[str, Session]]):
    honeypot = "COWRIE"
    flush_delay = REPORT_DELAY

    def __init__(
        self,
        report: ReportFn,
        log_file=None,
        poll_interval: float = 1.0,
        flush_delay: Optional[float] = None,
        server_id: Optional[str] = None,
        sanitize: Optional[IpSanitizer] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        super().__init__(report, log_file, poll_interval, flush_delay)
        self.server_id = server_id
        self.sanitize = sanitize or IpSanitizer()
        self.notifier = notifier

    def new_state(self) -> dict[str, Session]:
        return {}

    # ------------------------------------------------------------------
    # Event folding
    # ------------------------------------------------------------------

    async def handle(self, entry: dict[str, Any]) -> None:
        ip = entry.get("src_ip")
        eventid = entry.get("eventid")
        session_id = entry.get("session")
        if not ip or not eventid or not session_id:
            self.logger.warning("COWRIE -> Skipped: missing src_ip, eventid or session")
            return
        if eventid not in COWRIE_EVENT_IDS:
            self.logger.debug("COWRIE -> Ignoring event %s", eventid)
            return
        try:
            event = cowrie_record.validate_python(entry)
        except ValidationError as exc:
            self.logger.warning("COWRIE -> Invalid %s record from %s: %s", eventid, ip, exc.errors()[:1])
            return

        sessions = self.buffer_for(event.src_ip).state
        session = sessions.get(event.session)

        if isinstance(event, SessionConnect):
            if session is None:
                session = Session(session_id=event.session, src_ip=event.src_ip, timestamp=event.timestamp)
                sessions[event.session] = session
            if event.dst_port:
                session.dst_port = event.dst_port
            if event.protocol:
                session.protocol = event.protocol
            session.last_seen = event.timestamp
            self.logger.info("COWRIE -> %s: Connect", self._label(session))
            return

        if isinstance(event, SessionClosed):
            if session is None:
                self.logger.info("COWRIE -> %s: Session %s closed (never opened here)", ip, event.session)
                return
            session.closed = True
            session.last_seen = event.timestamp
            self.logger.info("COWRIE -> %s: Session %s closed", self._label(session), event.session)
            return

        if session is None or session.closed:
            self.logger.debug("COWRIE -> %s: %s for unknown session %s ignored", ip, eventid, event.session)
            return

        session.last_seen = event.timestamp
        self.apply(session, event)

    def apply(self, session: Session, event: Any) -> None:
        label = self._label(session)
        if isinstance(event, LoginAttempt):
            if event.username or event.password:
                cred = f"{self.sanitize(event.username or '')}:{self.sanitize(event.password or '')}"
                session.credentials[cred] = None
                status = "Connected" if event.succeeded else "Failed login"
                self.logger.info("COWRIE -> %s: %s » %s", label, status, cred)
        elif isinstance(event, ClientVersion):
            if event.version:
                session.client_version = self.sanitize(event.version)
                self.logger.info("COWRIE -> %s: SSH version » %s", label, session.client_version)
        elif isinstance(event, ClientFingerprint):
            if event.fingerprint:
                _add_unique(session.fingerprints, event.fingerprint)
                self.logger.info("COWRIE -> %s: SSH key fingerprint » %s", label, event.fingerprint)
        elif isinstance(event, CommandInput):
            if event.input:
                session.commands.append(event.input)
                self.logger.info("COWRIE -> %s: $ %s", label, self.sanitize(event.input))
        elif isinstance(event, FileDownload):
            if event.url:
                url = self.sanitize(event.url)
                session.commands.append(f"[download] {url}")
                _add_unique(session.download_urls, url)
                _add_unique(session.artifact_hashes, event.shasum)
                self.logger.info("COWRIE -> %s: File download » %s", label, url)
        elif isinstance(event, FileUpload):
            if event.filename:
                session.uploads.append(self.sanitize(event.filename))
                _add_unique(session.artifact_hashes, event.shasum)
                self.logger.info("COWRIE -> %s: File upload » %s", label, event.filename)
        elif isinstance(event, TunnelRequest):
            if event.dst_ip and event.dst_port:
                tunnel = self.sanitize(f"{event.dst_ip}:{event.dst_port}")
                session.tunnels.append(tunnel)
                self.logger.info("COWRIE -> %s: TCP tunnel request » %s", label, tunnel)

    @staticmethod
    def _label(session: Session) -> str:
        return f"{session.src_ip}/{session.protocol or 'unknown'}/{session.dst_port or '-'}"

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def summarize(self, ip: str, sessions: dict[str, Session]) -> None:
        complete = []
        for session in sessions.values():
            if session.complete:
                complete.append(session)
            else:
                self.logger.info(
                    "COWRIE -> Incomplete session %s for %s discarded", session.session_id, ip
                )
        if not complete:
            return

        summary = merge_sessions(ip, complete)
        result = classify_session(summary, self.server_id, self.sanitize)
        await self._report(self.honeypot, summary.context, result.categories, result.comment)

        details = "\n".join(result.comment.split("\n")[1:])
        if details:
            self.logger.info("COWRIE -> %s summary:\n%s", ip, details)
        if self.notifier is not None:
            full = session_comment(summary, self.server_id, self.sanitize, full=True)
            body = "\n".join(full.split("\n")[1:])
            self.notifier.notify(
                Severity.INFO,
                f"Cowrie: {ip} on {summary.dst_port}/{summary.protocol}\n{body}",
            )
