"""
Classifier – maps what an attacker did to AbuseIPDB category codes and a
report comment.

Three policies, one per honeypot family:
  interactive   – Cowrie session summaries, categories built up from signals
  service probe – Dionaea events, fixed template per emulated protocol
  payload       – Honeytrap raw payloads, ordered pattern rules (first wins)

All comment text goes through the IP sanitizer. Nothing here has side effects.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from abusewatch.models import AttackSummary, Classification, DionaeaEvent

# ---------------------------------------------------------------------------
# AbuseIPDB category codes
# ---------------------------------------------------------------------------

FTP_BRUTE_FORCE = 5
PORT_SCAN = 14
HACKING = 15
BRUTE_FORCE = 18
BAD_WEB_BOT = 19
EXPLOITED_HOST = 20
WEB_APP_ATTACK = 21
SSH = 22
IOT_TARGETED = 23

INTERACTIVE_PROTOCOL_CATEGORIES: dict[str, int] = {
    "ssh":    SSH,
    "telnet": IOT_TARGETED,
}

CREDS_LIMIT = 900          # characters of credential list kept in a report comment
LARGE_PAYLOAD = 1000       # bytes
HEADER_PRIORITY = ("user-agent", "accept", "accept-language", "accept-encoding")
SUSPICIOUS_TOKENS = re.compile(r"(admin|root|wget|curl|bash|eval|php|bin)")
HTTP_VERSION = re.compile(r"HTTP/(0\.9|1\.0|1\.1|2|3)", re.IGNORECASE)
SSH_BANNER = re.compile(r"\bssh\b")

Sanitizer = Callable[[object], str]


def _identity(text: object) -> str:
    return "" if text is None else str(text)


def header(server_id: Optional[str]) -> str:
    return f"Honeypot [{server_id}]" if server_id else "Honeypot hit"


# ---------------------------------------------------------------------------
# Interactive sessions (Cowrie)
# ---------------------------------------------------------------------------

def session_categories(summary: AttackSummary) -> frozenset[int]:
    logins = len(summary.credentials)
    commands = len(summary.commands)
    if not logins and not commands:
        return frozenset({PORT_SCAN})

    categories = {HACKING}
    if logins >= 2:
        categories.add(BRUTE_FORCE)
    proto_code = INTERACTIVE_PROTOCOL_CATEGORIES.get((summary.protocol or "").lower())
    if proto_code is not None:
        categories.add(proto_code)
    if commands:
        categories.add(EXPLOITED_HOST)
    return frozenset(categories)


def session_comment(
    summary: AttackSummary,
    server_id: Optional[str] = None,
    sanitize: Sanitizer = _identity,
    full: bool = False,
) -> str:
    """Multi-line narrative. ``full`` keeps the whole credential list."""
    creds = summary.credentials
    logins = len(creds)
    cmd_count = len(summary.commands)
    proto = (summary.protocol or "unknown").upper()
    kind = "Brute-force attack" if logins else "Unauthorized connection attempt"

    lines = [f"{header(server_id)}: {kind} detected on {summary.dst_port}/{proto}"]
    if logins == 1:
        lines.append(f"• Credential used: {creds[0]}")
    elif logins > 1:
        joined = ", ".join(creds)
        if not full and len(joined) > CREDS_LIMIT:
            joined = re.sub(r",[^,]*$", "", joined[:CREDS_LIMIT]) + "..."
        lines.append(f"• Credentials: {joined}")

    if logins:
        lines.append(f"• Number of login attempts: {logins}")
    if cmd_count:
        lines.append(f"• {cmd_count} command(s) were executed during the session")
    if summary.session_count > 1:
        lines.append(f"• Sessions: {summary.session_count}")
    if summary.client_version:
        lines.append(f"• Client: {summary.client_version}")
    if summary.download_urls:
        lines.append(f"• Suspicious file URLs: {', '.join(summary.download_urls)}")
    if summary.artifact_hashes:
        lines.append(f"• File hashes (SHA-256): {', '.join(summary.artifact_hashes)}")
    if summary.fingerprints:
        lines.append(f"• SSH key fingerprints: {', '.join(summary.fingerprints)}")
    if summary.uploads:
        lines.append(f"• Uploaded files: {', '.join(summary.uploads)}")
    if summary.tunnels:
        lines.append(f"• TCP tunnels: {', '.join(summary.tunnels)}")

    return sanitize("\n".join(lines))


def classify_session(
    summary: AttackSummary,
    server_id: Optional[str] = None,
    sanitize: Sanitizer = _identity,
) -> Classification:
    return Classification(
        categories=session_categories(summary),
        comment=session_comment(summary, server_id, sanitize),
    )


# ---------------------------------------------------------------------------
# Service probes (Dionaea)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeRule:
    categories: frozenset[int]
    template: str   # formatted with dpt, proto, PROTO


def _rule(codes: tuple[int, ...], template: str) -> ProbeRule:
    return ProbeRule(frozenset(codes), template)


DEFAULT_PROBE_RULES: dict[str, ProbeRule] = {
    "httpd": _rule((WEB_APP_ATTACK, BAD_WEB_BOT), "Incoming HTTP traffic on port {dpt}"),
    "ftp":   _rule((FTP_BRUTE_FORCE, BRUTE_FORCE), "FTP brute-force or probing on port {dpt}"),
    "smbd":  _rule((IOT_TARGETED,), "SMB traffic on port {dpt}"),
    "mysql": _rule((BRUTE_FORCE,), "MySQL brute-force or probing on port {dpt}"),
    "tftp":  _rule((EXPLOITED_HOST,), "TFTP protocol traffic on {dpt}"),
    "upnp":  _rule((IOT_TARGETED,), "Unauthorized {PROTO} traffic on {dpt}"),
    "mqtt":  _rule((IOT_TARGETED,), "Unauthorized {PROTO} traffic on {dpt}"),
}
FALLBACK_PROBE_RULE = _rule((PORT_SCAN,), "Unauthorized traffic on {dpt}/{proto}")


def _mssql(event: DionaeaEvent, sanitize: Sanitizer) -> tuple[frozenset[int], str]:
    creds = event.credentials
    username = creds.username[0] if creds and creds.username else None
    password = creds.password[0] if creds and creds.password else None
    dpt = event.dst_port
    if username and not password:
        return frozenset({BRUTE_FORCE}), (
            f"MSSQL traffic (on {dpt}) with username {sanitize(username)} and empty password"
        )
    if username and password:
        return frozenset({BRUTE_FORCE}), (
            f"MSSQL traffic (on {dpt}) with credentials {sanitize(username)}:{sanitize(password)}"
        )
    return frozenset({PORT_SCAN}), f"MSSQL traffic (on {dpt}) without login credentials"


def classify_probe(
    event: DionaeaEvent,
    server_id: Optional[str] = None,
    sanitize: Sanitizer = _identity,
    rules: Optional[Mapping[str, ProbeRule]] = None,
) -> Classification:
    """One Dionaea event -> one classification; no session state involved."""
    proto = event.protocol
    if proto == "mssqld":
        categories, text = _mssql(event, sanitize)
    else:
        rule = (DEFAULT_PROBE_RULES if rules is None else rules).get(proto, FALLBACK_PROBE_RULE)
        categories = rule.categories
        text = rule.template.format(dpt=event.dst_port, proto=proto, PROTO=proto.upper())
    return Classification(categories, sanitize(f"{header(server_id)}: {text}"))


# ---------------------------------------------------------------------------
# Raw payloads (Honeytrap)
# ---------------------------------------------------------------------------

def _capitalize_header(name: str) -> str:
    return "-".join(w[:1].upper() + w[1:] for w in name.split("-"))


def parse_http_request(text: str, dpt: object, sanitize: Sanitizer = _identity) -> str:
    """Condense a raw HTTP request into request line, key headers and POST body."""
    lines = re.sub(r"\r\n|\r", "\n", text).strip().split("\n")
    request_raw = lines.pop(0).strip() if lines else ""
    match = re.search(r"HTTP/[0-9.]+", request_raw, re.IGNORECASE)
    protocol = match.group(0).upper() if match else "HTTP"
    request_line = re.sub(r"\s*HTTP/[0-9.]+$", "", request_raw, flags=re.IGNORECASE)

    headers: dict[str, str] = {}
    body: list[str] = []
    in_body = False
    for line in lines:
        if in_body:
            body.append(line)
            continue
        if not line.strip():
            in_body = True
            continue
        key, sep, value = line.partition(":")
        if sep and key.strip().lower() != "host":
            headers[key.strip().lower()] = value.strip()

    output = f"{protocol} request on {dpt}\n\n{sanitize(request_line)}"
    formatted = "\n".join(
        f"{_capitalize_header(h)}: {sanitize(headers[h])}" for h in HEADER_PRIORITY if headers.get(h)
    )
    if formatted:
        output += f"\n{formatted}"
    if request_raw.startswith("POST"):
        body_text = "\n".join(body).strip()
        if body_text:
            output += f"\nPOST Data: {sanitize(body_text)}"
    return output


def _is_tls_handshake(payload: bytes) -> bool:
    # record type 0x16 (handshake), major version 3
    return len(payload) >= 3 and payload[0] == 0x16 and payload[1] == 0x03 and payload[2] <= 0x04


def classify_payload(
    payload: bytes,
    dpt: object,
    proto: Optional[str],
    length: Optional[int] = None,
    sanitize: Sanitizer = _identity,
) -> Classification:
    """Ordered rules over the decoded payload. The comment has no header;
    the Honeytrap watcher adds it once per IP when it builds the port summary.
    """
    proto = proto or "unknown"
    size = len(payload) if length is None else length
    text = payload.decode("utf-8", errors="replace")
    simplified = re.sub(r"\s+", " ", text).lower()
    where = f"{dpt}/{proto}"

    if size == 0:
        return Classification(frozenset({PORT_SCAN}), f"Empty payload on {where} (likely service probe)")
    if size > LARGE_PAYLOAD:
        return Classification(frozenset({HACKING}), f"Large payload ({size} bytes) on {where}")
    if _is_tls_handshake(payload):
        return Classification(frozenset({PORT_SCAN}), f"TLS handshake on {where} ({size} bytes of payload)")
    if HTTP_VERSION.search(simplified):
        return Classification(frozenset({WEB_APP_ATTACK}), parse_http_request(text, dpt, sanitize))
    if SSH_BANNER.search(simplified):
        return Classification(
            frozenset({BRUTE_FORCE, SSH}), f"SSH handshake/banner on {where} ({size} bytes of payload)"
        )
    if "cookie:" in simplified:
        return Classification(frozenset({WEB_APP_ATTACK, HACKING}), f"HTTP header with cookie on {where}")
    if SUSPICIOUS_TOKENS.search(simplified):
        return Classification(
            frozenset({HACKING}), f"Suspicious payload on {where} (possible command injection)"
        )
    return Classification(frozenset({PORT_SCAN}), f"Unauthorized traffic on {where} ({size} bytes of payload)")
