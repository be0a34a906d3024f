"""
Data models for abusewatch.

Log records are validated with pydantic. Cowrie records are a tagged union on
``eventid`` so every event type carries exactly the fields it needs; records
with an unknown tag are rejected before validation. Mutable aggregation state
(sessions, summaries) uses plain dataclasses.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class LogRecord(BaseModel):
    """Base for every parsed log line. Unknown keys are dropped."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Cowrie (interactive sessions)
# ---------------------------------------------------------------------------

class CowrieEvent(LogRecord):
    eventid: str
    src_ip: str = Field(min_length=1)
    session: str = Field(min_length=1)
    timestamp: Optional[str] = None


class SessionConnect(CowrieEvent):
    eventid: Literal["cowrie.session.connect"]
    dst_port: Optional[int] = None
    protocol: Optional[str] = None


class LoginAttempt(CowrieEvent):
    eventid: Literal["cowrie.login.success", "cowrie.login.failed"]
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.eventid == "cowrie.login.success"


class ClientVersion(CowrieEvent):
    eventid: Literal["cowrie.client.version"]
    version: Optional[str] = None


class ClientFingerprint(CowrieEvent):
    eventid: Literal["cowrie.client.fingerprint"]
    fingerprint: Optional[str] = None


class CommandInput(CowrieEvent):
    eventid: Literal["cowrie.command.input"]
    input: Optional[str] = None


class FileDownload(CowrieEvent):
    eventid: Literal["cowrie.session.file_download"]
    url: Optional[str] = None
    outfile: Optional[str] = None
    shasum: Optional[str] = None


class FileUpload(CowrieEvent):
    eventid: Literal["cowrie.session.file_upload"]
    filename: Optional[str] = None
    shasum: Optional[str] = None


class TunnelRequest(CowrieEvent):
    eventid: Literal["cowrie.direct-tcpip.request"]
    dst_ip: Optional[str] = None
    dst_port: Optional[int] = None


class SessionClosed(CowrieEvent):
    eventid: Literal["cowrie.session.closed"]
    duration: Optional[float] = None


CowrieRecord = Annotated[
    Union[
        SessionConnect, LoginAttempt, ClientVersion, ClientFingerprint, CommandInput,
        FileDownload, FileUpload, TunnelRequest, SessionClosed,
    ],
    Field(discriminator="eventid"),
]
cowrie_record = TypeAdapter(CowrieRecord)

COWRIE_EVENT_IDS = frozenset({
    "cowrie.session.connect",
    "cowrie.login.success",
    "cowrie.login.failed",
    "cowrie.client.version",
    "cowrie.client.fingerprint",
    "cowrie.command.input",
    "cowrie.session.file_download",
    "cowrie.session.file_upload",
    "cowrie.direct-tcpip.request",
    "cowrie.session.closed",
})


# ---------------------------------------------------------------------------
# Dionaea (service emulation, stateless)
# ---------------------------------------------------------------------------

class DionaeaConnection(LogRecord):
    protocol: Optional[str] = None
    transport: Optional[str] = None


class DionaeaCredentials(LogRecord):
    username: list[str] = []
    password: list[str] = []

    @field_validator("username", "password", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        return [str(value)]


class DionaeaEvent(LogRecord):
    src_ip: str = Field(min_length=1)
    dst_port: int
    timestamp: Optional[str] = None
    connection: DionaeaConnection = DionaeaConnection()
    credentials: Optional[DionaeaCredentials] = None

    @property
    def protocol(self) -> str:
        return self.connection.protocol or "unknown"


# ---------------------------------------------------------------------------
# Honeytrap (raw payload capture)
# ---------------------------------------------------------------------------

class HoneytrapPayload(LogRecord):
    data_hex: str = ""
    length: int = 0


class HoneytrapConnection(LogRecord):
    remote_ip: str = Field(min_length=1)
    local_port: int
    protocol: Optional[str] = None
    payload: HoneytrapPayload = HoneytrapPayload()


class HoneytrapEvent(LogRecord):
    attack_connection: HoneytrapConnection
    timestamp: Optional[str] = Field(default=None, alias="@timestamp")

    def payload_bytes(self) -> bytes:
        try:
            return bytes.fromhex(self.attack_connection.payload.data_hex)
        except ValueError:
            return b""


# ---------------------------------------------------------------------------
# Aggregation state
# ---------------------------------------------------------------------------

@dataclass
class AttackContext:
    """The fields every report needs besides categories and comment."""
    src_ip: Optional[str]
    dst_port: Optional[int] = None
    protocol: Optional[str] = None
    timestamp: Optional[str] = None
    transport: Optional[str] = None   # tcp | udp, when the honeypot logs it


@dataclass
class Session:
    """One attacker connection, rebuilt from Cowrie events."""
    session_id: str
    src_ip: str
    dst_port: Optional[int] = None
    protocol: Optional[str] = None
    timestamp: Optional[str] = None    # first seen
    last_seen: Optional[str] = None
    credentials: dict[str, None] = field(default_factory=dict)   # ordered set of "user:pass"
    commands: list[str] = field(default_factory=list)
    client_version: Optional[str] = None
    fingerprints: list[str] = field(default_factory=list)
    download_urls: list[str] = field(default_factory=list)
    artifact_hashes: list[str] = field(default_factory=list)
    uploads: list[str] = field(default_factory=list)
    tunnels: list[str] = field(default_factory=list)
    closed: bool = False

    @property
    def complete(self) -> bool:
        return bool(self.src_ip and self.dst_port and self.protocol)


@dataclass
class AttackSummary:
    """Everything one attacker did within a flush window."""
    src_ip: str
    dst_port: Optional[int] = None
    protocol: Optional[str] = None
    timestamp: Optional[str] = None
    credentials: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    client_version: Optional[str] = None
    fingerprints: list[str] = field(default_factory=list)
    download_urls: list[str] = field(default_factory=list)
    artifact_hashes: list[str] = field(default_factory=list)
    uploads: list[str] = field(default_factory=list)
    tunnels: list[str] = field(default_factory=list)
    session_count: int = 0

    @property
    def context(self) -> AttackContext:
        return AttackContext(
            src_ip=self.src_ip, dst_port=self.dst_port,
            protocol=self.protocol, timestamp=self.timestamp,
        )


@dataclass(frozen=True)
class Classification:
    categories: frozenset[int]
    comment: str

    @property
    def category_string(self) -> str:
        return format_categories(self.categories)


def format_categories(categories: Any) -> str:
    """Comma-joined numeric codes, as the report API expects them."""
    return ",".join(str(c) for c in sorted(parse_categories(categories)))


def parse_categories(categories: Any) -> frozenset[int]:
    """Accept ``"15,18"``, ``[15, 18]`` or ``{"15", 18}``; ignore junk entries."""
    if isinstance(categories, str):
        categories = categories.split(",")
    codes: set[int] = set()
    for code in categories:
        code = str(code).strip()
        if code.isdigit():
            codes.add(int(code))
    return frozenset(codes)
