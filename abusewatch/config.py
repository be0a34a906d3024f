"""
Runtime configuration for abusewatch.

Everything comes from environment variables and is validated into a single
``Settings`` object at startup. Any problem raises ``ConfigError``; the
process must not start with a bad configuration.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from abusewatch.errors import ConfigError

MIN_REPORT_COOLDOWN = 15 * 60  # seconds
KNOWN_HONEYPOTS = ("cowrie", "dionaea", "honeytrap")
DEVELOPMENT_SERVER_ID = "development"


class Settings(BaseModel):
    """Validated configuration. Durations are in seconds."""

    model_config = ConfigDict(validate_default=True)

    server_id: Optional[str] = None
    abuseipdb_api_key: str
    abuseipdb_base_url: str = "https://api.abuseipdb.com/api/v2"

    honeypots: list[str] = list(KNOWN_HONEYPOTS)
    cowrie_log_file: Path = Path("~/tpotce/data/cowrie/log/cowrie.json")
    dionaea_log_file: Path = Path("~/tpotce/data/dionaea/log/dionaea.json")
    honeytrap_log_file: Path = Path("~/tpotce/data/honeytrap/log/attackers.json")

    cache_file: Path = Path("./tmp/abusewatch.cache")
    bulk_buffer_file: Path = Path("./tmp/bulk-report-buffer.csv")
    history_db: Path = Path("./tmp/history.db")

    report_cooldown: float = 6 * 60 * 60
    cowrie_report_delay: Optional[float] = None
    honeytrap_flush_delay: Optional[float] = None
    poll_interval: float = 1.0

    ip_assignment: str = "dynamic"
    ip_refresh_interval: float = 6 * 60 * 60
    ipv6_support: bool = True
    ip_lookup_url: str = "https://api.sefinek.net/api/v2/ip"

    discord_webhook_enabled: bool = False
    discord_webhook_url: str = ""
    discord_webhook_username: Optional[str] = None

    status_api_enabled: bool = False
    status_api_host: str = "127.0.0.1"
    status_api_port: int = 8000

    shutdown_timeout: float = 10.0
    extended_logs: bool = False

    @field_validator("abuseipdb_api_key")
    @classmethod
    def _require_api_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("ABUSEIPDB_API_KEY is required")
        return value

    @field_validator("report_cooldown")
    @classmethod
    def _check_cooldown(cls, value: float) -> float:
        if value < MIN_REPORT_COOLDOWN:
            raise ValueError(
                f"IP_REPORT_COOLDOWN must be at least {MIN_REPORT_COOLDOWN}s (got {value:g}s)"
            )
        return value

    @field_validator("honeypots")
    @classmethod
    def _check_honeypots(cls, value: list[str]) -> list[str]:
        names = [v.strip().lower() for v in value if v.strip()]
        unknown = [n for n in names if n not in KNOWN_HONEYPOTS]
        if unknown:
            raise ValueError(f"unknown honeypot(s): {', '.join(unknown)}")
        return names

    @field_validator("ip_assignment")
    @classmethod
    def _check_ip_assignment(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("static", "dynamic"):
            raise ValueError("IP_ASSIGNMENT must be 'static' or 'dynamic'")
        return value

    @field_validator("cowrie_log_file", "dionaea_log_file", "honeytrap_log_file",
                     "cache_file", "bulk_buffer_file", "history_db")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()

    @model_validator(mode="after")
    def _check_webhook(self) -> "Settings":
        if self.discord_webhook_enabled and not self.discord_webhook_url:
            raise ValueError("DISCORD_WEBHOOK_ENABLED is set but DISCORD_WEBHOOK_URL is empty")
        return self

    @property
    def development(self) -> bool:
        return self.server_id == DEVELOPMENT_SERVER_ID

    @property
    def cowrie_delay(self) -> float:
        if self.cowrie_report_delay is not None:
            return self.cowrie_report_delay
        return 30.0 if self.development else 10 * 60.0

    @property
    def honeytrap_delay(self) -> float:
        if self.honeytrap_flush_delay is not None:
            return self.honeytrap_flush_delay
        return 30.0 if self.development else 5 * 60.0


# env var -> Settings field
ENV_MAP: dict[str, str] = {
    "SERVER_ID":                "server_id",
    "ABUSEIPDB_API_KEY":        "abuseipdb_api_key",
    "ABUSEIPDB_BASE_URL":       "abuseipdb_base_url",
    "HONEYPOTS":                "honeypots",
    "COWRIE_LOG_FILE":          "cowrie_log_file",
    "DIONAEA_LOG_FILE":         "dionaea_log_file",
    "HONEYTRAP_LOG_FILE":       "honeytrap_log_file",
    "CACHE_FILE":               "cache_file",
    "BULK_BUFFER_FILE":         "bulk_buffer_file",
    "HISTORY_DB":               "history_db",
    "IP_REPORT_COOLDOWN":       "report_cooldown",
    "COWRIE_REPORT_DELAY":      "cowrie_report_delay",
    "HONEYTRAP_FLUSH_DELAY":    "honeytrap_flush_delay",
    "LOG_POLL_INTERVAL":        "poll_interval",
    "IP_ASSIGNMENT":            "ip_assignment",
    "IP_REFRESH_INTERVAL":      "ip_refresh_interval",
    "IPV6_SUPPORT":             "ipv6_support",
    "IP_LOOKUP_URL":            "ip_lookup_url",
    "DISCORD_WEBHOOK_ENABLED":  "discord_webhook_enabled",
    "DISCORD_WEBHOOK_URL":      "discord_webhook_url",
    "DISCORD_WEBHOOK_USERNAME": "discord_webhook_username",
    "STATUS_API_ENABLED":       "status_api_enabled",
    "STATUS_API_HOST":          "status_api_host",
    "STATUS_API_PORT":          "status_api_port",
    "SHUTDOWN_TIMEOUT":         "shutdown_timeout",
    "EXTENDED_LOGS":            "extended_logs",
}


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build ``Settings`` from environment variables.

    Unset or empty variables fall back to the defaults above. ``HONEYPOTS`` is
    a comma-separated list.
    """
    if environ is None:
        environ = os.environ

    values: dict[str, object] = {}
    for env_name, field_name in ENV_MAP.items():
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        if field_name == "honeypots":
            values[field_name] = raw.split(",")
        else:
            values[field_name] = raw.strip()
    values.setdefault("abuseipdb_api_key", "")

    try:
        return Settings(**values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc
