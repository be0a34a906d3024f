"""Masks the operator's own IP addresses in text that leaves the host."""
from __future__ import annotations

import re
from typing import Iterable, Optional

PLACEHOLDER = "[SOME-IP]"

# an address must not be a fragment of a longer one (1.2.3.4 inside 11.2.3.45)
IPV4_BOUNDARY = r"(?<![0-9])(?<![0-9]\.){}(?![0-9])(?!\.[0-9])"
IPV6_BOUNDARY = r"(?<![0-9A-Fa-f:]){}(?![0-9A-Fa-f])(?!:[0-9A-Fa-f])"


def _bounded(address: str) -> str:
    template = IPV6_BOUNDARY if ":" in address else IPV4_BOUNDARY
    return template.format(re.escape(address))


class IpSanitizer:
    """Replaces every known own address with ``PLACEHOLDER``.

    The pattern is rebuilt whenever the address list changes (dynamic IPs are
    refreshed periodically). A trailing port (``1.2.3.4:22``) or sentence dot
    does not stop a match.
    """

    def __init__(self, addresses: Iterable[str] = ()) -> None:
        self._pattern: Optional[re.Pattern[str]] = None
        self.update(addresses)

    def update(self, addresses: Iterable[str]) -> None:
        # longest first so an IPv6 address is not half-replaced by a prefix match
        unique = sorted({a for a in addresses if a}, key=len, reverse=True)
        if not unique:
            self._pattern = None
            return
        self._pattern = re.compile("|".join(_bounded(a) for a in unique))

    def __call__(self, text: object) -> str:
        if text is None:
            return ""
        text = str(text)
        if self._pattern is None:
            return text
        return self._pattern.sub(PLACEHOLDER, text)
