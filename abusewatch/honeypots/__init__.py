"""
Per-honeypot watchers.

cowrie    – interactive SSH/Telnet sessions, folded per IP
dionaea   – service-emulation probes, reported one by one
honeytrap – raw payloads, folded per IP into a top-ports summary
"""
from __future__ import annotations

from abusewatch.honeypots.base import BufferedWatcher, IpBuffer, Watcher
from abusewatch.honeypots.cowrie import CowrieWatcher
from abusewatch.honeypots.dionaea import DionaeaWatcher
from abusewatch.honeypots.honeytrap import HoneytrapWatcher

__all__ = [
    "BufferedWatcher", "CowrieWatcher", "DionaeaWatcher", "HoneytrapWatcher",
    "IpBuffer", "Watcher",
]
