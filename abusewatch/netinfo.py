"""
Own-address discovery and special-purpose address filtering.

The dispatcher must never report the host it runs on, so the public IPv4/IPv6
addresses are looked up through an echo service and merged with the
addresses of the local interfaces.
"""
from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Callable, Iterable, Optional

import httpx
import psutil

logger = logging.getLogger("abusewatch.netinfo")

# Ranges the ipaddress module doesn't flag as private on every Python version.
_EXTRA_SPECIAL = [
    ipaddress.ip_network("100.64.0.0/10"),   # carrier-grade NAT
    ipaddress.ip_network("192.0.0.0/24"),    # IETF protocol assignments
    ipaddress.ip_network("192.0.2.0/24"),    # TEST-NET-1
    ipaddress.ip_network("198.18.0.0/15"),   # benchmarking
    ipaddress.ip_network("198.51.100.0/24"), # TEST-NET-2
    ipaddress.ip_network("203.0.113.0/24"),  # TEST-NET-3
    ipaddress.ip_network("2001:db8::/32"),   # IPv6 documentation
]

IPV6_GIVE_UP_AFTER = 6


def is_special_purpose(ip: str) -> bool:
    """True for addresses that can't belong to a remote attacker.

    Unparseable strings count as special so they are never reported.
    """
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if (addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_multicast
            or addr.is_reserved or addr.is_unspecified):
        return True
    return any(addr in net for net in _EXTRA_SPECIAL if net.version == addr.version)


def local_interface_addresses() -> list[str]:
    """Globally routable addresses bound to this machine's interfaces."""
    found: list[str] = []
    for addrs in psutil.net_if_addrs().values():
        for snic in addrs:
            if snic.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            address = snic.address.split("%", 1)[0]
            if address and not is_special_purpose(address):
                found.append(address)
    return found


class OwnAddresses:
    """Set of addresses that belong to this host."""

    def __init__(
        self,
        lookup_url: str,
        ipv6_support: bool = True,
        timeout: float = 15.0,
        on_change: Optional[Callable[[list[str]], None]] = None,
        transport_factory: Optional[Callable[[str], httpx.AsyncBaseTransport]] = None,
        interfaces: Callable[[], Iterable[str]] = local_interface_addresses,
    ) -> None:
        self._lookup_url = lookup_url
        self._ipv6_support = ipv6_support
        self._timeout = timeout
        self._on_change = on_change
        self._transport_factory = transport_factory or _bound_transport
        self._interfaces = interfaces
        self._addresses: set[str] = set()
        self._ipv6_failures = 0
        self._ipv6_disabled = False

    def get(self) -> list[str]:
        return sorted(self._addresses)

    def __contains__(self, ip: object) -> bool:
        return ip in self._addresses

    async def refresh(self) -> list[str]:
        before = set(self._addresses)

        ipv4 = await self._fetch(family=4)
        if ipv4:
            self._addresses.add(ipv4)
        if self._ipv6_support and not self._ipv6_disabled:
            ipv6 = await self._fetch(family=6)
            if ipv6:
                if self._ipv6_failures:
                    logger.info("IPv6 lookup works again after %d failed attempt(s)", self._ipv6_failures)
                self._ipv6_failures = 0
                self._addresses.add(ipv6)
            else:
                self._ipv6_failures += 1
                if self._ipv6_failures >= IPV6_GIVE_UP_AFTER:
                    self._ipv6_disabled = True
                    logger.warning(
                        "No IPv6 address after %d attempts; IPv6 lookups disabled.", self._ipv6_failures
                    )

        try:
            self._addresses.update(self._interfaces())
        except OSError as exc:
            logger.warning("Could not list local interfaces: %s", exc)

        if self._addresses != before and self._on_change is not None:
            self._on_change(self.get())
        return self.get()

    async def _fetch(self, family: int) -> Optional[str]:
        transport = self._transport_factory("0.0.0.0" if family == 4 else "::")
        try:
            async with httpx.AsyncClient(transport=transport, timeout=self._timeout) as client:
                resp = await client.get(self._lookup_url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Error fetching IPv%d address: %s", family, exc)
            return None

        if isinstance(data, dict) and data.get("success") and data.get("message"):
            return str(data["message"]).strip()
        logger.warning("Unexpected IP lookup response: %s", data)
        return None


def _bound_transport(local_address: str) -> httpx.AsyncBaseTransport:
    # binding to the unspecified address of a family forces that family
    return httpx.AsyncHTTPTransport(local_address=local_address)
