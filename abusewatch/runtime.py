"""
Runtime – builds every component from ``Settings`` and owns the lifecycle.

Startup order matters: the cooldown cache and the bulk buffer left by the
previous run are loaded and the buffer is sent before any watcher attaches,
so fresh events never queue up behind stale ones.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from abusewatch import __version__
from abusewatch.abuseipdb import AbuseIPDBClient
from abusewatch.bulk import BulkBuffer
from abusewatch.cache import DedupCache
from abusewatch.config import Settings
from abusewatch.dispatcher import Dispatcher
from abusewatch.history import ReportHistory
from abusewatch.honeypots import CowrieWatcher, DionaeaWatcher, HoneytrapWatcher, Watcher
from abusewatch.netinfo import OwnAddresses
from abusewatch.notify import Notifier, Severity
from abusewatch.ratelimit import RateLimiter
from abusewatch.sanitizer import IpSanitizer
from abusewatch.summaries import summary_loop

logger = logging.getLogger("abusewatch.runtime")

TICK_INTERVAL = 60.0  # seconds between dispatcher housekeeping runs


class Runtime:
    def __init__(
        self,
        settings: Settings,
        client: Optional[AbuseIPDBClient] = None,
        notifier: Optional[Notifier] = None,
        own_ips: Optional[OwnAddresses] = None,
    ) -> None:
        self.settings = settings
        self.sanitizer = IpSanitizer()
        self.own_ips = own_ips or OwnAddresses(
            settings.ip_lookup_url,
            ipv6_support=settings.ipv6_support,
            on_change=self.sanitizer.update,
        )
        self.client = client or AbuseIPDBClient(settings.abuseipdb_api_key, settings.abuseipdb_base_url)
        self.notifier = notifier or Notifier(
            settings.discord_webhook_url if settings.discord_webhook_enabled else "",
            server_id=settings.server_id,
            username=settings.discord_webhook_username,
        )
        self.cache = DedupCache(settings.cache_file, settings.report_cooldown)
        self.buffer = BulkBuffer(settings.bulk_buffer_file)
        self.limiter = RateLimiter()
        self.history = ReportHistory(settings.history_db)
        self.dispatcher = Dispatcher(
            self.client, self.cache, self.buffer, self.limiter,
            own_ips=self.own_ips,
            sanitize=self.sanitizer,
            notifier=self.notifier,
            history=self.history,
        )
        self.watchers: list[Watcher] = self._build_watchers()
        self._tasks: list[asyncio.Task] = []
        self._api_server = None

    def _build_watchers(self) -> list[Watcher]:
        s = self.settings
        report = self.dispatcher.report_ip
        watchers: list[Watcher] = []
        for name in s.honeypots:
            if name == "cowrie":
                watchers.append(CowrieWatcher(
                    report, s.cowrie_log_file, s.poll_interval, s.cowrie_delay,
                    server_id=s.server_id, sanitize=self.sanitizer, notifier=self.notifier,
                ))
            elif name == "dionaea":
                watchers.append(DionaeaWatcher(
                    report, s.dionaea_log_file, s.poll_interval,
                    server_id=s.server_id, sanitize=self.sanitizer,
                ))
            elif name == "honeytrap":
                watchers.append(HoneytrapWatcher(
                    report, s.honeytrap_log_file, s.poll_interval, s.honeytrap_delay,
                    server_id=s.server_id, sanitize=self.sanitizer,
                ))
        return watchers

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info("abusewatch %s starting (server id: %s)", __version__, self.settings.server_id or "-")
        await self.history.init_db()

        self.cache.load()
        self.buffer.load()

        logger.info("Fetching this host's public IP addresses…")
        addresses = await self.own_ips.refresh()
        self.sanitizer.update(addresses)
        logger.info("Fetched %d of your IP addresses", len(addresses))

        await self.dispatcher.recover()

        for watcher in self.watchers:
            self._spawn(self._watch(watcher), name=f"watch-{watcher.honeypot.lower()}")
        self._spawn(self._tick_loop(), name="dispatcher-tick")
        if self.settings.ip_assignment == "dynamic":
            self._spawn(self._ip_refresh_loop(), name="ip-refresh")
        if self.notifier.enabled:
            self._spawn(summary_loop(self.history, self.notifier), name="daily-summary")
        if self.settings.status_api_enabled:
            self._start_api()

        if not self.settings.development:
            self.notifier.notify(Severity.INFO, f"abusewatch {__version__} has started on `{self.settings.server_id}`")
        logger.info("abusewatch started with %d watcher(s).", len(self.watchers))

    async def shutdown(self) -> None:
        logger.info("Shutting down; flushing pending attack data…")
        for watcher in self.watchers:
            watcher.stop()
        if self._api_server is not None:
            self._api_server.should_exit = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        try:
            await asyncio.wait_for(self.flush_watchers(), timeout=self.settings.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error("Flushing pending IP buffers timed out after %.0fs", self.settings.shutdown_timeout)

        self.dispatcher.save()
        await self.notifier.aclose()
        await self.client.aclose()
        logger.info("Shutdown complete.")

    async def flush_watchers(self) -> None:
        for watcher in self.watchers:
            await watcher.flush()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro, name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

    async def _watch(self, watcher: Watcher) -> None:
        try:
            await watcher.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s watcher stopped: %s", watcher.honeypot, exc)
            self.notifier.notify(Severity.ERROR, f"{watcher.honeypot} watcher stopped: {exc}")

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(TICK_INTERVAL)
            try:
                await self.dispatcher.tick()
            except Exception as exc:
                logger.exception("Dispatcher housekeeping error: %s", exc)

    async def _ip_refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.ip_refresh_interval)
            try:
                await self.own_ips.refresh()
            except Exception as exc:
                logger.exception("IP refresh failed: %s", exc)

    def _start_api(self) -> None:
        import uvicorn

        from abusewatch.api import create_app

        config = uvicorn.Config(
            create_app(self),
            host=self.settings.status_api_host,
            port=self.settings.status_api_port,
            log_level="warning",
        )
        self._api_server = uvicorn.Server(config)
        self._spawn(self._api_server.serve(), name="status-api")
        logger.info("Status API on http://%s:%d", self.settings.status_api_host, self.settings.status_api_port)
