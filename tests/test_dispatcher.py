from __future__ import annotations

import asyncio
import csv
import tempfile
import unittest
from pathlib import Path

from abusewatch.bulk import BulkBuffer
from abusewatch.cache import DedupCache
from abusewatch.dispatcher import Dispatcher, Outcome
from abusewatch.models import AttackContext
from abusewatch.ratelimit import RateLimiter
from abusewatch.sanitizer import IpSanitizer

from fakes import FakeAbuseIPDB, FakeClock

COOLDOWN = 6 * 60 * 60
ATTACKER_A = "45.13.22.9"
ATTACKER_B = "91.240.118.7"
OWN_IP = "185.199.1.10"


class DispatcherTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.clock = FakeClock(1_700_000_000.0)
        self.api = FakeAbuseIPDB()
        self.client = self.api.client()
        self.cache = DedupCache(self.tmp / "cache.txt", COOLDOWN, clock=self.clock)
        self.buffer = BulkBuffer(self.tmp / "buffer.csv", clock=self.clock)
        self.limiter = RateLimiter(clock=self.clock)
        self.dispatcher = Dispatcher(
            self.client, self.cache, self.buffer, self.limiter,
            own_ips={OWN_IP},
            sanitize=IpSanitizer([OWN_IP]),
            clock=self.clock,
        )

    async def asyncTearDown(self) -> None:
        await self.client.aclose()
        self._tmp.cleanup()

    def ctx(self, ip: str, **kw) -> AttackContext:
        kw.setdefault("dst_port", 22)
        kw.setdefault("protocol", "ssh")
        kw.setdefault("timestamp", "2023-11-14T22:13:20.123456Z")
        return AttackContext(src_ip=ip, **kw)


class TestDirectReporting(DispatcherTestCase):
    async def test_report_is_submitted_and_cached(self) -> None:
        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), {15, 18}, "brute force")
        self.assertEqual(outcome, Outcome.REPORTED)
        self.assertEqual(self.api.reported_ips, [ATTACKER_A])
        sent = self.api.reports[0]
        self.assertEqual(sent["categories"], "15,18")
        self.assertEqual(sent["timestamp"], "2023-11-14T22:13:20Z")
        self.assertIn(ATTACKER_A, self.cache)
        self.assertIn(ATTACKER_A, self.cache.path.read_text())

    async def test_second_report_within_cooldown_is_dropped(self) -> None:
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "first")
        self.clock.advance(60)
        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "second")
        self.assertEqual(outcome, Outcome.COOLDOWN)
        self.assertEqual(len(self.api.reports), 1)

    async def test_reportable_again_once_cooldown_expires(self) -> None:
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "first")
        self.clock.advance(COOLDOWN - 1)
        self.assertEqual(
            await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "early"),
            Outcome.COOLDOWN,
        )
        self.clock.advance(1)
        self.assertEqual(
            await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "again"),
            Outcome.REPORTED,
        )
        self.assertEqual(len(self.api.reports), 2)

    async def test_own_and_special_addresses_are_never_reported(self) -> None:
        for ip, expected in ((OWN_IP, Outcome.OWN_IP), ("127.0.0.1", Outcome.SPECIAL_IP),
                             ("10.0.0.5", Outcome.SPECIAL_IP), ("", Outcome.MISSING_IP)):
            outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ip), "15", "x")
            self.assertEqual(outcome, expected)
        self.assertEqual(self.api.reports, [])
        self.assertEqual(len(self.cache), 0)
        self.assertFalse(self.cache.path.exists())

    async def test_udp_traffic_is_not_reported(self) -> None:
        outcome = await self.dispatcher.report_ip(
            "DIONAEA", self.ctx(ATTACKER_A, protocol="SIP", transport="udp"), "14", "udp probe"
        )
        self.assertEqual(outcome, Outcome.CONNECTIONLESS)
        outcome = await self.dispatcher.report_ip("HONEYTRAP", self.ctx(ATTACKER_A, protocol="udp"), "14", "x")
        self.assertEqual(outcome, Outcome.CONNECTIONLESS)
        self.assertEqual(self.api.reports, [])

    async def test_own_ip_is_masked_in_comment(self) -> None:
        await self.dispatcher.report_ip("HONEYTRAP", self.ctx(ATTACKER_A), "21", f"GET http://{OWN_IP}/")
        self.assertEqual(self.api.reports[0]["comment"], "GET http://[SOME-IP]/")

    async def test_other_failures_are_dropped_without_retry(self) -> None:
        self.api.report_status = 422
        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "x")
        self.assertEqual(outcome, Outcome.FAILED)
        self.assertFalse(self.limiter.is_limited)
        self.assertEqual(len(self.buffer), 0)
        self.assertNotIn(ATTACKER_A, self.cache)

    async def test_comment_is_capped(self) -> None:
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "x" * 5000)
        self.assertEqual(len(self.api.reports[0]["comment"]), 1024)


class TestRateLimitBuffering(DispatcherTestCase):
    async def test_quota_exceeded_switches_to_buffering(self) -> None:
        self.api.report_status = 429
        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "first")
        self.assertEqual(outcome, Outcome.BUFFERED)
        self.assertTrue(self.limiter.is_limited)
        self.assertIn(ATTACKER_A, self.buffer)
        self.assertTrue(self.cache.is_reported_recently(ATTACKER_A))

        outcome = await self.dispatcher.report_ip(
            "DIONAEA", self.ctx(ATTACKER_B, timestamp="2023-11-15T01:02:03.456Z"), "18", "mssql"
        )
        self.assertEqual(outcome, Outcome.BUFFERED)
        # only the first attempt reached the API
        self.assertEqual(self.api.reported_ips, [ATTACKER_A])

        with self.buffer.path.open(newline="") as fh:
            rows = list(csv.reader(fh))
        self.assertEqual(rows[0], ["IP", "Categories", "ReportDate", "Comment"])
        b_rows = [r for r in rows[1:] if r[0] == ATTACKER_B]
        self.assertEqual(len(b_rows), 1)
        self.assertEqual(b_rows[0][2], "2023-11-15T01:02:03Z")

    async def test_buffered_ip_is_first_write_wins(self) -> None:
        self.api.report_status = 429
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "original")
        self.assertEqual(
            await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "18", "later"),
            Outcome.COOLDOWN,
        )
        # short cooldown runs out while the daily limit is still active
        self.cache.cooldown = 900
        self.clock.advance(901)
        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "18", "later")
        self.assertEqual(outcome, Outcome.ALREADY_BUFFERED)
        self.assertEqual(self.buffer.get(ATTACKER_A).comment, "original")

    async def test_reset_sends_bulk_report_and_clears_buffer(self) -> None:
        self.api.report_status = 429
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "a")
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_B), "15", "b")
        self.assertEqual(len(self.buffer), 2)

        self.api.report_status = 200
        self.clock.now = self.limiter.reset_at + 1
        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx("193.32.162.1"), "15", "c")

        self.assertEqual(outcome, Outcome.REPORTED)
        self.assertEqual(len(self.api.bulk_uploads), 1)
        self.assertIn(b'name="csv"', self.api.bulk_uploads[0])
        self.assertFalse(self.limiter.is_limited)
        self.assertEqual(len(self.buffer), 0)
        self.assertFalse(self.buffer.path.exists())
        for ip in (ATTACKER_A, ATTACKER_B):
            self.assertTrue(self.cache.is_reported_recently(ip))

    async def test_tick_releases_limit_without_new_events(self) -> None:
        self.api.report_status = 429
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "a")
        self.api.report_status = 200
        self.clock.now = self.limiter.reset_at + 1

        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "again")
        self.assertEqual(outcome, Outcome.COOLDOWN)
        self.assertTrue(self.limiter.is_limited)
        self.assertEqual(self.api.bulk_uploads, [])

        await self.dispatcher.tick()
        self.assertFalse(self.limiter.is_limited)
        self.assertEqual(len(self.api.bulk_uploads), 1)
        self.assertEqual(self.api.reported_ips, [ATTACKER_A])

    async def test_failed_bulk_keeps_buffer(self) -> None:
        self.api.report_status = 429
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "a")
        self.api.bulk_status = 500
        self.api.report_status = 200
        self.clock.now = self.limiter.reset_at + 1
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_B), "15", "b")

        self.assertIn(ATTACKER_A, self.buffer)
        self.assertTrue(self.buffer.path.exists())
        self.assertFalse(self.limiter.is_limited)
        self.assertEqual(self.api.reported_ips, [ATTACKER_A, ATTACKER_B])

        # the leftover buffer is retried by the periodic tick
        self.api.bulk_status = 200
        self.clock.advance(15 * 60)
        await self.dispatcher.tick()
        self.assertEqual(len(self.api.bulk_uploads), 2)
        self.assertEqual(len(self.buffer), 0)

    async def test_recover_sends_leftover_buffer(self) -> None:
        self.buffer.enqueue(ATTACKER_A, "15", "left over", "2023-11-14T10:00:00Z")
        self.buffer.persist()
        fresh = BulkBuffer(self.buffer.path, clock=self.clock)
        fresh.load()
        dispatcher = Dispatcher(self.client, self.cache, fresh, self.limiter, clock=self.clock)

        result = await dispatcher.recover()

        self.assertIsNotNone(result)
        self.assertEqual(result.submitted, 1)
        self.assertEqual(len(fresh), 0)
        self.assertIn(ATTACKER_A, self.cache)

    async def test_status_reports_state(self) -> None:
        self.api.report_status = 429
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "a")
        status = self.dispatcher.status()
        self.assertEqual(status["state"], "limited")
        self.assertEqual(status["buffered"], 1)
        self.assertGreater(status["seconds_remaining"], 0)


class TestConcurrentReports(DispatcherTestCase):
    async def test_second_report_while_first_is_in_flight(self) -> None:
        gate = self.api.hold()
        first = asyncio.ensure_future(self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "a"))
        await asyncio.wait_for(self.api.waiting.wait(), timeout=1.0)

        outcome = await self.dispatcher.report_ip("DIONAEA", self.ctx(ATTACKER_A), "14", "b")
        self.assertEqual(outcome, Outcome.IN_FLIGHT)

        gate.set()
        self.assertEqual(await first, Outcome.REPORTED)
        self.assertEqual(self.api.reported_ips, [ATTACKER_A])

    async def test_report_during_reset_upload_is_buffered_and_kept(self) -> None:
        self.api.report_status = 429
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "a")
        self.api.report_status = 200
        self.clock.now = self.limiter.reset_at + 1

        gate = self.api.hold()
        releasing = asyncio.ensure_future(
            self.dispatcher.report_ip("COWRIE", self.ctx("193.32.162.1"), "15", "c")
        )
        await asyncio.wait_for(self.api.waiting.wait(), timeout=1.0)
        self.assertEqual(self.api.bulk_uploads, [])

        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_B), "18", "b")
        self.assertEqual(outcome, Outcome.BUFFERED)

        gate.set()
        self.assertEqual(await releasing, Outcome.REPORTED)
        self.assertFalse(self.limiter.is_limited)
        self.assertEqual(len(self.api.bulk_uploads), 1)
        self.assertIn(ATTACKER_A.encode(), self.api.bulk_uploads[0])
        self.assertNotIn(ATTACKER_B.encode(), self.api.bulk_uploads[0])

        # only the uploaded entry left the buffer
        self.assertNotIn(ATTACKER_A, self.buffer)
        self.assertEqual(self.buffer.get(ATTACKER_B).comment, "b")
        self.assertIn(ATTACKER_B, self.buffer.path.read_text())

        self.clock.advance(15 * 60)
        await self.dispatcher.tick()
        self.assertEqual(len(self.api.bulk_uploads), 2)
        self.assertEqual(len(self.buffer), 0)

    async def test_ip_covered_by_reset_upload_is_not_reported_again(self) -> None:
        self.cache.cooldown = 900
        self.api.report_status = 429
        await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "a")
        self.api.report_status = 200
        self.clock.now = self.limiter.reset_at + 1
        self.assertFalse(self.cache.is_reported_recently(ATTACKER_A))

        outcome = await self.dispatcher.report_ip("COWRIE", self.ctx(ATTACKER_A), "15", "again")

        self.assertEqual(outcome, Outcome.COOLDOWN)
        self.assertEqual(len(self.api.bulk_uploads), 1)
        self.assertEqual(self.api.reported_ips, [ATTACKER_A])
        self.assertFalse(self.limiter.is_limited)


if __name__ == "__main__":
    unittest.main()
