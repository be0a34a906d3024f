from __future__ import annotations

import unittest
from datetime import datetime, timezone

from abusewatch.errors import ReportError
from abusewatch.ratelimit import RateLimiter, RateLimitState
from abusewatch.timeutil import format_timestamp, next_utc_midnight

from fakes import QUOTA_BODY, FakeClock


class TestRateLimiter(unittest.TestCase):
    def test_limited_until_next_utc_midnight(self) -> None:
        clock = FakeClock(datetime(2024, 5, 1, 22, 30, tzinfo=timezone.utc).timestamp())
        limiter = RateLimiter(clock=clock)
        self.assertTrue(limiter.enter_limited())
        self.assertFalse(limiter.enter_limited())
        self.assertIs(limiter.state, RateLimitState.LIMITED)
        self.assertEqual(format_timestamp(limiter.reset_at), "2024-05-02T00:00:00Z")
        self.assertEqual(limiter.seconds_remaining(), 90 * 60)

        clock.advance(90 * 60 - 1)
        self.assertFalse(limiter.reset_due())
        clock.advance(1)
        self.assertTrue(limiter.reset_due())
        limiter.release()
        self.assertFalse(limiter.is_limited)
        self.assertEqual(format_timestamp(limiter.reset_at), "2024-05-03T00:00:00Z")

    def test_status_log_is_throttled(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        self.assertFalse(limiter.status_due())
        limiter.enter_limited()
        self.assertTrue(limiter.status_due())
        self.assertFalse(limiter.status_due())
        clock.advance(600)
        self.assertTrue(limiter.status_due())

    def test_midnight_exactly_moves_to_next_day(self) -> None:
        midnight = datetime(2024, 5, 2, tzinfo=timezone.utc).timestamp()
        self.assertEqual(next_utc_midnight(midnight), midnight + 86400)


class TestTimestamps(unittest.TestCase):
    def test_format_timestamp(self) -> None:
        self.assertEqual(format_timestamp("2024-05-01T10:00:00.123456Z"), "2024-05-01T10:00:00Z")
        self.assertEqual(format_timestamp("2024-05-01T12:00:00+02:00"), "2024-05-01T10:00:00Z")
        self.assertEqual(format_timestamp("2024-05-01 10:00:00"), "2024-05-01T10:00:00Z")
        self.assertEqual(format_timestamp("garbage", now=0), "1970-01-01T00:00:00Z")


class TestReportError(unittest.TestCase):
    def test_quota_detection(self) -> None:
        self.assertTrue(ReportError("x", 429, QUOTA_BODY).is_quota_exceeded)
        self.assertFalse(ReportError("x", 429, {"errors": [{"detail": "Too many requests"}]}).is_quota_exceeded)
        self.assertFalse(ReportError("x", 422, QUOTA_BODY).is_quota_exceeded)
        self.assertIn("Daily rate limit", ReportError("x", 429, QUOTA_BODY).details())


if __name__ == "__main__":
    unittest.main()
