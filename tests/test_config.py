from __future__ import annotations

import unittest
from pathlib import Path

from abusewatch.config import load_settings
from abusewatch.errors import ConfigError

BASE_ENV = {"ABUSEIPDB_API_KEY": "k" * 80}


class TestLoadSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = load_settings(BASE_ENV)
        self.assertEqual(settings.report_cooldown, 6 * 60 * 60)
        self.assertEqual(settings.honeypots, ["cowrie", "dionaea", "honeytrap"])
        self.assertEqual(settings.cowrie_delay, 600)
        self.assertEqual(settings.honeytrap_delay, 300)
        self.assertFalse(settings.development)
        self.assertFalse(str(settings.cowrie_log_file).startswith("~"))

    def test_missing_api_key_is_fatal(self) -> None:
        with self.assertRaises(ConfigError):
            load_settings({})
        with self.assertRaises(ConfigError):
            load_settings({"ABUSEIPDB_API_KEY": "   "})

    def test_cooldown_below_fifteen_minutes_is_fatal(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            load_settings({**BASE_ENV, "IP_REPORT_COOLDOWN": "899"})
        self.assertIn("IP_REPORT_COOLDOWN", str(ctx.exception))
        self.assertEqual(load_settings({**BASE_ENV, "IP_REPORT_COOLDOWN": "900"}).report_cooldown, 900)

    def test_development_shortens_delays(self) -> None:
        settings = load_settings({**BASE_ENV, "SERVER_ID": "development"})
        self.assertTrue(settings.development)
        self.assertEqual(settings.cowrie_delay, 30)
        self.assertEqual(settings.honeytrap_delay, 30)

    def test_explicit_delays_win(self) -> None:
        settings = load_settings({**BASE_ENV, "SERVER_ID": "development", "COWRIE_REPORT_DELAY": "120"})
        self.assertEqual(settings.cowrie_delay, 120)

    def test_honeypot_list(self) -> None:
        settings = load_settings({**BASE_ENV, "HONEYPOTS": " Cowrie, honeytrap ,"})
        self.assertEqual(settings.honeypots, ["cowrie", "honeytrap"])
        with self.assertRaises(ConfigError):
            load_settings({**BASE_ENV, "HONEYPOTS": "cowrie,glastopf"})

    def test_webhook_needs_url(self) -> None:
        with self.assertRaises(ConfigError):
            load_settings({**BASE_ENV, "DISCORD_WEBHOOK_ENABLED": "true"})

    def test_paths_and_flags(self) -> None:
        settings = load_settings({
            **BASE_ENV,
            "CACHE_FILE": "/var/lib/abusewatch/cache",
            "IPV6_SUPPORT": "false",
            "IP_ASSIGNMENT": "STATIC",
            "STATUS_API_PORT": "9100",
        })
        self.assertEqual(settings.cache_file, Path("/var/lib/abusewatch/cache"))
        self.assertFalse(settings.ipv6_support)
        self.assertEqual(settings.ip_assignment, "static")
        self.assertEqual(settings.status_api_port, 9100)

    def test_bad_ip_assignment(self) -> None:
        with self.assertRaises(ConfigError):
            load_settings({**BASE_ENV, "IP_ASSIGNMENT": "sometimes"})


if __name__ == "__main__":
    unittest.main()
