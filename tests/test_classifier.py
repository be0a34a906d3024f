from __future__ import annotations

import unittest

from abusewatch.classifier import (
    ProbeRule,
    classify_payload,
    classify_probe,
    classify_session,
    header,
    parse_http_request,
    session_categories,
)
from abusewatch.models import AttackSummary, DionaeaEvent, format_categories, parse_categories
from abusewatch.sanitizer import IpSanitizer


def summary(**kw) -> AttackSummary:
    kw.setdefault("src_ip", "45.13.22.9")
    kw.setdefault("dst_port", 22)
    kw.setdefault("protocol", "ssh")
    kw.setdefault("session_count", 1)
    return AttackSummary(**kw)


class TestSessionCategories(unittest.TestCase):
    def test_connection_only_is_port_scan(self) -> None:
        self.assertEqual(session_categories(summary()), {14})

    def test_single_login_is_hacking_plus_protocol(self) -> None:
        self.assertEqual(session_categories(summary(credentials=["root:root"])), {15, 22})

    def test_brute_force_needs_two_logins(self) -> None:
        result = session_categories(summary(credentials=["root:root", "admin:admin"]))
        self.assertEqual(result, {15, 18, 22})

    def test_commands_add_exploited_host(self) -> None:
        result = session_categories(summary(credentials=["root:1234"], commands=["uname -a"]))
        self.assertEqual(result, {15, 20, 22})

    def test_telnet_maps_to_iot(self) -> None:
        result = session_categories(summary(protocol="telnet", dst_port=23,
                                            credentials=["a:b", "c:d"], commands=["sh"]))
        self.assertEqual(result, {15, 18, 20, 23})

    def test_unknown_protocol_adds_no_protocol_code(self) -> None:
        self.assertEqual(session_categories(summary(protocol="rdp", credentials=["x:y"])), {15})


class TestSessionComment(unittest.TestCase):
    def test_header_uses_server_id(self) -> None:
        self.assertEqual(header("pl-waw-1"), "Honeypot [pl-waw-1]")
        self.assertEqual(header(None), "Honeypot hit")

    def test_brute_force_comment(self) -> None:
        result = classify_session(
            summary(credentials=["root:root", "admin:123"], commands=["ls"], client_version="SSH-2.0-Go"),
            server_id="srv1",
        )
        lines = result.comment.split("\n")
        self.assertEqual(lines[0], "Honeypot [srv1]: Brute-force attack detected on 22/SSH")
        self.assertIn("• Credentials: root:root, admin:123", lines)
        self.assertIn("• Number of login attempts: 2", lines)
        self.assertIn("• 1 command(s) were executed during the session", lines)
        self.assertIn("• Client: SSH-2.0-Go", lines)
        self.assertEqual(result.category_string, "15,18,20,22")

    def test_connection_comment(self) -> None:
        result = classify_session(summary(dst_port=2222))
        self.assertEqual(result.comment, "Honeypot hit: Unauthorized connection attempt detected on 2222/SSH")

    def test_long_credential_list_is_cut_at_a_boundary(self) -> None:
        creds = [f"user{i}:password{i}" for i in range(200)]
        result = classify_session(summary(credentials=creds))
        line = next(l for l in result.comment.split("\n") if l.startswith("• Credentials:"))
        self.assertTrue(line.endswith("..."))
        listed = line[len("• Credentials: "):-3].split(", ")
        self.assertTrue(all(entry in creds for entry in listed))
        self.assertLessEqual(len(", ".join(listed)), 900)

    def test_own_ip_is_masked(self) -> None:
        sanitize = IpSanitizer(["185.199.1.10"])
        result = classify_session(summary(download_urls=["http://185.199.1.10/x.sh"]), sanitize=sanitize)
        self.assertNotIn("185.199.1.10", result.comment)
        self.assertIn("http://[SOME-IP]/x.sh", result.comment)


class TestProbeClassification(unittest.TestCase):
    def event(self, protocol: str, port: int, **kw) -> DionaeaEvent:
        return DionaeaEvent.model_validate(
            {"src_ip": "91.240.118.7", "dst_port": port, "connection": {"protocol": protocol}, **kw}
        )

    def test_mssql_with_credentials(self) -> None:
        result = classify_probe(
            self.event("mssqld", 1433, credentials={"username": ["sa"], "password": ["123"]}), "srv"
        )
        self.assertEqual(result.categories, {18})
        self.assertEqual(result.comment, "Honeypot [srv]: MSSQL traffic (on 1433) with credentials sa:123")

    def test_mssql_empty_password(self) -> None:
        result = classify_probe(self.event("mssqld", 1433, credentials={"username": "sa"}))
        self.assertEqual(result.categories, {18})
        self.assertIn("username sa and empty password", result.comment)

    def test_mssql_without_credentials(self) -> None:
        result = classify_probe(self.event("mssqld", 1433))
        self.assertEqual(result.categories, {14})

    def test_template_protocols(self) -> None:
        cases = {
            "httpd": {21, 19},
            "ftp": {5, 18},
            "smbd": {23},
            "mysql": {18},
            "tftp": {20},
            "upnp": {23},
            "mqtt": {23},
            "sip": {14},
        }
        for proto, expected in cases.items():
            with self.subTest(proto=proto):
                self.assertEqual(classify_probe(self.event(proto, 1000)).categories, expected)

    def test_fallback_comment(self) -> None:
        result = classify_probe(self.event("epmapper", 135))
        self.assertEqual(result.comment, "Honeypot hit: Unauthorized traffic on 135/epmapper")

    def test_custom_rules(self) -> None:
        rules = {"pptpd": ProbeRule(frozenset({15}), "PPTP on {dpt}")}
        result = classify_probe(self.event("pptpd", 1723), rules=rules)
        self.assertEqual(result.categories, {15})
        self.assertEqual(result.comment, "Honeypot hit: PPTP on 1723")


class TestPayloadClassification(unittest.TestCase):
    def test_empty_payload(self) -> None:
        self.assertEqual(classify_payload(b"", 8080, "tcp").categories, {14})

    def test_large_payload_wins_over_content(self) -> None:
        payload = b"GET / HTTP/1.1\r\n" + b"A" * 2000
        self.assertEqual(classify_payload(payload, 80, "tcp").categories, {15})

    def test_tls_handshake(self) -> None:
        result = classify_payload(bytes([0x16, 0x03, 0x01, 0x02, 0x00]), 443, "tcp")
        self.assertEqual(result.categories, {14})
        self.assertIn("TLS handshake", result.comment)

    def test_http_request(self) -> None:
        payload = (
            b"GET /cgi-bin/luci HTTP/1.1\r\nHost: 185.199.1.10\r\n"
            b"User-Agent: Mozilla/5.0\r\nAccept: */*\r\n\r\n"
        )
        result = classify_payload(payload, 8080, "tcp")
        self.assertEqual(result.categories, {21})
        self.assertTrue(result.comment.startswith("HTTP/1.1 request on 8080\n\nGET /cgi-bin/luci"))
        self.assertIn("User-Agent: Mozilla/5.0", result.comment)
        self.assertNotIn("Host", result.comment)

    def test_ssh_banner(self) -> None:
        self.assertEqual(classify_payload(b"SSH-2.0-libssh ssh probe", 2222, "tcp").categories, {18, 22})

    def test_cookie_header(self) -> None:
        self.assertEqual(classify_payload(b"X Cookie: session=1", 81, "tcp").categories, {15, 21})

    def test_suspicious_tokens(self) -> None:
        result = classify_payload(b"cd /tmp; wget x; chmod +x x", 5555, "tcp")
        self.assertEqual(result.categories, {15})

    def test_default_is_port_scan(self) -> None:
        result = classify_payload(b"\x00\x01\x02hello", 9000, "tcp")
        self.assertEqual(result.categories, {14})
        self.assertIn("9000/tcp", result.comment)

    def test_post_body_is_kept(self) -> None:
        text = "POST /login HTTP/1.0\r\nUser-Agent: x\r\n\r\nuser=admin&pass=admin"
        out = parse_http_request(text, 80)
        self.assertIn("POST Data: user=admin&pass=admin", out)
        self.assertTrue(out.startswith("HTTP/1.0 request on 80"))


class TestCategoryHelpers(unittest.TestCase):
    def test_format_sorts_and_dedups(self) -> None:
        self.assertEqual(format_categories({22, 15, 18}), "15,18,22")
        self.assertEqual(format_categories("18, 15,15"), "15,18")

    def test_parse_ignores_junk(self) -> None:
        self.assertEqual(parse_categories(["14", "x", 21, " "]), {14, 21})


if __name__ == "__main__":
    unittest.main()
