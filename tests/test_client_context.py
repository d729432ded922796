from __future__ import annotations

import unittest

from authcore.services.client_context import LOOPBACK_IP, UNKNOWN, extract_client_context, resolve_client_ip

CHROME_WINDOWS_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SAFARI_IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)


class ClientContextTests(unittest.TestCase):
    def test_forwarded_for_first_hop_wins(self) -> None:
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "198.51.100.2"}
        self.assertEqual(resolve_client_ip(headers), "203.0.113.7")

    def test_real_ip_used_without_forwarded_for(self) -> None:
        self.assertEqual(resolve_client_ip({"x-real-ip": "198.51.100.2"}), "198.51.100.2")

    def test_loopback_when_no_proxy_headers(self) -> None:
        self.assertEqual(resolve_client_ip({}), LOOPBACK_IP)

    def test_geo_headers_follow_provider_precedence(self) -> None:
        context = extract_client_context(
            {
                "user-agent": CHROME_WINDOWS_UA,
                "x-vercel-ip-country": "DE",
                "cf-ipcountry": "TR",
                "x-vercel-ip-city": "San%20Francisco",
                "cloudfront-viewer-country-region": "CA",
            }
        )

        self.assertEqual(context.country, "TR")
        self.assertEqual(context.city, "San Francisco")
        self.assertEqual(context.region, "CA")
        self.assertEqual(context.location, "San Francisco, CA, TR")

    def test_unresolved_geo_values_become_unknown(self) -> None:
        context = extract_client_context({"cf-ipcountry": "XX", "x-vercel-ip-city": ""})

        self.assertEqual(context.country, UNKNOWN)
        self.assertEqual(context.city, UNKNOWN)
        self.assertEqual(context.region, UNKNOWN)
        self.assertEqual(context.location, UNKNOWN)

    def test_user_agent_is_parsed(self) -> None:
        desktop = extract_client_context({"User-Agent": CHROME_WINDOWS_UA})
        mobile = extract_client_context({"User-Agent": SAFARI_IPHONE_UA})

        self.assertEqual(desktop.device_type, "desktop")
        self.assertEqual(desktop.browser, "Chrome")
        self.assertEqual(desktop.os, "Windows")
        self.assertEqual(desktop.device_name, "Chrome on Windows")
        self.assertEqual(mobile.device_type, "mobile")
        self.assertEqual(mobile.os, "iOS")

    def test_missing_user_agent_never_yields_empty_fields(self) -> None:
        context = extract_client_context({})

        self.assertEqual(context.user_agent, "")
        self.assertEqual(context.device_type, "unknown")
        self.assertEqual(context.browser, UNKNOWN)
        self.assertEqual(context.os, UNKNOWN)


if __name__ == "__main__":
    unittest.main()
