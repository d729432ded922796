from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import unquote

from user_agents import parse as parse_user_agent

UNKNOWN = "Unknown"
LOOPBACK_IP = "127.0.0.1"

# Provider headers in precedence order: Cloudflare, Vercel, CloudFront.
COUNTRY_HEADERS = ("cf-ipcountry", "x-vercel-ip-country", "cloudfront-viewer-country")
CITY_HEADERS = ("cf-ipcity", "x-vercel-ip-city", "cloudfront-viewer-city")
REGION_HEADERS = ("cf-region", "x-vercel-ip-country-region", "cloudfront-viewer-country-region")

# Placeholder values edge providers send when they could not resolve a location.
_UNRESOLVED_GEO_VALUES = {"", "xx", "unknown", "null"}


@dataclass(frozen=True, slots=True)
class ClientContext:
    ip: str
    user_agent: str
    device_type: str
    browser: str
    browser_version: str
    os: str
    os_version: str
    country: str
    city: str
    region: str

    @property
    def location(self) -> str:
        parts = [part for part in (self.city, self.region, self.country) if part != UNKNOWN]
        if not parts:
            return UNKNOWN
        return ", ".join(parts)

    @property
    def device_name(self) -> str:
        return f"{self.browser} on {self.os}"


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in headers.items()}


def resolve_client_ip(headers: Mapping[str, str]) -> str:
    lowered = _lower_headers(headers)
    forwarded_for = lowered.get("x-forwarded-for", "")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = lowered.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return LOOPBACK_IP


def _first_geo_value(lowered: Mapping[str, str], names: tuple[str, ...]) -> str:
    for name in names:
        raw = unquote(lowered.get(name, "")).strip()
        if raw.lower() in _UNRESOLVED_GEO_VALUES:
            continue
        return raw
    return UNKNOWN


def _device_type(user_agent: str) -> str:
    if not user_agent:
        return "unknown"
    parsed = parse_user_agent(user_agent)
    if parsed.is_bot:
        return "bot"
    if parsed.is_tablet:
        return "tablet"
    if parsed.is_mobile:
        return "mobile"
    if parsed.is_pc:
        return "desktop"
    return "unknown"


def _known(value: str | None) -> str:
    cleaned = (value or "").strip()
    if not cleaned or cleaned == "Other":
        return UNKNOWN
    return cleaned


def extract_client_context(headers: Mapping[str, str]) -> ClientContext:
    lowered = _lower_headers(headers)
    user_agent = lowered.get("user-agent", "")
    parsed = parse_user_agent(user_agent)
    return ClientContext(
        ip=resolve_client_ip(lowered),
        user_agent=user_agent,
        device_type=_device_type(user_agent),
        browser=_known(parsed.browser.family),
        browser_version=_known(parsed.browser.version_string),
        os=_known(parsed.os.family),
        os_version=_known(parsed.os.version_string),
        country=_first_geo_value(lowered, COUNTRY_HEADERS),
        city=_first_geo_value(lowered, CITY_HEADERS),
        region=_first_geo_value(lowered, REGION_HEADERS),
    )
