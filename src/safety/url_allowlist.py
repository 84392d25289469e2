"""Outbound URL allowlist for runtime verification.

Loopback hosts are always allowed. Known mock/demo API domains are allowed
but flagged, since traffic to them means the code under test is talking to
fake data. Anything else is denied unless block_unlisted is off.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

DEFAULT_ALLOWLIST_PATTERNS: tuple[str, ...] = (
    "localhost",
    "localhost:*",
    "127.0.0.1",
    "127.0.0.1:*",
    "0.0.0.0",
    "0.0.0.0:*",
    "*.localhost",
    "*.local",
)

MOCK_API_DOMAINS: tuple[str, ...] = (
    "jsonplaceholder.typicode.com",
    "reqres.in",
    "mockapi.io",
    "mocky.io",
    "httpbin.org",
    "dummyjson.com",
    "fakestoreapi.com",
    "api.example.com",
    "example.com",
    "test.com",
)


@dataclass(frozen=True)
class UrlCheckResult:
    allowed: bool
    reason: str | None = None
    matched_pattern: str | None = None
    is_mock: bool = False


def _host_and_port(url: str) -> tuple[str, str]:
    """Raises ValueError for anything that is not an absolute URL with a host."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(url)
    port = parts.port  # raises ValueError on a malformed port
    host = parts.hostname.lower()
    return host, (f"{host}:{port}" if port is not None else host)


def _mock_domain(host: str) -> str | None:
    for domain in MOCK_API_DOMAINS:
        if host == domain or host.endswith(f".{domain}"):
            return domain
    return None


class UrlAllowlist:
    def __init__(self, patterns: list[str] | tuple[str, ...] = (), *, block_unlisted: bool = True) -> None:
        self._patterns: dict[str, None] = dict.fromkeys((*DEFAULT_ALLOWLIST_PATTERNS, *patterns))
        self._block_unlisted = block_unlisted
        self._regex_cache: dict[str, re.Pattern[str]] = {}

    @property
    def block_unlisted(self) -> bool:
        return self._block_unlisted

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        self._patterns[pattern] = None
        self._regex_cache.pop(pattern, None)

    def remove_pattern(self, pattern: str) -> None:
        self._patterns.pop(pattern, None)
        self._regex_cache.pop(pattern, None)

    def _matches(self, host: str, pattern: str) -> bool:
        if host == pattern:
            return True
        regex = self._regex_cache.get(pattern)
        if regex is None:
            regex = re.compile("^" + re.escape(pattern).replace(r"\*", ".*") + "$", re.IGNORECASE)
            self._regex_cache[pattern] = regex
        return regex.match(host) is not None

    def check(self, url: str) -> UrlCheckResult:
        try:
            host, host_with_port = _host_and_port(url)
        except ValueError:
            return UrlCheckResult(allowed=False, reason=f"Invalid URL: {url}")

        for pattern in self._patterns:
            if self._matches(host_with_port, pattern) or self._matches(host, pattern):
                return UrlCheckResult(allowed=True, matched_pattern=pattern)

        domain = _mock_domain(host)
        if domain is not None:
            return UrlCheckResult(
                allowed=True,
                reason=f"Mock API domain detected: {domain}",
                matched_pattern=domain,
                is_mock=True,
            )

        if self._block_unlisted:
            return UrlCheckResult(allowed=False, reason=f"URL not in allowlist: {host}")
        return UrlCheckResult(allowed=True)


def is_url_allowed(url: str, patterns: list[str] | tuple[str, ...] = ()) -> bool:
    return UrlAllowlist(patterns).check(url).allowed


def is_mock_api_url(url: str) -> bool:
    try:
        host, _ = _host_and_port(url)
    except ValueError:
        return False
    return _mock_domain(host) is not None


def hash_allowlist_config(patterns: list[str] | tuple[str, ...], block_unlisted: bool = True) -> str:
    """Stable 8-hex fingerprint of an allowlist configuration."""
    content = json.dumps({"patterns": sorted(patterns), "blockUnlisted": block_unlisted}, separators=(",", ":"))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:8]
