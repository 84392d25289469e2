"""Tests for the outbound URL allowlist.

Acceptance: pytest tests/unit/safety/test_url_allowlist.py -v
"""

from __future__ import annotations

import pytest

from src.safety.url_allowlist import UrlAllowlist, hash_allowlist_config, is_mock_api_url, is_url_allowed


class TestCheck:
    @pytest.mark.parametrize(
        "url",
        ["http://localhost:3000/api", "http://127.0.0.1/health", "http://app.localhost", "http://api.dev.local/x"],
    )
    def test_loopback_allowed(self, url: str) -> None:
        result = UrlAllowlist().check(url)
        assert result.allowed is True
        assert result.is_mock is False

    def test_mock_domain_flagged(self) -> None:
        result = UrlAllowlist().check("https://jsonplaceholder.typicode.com/todos/1")
        assert result.allowed is True
        assert result.is_mock is True
        assert result.reason == "Mock API domain detected: jsonplaceholder.typicode.com"

    def test_unlisted_denied(self) -> None:
        result = UrlAllowlist().check("https://payments.stripe.com/v1")
        assert result.allowed is False
        assert result.reason == "URL not in allowlist: payments.stripe.com"

    def test_unlisted_allowed_when_not_blocking(self) -> None:
        assert UrlAllowlist(block_unlisted=False).check("https://payments.stripe.com").allowed is True

    @pytest.mark.parametrize("url", ["not a url", "/relative/path", "http://localhost:abc/"])
    def test_invalid(self, url: str) -> None:
        result = UrlAllowlist().check(url)
        assert result.allowed is False
        assert result.reason == f"Invalid URL: {url}"

    def test_custom_patterns(self) -> None:
        allowlist = UrlAllowlist()
        allowlist.add_pattern("*.internal.corp")
        assert allowlist.check("https://svc.internal.corp/x").matched_pattern == "*.internal.corp"
        allowlist.remove_pattern("*.internal.corp")
        assert allowlist.check("https://svc.internal.corp/x").allowed is False


class TestHelpers:
    def test_is_url_allowed(self) -> None:
        assert is_url_allowed("https://staging.acme.io", ["staging.acme.io"]) is True
        assert is_url_allowed("https://prod.acme.io", ["staging.acme.io"]) is False

    def test_is_mock_api_url(self) -> None:
        assert is_mock_api_url("https://api.example.com/users") is True
        assert is_mock_api_url("https://acme.io") is False
        assert is_mock_api_url("garbage") is False

    def test_config_hash_is_order_independent(self) -> None:
        a = hash_allowlist_config(["a.io", "b.io"])
        assert a == hash_allowlist_config(["b.io", "a.io"])
        assert a != hash_allowlist_config(["a.io", "b.io"], block_unlisted=False)
        assert len(a) == 8
