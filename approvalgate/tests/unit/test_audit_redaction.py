from __future__ import annotations

from datetime import datetime, timezone

import pytest
from starlette.requests import Request

from approvalgate.core.config import get_settings
from approvalgate.services.audit import client_address, get_request_context, sanitize_metadata


def _make_request(headers: list[tuple[bytes, bytes]], client: tuple[str, int] | None = ("10.0.0.9", 4321)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/v1/client-access/validate-approval-token",
        "scheme": "http",
        "server": ("test", 80),
        "client": client,
        "headers": headers,
        "query_string": b"",
    }
    return Request(scope)


def test_audit_redacts_credentials() -> None:
    payload = {
        "token": "raw-approval-token",
        "session_token": "raw-session",
        "code": "123456",
        "webhook_secret": "s3cret",
        "nested": {"authorization": "Bearer abc"},
        "credential_identifier": "abcdefghij...",
        "error_code": "INVALID_TOKEN",
        "failure_count": 4,
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["token"] == "[REDACTED]"
    assert sanitized["session_token"] == "[REDACTED]"
    assert sanitized["code"] == "[REDACTED]"
    assert sanitized["webhook_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["credential_identifier"] == "abcdefghij..."
    assert sanitized["error_code"] == "INVALID_TOKEN"
    assert sanitized["failure_count"] == 4


def test_audit_serializes_datetimes() -> None:
    when = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
    assert sanitize_metadata({"blocked_until": when}) == {"blocked_until": "2026-10-17T12:00:00+00:00"}


def _trust_proxies(monkeypatch: pytest.MonkeyPatch, value: str) -> None:
    monkeypatch.setenv("TRUSTED_PROXIES", value)
    get_settings.cache_clear()


def test_client_address_ignores_forwarded_headers_from_untrusted_peer(monkeypatch: pytest.MonkeyPatch) -> None:
    _trust_proxies(monkeypatch, "")
    request = _make_request([(b"x-forwarded-for", b"203.0.113.7"), (b"x-real-ip", b"198.51.100.4")])
    assert client_address(request) == "10.0.0.9"


def test_client_address_walks_forwarded_chain_behind_trusted_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    _trust_proxies(monkeypatch, "10.0.0.0/8")
    # The left-most hop is whatever the client sent; the proxy appended the real peer.
    request = _make_request([(b"x-forwarded-for", b"198.51.100.20, 203.0.113.7, 10.0.0.1")])
    assert client_address(request) == "203.0.113.7"

    only_proxies = _make_request([(b"x-forwarded-for", b"10.0.0.3, 10.0.0.1")])
    assert client_address(only_proxies) == "10.0.0.3"


def test_client_address_falls_back_to_real_ip_then_peer(monkeypatch: pytest.MonkeyPatch) -> None:
    _trust_proxies(monkeypatch, "10.0.0.9, not-an-address")
    assert client_address(_make_request([(b"x-real-ip", b"198.51.100.4")])) == "198.51.100.4"
    assert client_address(_make_request([])) == "10.0.0.9"
    assert client_address(_make_request([], client=None)) == "unknown"
    assert client_address(None) == "unknown"


def test_request_context_carries_request_id_and_agent() -> None:
    request = _make_request([(b"x-request-id", b"req-1"), (b"user-agent", b"pytest")])
    context = get_request_context(request)
    assert context == {"request_id": "req-1", "ip_address": "10.0.0.9", "user_agent": "pytest"}
