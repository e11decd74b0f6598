from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from approvalgate.apps.api.main import create_app
from approvalgate.core.config import get_settings
from approvalgate.domain.models import AccessAttempt, ClientApprover
from approvalgate.domain.state import BlockTier
from approvalgate.persistence.db import SessionLocal
from approvalgate.persistence.repos import blocks as blocks_repo
from approvalgate.services.security.gate import RateLimitedGate, set_gate
from approvalgate.tests.utils.gate import StaticThrottle
from approvalgate.tests.utils.seed import (
    create_approver,
    create_block_record,
    create_client,
    create_code,
    create_token,
)


TOKEN_PATH = "/v1/client-access/validate-approval-token"
SESSION_PATH = "/v1/client-access/validate-client-session"


def _headers(address: str) -> dict[str, str]:
    # The test peer is a trusted proxy, so the forwarded hop is the client.
    return {"X-Forwarded-For": address, "User-Agent": "pytest-client"}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_valid_approval_token_returns_client() -> None:
    client_row = await create_client(name="Acme Studio", slug="acme-studio")
    token = await create_token(client_row, issued_at=datetime.now(timezone.utc), month="2026-11")

    async with _client() as client:
        response = await client.post(TOKEN_PATH, json={"token": token}, headers=_headers("203.0.113.10"))
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "client_id": client_row.id,
        "client_name": "Acme Studio",
        "client_slug": "acme-studio",
        "month": "2026-11",
    }
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_invalid_token_returns_counts_in_error_envelope() -> None:
    async with _client() as client:
        response = await client.post(
            TOKEN_PATH,
            json={"token": "definitely-not-a-token"},
            headers={**_headers("203.0.113.11"), "X-Request-Id": "req-invalid"},
        )
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "INVALID_TOKEN"
    assert body["error"]["details"]["failed_attempts"] == 1
    assert body["error"]["details"]["attempts_remaining"] == 9
    assert body["meta"]["request_id"] == "req-invalid"

    async with SessionLocal() as session:
        attempt = (await session.execute(select(AccessAttempt))).scalar_one()
    # Only the truncated display value is stored.
    assert attempt.credential_identifier == "definitely..."
    assert attempt.address == "203.0.113.11"
    assert attempt.user_agent == "pytest-client"


@pytest.mark.asyncio
async def test_fifth_failure_blocks_address_temporarily() -> None:
    async with _client() as client:
        for _ in range(4):
            response = await client.post(TOKEN_PATH, json={"token": "guess"}, headers=_headers("203.0.113.12"))
            assert response.status_code == 401
        blocked = await client.post(TOKEN_PATH, json={"token": "guess"}, headers=_headers("203.0.113.12"))
        again = await client.post(TOKEN_PATH, json={"token": "guess"}, headers=_headers("203.0.113.12"))

    assert blocked.status_code == 429
    assert blocked.json()["error"]["code"] == "IP_BLOCKED_TEMPORARY"
    assert blocked.json()["error"]["details"]["failed_attempts"] == 5
    assert blocked.json()["error"]["details"]["ip_address"] == "203.0.113.12"
    assert 895 <= int(blocked.headers["Retry-After"]) <= 900

    assert again.status_code == 429
    assert again.json()["error"]["code"] == "IP_BLOCKED_TEMPORARY"
    assert again.json()["error"]["details"]["failed_attempts"] == 5


@pytest.mark.asyncio
async def test_rotating_forwarded_header_from_untrusted_peer_is_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRUSTED_PROXIES", "")
    get_settings.cache_clear()
    async with _client() as client:
        responses = [
            await client.post(TOKEN_PATH, json={"token": "guess"}, headers=_headers(f"10.0.0.{i}"))
            for i in range(6)
        ]

    assert [r.status_code for r in responses[:4]] == [401] * 4
    assert responses[3].json()["error"]["details"]["failed_attempts"] == 4
    assert responses[4].status_code == 429
    assert responses[4].json()["error"]["code"] == "IP_BLOCKED_TEMPORARY"
    assert responses[4].json()["error"]["details"]["ip_address"] == "127.0.0.1"
    assert responses[5].status_code == 429


@pytest.mark.asyncio
async def test_spoofed_leading_hop_does_not_change_client_address() -> None:
    async with _client() as client:
        for i in range(5):
            response = await client.post(
                TOKEN_PATH,
                json={"token": "guess"},
                headers=_headers(f"10.9.9.{i}, 203.0.113.21"),
            )
    assert response.status_code == 429
    assert response.json()["error"]["details"]["ip_address"] == "203.0.113.21"


@pytest.mark.asyncio
async def test_permanently_blocked_address_is_rejected() -> None:
    client_row = await create_client()
    token = await create_token(client_row, issued_at=datetime.now(timezone.utc))
    await create_block_record("203.0.113.13", failure_count=10, tier=BlockTier.PERMANENT)

    async with _client() as client:
        response = await client.post(TOKEN_PATH, json={"token": token}, headers=_headers("203.0.113.13"))
    assert response.status_code == 429
    body = response.json()
    assert body["error"]["code"] == "IP_BLOCKED_PERMANENT"
    assert body["error"]["details"]["failed_attempts"] == 10
    assert "Retry-After" not in response.headers


@pytest.mark.asyncio
async def test_burst_throttle_returns_rate_limit_exceeded() -> None:
    set_gate(RateLimitedGate(throttle=StaticThrottle(allowed=False, retry_after_ms=6_000)))
    async with _client() as client:
        response = await client.post(TOKEN_PATH, json={"token": "guess"}, headers=_headers("203.0.113.14"))
    assert response.status_code == 429
    assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert response.json()["error"]["details"]["retry_after"] == 6
    assert response.headers["Retry-After"] == "6"


@pytest.mark.asyncio
async def test_missing_token_is_a_validation_error() -> None:
    async with _client() as client:
        response = await client.post(TOKEN_PATH, json={}, headers=_headers("203.0.113.15"))
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_code_login_session_validation_and_logout() -> None:
    client_row = await create_client(name="Acme Studio", slug="acme-session")
    await create_approver(client_row, email="ana@acme.example")
    code = await create_code("ana@acme.example", issued_at=datetime.now(timezone.utc))

    async with _client() as client:
        verified = await client.post(
            "/v1/client-access/verify-code",
            json={"identifier": "ana@acme.example", "code": code},
            headers=_headers("203.0.113.16"),
        )
        assert verified.status_code == 200
        session_token = verified.json()["session_token"]

        valid = await client.post(SESSION_PATH, json={"session_token": session_token}, headers=_headers("203.0.113.16"))
        assert valid.status_code == 200
        body = valid.json()
        assert body["valid"] is True
        assert body["client"]["slug"] == "acme-session"
        assert body["approver"]["email"] == "ana@acme.example"
        assert body["approver"]["is_primary"] is True

        reused = await client.post(
            "/v1/client-access/verify-code",
            json={"identifier": "ana@acme.example", "code": code},
            headers=_headers("203.0.113.16"),
        )
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "INVALID_CODE"

        logout = await client.post("/v1/client-access/logout", json={"session_token": session_token})
        assert logout.json() == {"success": True}

        after = await client.post(SESSION_PATH, json={"session_token": session_token}, headers=_headers("203.0.113.16"))
    assert after.status_code == 401
    assert after.json() == {"valid": False, "error": "Invalid or expired session"}


@pytest.mark.asyncio
async def test_disabled_approver_session_is_forbidden() -> None:
    client_row = await create_client()
    approver = await create_approver(client_row, email="ana@acme.example")
    code = await create_code("ana@acme.example", issued_at=datetime.now(timezone.utc))

    async with _client() as client:
        verified = await client.post(
            "/v1/client-access/verify-code",
            json={"identifier": "ana@acme.example", "code": code},
            headers=_headers("203.0.113.17"),
        )
        session_token = verified.json()["session_token"]

        async with SessionLocal() as session:
            approver_row = await session.get(ClientApprover, approver.id)
            approver_row.is_active = False
            await session.commit()

        response = await client.post(SESSION_PATH, json={"session_token": session_token}, headers=_headers("203.0.113.17"))
    assert response.status_code == 403
    assert response.json()["valid"] is False


@pytest.mark.asyncio
async def test_blocked_address_gets_session_429() -> None:
    await create_block_record(
        "203.0.113.18",
        failure_count=6,
        tier=BlockTier.TEMPORARY,
        blocked_until=datetime.now(timezone.utc) + timedelta(minutes=10),
    )
    async with _client() as client:
        response = await client.post(SESSION_PATH, json={"session_token": "whatever"}, headers=_headers("203.0.113.18"))
    assert response.status_code == 429
    assert response.json()["valid"] is False
    assert int(response.headers["Retry-After"]) > 0


@pytest.mark.asyncio
async def test_store_outage_returns_503(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _broken_trust_lookup(session, address):
        raise OperationalError("SELECT 1", {}, Exception("connection reset"))

    monkeypatch.setattr(blocks_repo, "is_trusted", _broken_trust_lookup)
    async with _client() as client:
        response = await client.post(TOKEN_PATH, json={"token": "guess"}, headers=_headers("203.0.113.19"))
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "GATE_UNAVAILABLE"
