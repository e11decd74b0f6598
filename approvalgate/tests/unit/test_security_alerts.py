from __future__ import annotations

import hashlib
import hmac
from datetime import timedelta
import json

import httpx
import pytest
from sqlalchemy import func, select

from approvalgate.core.config import get_settings
from approvalgate.domain.models import SecurityAlert
from approvalgate.domain.state import AlertType
from approvalgate.persistence.db import SessionLocal
from approvalgate.services.security.alerts import AlertDispatcher, build_alert_signature
from approvalgate.tests.utils.seed import utc


NOW = utc(2026, 10, 17)
WEBHOOK_URL = "https://alerts.example.test/security"


def _enable_webhook(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SECURITY_ALERT_WEBHOOK_ENABLED", "true")
    monkeypatch.setenv("SECURITY_ALERT_WEBHOOK_URL", WEBHOOK_URL)
    monkeypatch.setenv("SECURITY_ALERT_WEBHOOK_SECRET", "alert-secret")
    get_settings.cache_clear()


async def _record(dispatcher: AlertDispatcher, *, count: int = 3) -> SecurityAlert | None:
    async with SessionLocal() as session:
        alert = await dispatcher.record(
            session,
            address="203.0.113.7",
            alert_type=AlertType.WARNING_FAILURES,
            triggering_count=count,
            now=NOW,
            metadata={"credential_identifier": "abcdefghij..."},
        )
        await session.commit()
    return alert


def test_signature_matches_hmac_sha256() -> None:
    body = b'{"alert_type":"permanent_block"}'
    expected = hmac.new(b"alert-secret", body, hashlib.sha256).hexdigest()
    assert build_alert_signature("alert-secret", body) == expected


@pytest.mark.asyncio
async def test_alert_recorded_once_per_transition() -> None:
    dispatcher = AlertDispatcher()
    first = await _record(dispatcher)
    duplicate = await _record(dispatcher)
    assert first is not None
    assert duplicate is None

    async with SessionLocal() as session:
        count = (await session.execute(select(func.count(SecurityAlert.id)))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_delivery_skipped_when_disabled() -> None:
    alert = await _record(AlertDispatcher())
    assert alert is not None
    results = await AlertDispatcher().deliver([alert])
    assert not results[0].sent
    assert results[0].message == "Alert webhook is disabled"


@pytest.mark.asyncio
async def test_delivery_posts_signed_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_webhook(monkeypatch)
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202)

    dispatcher = AlertDispatcher(transport=httpx.MockTransport(handler))
    alert = await _record(dispatcher)
    assert alert is not None
    results = await dispatcher.deliver([alert])

    assert results[0].sent
    assert results[0].status_code == 202
    request = captured[0]
    assert str(request.url) == WEBHOOK_URL
    assert request.headers["X-Alert-Type"] == "warning_failures"
    assert request.headers["X-Alert-Signature"] == build_alert_signature("alert-secret", request.content)
    body = json.loads(request.content)
    assert body["address"] == "203.0.113.7"
    assert body["triggering_count"] == 3
    assert body["generation"] == 0


@pytest.mark.asyncio
async def test_delivery_failures_are_reported_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    _enable_webhook(monkeypatch)

    def rejecting(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    alert = await _record(AlertDispatcher())
    assert alert is not None

    rejected = await AlertDispatcher(transport=httpx.MockTransport(rejecting)).deliver([alert])
    assert not rejected[0].sent
    assert rejected[0].status_code == 500

    failed = await AlertDispatcher(transport=httpx.MockTransport(unreachable)).deliver([alert])
    assert not failed[0].sent
    assert failed[0].status_code is None


@pytest.mark.asyncio
async def test_metadata_datetimes_are_stored_as_iso_strings() -> None:
    until = NOW + timedelta(minutes=15)
    async with SessionLocal() as session:
        alert = await AlertDispatcher().record(
            session,
            address="203.0.113.7",
            alert_type=AlertType.TEMPORARY_BLOCK,
            triggering_count=5,
            now=NOW,
            metadata={"blocked_until": until, "session_token": "raw-secret"},
        )
        await session.commit()
    assert alert is not None

    async with SessionLocal() as session:
        stored = (await session.execute(select(SecurityAlert))).scalar_one()
    assert stored.metadata_json == {"blocked_until": until.isoformat(), "session_token": "[REDACTED]"}


@pytest.mark.asyncio
async def test_same_transition_in_a_new_generation_is_recorded() -> None:
    dispatcher = AlertDispatcher()
    async with SessionLocal() as session:
        first = await dispatcher.record(
            session,
            address="203.0.113.7",
            alert_type=AlertType.WARNING_FAILURES,
            triggering_count=3,
            now=NOW,
        )
        second = await dispatcher.record(
            session,
            address="203.0.113.7",
            alert_type=AlertType.WARNING_FAILURES,
            triggering_count=3,
            now=NOW,
            generation=1,
        )
        await session.commit()
    assert first is not None
    assert second is not None
    assert second.generation == 1
