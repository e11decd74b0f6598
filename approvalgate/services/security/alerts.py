from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from approvalgate.core.config import get_settings
from approvalgate.domain.models import SecurityAlert
from approvalgate.domain.state import AlertType
from approvalgate.persistence.repos import alerts as alerts_repo
from approvalgate.services.audit import sanitize_metadata


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookDeliveryResult:
    sent: bool
    status_code: int | None
    message: str


def build_alert_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact request body so receivers can verify origin.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def alert_payload(alert: SecurityAlert) -> dict[str, Any]:
    return {
        "alert_id": alert.id,
        "alert_type": alert.alert_type,
        "address": alert.address,
        "triggering_count": alert.triggering_count,
        "generation": alert.generation,
        "created_at": alert.created_at.isoformat(),
        "metadata": alert.metadata_json or {},
    }


class AlertDispatcher:
    """Persist one alert per tier transition and hand it to the notification pipeline.

    ``record`` runs inside the caller's transaction; ``deliver`` runs after
    commit and never raises, so delivery problems cannot change a gate decision.
    """

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def record(
        self,
        session: AsyncSession,
        *,
        address: str,
        alert_type: AlertType,
        triggering_count: int,
        now: datetime,
        generation: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> SecurityAlert | None:
        # Metadata lands in a JSON column; datetimes become ISO strings and secrets are redacted.
        alert = await alerts_repo.insert_alert(
            session,
            address=address,
            alert_type=alert_type,
            triggering_count=triggering_count,
            created_at=now,
            generation=generation,
            metadata=sanitize_metadata(metadata or {}),
        )
        if alert is None:
            logger.info(
                "security_alert_duplicate address=%s alert_type=%s count=%s generation=%s",
                address,
                alert_type.value,
                triggering_count,
                generation,
            )
            return None
        logger.warning(
            "security_alert address=%s alert_type=%s count=%s",
            address,
            alert_type.value,
            triggering_count,
        )
        return alert

    async def deliver(self, alerts: list[SecurityAlert]) -> list[WebhookDeliveryResult]:
        return [await self._send(alert) for alert in alerts]

    async def _send(self, alert: SecurityAlert) -> WebhookDeliveryResult:
        settings = get_settings()
        if not settings.security_alert_webhook_enabled:
            return WebhookDeliveryResult(sent=False, status_code=None, message="Alert webhook is disabled")
        if not settings.security_alert_webhook_url or not settings.security_alert_webhook_secret:
            return WebhookDeliveryResult(
                sent=False,
                status_code=None,
                message="Alert webhook is not configured",
            )

        body = json.dumps(alert_payload(alert), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Alert-Signature": build_alert_signature(settings.security_alert_webhook_secret, body),
            "X-Alert-Type": alert.alert_type,
        }
        timeout = settings.security_alert_webhook_timeout_ms / 1000.0
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(settings.security_alert_webhook_url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "security_alert_webhook_failed alert_type=%s address=%s",
                alert.alert_type,
                alert.address,
                exc_info=exc,
            )
            return WebhookDeliveryResult(sent=False, status_code=None, message=str(exc))

        if response.status_code >= 400:
            logger.warning(
                "security_alert_webhook_rejected alert_type=%s status=%s",
                alert.alert_type,
                response.status_code,
            )
            return WebhookDeliveryResult(
                sent=False,
                status_code=response.status_code,
                message=f"Webhook responded with status {response.status_code}",
            )
        return WebhookDeliveryResult(
            sent=True,
            status_code=response.status_code,
            message="Webhook delivered successfully",
        )
