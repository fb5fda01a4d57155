"""
Alert Dispatcher
----------------
Delivers an AlertPayload to the channels its severity maps to:

  CRITICAL → slack, pagerduty, webhook   (page on-call)
  WARN     → slack, webhook              (notify, no page)
  INFO     → slack

Each channel is a POST of a JSON body that signals success with a 2xx.
fetch_with_retry() retries 5xx / timeouts / network errors with capped
exponential backoff and gives up immediately on a 4xx.

A channel without an endpoint yields a FAILED attempt with a "not configured"
error but is left out of both the success and failure counts, so an optional
channel never turns a clean send into PARTIAL. send_alert() never raises, and
every attempt is audited.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import BaseModel

from driftguard.services.shared.audit import AuditEmitter
from driftguard.services.shared.clock import Clock, epoch_ms, utcnow
from driftguard.services.shared.config import (
    ALERT_BASE_DELAY_MS, ALERT_MAX_DELAY_MS, ALERT_MAX_RETRIES, ALERT_WEBHOOK_URL,
    HTTP_TIMEOUT_SECONDS, PAGERDUTY_API_URL, PAGERDUTY_ROUTING_KEY, SLACK_WEBHOOK_URL,
)
from driftguard.services.shared.models import (
    AlertSeverity, ComplianceStatus, DeliveryStatus, FinalDeliveryStatus, IntegrationType,
)
from driftguard.services.shared.schemas import (
    AlertDeliveryResult, AlertPayload, DeliveryAttempt, DriftItem, FetchResult,
    IntegrationHealth, RetryConfig,
)

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]

ALERT_SOURCE = "DriftGuard Compliance Monitor"

CHANNELS_BY_SEVERITY: dict[AlertSeverity, list[IntegrationType]] = {
    AlertSeverity.CRITICAL: [IntegrationType.slack, IntegrationType.pagerduty, IntegrationType.webhook],
    AlertSeverity.WARN:     [IntegrationType.slack, IntegrationType.webhook],
    AlertSeverity.INFO:     [IntegrationType.slack],
}

_SLACK_STYLE = {
    AlertSeverity.CRITICAL: ("🚨", "#dc3545"),
    AlertSeverity.WARN:     ("⚠️", "#ffc107"),
    AlertSeverity.INFO:     ("ℹ️", "#17a2b8"),
}

_PAGERDUTY_SEVERITY = {
    AlertSeverity.CRITICAL: "critical",
    AlertSeverity.WARN:     "warning",
    AlertSeverity.INFO:     "info",
}


class AlertChannels(BaseModel):
    """Outbound endpoints. None = channel not configured."""
    slack_webhook_url:     Optional[str] = None
    pagerduty_routing_key: Optional[str] = None
    pagerduty_api_url:     str = "https://events.pagerduty.com/v2/enqueue"
    webhook_url:           Optional[str] = None

    @classmethod
    def from_env(cls) -> "AlertChannels":
        return cls(
            slack_webhook_url=SLACK_WEBHOOK_URL,
            pagerduty_routing_key=PAGERDUTY_ROUTING_KEY,
            pagerduty_api_url=PAGERDUTY_API_URL,
            webhook_url=ALERT_WEBHOOK_URL,
        )


def default_retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=ALERT_MAX_RETRIES,
        base_delay_ms=ALERT_BASE_DELAY_MS,
        max_delay_ms=ALERT_MAX_DELAY_MS,
    )


# ── Retry ─────────────────────────────────────────────────────────────────────

def calculate_backoff(attempt: int, retry: RetryConfig) -> int:
    """Delay in ms before retrying after `attempt` (0-based): min(base * 2^attempt, max)."""
    return min(retry.base_delay_ms * (2 ** attempt), retry.max_delay_ms)


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    retry: RetryConfig,
    sleep: Sleep = asyncio.sleep,
) -> FetchResult:
    """
    POST `body` to `url`, up to retry.max_retries + 1 attempts.
    `retries` is the number of retries actually performed; a 4xx returns
    without retrying.
    """
    last_error: Optional[str] = None
    last_status = 0
    retries = 0

    for attempt in range(retry.max_retries + 1):
        try:
            resp = await client.post(url, json=body)
            if resp.is_success:
                return FetchResult(ok=True, status=resp.status_code, retries=retries)

            last_status = resp.status_code
            last_error = f"HTTP {resp.status_code}"
            if 400 <= resp.status_code < 500:
                return FetchResult(ok=False, status=resp.status_code, error=last_error, retries=retries)
        except httpx.TimeoutException:
            last_error = f"Timed out after {client.timeout.read}s"
        except httpx.HTTPError as exc:
            last_error = str(exc) or exc.__class__.__name__

        if attempt < retry.max_retries:
            retries = attempt + 1
            await sleep(calculate_backoff(attempt, retry) / 1000)

    return FetchResult(ok=False, status=last_status, error=last_error, retries=retries)


# ── Payload builders ──────────────────────────────────────────────────────────

def build_slack_payload(alert: AlertPayload) -> dict[str, Any]:
    emoji, color = _SLACK_STYLE[alert.severity]

    fields = []
    if alert.workspace_id:
        fields.append({"title": "Workspace", "value": alert.workspace_id, "short": True})
    if alert.incident_id:
        fields.append({"title": "Incident", "value": alert.incident_id, "short": True})
    fields.append({"title": "Source",   "value": alert.source,         "short": True})
    fields.append({"title": "Severity", "value": alert.severity.value, "short": True})
    if alert.drift_items:
        fields.append({
            "title": "Drift Items",
            "value": "\n".join(f"• {d.type.value}: {d.message}" for d in alert.drift_items),
            "short": False,
        })

    return {
        "text": f"{emoji} {alert.title}",
        "attachments": [{
            "color":  color,
            "text":   alert.message,
            "fields": fields,
            "footer": ALERT_SOURCE,
            "ts":     epoch_ms(alert.timestamp) // 1000,
        }],
    }


def build_pagerduty_payload(alert: AlertPayload, routing_key: str) -> dict[str, Any]:
    data = alert.model_dump(mode="json")
    return {
        "routing_key":  routing_key,
        "event_action": "trigger",
        # Repeated triggers for one incident coalesce server-side
        "dedup_key":    alert.incident_id or alert.id,
        "payload": {
            "summary":   alert.title,
            "source":    alert.source,
            "severity":  _PAGERDUTY_SEVERITY[alert.severity],
            "timestamp": data["timestamp"],
            "custom_details": {
                "message":      alert.message,
                "workspace_id": alert.workspace_id,
                "incident_id":  alert.incident_id,
                "drift_items":  data["drift_items"],
                **(data["metadata"] or {}),
            },
        },
    }


def build_webhook_payload(alert: AlertPayload) -> dict[str, Any]:
    return alert.model_dump(mode="json")


# ── Compliance alert helpers ──────────────────────────────────────────────────

_COMPLIANCE_ALERT = {
    ComplianceStatus.FAIL: (AlertSeverity.CRITICAL, "CRITICAL: Compliance Failure Detected"),
    ComplianceStatus.WARN: (AlertSeverity.WARN,     "WARNING: Compliance Warning Detected"),
    ComplianceStatus.PASS: (AlertSeverity.INFO,     "INFO: Compliance Check Passed"),
}


def create_compliance_alert(
    status: ComplianceStatus,
    workspace_id: str,
    drift_items: list[DriftItem],
    incident_id: Optional[str] = None,
    clock: Clock = utcnow,
) -> AlertPayload:
    severity, title = _COMPLIANCE_ALERT[status]
    if drift_items:
        message = (
            f"{len(drift_items)} drift item(s) detected: "
            + ", ".join(d.type.value for d in drift_items)
        )
    else:
        message = "All compliance checks passed."

    now = clock()
    return AlertPayload(
        id=f"ALERT-{epoch_ms(now)}-{uuid.uuid4().hex[:9]}",
        severity=severity,
        title=title,
        message=message,
        source=ALERT_SOURCE,
        timestamp=now,
        workspace_id=workspace_id,
        incident_id=incident_id,
        drift_items=list(drift_items),
    )


# ── Dispatcher ────────────────────────────────────────────────────────────────

class AlertDispatcher:

    def __init__(
        self,
        channels: Optional[AlertChannels] = None,
        retry: Optional[RetryConfig] = None,
        audit: Optional[AuditEmitter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utcnow,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.channels = channels or AlertChannels.from_env()
        self.retry = retry or default_retry_config()
        self.audit = audit
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _endpoint(self, integration: IntegrationType, alert: AlertPayload) -> tuple[Optional[str], Optional[dict], str]:
        """(url, body, not-configured error) for one channel."""
        ch = self.channels
        if integration == IntegrationType.slack:
            if not ch.slack_webhook_url:
                return None, None, "Slack webhook URL not configured"
            return ch.slack_webhook_url, build_slack_payload(alert), ""
        if integration == IntegrationType.pagerduty:
            if not ch.pagerduty_routing_key:
                return None, None, "PagerDuty routing key not configured"
            return ch.pagerduty_api_url, build_pagerduty_payload(alert, ch.pagerduty_routing_key), ""
        if not ch.webhook_url:
            return None, None, "Generic webhook URL not configured"
        return ch.webhook_url, build_webhook_payload(alert), ""

    async def _deliver(
        self, client: httpx.AsyncClient, integration: IntegrationType, alert: AlertPayload,
    ) -> tuple[DeliveryAttempt, bool]:
        """Returns (attempt, configured)."""
        url, body, not_configured = self._endpoint(integration, alert)
        if url is None:
            return DeliveryAttempt(
                integration=integration,
                timestamp=self._clock(),
                status=DeliveryStatus.FAILED,
                error=not_configured,
                retry_count=0,
            ), False

        try:
            result = await fetch_with_retry(client, url, body, self.retry, self._sleep)
        except Exception as exc:
            logger.error("alert_channel_error", integration=integration.value, alert_id=alert.id, error=str(exc))
            result = FetchResult(ok=False, error=str(exc))

        return DeliveryAttempt(
            integration=integration,
            timestamp=self._clock(),
            status=DeliveryStatus.SENT if result.ok else DeliveryStatus.FAILED,
            status_code=result.status or None,
            error=result.error,
            retry_count=result.retries,
        ), True

    async def send_alert(self, alert: AlertPayload) -> AlertDeliveryResult:
        integrations = CHANNELS_BY_SEVERITY[alert.severity]
        attempts: list[DeliveryAttempt] = []
        successful: list[IntegrationType] = []
        failed: list[IntegrationType] = []
        configured = 0

        async with self._client() as client:
            for integration in integrations:
                attempt, is_configured = await self._deliver(client, integration, alert)
                attempts.append(attempt)

                if is_configured:
                    configured += 1
                    if attempt.status == DeliveryStatus.SENT:
                        successful.append(integration)
                    else:
                        failed.append(integration)
                        logger.warning(
                            "alert_delivery_failed",
                            alert_id=alert.id,
                            integration=integration.value,
                            status_code=attempt.status_code,
                            retries=attempt.retry_count,
                            error=attempt.error,
                        )

                await self._audit_attempt(alert, attempt)

        if configured and len(successful) == configured:
            final = FinalDeliveryStatus.SUCCESS
        elif successful:
            final = FinalDeliveryStatus.PARTIAL
        else:
            final = FinalDeliveryStatus.FAILED

        logger.info(
            "alert_dispatched",
            alert_id=alert.id,
            severity=alert.severity.value,
            final_status=final.value,
            sent=[i.value for i in successful],
        )
        return AlertDeliveryResult(
            alert_id=alert.id,
            attempts=attempts,
            final_status=final,
            successful_integrations=successful,
            failed_integrations=failed,
        )

    async def send_compliance_alert(
        self,
        status: ComplianceStatus,
        workspace_id: str,
        drift_items: list[DriftItem],
        incident_id: Optional[str] = None,
    ) -> AlertDeliveryResult:
        alert = create_compliance_alert(status, workspace_id, drift_items, incident_id, clock=self._clock)
        return await self.send_alert(alert)

    def get_integration_health(self) -> list[IntegrationHealth]:
        ch = self.channels
        return [
            IntegrationHealth(
                integration=IntegrationType.slack,
                configured=bool(ch.slack_webhook_url),
                url="[configured]" if ch.slack_webhook_url else None,
            ),
            IntegrationHealth(
                integration=IntegrationType.pagerduty,
                configured=bool(ch.pagerduty_routing_key),
                url=ch.pagerduty_api_url,
            ),
            IntegrationHealth(
                integration=IntegrationType.webhook,
                configured=bool(ch.webhook_url),
                url="[configured]" if ch.webhook_url else None,
            ),
        ]

    async def _audit_attempt(self, alert: AlertPayload, attempt: DeliveryAttempt) -> None:
        if self.audit is None:
            return
        await self.audit.emit(
            workspace_id=alert.workspace_id,
            actor_id="alert-integrations",
            entity_id=alert.id,
            dataset="alert_delivery",
            metadata={
                "alert_id":       alert.id,
                "alert_severity": alert.severity.value,
                "integration":    attempt.integration.value,
                "status":         attempt.status.value,
                "status_code":    attempt.status_code,
                "error":          attempt.error,
                "retry_count":    attempt.retry_count,
                "timestamp":      attempt.timestamp.isoformat(),
            },
        )
