"""
Unit tests for the alert dispatcher: retry/backoff, per-severity routing,
final-status aggregation and payload shapes. Outbound HTTP goes through
httpx.MockTransport; backoff sleeps are recorded, never slept.
"""

import json

import httpx
import pytest

from conftest import T0, make_item
from driftguard.services.monitor.alerts import (
    AlertChannels, AlertDispatcher, build_pagerduty_payload, build_slack_payload,
    calculate_backoff, create_compliance_alert, fetch_with_retry,
)
from driftguard.services.shared.models import (
    AlertSeverity, ComplianceStatus, DeliveryStatus, FinalDeliveryStatus, IntegrationType,
)
from driftguard.services.shared.schemas import AlertPayload, RetryConfig

SLACK = "https://hooks.slack.test/T000/B000"
PD = "https://events.pagerduty.test/v2/enqueue"
HOOK = "https://alerts.example.test/hook"

ALL_CHANNELS = AlertChannels(
    slack_webhook_url=SLACK, pagerduty_routing_key="rk-123", pagerduty_api_url=PD, webhook_url=HOOK,
)


def _alert(severity=AlertSeverity.CRITICAL, **kw):
    base = dict(
        id="ALERT-1",
        severity=severity,
        title="Compliance failure",
        message="2 drift item(s) detected",
        source="DriftGuard Compliance Monitor",
        timestamp=T0,
        workspace_id="ws-1",
    )
    base.update(kw)
    return AlertPayload(**base)


class Router:
    """MockTransport handler: url → list of status codes (last one repeats)."""

    def __init__(self, plan=None, default=200):
        self.plan = {k: list(v) for k, v in (plan or {}).items()}
        self.default = default
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        codes = self.plan.get(str(request.url))
        if not codes:
            return httpx.Response(self.default)
        code = codes.pop(0) if len(codes) > 1 else codes[0]
        if isinstance(code, Exception):
            raise code
        return httpx.Response(code)

    def hits(self, url):
        return [r for r in self.requests if str(r.url) == url]


def _dispatcher(router, channels=ALL_CHANNELS, audit=None, sleep=None, clock=None):
    kw = {}
    if sleep is not None:
        kw["sleep"] = sleep
    if clock is not None:
        kw["clock"] = clock
    return AlertDispatcher(
        channels=channels,
        retry=RetryConfig(),
        audit=audit,
        transport=httpx.MockTransport(router),
        **kw,
    )


# ── calculate_backoff ─────────────────────────────────────────────────────────

def test_backoff_doubles_then_caps():
    retry = RetryConfig(base_delay_ms=1000, max_delay_ms=30000)
    assert [calculate_backoff(a, retry) for a in range(7)] == [
        1000, 2000, 4000, 8000, 16000, 30000, 30000,
    ]


# ── fetch_with_retry ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fetch_recovers_after_three_server_errors(no_sleep):
    router = Router({HOOK: [500, 500, 500, 200]})
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        result = await fetch_with_retry(client, HOOK, {"a": 1}, RetryConfig(), no_sleep)

    assert result.ok is True
    assert result.status == 200
    assert result.retries == 3
    assert no_sleep.delays == [1.0, 2.0, 4.0]
    assert len(router.requests) == 4


@pytest.mark.asyncio
async def test_fetch_gives_up_on_client_error(no_sleep):
    router = Router({HOOK: [404]})
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        result = await fetch_with_retry(client, HOOK, {}, RetryConfig(), no_sleep)

    assert result.ok is False
    assert result.status == 404
    assert result.retries == 0
    assert no_sleep.delays == []
    assert len(router.requests) == 1


@pytest.mark.asyncio
async def test_fetch_exhausts_retries(no_sleep):
    router = Router({HOOK: [503]})
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        result = await fetch_with_retry(client, HOOK, {}, RetryConfig(), no_sleep)

    assert result.ok is False
    assert result.status == 503
    assert result.error == "HTTP 503"
    assert result.retries == 3
    assert len(router.requests) == 4


@pytest.mark.asyncio
async def test_fetch_retries_timeouts_and_network_errors(no_sleep):
    router = Router({HOOK: [httpx.ReadTimeout("slow"), httpx.ConnectError("refused"), 200]})
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        result = await fetch_with_retry(client, HOOK, {}, RetryConfig(), no_sleep)

    assert result.ok is True
    assert result.retries == 2


@pytest.mark.asyncio
async def test_fetch_reports_last_network_error(no_sleep):
    router = Router({HOOK: [httpx.ConnectError("connection refused")]})
    async with httpx.AsyncClient(transport=httpx.MockTransport(router)) as client:
        result = await fetch_with_retry(client, HOOK, {}, RetryConfig(max_retries=1), no_sleep)

    assert result.ok is False
    assert result.status == 0
    assert "connection refused" in result.error
    assert result.retries == 1


# ── send_alert routing ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_info_goes_to_slack_only(no_sleep):
    router = Router()
    result = await _dispatcher(router, sleep=no_sleep).send_alert(_alert(AlertSeverity.INFO))

    assert [a.integration for a in result.attempts] == [IntegrationType.slack]
    assert [str(r.url) for r in router.requests] == [SLACK]
    assert result.final_status == FinalDeliveryStatus.SUCCESS


@pytest.mark.asyncio
async def test_warn_skips_pagerduty(no_sleep):
    router = Router()
    result = await _dispatcher(router, sleep=no_sleep).send_alert(_alert(AlertSeverity.WARN))

    assert [a.integration for a in result.attempts] == [IntegrationType.slack, IntegrationType.webhook]
    assert router.hits(PD) == []


@pytest.mark.asyncio
async def test_critical_hits_all_three_channels(no_sleep):
    router = Router()
    result = await _dispatcher(router, sleep=no_sleep).send_alert(_alert())

    assert len(result.attempts) == 3
    assert {str(r.url) for r in router.requests} == {SLACK, PD, HOOK}
    assert result.successful_integrations == [
        IntegrationType.slack, IntegrationType.pagerduty, IntegrationType.webhook,
    ]
    assert result.final_status == FinalDeliveryStatus.SUCCESS


@pytest.mark.asyncio
async def test_slack_retries_then_succeeds(no_sleep):
    router = Router({SLACK: [500, 500, 500, 200]})
    result = await _dispatcher(router, sleep=no_sleep).send_alert(_alert(AlertSeverity.INFO))

    attempt = result.attempts[0]
    assert attempt.status == DeliveryStatus.SENT
    assert attempt.retry_count == 3
    assert no_sleep.delays == [1.0, 2.0, 4.0]
    assert result.final_status == FinalDeliveryStatus.SUCCESS


@pytest.mark.asyncio
async def test_one_channel_down_is_partial(no_sleep):
    router = Router({PD: [404]})
    result = await _dispatcher(router, sleep=no_sleep).send_alert(_alert())

    assert result.final_status == FinalDeliveryStatus.PARTIAL
    assert result.failed_integrations == [IntegrationType.pagerduty]
    pd_attempt = next(a for a in result.attempts if a.integration == IntegrationType.pagerduty)
    assert pd_attempt.status_code == 404
    assert pd_attempt.retry_count == 0


@pytest.mark.asyncio
async def test_all_channels_down_is_failed(no_sleep):
    router = Router(default=400)
    result = await _dispatcher(router, sleep=no_sleep).send_alert(_alert())

    assert result.final_status == FinalDeliveryStatus.FAILED
    assert result.successful_integrations == []


@pytest.mark.asyncio
async def test_unconfigured_channel_does_not_make_partial(no_sleep):
    router = Router()
    channels = AlertChannels(slack_webhook_url=SLACK)
    result = await _dispatcher(router, channels=channels, sleep=no_sleep).send_alert(_alert())

    assert result.final_status == FinalDeliveryStatus.SUCCESS
    assert result.successful_integrations == [IntegrationType.slack]
    assert result.failed_integrations == []
    errors = {a.integration: a.error for a in result.attempts}
    assert errors[IntegrationType.pagerduty] == "PagerDuty routing key not configured"
    assert errors[IntegrationType.webhook] == "Generic webhook URL not configured"
    assert [str(r.url) for r in router.requests] == [SLACK]


@pytest.mark.asyncio
async def test_nothing_configured_is_failed(no_sleep):
    router = Router()
    result = await _dispatcher(router, channels=AlertChannels(), sleep=no_sleep).send_alert(
        _alert(AlertSeverity.INFO)
    )

    assert result.final_status == FinalDeliveryStatus.FAILED
    assert result.attempts[0].error == "Slack webhook URL not configured"
    assert router.requests == []


@pytest.mark.asyncio
async def test_every_attempt_is_audited(no_sleep, audit, audit_sink):
    router = Router({HOOK: [404]})
    await _dispatcher(router, audit=audit, sleep=no_sleep).send_alert(_alert())

    entries = audit_sink.by_dataset("alert_delivery")
    assert len(entries) == 3
    assert all(e.context.actor_id == "alert-integrations" for e in entries)
    by_channel = {e.metadata["integration"]: e.metadata for e in entries}
    assert by_channel["webhook"]["status"] == "FAILED"
    assert by_channel["webhook"]["status_code"] == 404
    assert by_channel["slack"]["status"] == "SENT"


@pytest.mark.asyncio
async def test_audit_failure_does_not_break_delivery(no_sleep, audit, audit_sink):
    audit_sink.fail_with = RuntimeError("audit db down")
    router = Router()
    result = await _dispatcher(router, audit=audit, sleep=no_sleep).send_alert(_alert())

    assert result.final_status == FinalDeliveryStatus.SUCCESS
    assert audit.health().consecutive_failures == 3


# ── Payloads ──────────────────────────────────────────────────────────────────

def test_slack_payload_shape():
    alert = _alert(
        incident_id="INC-9",
        drift_items=[make_item("CRITICAL", message="No active owner found for workspace")],
    )
    body = build_slack_payload(alert)

    assert body["text"].startswith("🚨 ")
    attachment = body["attachments"][0]
    assert attachment["color"] == "#dc3545"
    assert attachment["ts"] == int(T0.timestamp())
    titles = [f["title"] for f in attachment["fields"]]
    assert titles == ["Workspace", "Incident", "Source", "Severity", "Drift Items"]
    assert "No active owner found for workspace" in attachment["fields"][-1]["value"]


def test_pagerduty_payload_dedups_on_incident():
    body = build_pagerduty_payload(_alert(incident_id="INC-9"), "rk-123")
    assert body["routing_key"] == "rk-123"
    assert body["event_action"] == "trigger"
    assert body["dedup_key"] == "INC-9"
    assert body["payload"]["severity"] == "critical"
    json.dumps(body)

    assert build_pagerduty_payload(_alert(), "rk")["dedup_key"] == "ALERT-1"


@pytest.mark.asyncio
async def test_webhook_receives_full_alert_json(no_sleep):
    router = Router()
    await _dispatcher(router, sleep=no_sleep).send_alert(_alert(AlertSeverity.WARN))

    sent = json.loads(router.hits(HOOK)[0].content)
    assert sent["id"] == "ALERT-1"
    assert sent["severity"] == "WARN"
    assert sent["workspace_id"] == "ws-1"


def test_compliance_alert_maps_status(clock):
    items = [make_item("CRITICAL"), make_item("HIGH")]
    alert = create_compliance_alert(ComplianceStatus.FAIL, "ws-1", items, clock=clock)

    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.id.startswith(f"ALERT-{int(T0.timestamp() * 1000)}-")
    assert alert.message.startswith("2 drift item(s) detected")

    passed = create_compliance_alert(ComplianceStatus.PASS, "ws-1", [], clock=clock)
    assert passed.severity == AlertSeverity.INFO
    assert passed.message == "All compliance checks passed."


def test_integration_health_hides_urls():
    health = {h.integration: h for h in AlertDispatcher(channels=AlertChannels(slack_webhook_url=SLACK)).get_integration_health()}
    assert health[IntegrationType.slack].configured is True
    assert health[IntegrationType.slack].url == "[configured]"
    assert health[IntegrationType.pagerduty].configured is False
    assert health[IntegrationType.webhook].url is None


@pytest.mark.asyncio
async def test_send_compliance_alert_warn(no_sleep, clock):
    router = Router()
    dispatcher = _dispatcher(router, sleep=no_sleep, clock=clock)

    result = await dispatcher.send_compliance_alert(
        ComplianceStatus.WARN, "ws-1", [make_item("HIGH")], incident_id="INC-1",
    )

    assert result.final_status == FinalDeliveryStatus.SUCCESS
    assert {str(r.url) for r in router.requests} == {SLACK, HOOK}
    sent = json.loads(router.hits(HOOK)[0].content)
    assert sent["title"] == "WARNING: Compliance Warning Detected"
    assert sent["incident_id"] == "INC-1"
