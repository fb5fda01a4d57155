"""
Unit tests for the auto-response playbook and the incident lifecycle.
Kill-switch service is an AsyncMock; the on-call webhook is an httpx.MockTransport.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import make_item
from driftguard.services.monitor.auto_response import AutoResponseExecutor, IncidentTransitionError
from driftguard.services.shared.models import (
    AutoActionType, ComplianceStatus, DriftSeverity, IncidentStatus,
)
from driftguard.services.shared.schemas import ComplianceCheckResult, KillSwitchResult
from driftguard.services.shared.stores import InMemoryKeyedStore

ONCALL = "https://oncall.example.test/page"


def _kill_switches(result=None, exc=None):
    ks = AsyncMock()
    if exc is not None:
        ks.enable_workspace_kill_switch.side_effect = exc
    else:
        ks.enable_workspace_kill_switch.return_value = result or KillSwitchResult(success=True)
    return ks


def _critical(clock, workspace_id="ws-1", items=None):
    return ComplianceCheckResult(
        status=ComplianceStatus.FAIL,
        overall_severity=DriftSeverity.CRITICAL,
        drift_items=tuple(items or [
            make_item("CRITICAL", message="No active owner found for workspace"),
            make_item("MEDIUM", message="Snapshot for meta/daily is older than 7 days", snapshot_id="snap-1"),
        ]),
        timestamp=clock(),
        workspace_id=workspace_id,
    )


def _executor(clock, audit=None, kill_switches=None, url=None, handler=None, tracker=None):
    transport = httpx.MockTransport(handler or (lambda r: httpx.Response(200)))
    return AutoResponseExecutor(
        kill_switches=kill_switches or _kill_switches(),
        audit=audit,
        tracker=tracker,
        clock=clock,
        oncall_webhook_url=url,
        transport=transport,
        cooldown_seconds=300,
    )


def _action(result, kind):
    return next(a for a in result.actions if a.action == kind)


# ── Trigger conditions ────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("status,severity", [
    (ComplianceStatus.FAIL, DriftSeverity.HIGH),
    (ComplianceStatus.WARN, DriftSeverity.CRITICAL),
    (ComplianceStatus.PASS, None),
])
async def test_only_critical_fail_triggers(clock, status, severity):
    ks = _kill_switches()
    executor = _executor(clock, kill_switches=ks)
    result = ComplianceCheckResult(
        status=status, overall_severity=severity, timestamp=clock(), workspace_id="ws-1",
    )

    out = await executor.execute_auto_response(result)

    assert out.triggered is False
    assert out.reason == "not_critical"
    ks.enable_workspace_kill_switch.assert_not_awaited()


@pytest.mark.asyncio
async def test_full_playbook(clock, audit_sink, audit):
    ks = _kill_switches()
    executor = _executor(clock, audit=audit, kill_switches=ks)

    out = await executor.execute_auto_response(_critical(clock))

    assert out.triggered is True
    assert [a.action for a in out.actions] == [
        AutoActionType.ENABLE_KILL_SWITCH, AutoActionType.SEND_NOTIFICATION, AutoActionType.OPEN_INCIDENT,
    ]
    assert out.errors == []

    incident = out.incident
    assert incident.id.startswith("INC-")
    assert incident.status == IncidentStatus.OPEN
    assert incident.snapshot_id == "snap-1"
    assert incident.reason == "No active owner found for workspace; Snapshot for meta/daily is older than 7 days"
    assert executor.get_incident(incident.id) is incident

    ws, reason, actor = ks.enable_workspace_kill_switch.await_args.args
    assert ws == "ws-1"
    assert reason == f"Auto-enabled due to critical compliance failure ({incident.id})"
    assert actor == "auto-response-system"

    notify = _action(out, AutoActionType.SEND_NOTIFICATION)
    assert notify.success is True
    assert notify.details == {"skipped": True, "reason": "No webhook URL configured"}

    opened = _action(out, AutoActionType.OPEN_INCIDENT)
    assert opened.details["previous_actions_count"] == 2
    assert opened.details["drift_count"] == 2

    assert len(audit_sink.by_dataset("auto_response")) == 1


@pytest.mark.asyncio
async def test_cooldown_blocks_second_run(clock):
    ks = _kill_switches()
    executor = _executor(clock, kill_switches=ks)

    first = await executor.execute_auto_response(_critical(clock))
    clock.advance(timedelta(seconds=10))
    second = await executor.execute_auto_response(_critical(clock))

    assert first.triggered is True
    assert second.triggered is False
    assert second.reason == "cooldown"
    assert len(executor.get_all_incidents()) == 1
    assert ks.enable_workspace_kill_switch.await_count == 1

    clock.advance(timedelta(minutes=5))
    third = await executor.execute_auto_response(_critical(clock))
    assert third.triggered is True


@pytest.mark.asyncio
async def test_expired_cooldowns_are_pruned(clock):
    cooldowns = InMemoryKeyedStore()
    executor = AutoResponseExecutor(
        kill_switches=_kill_switches(),
        clock=clock,
        oncall_webhook_url=None,
        cooldowns=cooldowns,
        cooldown_seconds=300,
    )

    await executor.execute_auto_response(_critical(clock, "ws-a"))
    clock.advance(timedelta(minutes=2))
    await executor.execute_auto_response(_critical(clock, "ws-b"))
    assert sorted(cooldowns.keys()) == ["ws-a", "ws-b"]

    clock.advance(timedelta(minutes=4))
    await executor.execute_auto_response(_critical(clock, "ws-c"))
    assert sorted(cooldowns.keys()) == ["ws-b", "ws-c"]


@pytest.mark.asyncio
async def test_cooldown_is_per_workspace(clock):
    executor = _executor(clock)
    a = await executor.execute_auto_response(_critical(clock, "ws-a"))
    b = await executor.execute_auto_response(_critical(clock, "ws-b"))
    assert a.triggered and b.triggered


@pytest.mark.asyncio
async def test_clear_cooldown_allows_rerun(clock):
    executor = _executor(clock)
    await executor.execute_auto_response(_critical(clock))
    executor.clear_cooldown("ws-1")
    out = await executor.execute_auto_response(_critical(clock))
    assert out.triggered is True


@pytest.mark.asyncio
async def test_concurrent_triggers_open_one_incident(clock):
    executor = _executor(clock)
    outs = await asyncio.gather(*[executor.execute_auto_response(_critical(clock)) for _ in range(5)])

    assert sum(1 for o in outs if o.triggered) == 1
    assert len(executor.get_all_incidents()) == 1


# ── Step failures ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_kill_switch_exception_still_opens_incident(clock):
    executor = _executor(clock, kill_switches=_kill_switches(exc=RuntimeError("db locked")))

    out = await executor.execute_auto_response(_critical(clock))

    assert out.triggered is True
    ks_action = _action(out, AutoActionType.ENABLE_KILL_SWITCH)
    assert ks_action.success is False
    assert out.errors == ["db locked"]
    assert out.incident is not None
    assert _action(out, AutoActionType.OPEN_INCIDENT).success is True


@pytest.mark.asyncio
async def test_kill_switch_already_enabled_is_success(clock):
    ks = _kill_switches(KillSwitchResult(success=True, already_enabled=True))
    out = await _executor(clock, kill_switches=ks).execute_auto_response(_critical(clock))

    action = _action(out, AutoActionType.ENABLE_KILL_SWITCH)
    assert action.success is True
    assert action.details["already_enabled"] is True


@pytest.mark.asyncio
async def test_notification_posts_incident(clock):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    out = await _executor(clock, url=ONCALL, handler=handler).execute_auto_response(_critical(clock))

    assert len(seen) == 1
    body = json.loads(seen[0].content)
    assert body["incident_id"] == out.incident.id
    assert body["severity"] == "CRITICAL"
    assert len(body["drift_items"]) == 2
    assert _action(out, AutoActionType.SEND_NOTIFICATION).details == {"webhook_status": 202}


@pytest.mark.asyncio
async def test_notification_error_status_is_not_retried(clock):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    out = await _executor(clock, url=ONCALL, handler=handler).execute_auto_response(_critical(clock))

    assert len(calls) == 1
    notify = _action(out, AutoActionType.SEND_NOTIFICATION)
    assert notify.success is False
    assert notify.error == "Webhook returned 500"
    assert out.errors == ["Webhook returned 500"]
    assert out.incident is not None


@pytest.mark.asyncio
async def test_notification_network_error(clock):
    def handler(request):
        raise httpx.ConnectError("connection refused")

    out = await _executor(clock, url=ONCALL, handler=handler).execute_auto_response(_critical(clock))

    notify = _action(out, AutoActionType.SEND_NOTIFICATION)
    assert notify.success is False
    assert "connection refused" in notify.error


@pytest.mark.asyncio
async def test_incident_is_linked_to_drift(clock):
    tracker = AsyncMock()
    out = await _executor(clock, tracker=tracker).execute_auto_response(_critical(clock))
    tracker.link_drift_to_incident.assert_awaited_once_with("ws-1", out.incident.id)


# ── Incident lifecycle ────────────────────────────────────────────────────────

async def _opened(clock, audit=None):
    executor = _executor(clock, audit=audit)
    out = await executor.execute_auto_response(_critical(clock))
    return executor, out.incident.id


@pytest.mark.asyncio
async def test_acknowledge_then_resolve(clock, audit, audit_sink):
    executor, incident_id = await _opened(clock, audit)

    clock.advance(timedelta(minutes=1))
    assert await executor.acknowledge_incident(incident_id, "alice", "looking into it") is True
    inc = executor.get_incident(incident_id)
    assert inc.status == IncidentStatus.ACKNOWLEDGED
    assert inc.acknowledged_by == "alice"
    assert inc.acknowledged_at == clock.now
    assert executor.get_open_incidents("ws-1") == []

    clock.advance(timedelta(minutes=1))
    assert await executor.resolve_incident(incident_id, "bob", "owner restored") is True
    assert inc.status == IncidentStatus.RESOLVED
    assert inc.resolved_by == "bob"

    entries = audit_sink.by_dataset("incident")
    assert [e.reason for e in entries] == ["looking into it", "owner restored"]
    assert entries[0].metadata["incident_acknowledged"] is True
    assert entries[1].metadata["incident_resolved"] is True


@pytest.mark.asyncio
async def test_resolve_directly_from_open(clock):
    executor, incident_id = await _opened(clock)
    assert await executor.resolve_incident(incident_id, "alice", "false positive") is True
    assert executor.get_incident(incident_id).status == IncidentStatus.RESOLVED


@pytest.mark.asyncio
async def test_transitions_never_go_backwards(clock):
    executor, incident_id = await _opened(clock)
    await executor.resolve_incident(incident_id, "alice", "done")

    with pytest.raises(IncidentTransitionError):
        await executor.acknowledge_incident(incident_id, "bob", "late ack")
    with pytest.raises(IncidentTransitionError):
        await executor.resolve_incident(incident_id, "bob", "again")
    assert executor.get_incident(incident_id).resolved_by == "alice"


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["", "   "])
async def test_reason_is_required(clock, reason):
    executor, incident_id = await _opened(clock)
    with pytest.raises(ValueError):
        await executor.acknowledge_incident(incident_id, "alice", reason)
    assert executor.get_incident(incident_id).status == IncidentStatus.OPEN


@pytest.mark.asyncio
async def test_unknown_incident(clock):
    executor = _executor(clock)
    assert await executor.acknowledge_incident("INC-nope", "alice", "why") is False
    assert executor.get_incident("INC-nope") is None


@pytest.mark.asyncio
async def test_incident_listing(clock):
    executor = _executor(clock)
    first = await executor.execute_auto_response(_critical(clock, "ws-a"))
    clock.advance(timedelta(seconds=1))
    second = await executor.execute_auto_response(_critical(clock, "ws-b"))

    assert [i.id for i in executor.get_all_incidents()] == [second.incident.id, first.incident.id]
    assert [i.id for i in executor.get_open_incidents("ws-a")] == [first.incident.id]

    executor.clear_incidents()
    assert executor.get_all_incidents() == []
