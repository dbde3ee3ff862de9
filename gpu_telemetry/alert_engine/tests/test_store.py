"""Tests for the SQLite telemetry store."""
from __future__ import annotations

from datetime import timedelta

import pytest

from gpu_telemetry.alert_engine.models import (
    ActionStatus,
    ActionType,
    AlertCandidate,
    AlertStatus,
    AlertType,
    NodeStatus,
    Severity,
)
from gpu_telemetry.alert_engine.store import AlertNotFoundError, StoreError, TelemetryStore


def _candidate(node_id: str = "node-1", severity: Severity = Severity.WARNING) -> AlertCandidate:
    return AlertCandidate(
        node_id=node_id,
        gpu_index=2,
        alert_type=AlertType.HIGH_POWER,
        severity=severity,
        message="GPU power consumption is 340.0W",
        threshold_value=330.0,
        actual_value=340.0,
    )


def test_sqlite_wal_and_foreign_keys(tmp_path):
    s = TelemetryStore(str(tmp_path / "wal.db"))
    assert s._conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    assert s._conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    s.close()


def test_store_metric_appends_rows(store: TelemetryStore, make_sample):
    store.store_metric(make_sample())
    store.store_metric(make_sample())
    rows = store.node_metrics("node-1")
    assert len(rows) == 2
    assert rows[0].temperature_c == 70.0


def test_store_metric_advances_last_seen(store: TelemetryStore, make_sample):
    s = make_sample()
    store.store_metric(s)
    assert store.get_node("node-1").last_seen == s.collected_at
    # an older, late-arriving sample does not move last_seen back
    store.store_metric(make_sample(collected_at=s.collected_at - timedelta(minutes=5)))
    assert store.get_node("node-1").last_seen == s.collected_at


def test_store_metric_registers_unknown_node(store: TelemetryStore, make_sample):
    store.store_metric(make_sample(node_id="node-9"))
    node = store.get_node("node-9")
    assert node is not None
    assert node.status == NodeStatus.HEALTHY.value
    assert node.hostname is None


def test_create_alert_returns_distinct_ids(store: TelemetryStore):
    a = store.create_alert(_candidate())
    b = store.create_alert(_candidate())
    assert a != b
    alert = store.get_alert(a)
    assert alert.status == AlertStatus.ACTIVE
    assert alert.threshold_value == 330.0
    assert alert.actual_value == 340.0
    assert alert.triggered_at is not None
    assert alert.resolved_at is None


def test_create_alert_unknown_node_raises_store_error(store: TelemetryStore):
    with pytest.raises(StoreError):
        store.create_alert(_candidate(node_id="ghost"))


def test_record_action_persists_details(store: TelemetryStore):
    alert_id = store.create_alert(_candidate())
    rec = store.record_action(alert_id, ActionType.NOTIFICATION, ActionStatus.EXECUTED,
                              {"action": "send_notification", "channel": "slack"})
    assert rec.id is not None
    stored = store.list_actions(alert_id)
    assert len(stored) == 1
    assert stored[0].action_type == ActionType.NOTIFICATION
    assert stored[0].action_status == ActionStatus.EXECUTED
    assert stored[0].action_details == {"action": "send_notification", "channel": "slack"}


def test_record_action_missing_alert_raises_store_error(store: TelemetryStore):
    with pytest.raises(StoreError):
        store.record_action(999, ActionType.NOTIFICATION, ActionStatus.EXECUTED, {})


def test_resolve_alert_keeps_captured_values(store: TelemetryStore):
    alert_id = store.create_alert(_candidate())
    alert = store.resolve_alert(alert_id)
    assert alert.status == AlertStatus.RESOLVED
    assert alert.resolved_at is not None
    assert alert.threshold_value == 330.0
    assert alert.actual_value == 340.0


def test_resolve_twice_keeps_first_resolution(store: TelemetryStore):
    alert_id = store.create_alert(_candidate())
    first = store.resolve_alert(alert_id)
    second = store.resolve_alert(alert_id)
    assert second.resolved_at == first.resolved_at


def test_resolve_missing_alert_is_not_found(store: TelemetryStore):
    with pytest.raises(AlertNotFoundError) as exc:
        store.resolve_alert(12345)
    assert not isinstance(exc.value, StoreError)
    assert exc.value.alert_id == 12345


def test_closed_store_raises_store_error(tmp_path):
    s = TelemetryStore(str(tmp_path / "closed.db"))
    s.close()
    with pytest.raises(StoreError):
        s.list_alerts()


def test_set_node_status(store: TelemetryStore):
    assert store.set_node_status("node-1", NodeStatus.DEGRADED) is True
    assert store.get_node("node-1").status == "degraded"
    assert store.set_node_status("ghost", NodeStatus.DEGRADED) is False


def test_nodes_count_active_alerts(store: TelemetryStore):
    a = store.create_alert(_candidate())
    store.create_alert(_candidate())
    store.resolve_alert(a)
    nodes = {n.node_id: n for n in store.list_nodes()}
    assert nodes["node-1"].active_alerts == 1
    assert nodes["node-2"].active_alerts == 0
    assert nodes["node-1"].hostname == "dgx-gpu-01.nvidia.com"


def test_active_alerts_critical_first(store: TelemetryStore):
    store.create_alert(_candidate(severity=Severity.CRITICAL))
    store.create_alert(_candidate(severity=Severity.WARNING))
    resolved = store.create_alert(_candidate(severity=Severity.WARNING))
    store.resolve_alert(resolved)
    active = store.list_active_alerts()
    assert [a.severity for a in active] == ["critical", "warning"]


def test_latest_metrics_one_row_per_gpu(store: TelemetryStore, make_sample):
    base = make_sample()
    store.store_metric(base)
    store.store_metric(make_sample(temperature_c=80.0, collected_at=base.collected_at + timedelta(seconds=30)))
    store.store_metric(make_sample(gpu_index=1, temperature_c=60.0))
    latest = store.latest_metrics()
    assert [(m.gpu_index, m.temperature_c) for m in latest] == [(0, 80.0), (1, 60.0)]


def test_node_metrics_limit_newest_first(store: TelemetryStore, make_sample):
    base = make_sample()
    for i in range(5):
        store.store_metric(make_sample(collected_at=base.collected_at + timedelta(seconds=i)))
    rows = store.node_metrics("node-1", limit=2)
    assert [r.collected_at for r in rows] == [
        base.collected_at + timedelta(seconds=4),
        base.collected_at + timedelta(seconds=3),
    ]


def test_integer_overflow_surfaces_as_store_error(store: TelemetryStore, make_sample):
    with pytest.raises(StoreError):
        store.store_metric(make_sample(clock_mhz=2 ** 70))
    assert store.node_metrics("node-1") == []
