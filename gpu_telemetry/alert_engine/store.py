"""Durable store for nodes, GPU metrics, alerts and alert actions (SQLite, WAL).

Every write method is its own transaction. Driver errors surface as
StoreError so callers can tell infrastructure trouble apart from a missing
alert (AlertNotFoundError).
"""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from .models import (
    ActionRecord,
    ActionStatus,
    ActionType,
    Alert,
    AlertCandidate,
    AlertStatus,
    MetricSample,
    Node,
    NodeStatus,
)

logger = logging.getLogger("gpu_telemetry.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS gpu_nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    node_id TEXT UNIQUE NOT NULL,
    hostname TEXT,
    datacenter TEXT,
    status TEXT NOT NULL DEFAULT 'healthy',
    last_seen TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS gpu_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    node_id TEXT NOT NULL REFERENCES gpu_nodes(node_id) ON DELETE CASCADE,
    gpu_index INTEGER NOT NULL,
    temperature_c REAL,
    power_w REAL,
    mem_used_mb REAL,
    mem_total_mb REAL,
    utilization_pct REAL,
    clock_mhz INTEGER,
    collected_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_metrics_node_time ON gpu_metrics(node_id, collected_at DESC);
CREATE INDEX IF NOT EXISTS idx_metrics_collected_at ON gpu_metrics(collected_at DESC);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    node_id TEXT NOT NULL REFERENCES gpu_nodes(node_id) ON DELETE CASCADE,
    gpu_index INTEGER,
    alert_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    threshold_value REAL,
    actual_value REAL,
    status TEXT NOT NULL DEFAULT 'active',
    triggered_at TEXT NOT NULL,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_alerts_status ON alerts(status, triggered_at DESC);
CREATE INDEX IF NOT EXISTS idx_alerts_node ON alerts(node_id, triggered_at DESC);

CREATE TABLE IF NOT EXISTS alert_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    alert_id INTEGER NOT NULL REFERENCES alerts(id) ON DELETE CASCADE,
    action_type TEXT NOT NULL,
    action_status TEXT NOT NULL DEFAULT 'pending',
    action_details TEXT,
    executed_at TEXT NOT NULL
);

CREATE VIEW IF NOT EXISTS latest_gpu_metrics AS
SELECT node_id, gpu_index, temperature_c, power_w, mem_used_mb, mem_total_mb,
       utilization_pct, clock_mhz, collected_at
FROM (
    SELECT *, ROW_NUMBER() OVER (
        PARTITION BY node_id, gpu_index ORDER BY collected_at DESC, id DESC
    ) AS rn
    FROM gpu_metrics
)
WHERE rn = 1;
"""

_ALERT_COLUMNS = (
    "id, node_id, gpu_index, alert_type, severity, message, "
    "threshold_value, actual_value, status, triggered_at, resolved_at"
)
_METRIC_COLUMNS = (
    "node_id, gpu_index, temperature_c, power_w, mem_used_mb, mem_total_mb, "
    "utilization_pct, clock_mhz, collected_at"
)


class StoreError(Exception):
    """Raised when the durable store cannot complete an operation."""


class AlertNotFoundError(LookupError):
    """Raised when an alert id has no matching row."""

    def __init__(self, alert_id: int) -> None:
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _val(v: Enum | str) -> str:
    return v.value if isinstance(v, Enum) else v


def _now() -> str:
    return _iso(datetime.now(timezone.utc))


def _ts(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _row_to_alert(row: sqlite3.Row) -> Alert:
    return Alert(
        id=row["id"],
        node_id=row["node_id"],
        gpu_index=row["gpu_index"],
        alert_type=row["alert_type"],
        severity=row["severity"],
        message=row["message"],
        threshold_value=row["threshold_value"],
        actual_value=row["actual_value"],
        status=AlertStatus(row["status"]),
        triggered_at=_ts(row["triggered_at"]),
        resolved_at=_ts(row["resolved_at"]),
    )


def _row_to_sample(row: sqlite3.Row) -> MetricSample:
    return MetricSample(
        node_id=row["node_id"],
        gpu_index=row["gpu_index"],
        temperature_c=row["temperature_c"],
        power_w=row["power_w"],
        mem_used_mb=row["mem_used_mb"],
        mem_total_mb=row["mem_total_mb"],
        utilization_pct=row["utilization_pct"],
        clock_mhz=row["clock_mhz"],
        collected_at=_ts(row["collected_at"]),
    )


def _row_to_node(row: sqlite3.Row) -> Node:
    return Node(
        node_id=row["node_id"],
        hostname=row["hostname"],
        datacenter=row["datacenter"],
        status=row["status"],
        last_seen=_ts(row["last_seen"]),
        created_at=_ts(row["created_at"]),
        active_alerts=row["active_alerts"],
    )


class TelemetryStore:
    def __init__(self, db_path: str = "data/gpu_telemetry.db") -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)

    # --- plumbing ---

    @contextmanager
    def _write(self, op: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except (sqlite3.Error, OverflowError) as e:
            raise StoreError(f"{op} failed: {e}") from e

    def _read(self, op: str, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except (sqlite3.Error, OverflowError) as e:
            raise StoreError(f"{op} failed: {e}") from e

    # --- writes used by the alert engine ---

    def store_metric(self, sample: MetricSample) -> None:
        """Append one metric row and advance the node's last_seen."""
        seen = _iso(sample.collected_at)
        with self._write("store_metric") as conn:
            conn.execute(
                """INSERT INTO gpu_nodes (node_id, status, last_seen, created_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(node_id) DO UPDATE
                   SET last_seen = MAX(COALESCE(gpu_nodes.last_seen, ''), excluded.last_seen)""",
                (sample.node_id, NodeStatus.HEALTHY.value, seen, _now()),
            )
            conn.execute(
                f"INSERT INTO gpu_metrics ({_METRIC_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    sample.node_id, sample.gpu_index, sample.temperature_c, sample.power_w,
                    sample.mem_used_mb, sample.mem_total_mb, sample.utilization_pct,
                    sample.clock_mhz, seen,
                ),
            )

    def create_alert(self, candidate: AlertCandidate) -> int:
        """Insert an active alert and return its id."""
        with self._write("create_alert") as conn:
            cur = conn.execute(
                """INSERT INTO alerts (node_id, gpu_index, alert_type, severity, message,
                                       threshold_value, actual_value, status, triggered_at)
                   VALUES (?,?,?,?,?,?,?,?,?)""",
                (
                    candidate.node_id, candidate.gpu_index, _val(candidate.alert_type),
                    _val(candidate.severity), candidate.message, candidate.threshold_value,
                    candidate.actual_value, AlertStatus.ACTIVE.value, _now(),
                ),
            )
            alert_id = cur.lastrowid
        logger.info("Created alert ID=%d: [%s] %s on %s GPU %d", alert_id, _val(candidate.severity),
                    _val(candidate.alert_type), candidate.node_id, candidate.gpu_index)
        return alert_id

    def record_action(
        self,
        alert_id: int,
        action_type: ActionType,
        status: ActionStatus,
        details: dict[str, Any],
    ) -> ActionRecord:
        record = ActionRecord(alert_id=alert_id, action_type=action_type,
                              action_status=status, action_details=details)
        with self._write("record_action") as conn:
            cur = conn.execute(
                """INSERT INTO alert_actions (alert_id, action_type, action_status, action_details, executed_at)
                   VALUES (?,?,?,?,?)""",
                (alert_id, action_type.value, status.value, json.dumps(details), _iso(record.executed_at)),
            )
            record.id = cur.lastrowid
        return record

    def set_node_status(self, node_id: str, status: NodeStatus) -> bool:
        """Set a node's status. Returns False when the node is unknown."""
        with self._write("set_node_status") as conn:
            cur = conn.execute("UPDATE gpu_nodes SET status = ? WHERE node_id = ?", (status.value, node_id))
        return cur.rowcount > 0

    def register_node(self, node_id: str, hostname: str | None = None, datacenter: str | None = None) -> None:
        with self._write("register_node") as conn:
            conn.execute(
                """INSERT INTO gpu_nodes (node_id, hostname, datacenter, status, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(node_id) DO UPDATE
                   SET hostname = excluded.hostname, datacenter = excluded.datacenter""",
                (node_id, hostname, datacenter, NodeStatus.HEALTHY.value, _now()),
            )

    # --- shared with the query layer ---

    def resolve_alert(self, alert_id: int) -> Alert:
        """Mark an alert resolved. Already-resolved alerts are returned unchanged."""
        with self._write("resolve_alert") as conn:
            row = conn.execute(f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            if row is None:
                raise AlertNotFoundError(alert_id)
            if row["status"] == AlertStatus.ACTIVE.value:
                conn.execute(
                    "UPDATE alerts SET status = ?, resolved_at = ? WHERE id = ?",
                    (AlertStatus.RESOLVED.value, _now(), alert_id),
                )
                row = conn.execute(f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        return _row_to_alert(row)

    # --- reads ---

    def get_alert(self, alert_id: int) -> Alert:
        rows = self._read("get_alert", f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE id = ?", (alert_id,))
        if not rows:
            raise AlertNotFoundError(alert_id)
        return _row_to_alert(rows[0])

    def list_alerts(self, limit: int = 100) -> list[Alert]:
        rows = self._read(
            "list_alerts",
            f"SELECT {_ALERT_COLUMNS} FROM alerts ORDER BY triggered_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_alert(r) for r in rows]

    def list_active_alerts(self) -> list[Alert]:
        rows = self._read(
            "list_active_alerts",
            f"""SELECT {_ALERT_COLUMNS} FROM alerts WHERE status = ?
                ORDER BY CASE severity WHEN 'critical' THEN 0 ELSE 1 END, triggered_at DESC, id DESC""",
            (AlertStatus.ACTIVE.value,),
        )
        return [_row_to_alert(r) for r in rows]

    def list_actions(self, alert_id: int) -> list[ActionRecord]:
        rows = self._read(
            "list_actions",
            """SELECT id, alert_id, action_type, action_status, action_details, executed_at
               FROM alert_actions WHERE alert_id = ? ORDER BY id""",
            (alert_id,),
        )
        return [
            ActionRecord(
                id=r["id"],
                alert_id=r["alert_id"],
                action_type=ActionType(r["action_type"]),
                action_status=ActionStatus(r["action_status"]),
                action_details=json.loads(r["action_details"]) if r["action_details"] else {},
                executed_at=_ts(r["executed_at"]),
            )
            for r in rows
        ]

    def _nodes(self, op: str, where: str = "", params: tuple[Any, ...] = ()) -> list[Node]:
        rows = self._read(
            op,
            f"""SELECT n.node_id, n.hostname, n.datacenter, n.status, n.last_seen, n.created_at,
                       COUNT(a.id) AS active_alerts
                FROM gpu_nodes n
                LEFT JOIN alerts a ON a.node_id = n.node_id AND a.status = 'active'
                {where}
                GROUP BY n.node_id
                ORDER BY n.node_id""",
            params,
        )
        return [_row_to_node(r) for r in rows]

    def list_nodes(self) -> list[Node]:
        return self._nodes("list_nodes")

    def get_node(self, node_id: str) -> Node | None:
        nodes = self._nodes("get_node", "WHERE n.node_id = ?", (node_id,))
        return nodes[0] if nodes else None

    def node_metrics(self, node_id: str, limit: int = 100) -> list[MetricSample]:
        rows = self._read(
            "node_metrics",
            f"""SELECT {_METRIC_COLUMNS} FROM gpu_metrics WHERE node_id = ?
                ORDER BY collected_at DESC, id DESC LIMIT ?""",
            (node_id, limit),
        )
        return [_row_to_sample(r) for r in rows]

    def latest_metrics(self) -> list[MetricSample]:
        rows = self._read(
            "latest_metrics",
            f"SELECT {_METRIC_COLUMNS} FROM latest_gpu_metrics ORDER BY node_id, gpu_index",
        )
        return [_row_to_sample(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
