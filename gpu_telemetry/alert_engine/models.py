"""GPU telemetry — alert engine data models."""
from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class AlertType(str, Enum):
    HIGH_TEMPERATURE = "high_temperature"
    HIGH_POWER = "high_power"
    HIGH_MEMORY = "high_memory"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class ActionType(str, Enum):
    WORKLOAD_MIGRATION = "workload_migration"
    NOTIFICATION = "notification"


class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


class NodeStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class EventState(str, Enum):
    RECEIVED = "received"
    METRIC_STORED = "metric_stored"
    EVALUATED = "evaluated"
    ALERTS_PERSISTED = "alerts_persisted"
    COMMITTED = "committed"
    ABANDONED = "abandoned"    # commit failed, broker will redeliver


class MetricDecodeError(ValueError):
    """Raised when a queue payload cannot be turned into a MetricSample."""


_FLOAT_FIELDS = ("temperature_c", "power_w", "mem_used_mb", "mem_total_mb", "utilization_pct")
_INT_FIELDS = ("gpu_index", "clock_mhz")

# SQLite INTEGER is a signed 64-bit value
_INT_MIN = -(2 ** 63)
_INT_MAX = 2 ** 63 - 1


def _parse_ts(raw: Any) -> datetime:
    if not isinstance(raw, str):
        raise MetricDecodeError(f"collected_at must be an ISO-8601 string, got {type(raw).__name__}")
    try:
        ts = datetime.fromisoformat(raw)
    except ValueError as e:
        raise MetricDecodeError(f"collected_at is not ISO-8601: {raw!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class MetricSample:
    """One reading of a single GPU, as published on the telemetry topic."""

    node_id: str
    gpu_index: int
    temperature_c: float
    power_w: float
    mem_used_mb: float
    mem_total_mb: float
    utilization_pct: float
    clock_mhz: int
    collected_at: datetime

    @classmethod
    def from_payload(cls, payload: bytes | str) -> MetricSample:
        try:
            raw = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise MetricDecodeError(f"payload is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise MetricDecodeError("payload must be a JSON object")

        missing = [k for k in ("node_id", "collected_at", *_FLOAT_FIELDS, *_INT_FIELDS) if k not in raw]
        if missing:
            raise MetricDecodeError(f"missing fields: {', '.join(missing)}")

        node_id = raw["node_id"]
        if not isinstance(node_id, str) or not node_id:
            raise MetricDecodeError("node_id must be a non-empty string")

        values: dict[str, Any] = {}
        for name in _FLOAT_FIELDS:
            v = raw[name]
            # bool is an int subclass; a true/false reading is a producer bug
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise MetricDecodeError(f"{name} must be a number")
            try:
                values[name] = float(v)
            except OverflowError as e:
                raise MetricDecodeError(f"{name} is out of range") from e
        for name in _INT_FIELDS:
            v = raw[name]
            if isinstance(v, bool) or not isinstance(v, int):
                raise MetricDecodeError(f"{name} must be an integer")
            if not _INT_MIN <= v <= _INT_MAX:
                raise MetricDecodeError(f"{name} is out of range")
            values[name] = v

        return cls(node_id=node_id, collected_at=_parse_ts(raw["collected_at"]), **values)

    def to_payload(self) -> bytes:
        body = asdict(self)
        body["collected_at"] = self.collected_at.isoformat()
        return json.dumps(body, separators=(",", ":")).encode("utf-8")

    def message_key(self) -> str:
        return f"{self.node_id}-gpu-{self.gpu_index}"

    @property
    def memory_pct(self) -> float | None:
        """Memory usage in percent, or None when the ratio is undefined."""
        if self.mem_total_mb <= 0:
            return None
        pct = self.mem_used_mb / self.mem_total_mb * 100.0
        return pct if math.isfinite(pct) else None


@dataclass(frozen=True)
class AlertCandidate:
    node_id: str
    gpu_index: int
    alert_type: AlertType
    severity: Severity
    message: str
    threshold_value: float
    actual_value: float


@dataclass
class Alert:
    id: int
    node_id: str
    gpu_index: int
    alert_type: str
    severity: str
    message: str
    threshold_value: float
    actual_value: float
    status: AlertStatus = AlertStatus.ACTIVE
    triggered_at: datetime | None = None
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "gpu_index": self.gpu_index,
            "alert_type": self.alert_type,
            "severity": self.severity,
            "message": self.message,
            "threshold_value": self.threshold_value,
            "actual_value": self.actual_value,
            "status": self.status.value,
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class ActionRecord:
    alert_id: int
    action_type: ActionType
    action_status: ActionStatus
    action_details: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Node:
    node_id: str
    hostname: str | None
    datacenter: str | None
    status: str
    last_seen: datetime | None
    created_at: datetime | None
    active_alerts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "hostname": self.hostname,
            "datacenter": self.datacenter,
            "status": self.status,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "active_alerts": self.active_alerts,
        }


@dataclass
class ProcessingOutcome:
    """What happened to one queue event."""

    state: EventState = EventState.RECEIVED
    sample: MetricSample | None = None
    metric_stored: bool = False
    alert_ids: list[int] = field(default_factory=list)
    failed_candidates: int = 0
    dropped: bool = False
