"""Shared fixtures for alert engine tests — temp SQLite store, fake queue."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

import pytest

from gpu_telemetry.alert_engine.models import MetricSample
from gpu_telemetry.alert_engine.store import TelemetryStore

COLLECTED_AT = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)

NORMAL = MetricSample(
    node_id="node-1",
    gpu_index=0,
    temperature_c=70.0,
    power_w=280.0,
    mem_used_mb=40000.0,
    mem_total_mb=80000.0,
    utilization_pct=55.0,
    clock_mhz=1500,
    collected_at=COLLECTED_AT,
)


def _make_sample(**overrides: Any) -> MetricSample:
    return replace(NORMAL, **overrides)


@pytest.fixture
def make_sample():
    return _make_sample


@pytest.fixture
def store(tmp_path):
    s = TelemetryStore(str(tmp_path / "telemetry.db"))
    s.register_node("node-1", "dgx-gpu-01.nvidia.com", "us-west-1")
    s.register_node("node-2", "dgx-gpu-02.nvidia.com", "us-west-1")
    yield s
    s.close()


@pytest.fixture
def reopen(tmp_path, store):
    """Open a second connection on the store's file (the engine closes its own on shutdown)."""
    opened: list[TelemetryStore] = []

    def _open() -> TelemetryStore:
        s = TelemetryStore(str(tmp_path / "telemetry.db"))
        opened.append(s)
        return s

    yield _open
    for s in opened:
        s.close()


# ---------------------------------------------------------------------------
# Queue doubles
# ---------------------------------------------------------------------------

@dataclass
class FakeMessage:
    payload: bytes | None
    offset: int = 0

    def value(self) -> bytes | None:
        return self.payload


@dataclass
class FakeSource:
    """In-memory queue. Stops the engine once drained if `engine` is set."""

    messages: list[FakeMessage] = field(default_factory=list)
    committed: list[int] = field(default_factory=list)
    closed: bool = False
    engine: Any = None
    commit_error: Exception | None = None
    next_offset: int = 0

    def push(self, payload: bytes | None) -> FakeMessage:
        msg = FakeMessage(payload, offset=self.next_offset)
        self.next_offset += 1
        self.messages.append(msg)
        return msg

    def poll(self, timeout: float) -> FakeMessage | None:
        if not self.messages:
            if self.engine is not None:
                self.engine.stop()
            return None
        return self.messages.pop(0)

    def commit(self, message: FakeMessage) -> None:
        if self.commit_error is not None:
            raise self.commit_error
        self.committed.append(message.offset)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def source():
    return FakeSource()
