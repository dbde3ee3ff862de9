"""GPU telemetry alert engine — rule evaluation, persistence and automated remediation."""
from .config import EngineConfig
from .dispatcher import ActionDispatcher, UnhandledSeverityError
from .engine import AlertEngine, KafkaMessageSource
from .models import AlertCandidate, MetricDecodeError, MetricSample, Severity
from .rules import evaluate
from .store import AlertNotFoundError, StoreError, TelemetryStore

__all__ = [
    "AlertEngine",
    "KafkaMessageSource",
    "ActionDispatcher",
    "TelemetryStore",
    "EngineConfig",
    "MetricSample",
    "AlertCandidate",
    "Severity",
    "evaluate",
    "MetricDecodeError",
    "StoreError",
    "AlertNotFoundError",
    "UnhandledSeverityError",
]
