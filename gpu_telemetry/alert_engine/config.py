"""Alert engine configuration — loaded from environment variables (.env supported)."""
from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_OFFSET_RESETS = {"earliest", "latest"}


def _env(name: str, default: str) -> str:
    return os.environ.get(name, default)


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration shared by the engine, the API and the collector."""

    # Queue
    kafka_brokers: str = field(default_factory=lambda: _env("TELEMETRY_KAFKA_BROKERS", "localhost:9093"))
    kafka_topic: str = field(default_factory=lambda: _env("TELEMETRY_KAFKA_TOPIC", "gpu-telemetry"))
    kafka_group_id: str = field(default_factory=lambda: _env("TELEMETRY_KAFKA_GROUP", "alert-engine"))
    kafka_offset_reset: str = field(default_factory=lambda: _env("TELEMETRY_KAFKA_OFFSET_RESET", "latest"))
    poll_timeout_s: float = field(default_factory=lambda: float(_env("TELEMETRY_POLL_TIMEOUT_S", "1.0")))

    # Store
    db_path: str = field(default_factory=lambda: _env("TELEMETRY_DB_PATH", "data/gpu_telemetry.db"))

    # Notifications
    notify_channel: str = field(default_factory=lambda: _env("TELEMETRY_NOTIFY_CHANNEL", "slack"))
    notify_webhook_url: str = field(default_factory=lambda: _env("TELEMETRY_NOTIFY_WEBHOOK_URL", ""))
    notify_timeout_s: float = 10.0

    # Query API
    api_host: str = field(default_factory=lambda: _env("TELEMETRY_API_HOST", "0.0.0.0"))
    api_port: int = field(default_factory=lambda: int(_env("TELEMETRY_API_PORT", "8080")))

    # Collector simulator
    collector_nodes: tuple[str, ...] = field(default_factory=lambda: tuple(
        n.strip() for n in _env("TELEMETRY_COLLECTOR_NODES", "node-1,node-2").split(",") if n.strip()
    ))
    gpus_per_node: int = field(default_factory=lambda: int(_env("TELEMETRY_GPUS_PER_NODE", "8")))
    collect_interval_s: float = field(default_factory=lambda: float(_env("TELEMETRY_COLLECT_INTERVAL_S", "30")))

    # Logging
    log_dir: str = field(default_factory=lambda: _env("TELEMETRY_LOG_DIR", "logs"))
    log_level: str = field(default_factory=lambda: _env("TELEMETRY_LOG_LEVEL", "INFO").upper())
    log_retention_days: int = field(default_factory=lambda: int(_env("TELEMETRY_LOG_RETENTION_DAYS", "7")))

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create config from environment, raising on invalid values."""
        try:
            cfg = cls()
        except ValueError as e:
            raise RuntimeError(f"Invalid numeric telemetry setting: {e}") from e
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if not self.kafka_brokers:
            raise RuntimeError("TELEMETRY_KAFKA_BROKERS must not be empty")
        if not self.kafka_topic:
            raise RuntimeError("TELEMETRY_KAFKA_TOPIC must not be empty")
        if self.kafka_offset_reset not in _OFFSET_RESETS:
            raise RuntimeError(f"TELEMETRY_KAFKA_OFFSET_RESET must be one of {sorted(_OFFSET_RESETS)}")
        if self.poll_timeout_s <= 0:
            raise RuntimeError("TELEMETRY_POLL_TIMEOUT_S must be positive")
        if not 0 < self.api_port < 65536:
            raise RuntimeError("TELEMETRY_API_PORT must be a valid TCP port")
        if self.gpus_per_node <= 0:
            raise RuntimeError("TELEMETRY_GPUS_PER_NODE must be positive")
        if self.collect_interval_s <= 0:
            raise RuntimeError("TELEMETRY_COLLECT_INTERVAL_S must be positive")
        if self.log_level not in _LOG_LEVELS:
            raise RuntimeError(f"TELEMETRY_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")
