"""Telemetry collector — simulated DCGM polling published onto the telemetry topic."""
from .simulator import TelemetryCollector, simulate_node

__all__ = ["TelemetryCollector", "simulate_node"]
