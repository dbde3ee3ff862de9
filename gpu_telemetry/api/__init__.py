"""Telemetry query API — nodes, metric history, alerts and alert resolution."""
from .server import create_app

__all__ = ["create_app"]
