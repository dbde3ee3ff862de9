"""Threshold rules evaluated against every incoming GPU sample.

Each rule is independent, so one sample can raise several candidates. Order
of the returned list follows the order the rules are declared in RULES.
There is no memory between samples: a condition that persists produces a
fresh candidate on every sample.
"""
from __future__ import annotations

import logging
from typing import Callable

from .models import AlertCandidate, AlertType, MetricSample, Severity

logger = logging.getLogger("gpu_telemetry.rules")

TEMP_THRESHOLD_C = 90.0
TEMP_CRITICAL_C = 95.0
POWER_THRESHOLD_W = 330.0
MEMORY_THRESHOLD_PCT = 95.0

Rule = Callable[[MetricSample], AlertCandidate | None]


def _candidate(sample: MetricSample, alert_type: AlertType, severity: Severity,
               message: str, threshold: float, actual: float) -> AlertCandidate:
    return AlertCandidate(
        node_id=sample.node_id,
        gpu_index=sample.gpu_index,
        alert_type=alert_type,
        severity=severity,
        message=message,
        threshold_value=threshold,
        actual_value=actual,
    )


def high_temperature(sample: MetricSample) -> AlertCandidate | None:
    t = sample.temperature_c
    if not t > TEMP_THRESHOLD_C:
        return None
    severity = Severity.CRITICAL if t > TEMP_CRITICAL_C else Severity.WARNING
    # threshold reported is the warning line even when critical fires
    return _candidate(sample, AlertType.HIGH_TEMPERATURE, severity,
                      f"GPU temperature is {t:.1f}°C", TEMP_THRESHOLD_C, t)


def high_power(sample: MetricSample) -> AlertCandidate | None:
    p = sample.power_w
    if not p > POWER_THRESHOLD_W:
        return None
    return _candidate(sample, AlertType.HIGH_POWER, Severity.WARNING,
                      f"GPU power consumption is {p:.1f}W", POWER_THRESHOLD_W, p)


def high_memory(sample: MetricSample) -> AlertCandidate | None:
    pct = sample.memory_pct
    if pct is None:
        logger.debug("Skipping memory rule for %s: mem_total_mb=%s",
                     sample.message_key(), sample.mem_total_mb)
        return None
    if not pct > MEMORY_THRESHOLD_PCT:
        return None
    return _candidate(sample, AlertType.HIGH_MEMORY, Severity.WARNING,
                      f"GPU memory usage is {pct:.1f}%", MEMORY_THRESHOLD_PCT, pct)


RULES: tuple[Rule, ...] = (high_temperature, high_power, high_memory)


def evaluate(sample: MetricSample) -> list[AlertCandidate]:
    """Return the alert candidates for one sample, in rule order."""
    candidates: list[AlertCandidate] = []
    for rule in RULES:
        c = rule(sample)
        if c is not None:
            candidates.append(c)
    return candidates
