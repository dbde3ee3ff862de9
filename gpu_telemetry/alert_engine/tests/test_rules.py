"""Tests for the threshold rule evaluator."""
from __future__ import annotations

import math

import pytest

from gpu_telemetry.alert_engine.models import AlertType, Severity
from gpu_telemetry.alert_engine.rules import evaluate


def _by_type(candidates):
    return {c.alert_type: c for c in candidates}


def test_normal_sample_no_candidates(make_sample):
    assert evaluate(make_sample()) == []


# --- Temperature ---

@pytest.mark.parametrize("temp", [95.01, 96.0, 120.0])
def test_temperature_above_95_is_critical(make_sample, temp):
    c = _by_type(evaluate(make_sample(temperature_c=temp)))[AlertType.HIGH_TEMPERATURE]
    assert c.severity == Severity.CRITICAL
    assert c.threshold_value == 90.0
    assert c.actual_value == temp


@pytest.mark.parametrize("temp", [90.01, 92.5, 95.0])
def test_temperature_between_90_and_95_is_warning(make_sample, temp):
    c = _by_type(evaluate(make_sample(temperature_c=temp)))[AlertType.HIGH_TEMPERATURE]
    assert c.severity == Severity.WARNING
    assert c.threshold_value == 90.0


@pytest.mark.parametrize("temp", [-10.0, 0.0, 89.99, 90.0])
def test_temperature_at_or_below_90_no_candidate(make_sample, temp):
    assert AlertType.HIGH_TEMPERATURE not in _by_type(evaluate(make_sample(temperature_c=temp)))


def test_temperature_message(make_sample):
    c = evaluate(make_sample(temperature_c=96.04))[0]
    assert c.message == "GPU temperature is 96.0°C"


# --- Power ---

def test_power_above_330_warning(make_sample):
    c = _by_type(evaluate(make_sample(power_w=340.0)))[AlertType.HIGH_POWER]
    assert c.severity == Severity.WARNING
    assert c.threshold_value == 330.0
    assert c.actual_value == 340.0
    assert c.message == "GPU power consumption is 340.0W"


def test_power_at_330_no_candidate(make_sample):
    assert evaluate(make_sample(power_w=330.0)) == []


# --- Memory ---

def test_memory_actual_is_percentage(make_sample):
    c = _by_type(evaluate(make_sample(mem_used_mb=78000.0, mem_total_mb=80000.0)))[AlertType.HIGH_MEMORY]
    assert c.severity == Severity.WARNING
    assert c.threshold_value == 95.0
    assert c.actual_value == pytest.approx(97.5)
    assert c.message == "GPU memory usage is 97.5%"


def test_memory_at_95_pct_no_candidate(make_sample):
    assert evaluate(make_sample(mem_used_mb=76000.0, mem_total_mb=80000.0)) == []


@pytest.mark.parametrize("used", [0.0, 500.0, 80000.0])
def test_memory_zero_total_does_not_fire(make_sample, used):
    assert AlertType.HIGH_MEMORY not in _by_type(evaluate(make_sample(mem_used_mb=used, mem_total_mb=0.0)))


def test_memory_non_finite_ratio_does_not_fire(make_sample):
    assert evaluate(make_sample(mem_used_mb=math.inf, mem_total_mb=math.inf)) == []


def test_negative_total_does_not_fire(make_sample):
    assert evaluate(make_sample(mem_used_mb=-100.0, mem_total_mb=-100.0)) == []


# --- Combined ---

def test_all_three_rules_in_declaration_order(make_sample):
    sample = make_sample(temperature_c=96.0, power_w=340.0, mem_used_mb=78000.0, mem_total_mb=80000.0)
    candidates = evaluate(sample)
    assert [(c.alert_type, c.severity) for c in candidates] == [
        (AlertType.HIGH_TEMPERATURE, Severity.CRITICAL),
        (AlertType.HIGH_POWER, Severity.WARNING),
        (AlertType.HIGH_MEMORY, Severity.WARNING),
    ]
    assert all(c.node_id == "node-1" and c.gpu_index == 0 for c in candidates)


def test_evaluate_is_deterministic(make_sample):
    sample = make_sample(temperature_c=93.0, power_w=331.0)
    assert evaluate(sample) == evaluate(sample)


def test_nan_readings_do_not_fire(make_sample):
    assert evaluate(make_sample(temperature_c=math.nan, power_w=math.nan)) == []
