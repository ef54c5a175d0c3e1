"""
rules.py — Rule-Based Leak Detection
=====================================

Fixed-threshold rules that work without any learned state. They cover
two situations:

    1. A fresh installation whose baseline is still calibrating.
    2. A device where no point model has been loaded yet.

Rules (per reading):
    - high flow (> 6 L/min) together with low pressure (< 50 kPa)
    - high vibration (> 0.8 g) together with high flow or low pressure
    - severe vibration on its own (> 1.2 g)

A series is a leak when at least 3 of the last 5 readings trip a rule,
which filters out single-sample spikes.
"""

import logging

from . import config
from .records import SensorReading

logger = logging.getLogger("leakwatch.rules")


def _flags(reading: SensorReading) -> tuple:
    high_flow = reading.flow > config.RULE_HIGH_FLOW
    low_pressure = reading.pressure < config.RULE_LOW_PRESSURE
    high_vibration = reading.vibration > config.RULE_HIGH_VIBRATION
    return high_flow, low_pressure, high_vibration


def is_leak_reading(reading: SensorReading) -> bool:
    """Whether a single reading trips any of the leak rules."""
    high_flow, low_pressure, high_vibration = _flags(reading)
    if high_flow and low_pressure:
        return True
    if high_vibration and (high_flow or low_pressure):
        return True
    return reading.vibration > config.RULE_SEVERE_VIBRATION


def detect_leak_in_series(readings, window: int = None,
                          min_hits: int = None) -> bool:
    """
    Rule-based series decision.

    Args:
        readings: Readings, oldest first.
        window: Trailing readings inspected. Defaults to 5.
        min_hits: Readings that must trip a rule. Defaults to 3.

    Returns:
        False when fewer than `window` readings are supplied.
    """
    window = window or config.RULE_SERIES_WINDOW
    min_hits = min_hits or config.RULE_SERIES_MIN_HITS
    readings = list(readings)
    if len(readings) < window:
        return False
    hits = sum(1 for r in readings[-window:] if is_leak_reading(r))
    logger.debug(f"Rule-based series check: {hits}/{window} readings flagged")
    return hits >= min_hits


def basic_anomaly_score(reading: SensorReading) -> float:
    """
    Coarse anomaly score used while the baseline calibrates.

    Weighted sum of rule hits, capped at 1.0:
        high flow + low pressure           0.8
        high vibration + either of them    0.7
        only high flow                     0.4
        only low pressure                  0.4
        only high vibration                0.5
    """
    high_flow, low_pressure, high_vibration = _flags(reading)
    score = 0.0
    if high_flow and low_pressure:
        score += 0.8
    if high_vibration and (high_flow or low_pressure):
        score += 0.7
    if high_flow and not low_pressure and not high_vibration:
        score += 0.4
    if low_pressure and not high_flow and not high_vibration:
        score += 0.4
    if high_vibration and not high_flow and not low_pressure:
        score += 0.5
    return min(max(score, 0.0), 1.0)
