"""
preprocessing.py — Running Min/Max Feature Normalization
=========================================================

Responsibilities in the leak detection engine:
1. Track running min / max / sum / count per sensor channel.
2. Map raw channel values into [0, 1] for model consumption.
3. Degrade gracefully at cold start using fixed seed bounds.

Why min/max and not z-scaling?
    The on-device models were trained on inputs in [0, 1]. Bounds widen
    monotonically as the installation reports new extremes, so an
    unusual reading is clamped to the edge of the range instead of
    producing an out-of-distribution input.
"""

import copy
import logging
import threading
from dataclasses import dataclass

import numpy as np

from . import config
from .records import SensorReading, NormalizedReading

logger = logging.getLogger("leakwatch.preprocessing")


@dataclass
class FeatureStats:
    """
    Running accumulator for one channel.

    Invariant: min <= max at all times.
    """

    min: float
    max: float
    sum: float = 0.0
    count: int = 0

    @property
    def mean(self) -> float:
        return self.sum / self.count if self.count > 0 else 0.0

    def update(self, value: float) -> None:
        """Accumulate a value; non-finite values are ignored."""
        if not np.isfinite(value):
            return
        if value < self.min:
            self.min = value
        if value > self.max:
            self.max = value
        self.sum += value
        self.count += 1


def normalize_value(value: float, low: float, high: float) -> float:
    """
    Min/max scale a value into [0, 1].

    Returns config.NEUTRAL_NORMALIZED_VALUE when high <= low or when the
    value or either bound is not finite.
    """
    if not (np.isfinite(value) and np.isfinite(low) and np.isfinite(high)):
        return config.NEUTRAL_NORMALIZED_VALUE
    if high > low:
        return float(min(max((value - low) / (high - low), 0.0), 1.0))
    return config.NEUTRAL_NORMALIZED_VALUE


class FeatureNormalizer:
    """
    Sole owner and writer of the per-channel FeatureStats.

    Normalization reads a consistent snapshot of the bounds; updates are
    serialized by a lock so the background ingestion path and on-demand
    scoring calls can interleave safely.

    Attributes:
        seed_bounds (dict): Channel -> (min, max) used at cold start.
    """

    def __init__(self, seed_bounds: dict = None):
        """
        Args:
            seed_bounds: Channel -> (min, max). Defaults to config.SEED_BOUNDS.
        """
        self.seed_bounds = dict(seed_bounds or config.SEED_BOUNDS)
        self._lock = threading.Lock()
        self._stats = self._seed_stats()

    def _seed_stats(self) -> dict:
        return {
            name: FeatureStats(min=float(low), max=float(high))
            for name, (low, high) in self.seed_bounds.items()
        }

    # ── Normalization ─────────────────────────────────────────────

    def _bounds(self) -> dict:
        with self._lock:
            return {name: (s.min, s.max) for name, s in self._stats.items()}

    def normalize_value(self, channel: str, value: float) -> float:
        low, high = self._bounds()[channel]
        return normalize_value(value, low, high)

    def normalize(self, reading: SensorReading) -> NormalizedReading:
        """
        Map each channel of a reading into [0, 1].

        Args:
            reading: Raw sensor reading.

        Returns:
            NormalizedReading with the same timestamp.
        """
        bounds = self._bounds()
        return NormalizedReading(
            timestamp=reading.timestamp,
            flow=normalize_value(reading.flow, *bounds["flow"]),
            pressure=normalize_value(reading.pressure, *bounds["pressure"]),
            vibration=normalize_value(reading.vibration, *bounds["vibration"]),
        )

    def normalize_window(self, readings) -> np.ndarray:
        """
        Normalize a sequence of readings against one snapshot of the bounds.

        Returns:
            Array of shape (len(readings), 3) in channel order.
        """
        bounds = self._bounds()
        rows = [
            [normalize_value(r.channel(name), *bounds[name])
             for name in config.CHANNELS]
            for r in readings
        ]
        return np.array(rows, dtype=np.float64).reshape(len(rows), len(config.CHANNELS))

    # ── Statistics ────────────────────────────────────────────────

    def update(self, reading: SensorReading) -> None:
        """Extend min / max / sum / count of every channel with one reading."""
        with self._lock:
            for name in config.CHANNELS:
                self._stats[name].update(reading.channel(name))

    def stats(self) -> dict:
        """Copy of the current per-channel statistics."""
        with self._lock:
            return copy.deepcopy(self._stats)

    def reset(self) -> None:
        """Return to the seed bounds (used when the baseline is re-calibrated)."""
        with self._lock:
            self._stats = self._seed_stats()
        logger.info("Feature statistics reset to seed bounds")
