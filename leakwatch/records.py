"""
records.py — Value Types Shared Across the Engine
==================================================

Immutable records passed between components. Readings come in from the
device repository, predictions and explanations go out to the
presentation layer and the alert sink.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime

import numpy as np


@dataclass(frozen=True)
class SensorReading:
    """
    One telemetry sample from the installation.

    Attributes:
        timestamp: Moment the sample was taken.
        flow: Flow rate in L/min.
        pressure: Line pressure in kPa.
        vibration: Pipe vibration magnitude in g.
    """

    timestamp: datetime
    flow: float
    pressure: float
    vibration: float

    def as_array(self) -> np.ndarray:
        """Channel values in canonical order [flow, pressure, vibration]."""
        return np.array([self.flow, self.pressure, self.vibration],
                        dtype=np.float64)

    def channel(self, name: str) -> float:
        return float(getattr(self, name))


@dataclass(frozen=True)
class NormalizedReading:
    """A reading with every channel mapped into [0, 1]."""

    timestamp: datetime
    flow: float
    pressure: float
    vibration: float

    def as_array(self) -> np.ndarray:
        return np.array([self.flow, self.pressure, self.vibration],
                        dtype=np.float64)


@dataclass(frozen=True)
class FeedbackRecord:
    """User verdict on a past detection, stored with its normalized features."""

    features: tuple
    was_correct: bool


@dataclass(frozen=True)
class HourlyPrediction:
    """
    Forecast leak probability for one future hour.

    Attributes:
        hour_offset: Hours ahead of now (1-indexed).
        timestamp: Absolute time of the forecast hour.
        probability: Smoothed leak probability (0-1).
        confidence: Confidence in the value, decaying with the offset.
        risk_factors: Channel -> scaled importance; empty when the raw
            probability did not exceed the risk level.
    """

    hour_offset: int
    timestamp: datetime
    probability: float
    confidence: float
    risk_factors: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BaselineResult:
    """Structured output of a baseline analysis for one reading."""

    score: float
    z_scores: dict
    explanation: str
    is_anomaly: bool


@dataclass(frozen=True)
class FusionExplanation:
    """Model and baseline evidence behind a fused leak probability."""

    probability: float
    ai_probability: float
    baseline_probability: float
    feature_importance: dict
    z_scores: dict
    baseline_text: str
    is_contextual_anomaly: bool
    confidence: float

    @property
    def main_factor(self) -> str | None:
        """Channel with the highest importance, if any."""
        if not self.feature_importance:
            return None
        return max(self.feature_importance, key=self.feature_importance.get)


@dataclass(frozen=True)
class Alert:
    """Leak alert handed to the alert sink."""

    timestamp: datetime
    level: str
    message: str
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload
