"""
forecast.py — Hourly Leak Probability Forecast
===============================================

Projects the leak probability over the next hours from the most recent
readings using a pluggable sequence-to-sequence forecast model.

Pipeline:
    last 5 readings → normalize (5×3) → forecast model → raw[H]
        → per-hour confidence + risk factors
        → temporal smoothing (3-point centered moving average,
          blended 0.7 smoothed + 0.3 raw)
        → inverse-rank weighted average (weight = 1 / (index + 1))

Confidence for hour offset h (1-indexed) is 1 - min(h * 0.025, 0.5), so
the near future is trusted more than the end of the horizon.

A missing model, a short buffer or a failing model all return (0.0, []).
"""

import logging
from datetime import datetime, timedelta, timezone

import numpy as np

from . import config
from .errors import ModelUnavailableError
from .model import ModelHandle
from .records import HourlyPrediction
from .utils import clamp

logger = logging.getLogger("leakwatch.forecast")


def smooth_probabilities(values, window: int = None,
                         smoothed_weight: float = None) -> np.ndarray:
    """
    Centered moving average blended with the raw values.

    Edges average over the neighbours that exist. Fewer values than the
    window are returned unchanged.
    """
    window = window or config.FORECAST_SMOOTHING_WINDOW
    smoothed_weight = (smoothed_weight if smoothed_weight is not None
                       else config.FORECAST_SMOOTHED_WEIGHT)
    raw = np.asarray(values, dtype=np.float64)
    if len(raw) < window:
        return raw.copy()

    half = window // 2
    smoothed = np.array([raw[max(0, i - half):i + half + 1].mean()
                         for i in range(len(raw))])
    return smoothed * smoothed_weight + raw * (1.0 - smoothed_weight)


def weighted_average(probabilities) -> float:
    """Inverse-rank weighted mean; nearer hours dominate. 0 when empty."""
    probabilities = np.asarray(probabilities, dtype=np.float64)
    if probabilities.size == 0:
        return 0.0
    weights = 1.0 / np.arange(1, probabilities.size + 1)
    return float(np.sum(probabilities * weights) / np.sum(weights))


def hours_until_critical(predictions, critical: float = None) -> int | None:
    """
    First hour offset whose probability exceeds the critical level.

    Args:
        predictions: HourlyPrediction list as returned by project().
        critical: Defaults to config.CRITICAL_PROBABILITY (0.75).

    Returns:
        The hour offset, or None if no hour is critical.
    """
    critical = critical if critical is not None else config.CRITICAL_PROBABILITY
    offsets = [p.hour_offset for p in predictions if p.probability > critical]
    return min(offsets) if offsets else None


class ForecastEngine:
    """
    Horizon forecast over the shared sequence buffer.

    Attributes:
        buffer: SequenceBuffer shared with the scoring engine (read only).
        normalizer: FeatureNormalizer shared with the scoring engine.
        forecast_model: ModelHandle producing raw hourly probabilities.
        importance_store: FeatureImportanceStore used for risk factors.
        input_length (int): Readings fed to the model.
    """

    def __init__(self, buffer, normalizer, forecast_model=None,
                 importance_store=None, input_length: int = None):
        self.buffer = buffer
        self.normalizer = normalizer
        if isinstance(forecast_model, ModelHandle):
            self.forecast_model = forecast_model
        else:
            self.forecast_model = ModelHandle("forecast", forecast_model)
        self.importance_store = importance_store
        self.input_length = input_length or config.FORECAST_INPUT_LENGTH

    @property
    def is_available(self) -> bool:
        return self.forecast_model.is_ready

    def _importance(self) -> dict:
        if self.importance_store is None:
            return dict(config.DEFAULT_FEATURE_IMPORTANCE)
        return self.importance_store.get()

    def _raw_forecast(self, window, horizon_hours: int) -> np.ndarray | None:
        inputs = self.normalizer.normalize_window(window)
        try:
            output = self.forecast_model(inputs)
        except ModelUnavailableError:
            return None
        except Exception as e:
            logger.error(f"Forecast model inference failed: {e}")
            return None

        raw = np.asarray(output, dtype=np.float64).ravel()[:horizon_hours]
        if not np.all(np.isfinite(raw)):
            logger.error("Forecast model returned non-finite values")
            return None
        return raw

    def project(self, horizon_hours: int = None, now: datetime = None) -> tuple:
        """
        Forecast the leak probability for the coming hours.

        Args:
            horizon_hours: Requested horizon. Defaults to 24.
            now: Reference time for the hourly timestamps. Defaults to
                the current UTC time.

        Returns:
            (weighted_average_probability, [HourlyPrediction]), or (0.0, [])
            for a non-positive horizon, without a ready model or with fewer
            than input_length readings.
        """
        if horizon_hours is None:
            horizon_hours = config.FORECAST_HORIZON_HOURS
        if horizon_hours <= 0 or not self.forecast_model.is_ready:
            return 0.0, []

        window = self.buffer.snapshot(last=self.input_length)
        if len(window) < self.input_length:
            logger.debug(f"Forecast skipped: {len(window)}/{self.input_length} readings")
            return 0.0, []

        raw = self._raw_forecast(window, horizon_hours)
        if raw is None or raw.size == 0:
            return 0.0, []

        now = now or datetime.now(timezone.utc)
        importance = self._importance()
        smoothed = smooth_probabilities(raw)

        predictions = []
        for i, (raw_p, p) in enumerate(zip(raw, smoothed)):
            offset = i + 1
            confidence = 1.0 - min(offset * config.FORECAST_CONFIDENCE_DECAY,
                                   config.FORECAST_MAX_CONFIDENCE_LOSS)
            risk_factors = {}
            if raw_p > config.FORECAST_RISK_PROBABILITY:
                risk_factors = {name: value * confidence
                                for name, value in importance.items()}
            predictions.append(HourlyPrediction(
                hour_offset=offset,
                timestamp=now + timedelta(hours=offset),
                probability=clamp(float(p)),
                confidence=confidence,
                risk_factors=risk_factors,
            ))

        average = weighted_average([p.probability for p in predictions])
        logger.info(f"Forecast over {len(predictions)}h: weighted average {average:.4f}")
        return average, predictions
