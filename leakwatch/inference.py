"""
inference.py — Leak Scoring Engine
===================================

Turns readings into leak probabilities:

    reading -> normalize -> point model -> [sequence model + PCA] -> ensemble

Ensemble:
    final = 0.6 * point + 0.2 * sequence_anomaly + 0.2 * pca
when a sequence model and a PCA basis are configured and the buffer holds
at least 3 readings; otherwise final = point.

Series decision (detect_in_series):
    avg(last 5 predictions) > threshold
    OR (sequence heuristic AND (rising trend OR forecast > 0.8 * threshold))
falling back to the rule-based 3-of-5 criterion while no point model is
loaded.

The engine never raises for a well-formed reading: an unavailable or
failing model contributes 0 and is logged.
"""

import logging

import numpy as np

from . import config
from .errors import ModelUnavailableError
from .feature_engineering import detect_sequence_anomaly
from .model import ModelHandle
from .records import NormalizedReading, SensorReading
from .rules import detect_leak_in_series
from .utils import clamp
from .windowing import PredictionHistory

logger = logging.getLogger("leakwatch.inference")


def _as_handle(name: str, model) -> ModelHandle:
    if isinstance(model, ModelHandle):
        return model
    return ModelHandle(name, model)


def reconstruction_to_score(error: float) -> float:
    """Map a reconstruction error to [0, 1] via 1 - 1 / (1 + exp(5 * error))."""
    exponent = float(np.clip(error * config.RECONSTRUCTION_STEEPNESS, -50.0, 50.0))
    return float(1.0 - 1.0 / (1.0 + np.exp(exponent)))


class LeakScoringEngine:
    """
    Point + sequence + PCA ensemble with a trailing prediction history.

    Usage:
        engine = LeakScoringEngine(normalizer, buffer, point_model=my_model)
        probability = engine.predict(reading)
        leak = engine.detect_in_series(recent_readings)

    Attributes:
        normalizer: FeatureNormalizer (shared).
        buffer: SequenceBuffer (shared, written only by predict / detect_in_series).
        point_model / sequence_model: ModelHandle instances.
        pca_scorer: PrincipalComponentAnomalyScorer or None.
        forecaster: ForecastEngine or None.
        thresholds: AdaptiveThresholdController or None.
        history: PredictionHistory of fused probabilities.
    """

    def __init__(self, normalizer, buffer, point_model=None, sequence_model=None,
                 pca_scorer=None, forecaster=None, thresholds=None,
                 history: PredictionHistory = None):
        self.normalizer = normalizer
        self.buffer = buffer
        self.point_model = _as_handle("point", point_model)
        self.sequence_model = _as_handle("sequence", sequence_model)
        self.pca_scorer = pca_scorer
        self.forecaster = forecaster
        self.thresholds = thresholds
        self.history = history if history is not None else PredictionHistory()

    @property
    def threshold(self) -> float:
        """Current operating threshold."""
        if self.thresholds is not None:
            return self.thresholds.threshold
        return config.DETECTION_THRESHOLD

    @property
    def ensemble_enabled(self) -> bool:
        return (self.sequence_model.is_ready
                and self.pca_scorer is not None
                and self.pca_scorer.is_configured)

    # ── Model calls (fail closed) ─────────────────────────────────

    def point_probability(self, features) -> float:
        """
        Point model probability for one normalized feature vector.

        Returns 0 when the model is unavailable or fails.
        """
        try:
            value = float(self.point_model(np.asarray(features, dtype=np.float64)))
        except ModelUnavailableError as e:
            logger.warning(f"{e} Falling back to 0 probability.")
            return 0.0
        except Exception as e:
            logger.error(f"Point model inference failed: {e}")
            return 0.0
        if not np.isfinite(value):
            logger.error(f"Point model returned non-finite value {value}")
            return 0.0
        return clamp(value)

    def sequence_anomaly(self, normalized: NormalizedReading) -> float:
        """Sequence-anomaly model score in [0, 1]; 0 on failure."""
        try:
            error = float(self.sequence_model(normalized.as_array()))
        except ModelUnavailableError:
            return 0.0
        except Exception as e:
            logger.error(f"Sequence anomaly inference failed: {e}")
            return 0.0
        if not np.isfinite(error):
            return 0.0
        return reconstruction_to_score(error)

    # ── Scoring ───────────────────────────────────────────────────

    def _ensemble(self, base: float, normalized: NormalizedReading, window) -> float:
        if self.ensemble_enabled and len(window) >= config.MIN_ENSEMBLE_READINGS:
            weights = config.ENSEMBLE_WEIGHTS
            sequence = self.sequence_anomaly(normalized)
            pca = self.pca_scorer.score(window)
            final = (base * weights["point"]
                     + sequence * weights["sequence"]
                     + pca * weights["pca"])
            logger.debug(f"Ensemble: point={base:.4f} sequence={sequence:.4f} "
                         f"pca={pca:.4f} -> {final:.4f}")
            return clamp(final)
        return clamp(base)

    def score(self, reading: SensorReading, window=None) -> float:
        """
        Ensemble probability for a reading without touching shared state.

        Args:
            reading: Raw reading.
            window: Readings to use for the sequence terms. Defaults to the
                buffer snapshot, with this reading appended unless it is
                already the newest buffered one.
        """
        normalized = self.normalizer.normalize(reading)
        base = self.point_probability(normalized.as_array())
        if window is None:
            window = self.buffer.snapshot()
            if not window or window[-1] != reading:
                window = (window + [reading])[-self.buffer.capacity:]
        return self._ensemble(base, normalized, window)

    def predict(self, reading: SensorReading) -> float:
        """
        Score a reading and commit it to the shared state.

        Normalizes against the statistics seen so far, invokes the point
        model, appends to the sequence buffer, updates the feature
        statistics, ensembles, and records the result in the history.

        Returns:
            Leak probability (0-1).
        """
        normalized = self.normalizer.normalize(reading)
        base = self.point_probability(normalized.as_array())

        self.buffer.append(reading)
        self.normalizer.update(reading)

        final = self._ensemble(base, normalized, self.buffer.snapshot())
        self.history.append(final)
        logger.debug(f"Prediction: {final:.4f}")
        return final

    def score_sequence(self, readings) -> float:
        """
        Probability for a whole window without touching shared state.

        0.6 * latest reading score + 0.2 * (0.3 if the sequence heuristic
        fires) + 0.2 * PCA score of the window.
        """
        window = list(readings)[-self.buffer.capacity:]
        if not window:
            return 0.0
        weights = config.ENSEMBLE_WEIGHTS
        latest = self.score(window[-1], window=window)
        flag = config.SEQUENCE_FLAG_SCORE if detect_sequence_anomaly(window) else 0.0
        pca = self.pca_scorer.score(window) if self.pca_scorer is not None else 0.0
        return clamp(latest * weights["point"]
                     + flag * weights["sequence"]
                     + pca * weights["pca"])

    # ── Decisions ─────────────────────────────────────────────────

    def detect_in_series(self, readings, threshold: float = None) -> bool:
        """
        Decide whether a series of readings indicates a leak.

        Args:
            readings: Recent readings, oldest first (at least 3).
            threshold: Decision threshold; defaults to the adaptive one.

        Returns:
            True if a leak is detected.
        """
        readings = list(readings)
        if len(readings) < config.MIN_ENSEMBLE_READINGS:
            return False
        threshold = threshold if threshold is not None else self.threshold

        if not self.point_model.is_ready:
            decision = detect_leak_in_series(readings)
            logger.info(f"Point model unavailable, rule-based series decision: {decision}")
            return decision

        self.buffer.replace(readings)
        window = self.buffer.snapshot()

        recent = readings[-config.SERIES_PREDICTION_WINDOW:]
        predictions = [self.score(r, window=window) for r in recent]
        for p in predictions:
            self.history.append(p)
        avg_prediction = float(np.mean(predictions))

        half = len(predictions) // 2
        trend = float(np.mean(predictions[-half:]) - np.mean(predictions[:half]))

        is_anomalous = detect_sequence_anomaly(window)
        forecast_probability = 0.0
        if self.forecaster is not None:
            forecast_probability, _ = self.forecaster.project()

        rising = trend > config.RISING_TREND_DELTA
        future_risk = forecast_probability > threshold * config.FORECAST_RISK_FACTOR
        decision = avg_prediction > threshold or (is_anomalous and (rising or future_risk))

        logger.info(f"Series decision: avg={avg_prediction:.4f} trend={trend:+.4f} "
                    f"sequence_anomaly={is_anomalous} forecast={forecast_probability:.4f} "
                    f"threshold={threshold:.2f} -> {decision}")
        return decision

    def detect(self, reading: SensorReading, threshold: float = None) -> bool:
        """Single-reading decision: predict(reading) > threshold."""
        threshold = threshold if threshold is not None else self.threshold
        return self.predict(reading) > threshold

    # ── Feedback ──────────────────────────────────────────────────

    def provide_feedback(self, reading: SensorReading, was_correct: bool) -> float:
        """
        Forward a user verdict to the adaptive threshold controller.

        Returns:
            The threshold after the verdict.
        """
        if self.thresholds is None:
            logger.warning("No threshold controller configured, feedback ignored")
            return self.threshold
        normalized = self.normalizer.normalize(reading)
        return self.thresholds.record_feedback(normalized.as_array(), was_correct)
