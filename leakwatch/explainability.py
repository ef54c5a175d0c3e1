"""
explainability.py — Feature Importance and Explanations
========================================================

Explains leak probabilities in terms of the three sensor channels.

Single reading (local sensitivity analysis):
    Perturb each normalized channel upward by 0.05, re-score with the
    point model, and take |perturbed - base| per channel. The deltas are
    normalized to sum to 1; an epsilon term makes all-zero deltas come
    out as equal importance.

Sequence:
    Share of each channel in the total variance of the normalized window
    (weighted 0.7), plus a separate "correlation" factor of |r| * 0.3 when
    flow and pressure are strongly anticorrelated (r < -0.3). The result
    is renormalized to sum to 1.

The most recent single-reading importances are kept in a shared
FeatureImportanceStore, which the forecast engine uses to attach risk
factors to future hours.
"""

import copy
import logging
import threading


from . import config
from .utils import pearson_correlation

logger = logging.getLogger("leakwatch.explainability")


class FeatureImportanceStore:
    """Lock-guarded channel -> importance mapping."""

    def __init__(self, initial: dict = None):
        self._lock = threading.Lock()
        self._importance = dict(initial or config.DEFAULT_FEATURE_IMPORTANCE)

    def get(self) -> dict:
        with self._lock:
            return copy.copy(self._importance)

    def set(self, importance: dict) -> None:
        with self._lock:
            self._importance = dict(importance)


def _normalize_importance(raw: dict) -> dict:
    total = sum(raw.values())
    if total <= 0:
        return {name: 1.0 / len(raw) for name in raw}
    return {name: value / total for name, value in raw.items()}


class ExplainabilityEngine:
    """
    Per-channel importances and textual explanations for the scoring engine.

    Attributes:
        engine: LeakScoringEngine whose models are explained.
        importance_store: FeatureImportanceStore updated by explain_single.
        delta (float): Normalized perturbation size.
    """

    def __init__(self, engine, importance_store: FeatureImportanceStore = None,
                 delta: float = None):
        self.engine = engine
        self.importance_store = (importance_store if importance_store is not None
                                 else FeatureImportanceStore())
        self.delta = delta if delta is not None else config.SENSITIVITY_DELTA

    @property
    def feature_importance(self) -> dict:
        return self.importance_store.get()

    def explain_single(self, reading) -> tuple:
        """
        Probability and sensitivity-based importance for one reading.

        Does not modify the sequence buffer or the prediction history.

        Returns:
            (probability, {"flow": .., "pressure": .., "vibration": ..})
        """
        engine = self.engine
        probability = engine.score(reading)

        features = engine.normalizer.normalize(reading).as_array()
        base = engine.point_probability(features)

        deltas = {}
        for i, name in enumerate(config.CHANNELS):
            perturbed = features.copy()
            perturbed[i] = min(perturbed[i] + self.delta, 1.0)
            deltas[name] = abs(engine.point_probability(perturbed) - base)

        eps = config.IMPORTANCE_EPSILON
        total = sum(deltas.values()) + eps * len(deltas)
        importance = {name: (d + eps) / total for name, d in deltas.items()}

        self.importance_store.set(importance)
        logger.debug(f"Single-reading importance: {importance}")
        return probability, importance

    def explain_sequence(self, readings) -> tuple:
        """
        Probability and variance / correlation importance for a window.

        Returns:
            (probability, importance) where importance may include a
            "correlation" factor; (0.0, {}) for an empty window.
        """
        readings = list(readings)
        if not readings:
            return 0.0, {}

        probability = self.engine.score_sequence(readings)

        normalized = self.engine.normalizer.normalize_window(readings)
        variances = {name: float(normalized[:, i].var())
                     for i, name in enumerate(config.CHANNELS)}
        total_variance = sum(variances.values())

        if total_variance > 0:
            raw = {name: v / total_variance * config.VARIANCE_IMPORTANCE_SHARE
                   for name, v in variances.items()}
        else:
            raw = {name: 1.0 / len(config.CHANNELS) for name in config.CHANNELS}

        corr = pearson_correlation([r.flow for r in readings],
                                   [r.pressure for r in readings])
        if corr < config.CORRELATION_IMPORTANCE_LIMIT:
            raw["correlation"] = abs(corr) * config.CORRELATION_IMPORTANCE_SHARE

        importance = _normalize_importance(raw)
        logger.debug(f"Sequence importance: {importance} (r={corr:.3f})")
        return probability, importance

    # ── Text ──────────────────────────────────────────────────────

    def trend_sentence(self, delta: float | None) -> str | None:
        if delta is None:
            return None
        if delta > 0.1:
            return "The situation is getting worse quickly."
        if delta > 0.05:
            return "Rising trend in leak risk."
        if delta < -0.1:
            return "The situation is improving significantly."
        if delta < -0.05:
            return "Falling trend in leak risk."
        return "Stable situation without significant changes."

    def describe(self, probability: float, importance: dict,
                 trend: float = None) -> str:
        """
        Textual explanation of a prediction.

        Args:
            probability: Leak probability (0-1).
            importance: Channel -> importance.
            trend: Trend delta; defaults to the engine's prediction history.
        """
        percent = int(probability * 100)
        if probability > config.HIGH_PROBABILITY:
            header = f"High leak probability detected ({percent}%)."
        elif probability > self.engine.threshold:
            header = f"Possible leak detected ({percent}%)."
        elif probability > config.WATCH_PROBABILITY:
            header = f"Anomaly detected, keep monitoring ({percent}%)."
        else:
            header = f"System operating normally ({percent}%)."

        lines = [header, "Main factors:"]
        for name, value in sorted(importance.items(), key=lambda kv: kv[1], reverse=True):
            lines.append(f"• {name}: {int(value * 100)}%")

        if trend is None:
            trend = self.engine.history.trend_delta()
        sentence = self.trend_sentence(trend)
        if sentence is not None:
            lines.append("")
            lines.append(sentence)

        return "\n".join(lines)
