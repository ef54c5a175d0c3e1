"""
fusion.py — Model + Baseline Contextual Fusion
===============================================

Combines the model's leak probability with the installation baseline's
view of the same reading.

Baseline probability from z-scores:
    combined = |flow_z| * 0.4
             + (|pressure_z| * 1.2 if pressure_z < 0 else pressure_z * 0.5) * 0.4
             + |vibration_z| * 0.2
    p = 1 / (1 + exp(-0.5 * combined + 1))
    p *= 1.3 (capped at 1) when flow_z > 1.5 and pressure_z < -1.5

Low pressure is far more indicative of a leak than high pressure, hence
the asymmetric pressure term.

Fused probability:
    w = 0.7 if model > 0.8 else 0.6
    fused = model * w + baseline * (1 - w)

Confidence rises when both signals agree:
    min(max(model, baseline) + (1 - |model - baseline|) * 0.2, 1)
"""

import logging

import numpy as np

from . import config
from .records import BaselineResult, FusionExplanation, SensorReading
from .utils import clamp

logger = logging.getLogger("leakwatch.fusion")


def z_scores_to_probability(z_scores: dict) -> float:
    """Leak probability implied by baseline z-scores."""
    flow_z = float(z_scores.get("flow", 0.0))
    pressure_z = float(z_scores.get("pressure", 0.0))
    vibration_z = float(z_scores.get("vibration", 0.0))

    if pressure_z < 0:
        adjusted_pressure = abs(pressure_z) * config.LOW_PRESSURE_AMPLIFIER
    else:
        adjusted_pressure = pressure_z * config.HIGH_PRESSURE_DAMPING

    weights = config.FUSION_Z_WEIGHTS
    combined = (abs(flow_z) * weights["flow"]
                + adjusted_pressure * weights["pressure"]
                + abs(vibration_z) * weights["vibration"])

    exponent = float(np.clip(-combined * 0.5 + 1.0, -50.0, 50.0))
    probability = 1.0 / (1.0 + np.exp(exponent))

    limit = config.FUSION_LEAK_PATTERN_Z
    if flow_z > limit and pressure_z < -limit:
        probability = min(probability * config.FUSION_LEAK_PATTERN_BOOST, 1.0)
    return float(probability)


def fused_confidence(ai_probability: float, baseline_probability: float) -> float:
    agreement = 1.0 - abs(ai_probability - baseline_probability)
    base = max(ai_probability, baseline_probability)
    return min(base + agreement * config.AGREEMENT_BONUS, 1.0)


class ContextualFusion:
    """
    Merges ExplainabilityEngine output with an InstallationBaseline result.

    Attributes:
        explainer: ExplainabilityEngine providing the model probability
            and per-channel importances.
    """

    def __init__(self, explainer):
        self.explainer = explainer

    def fuse(self, reading: SensorReading,
             baseline_result: BaselineResult) -> tuple:
        """
        Fused leak probability and its explanation bundle.

        Args:
            reading: Reading being explained.
            baseline_result: InstallationBaseline.analyze() of the same reading.

        Returns:
            (probability, FusionExplanation)
        """
        ai_probability, importance = self.explainer.explain_single(reading)
        z_scores = dict(baseline_result.z_scores)
        baseline_probability = z_scores_to_probability(z_scores)

        if ai_probability > config.CONFIDENT_MODEL_PROBABILITY:
            model_weight = config.CONFIDENT_MODEL_WEIGHT
        else:
            model_weight = config.DEFAULT_MODEL_WEIGHT
        probability = clamp(ai_probability * model_weight
                            + baseline_probability * (1.0 - model_weight))

        explanation = FusionExplanation(
            probability=probability,
            ai_probability=ai_probability,
            baseline_probability=baseline_probability,
            feature_importance=importance,
            z_scores=z_scores,
            baseline_text=baseline_result.explanation,
            is_contextual_anomaly=baseline_result.is_anomaly,
            confidence=fused_confidence(ai_probability, baseline_probability),
        )
        logger.debug(f"Fusion: model={ai_probability:.4f} (w={model_weight}) "
                     f"baseline={baseline_probability:.4f} -> {probability:.4f}")
        return probability, explanation
