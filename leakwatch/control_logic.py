"""
control_logic.py — Adaptive Threshold and Alert Urgency
========================================================

AdaptiveThresholdController
    Collects user feedback on past detections (was the alert a real
    leak?) and retunes the operating threshold in batches:

        precision = correct / (correct + incorrect)
        precision < 0.6  → threshold + 0.05 (too many false alarms, cap 0.85)
        precision > 0.9  → threshold - 0.05 (room to be more sensitive, floor 0.5)
        otherwise        → unchanged

    Each batch of 10 verdicts moves the threshold at most once.

Alert urgency
    Derived from the forecast: how many hours until the projected
    probability turns critical.

        < 6 h   → IMMEDIATE
        < 12 h  → CRITICAL
        else    → URGENT
"""

import logging
import threading
from collections import deque

from . import config
from .records import FeedbackRecord

logger = logging.getLogger("leakwatch.control_logic")

# Urgency levels
IMMEDIATE = "IMMEDIATE"
CRITICAL = "CRITICAL"
URGENT = "URGENT"


def classify_urgency(hours_critical: int) -> str:
    """
    Map hours-until-critical to an alert urgency level.

    Args:
        hours_critical: First forecast hour above the critical probability
            (the horizon when none is).
    """
    if hours_critical < config.IMMEDIATE_HOURS:
        return IMMEDIATE
    if hours_critical < config.CRITICAL_HOURS:
        return CRITICAL
    return URGENT


class AdaptiveThresholdController:
    """
    Feedback-driven detection threshold.

    The threshold is shared mutable state read by the scoring engine on
    every decision; reads and read-modify-write updates go through one
    lock.

    Attributes:
        batch_size (int): Verdicts needed before a retune.
        step (float): Threshold change per retune.
        min_threshold / max_threshold (float): Bounds of the threshold.
    """

    def __init__(self, threshold: float = None, batch_size: int = None,
                 history_size: int = None, step: float = None,
                 min_threshold: float = None, max_threshold: float = None,
                 auto_retune: bool = True):
        """
        Args:
            threshold: Starting threshold. Defaults to config.DETECTION_THRESHOLD.
            batch_size: Defaults to config.FEEDBACK_BATCH_SIZE (10).
            history_size: Bound of the feedback list. Defaults to 100.
            step: Defaults to config.THRESHOLD_STEP (0.05).
            min_threshold: Defaults to config.THRESHOLD_MIN (0.5).
            max_threshold: Defaults to config.THRESHOLD_MAX (0.85).
            auto_retune: Retune as soon as a full batch is pending.
        """
        self.batch_size = batch_size or config.FEEDBACK_BATCH_SIZE
        self.step = step if step is not None else config.THRESHOLD_STEP
        self.min_threshold = min_threshold if min_threshold is not None else config.THRESHOLD_MIN
        self.max_threshold = max_threshold if max_threshold is not None else config.THRESHOLD_MAX
        self.auto_retune = auto_retune

        self._lock = threading.Lock()
        self._threshold = threshold if threshold is not None else config.DETECTION_THRESHOLD
        self._feedback: deque = deque(maxlen=history_size or config.FEEDBACK_HISTORY_SIZE)

    @property
    def threshold(self) -> float:
        with self._lock:
            return self._threshold

    @property
    def pending_feedback(self) -> int:
        with self._lock:
            return len(self._feedback)

    def record_feedback(self, features, was_correct: bool) -> float:
        """
        Store one verdict.

        Args:
            features: Normalized [flow, pressure, vibration] of the reading.
            was_correct: Whether the detection was confirmed by the user.

        Returns:
            The threshold after this verdict.
        """
        record = FeedbackRecord(features=tuple(float(v) for v in features),
                                was_correct=bool(was_correct))
        with self._lock:
            self._feedback.append(record)
            ready = len(self._feedback) >= self.batch_size
        if ready and self.auto_retune:
            return self.retune()
        return self.threshold

    def retune(self) -> float:
        """
        Adjust the threshold from the pending feedback batch.

        With fewer than batch_size verdicts nothing changes. Otherwise the
        pending verdicts are consumed and the threshold moves by at most
        one step.

        Returns:
            The threshold after retuning.
        """
        with self._lock:
            if len(self._feedback) < self.batch_size:
                return self._threshold

            correct = sum(1 for r in self._feedback if r.was_correct)
            incorrect = len(self._feedback) - correct
            self._feedback.clear()

            ratio = correct / (correct + incorrect)
            old = self._threshold
            if ratio < config.LOW_PRECISION_RATIO:
                self._threshold = min(old + self.step, self.max_threshold)
                reason = "too many false positives"
            elif ratio > config.HIGH_PRECISION_RATIO:
                self._threshold = max(old - self.step, self.min_threshold)
                reason = "high precision"
            else:
                reason = None
            new = self._threshold

        if reason is None:
            logger.info(f"Threshold unchanged at {new:.2f} (precision {ratio:.2f})")
        else:
            logger.info(f"Threshold {old:.2f} -> {new:.2f} "
                        f"({reason}, precision {ratio:.2f})")
        return new

    def reset(self, threshold: float = None) -> None:
        with self._lock:
            self._feedback.clear()
            self._threshold = threshold if threshold is not None else config.DETECTION_THRESHOLD
        logger.info("Adaptive threshold reset")
