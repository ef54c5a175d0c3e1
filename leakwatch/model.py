"""
model.py — Pluggable Model Handles
===================================

The engine never trains its point, sequence or forecast models. It only
needs "a callable that scores", and this module wraps such callables in
a handle with an explicit state:

    UNLOADED  — no scorer attached; calling the handle raises
                ModelUnavailableError, which every consumer catches and
                turns into a fail-closed result (0 probability / empty
                forecast).
    READY     — a scorer is attached and can be invoked.

Scorers can be plain Python callables or scikit-learn style estimators
restored from a joblib artifact. Estimators are adapted as follows:
    - predict_proba      → probability of the last (positive) class
    - decision_function  → 1 / (1 + exp(raw)), so more negative raw
                           scores (anomalies) map towards 1
    - predict            → raw output

Each handle serializes calls into its own model (on-device runtimes are
not re-entrant) without blocking callers of other models.
"""

import logging
import threading

import joblib
import numpy as np

from .errors import ModelUnavailableError

logger = logging.getLogger("leakwatch.model")

UNLOADED = "UNLOADED"
READY = "READY"


def estimator_scorer(estimator):
    """
    Adapt a fitted scikit-learn style estimator into a scoring callable.

    The callable accepts one feature vector (1-D) or one sequence (2-D)
    and returns the estimator output for that single sample.

    Raises:
        TypeError: If the object exposes no usable scoring method.
    """
    if hasattr(estimator, "predict_proba"):
        def score(features):
            X = np.asarray(features, dtype=np.float64).reshape(1, -1)
            return float(estimator.predict_proba(X)[0, -1])
    elif hasattr(estimator, "decision_function"):
        def score(features):
            X = np.asarray(features, dtype=np.float64).reshape(1, -1)
            raw = float(estimator.decision_function(X)[0])
            return float(1.0 / (1.0 + np.exp(raw)))
    elif hasattr(estimator, "predict"):
        def score(features):
            X = np.asarray(features, dtype=np.float64).reshape(1, -1)
            return np.asarray(estimator.predict(X))[0]
    else:
        raise TypeError(
            f"{type(estimator).__name__} has no predict_proba, "
            f"decision_function or predict method")
    return score


class ModelHandle:
    """
    Named handle around an optional scoring callable.

    Attributes:
        name (str): Model name used in logs and errors.
    """

    def __init__(self, name: str, scorer=None):
        """
        Args:
            name: Model name ("point", "sequence", "forecast", ...).
            scorer: Optional callable; the handle is READY when given.
        """
        self.name = name
        self._scorer = scorer
        self._state_lock = threading.Lock()
        self._call_lock = threading.Lock()

    @classmethod
    def from_estimator(cls, name: str, estimator) -> "ModelHandle":
        return cls(name, estimator_scorer(estimator))

    @classmethod
    def load(cls, name: str, path: str) -> "ModelHandle":
        """
        Build a handle from a joblib artifact.

        A missing or unreadable artifact yields an UNLOADED handle and a
        logged error rather than an exception.
        """
        handle = cls(name)
        handle.load_artifact(path)
        return handle

    # ── State ─────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        with self._state_lock:
            return READY if self._scorer is not None else UNLOADED

    @property
    def is_ready(self) -> bool:
        return self.state == READY

    def attach(self, scorer) -> None:
        """Attach a scoring callable, replacing any previous one."""
        with self._state_lock:
            self._scorer = scorer
        logger.info(f"Model '{self.name}' ready")

    def unload(self) -> None:
        with self._state_lock:
            self._scorer = None
        logger.info(f"Model '{self.name}' unloaded")

    def load_artifact(self, path: str) -> bool:
        """
        Load a serialized estimator or callable with joblib.

        Returns:
            True if the handle is READY afterwards.
        """
        try:
            obj = joblib.load(path)
            scorer = obj if callable(obj) and not hasattr(obj, "fit") \
                else estimator_scorer(obj)
        except Exception as e:
            logger.error(f"Failed to load model '{self.name}' from {path}: {e}")
            return False
        self.attach(scorer)
        logger.info(f"Model '{self.name}' loaded from {path}")
        return True

    # ── Invocation ────────────────────────────────────────────────

    def __call__(self, features):
        """
        Invoke the model.

        Raises:
            ModelUnavailableError: If no scorer is attached.
        """
        with self._state_lock:
            scorer = self._scorer
        if scorer is None:
            raise ModelUnavailableError(self.name)
        with self._call_lock:
            return scorer(features)

    def __repr__(self) -> str:
        return f"ModelHandle(name={self.name!r}, state={self.state})"
