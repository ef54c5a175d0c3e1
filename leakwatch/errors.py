"""
errors.py — Engine Error Types
===============================

Failures the engine recovers from locally. None of these escape to
callers of the public scoring API: they are raised at the point of
failure, caught by the owning component, logged, and turned into a
neutral result (0 probability, empty forecast, Calibrating baseline).

Insufficient data and zero-variance channels are ordinary states and are
handled inline with sentinel values instead of exceptions.
"""


class LeakwatchError(Exception):
    """Base class for engine errors."""


class ModelUnavailableError(LeakwatchError, RuntimeError):
    """A point, sequence or forecast model is not loaded."""

    def __init__(self, model_name: str):
        super().__init__(
            f"Model '{model_name}' is not loaded. "
            f"Attach a scorer or call load() first."
        )
        self.model_name = model_name


class MalformedProfileError(LeakwatchError, ValueError):
    """A persisted baseline profile is corrupt, truncated or of an unknown schema."""
