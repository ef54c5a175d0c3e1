"""
windowing.py — Bounded Rolling Windows
=======================================

Count-based FIFO windows shared between the ingestion path and the
scorers:

    SequenceBuffer     — the most recent SensorReadings (default 10).
                         Read by the PCA scorer, the sequence heuristic
                         and the forecast input assembly.
    PredictionHistory  — the most recent fused probabilities (default 20).
                         Read only for trend direction.

How it works:
    1. Appends go through one lock-guarded entry point; the deque's
       maxlen evicts the oldest element in the same step, so no reader
       ever observes a window above capacity.
    2. Readers get a list copy (snapshot) and never hold the lock while
       a model runs.
"""

import logging
import threading
from collections import deque

from . import config
from .records import SensorReading
from .utils import trend_delta

logger = logging.getLogger("leakwatch.windowing")


class SequenceBuffer:
    """
    Fixed-capacity rolling window of recent readings.

    Attributes:
        capacity (int): Maximum number of readings kept.
    """

    def __init__(self, capacity: int = None):
        """
        Args:
            capacity: Window size. Defaults to config.SEQUENCE_LENGTH (10).
        """
        self.capacity = capacity if capacity is not None else config.SEQUENCE_LENGTH
        if self.capacity <= 0:
            raise ValueError(f"capacity must be positive, got {self.capacity}")
        self._lock = threading.Lock()
        self._buffer: deque = deque(maxlen=self.capacity)

    def append(self, reading: SensorReading) -> None:
        """Add a reading, evicting the oldest one when full."""
        with self._lock:
            self._buffer.append(reading)
            size = len(self._buffer)
        logger.debug(f"Sequence buffer size: {size}/{self.capacity}")

    def replace(self, readings) -> None:
        """
        Swap the whole window for the last `capacity` of the given readings.

        Used when a caller supplies an explicit series to analyse.
        """
        tail = list(readings)[-self.capacity:]
        with self._lock:
            self._buffer = deque(tail, maxlen=self.capacity)

    def snapshot(self, last: int = None) -> list:
        """
        Copy of the buffered readings, oldest first.

        Args:
            last: Only return the most recent `last` readings.
        """
        with self._lock:
            items = list(self._buffer)
        if last is not None:
            items = items[-last:] if last > 0 else []
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def reset(self) -> None:
        with self._lock:
            self._buffer.clear()
        logger.info("Sequence buffer reset")


class PredictionHistory:
    """Bounded trailing list of fused probabilities."""

    def __init__(self, capacity: int = None):
        self.capacity = capacity if capacity is not None else config.PREDICTION_HISTORY_SIZE
        self._lock = threading.Lock()
        self._values: deque = deque(maxlen=self.capacity)

    def append(self, probability: float) -> None:
        with self._lock:
            self._values.append(float(probability))

    def snapshot(self) -> list:
        with self._lock:
            return list(self._values)

    def trend_delta(self) -> float | None:
        """
        Average of the last 3 values minus the average of the 3 before.

        Returns None with fewer than 5 values.
        """
        return trend_delta(self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()
