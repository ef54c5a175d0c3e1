"""
utils.py — Shared Utility Functions and Logging Setup
======================================================

Common helpers used across the engine modules: logging configuration,
telemetry record parsing, and the small statistics every scorer needs.
"""

import os
import logging
from datetime import datetime, timezone

import numpy as np

from . import config
from .records import SensorReading


def setup_logging(level: str = None) -> None:
    """
    Configure structured logging for the engine.

    Sets up a console handler with timestamp, logger name, level,
    and message. All leakwatch.* loggers inherit this configuration.

    Args:
        level: Log level string (DEBUG/INFO/WARNING/ERROR/CRITICAL).
               Defaults to config.LOG_LEVEL.
    """
    level = level or config.LOG_LEVEL
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    engine_logger = logging.getLogger("leakwatch")
    engine_logger.setLevel(numeric_level)

    # Avoid duplicate handlers on repeated calls
    if not engine_logger.handlers:
        engine_logger.addHandler(handler)


def ensure_data_dir(path: str = None) -> str:
    """
    Ensure the data directory exists.

    Args:
        path: Directory to create. Defaults to config.DATA_DIR.

    Returns:
        Absolute path to the directory.
    """
    path = path or config.DATA_DIR
    os.makedirs(path, exist_ok=True)
    return os.path.abspath(path)


def validate_record(record: dict) -> bool:
    """
    Validate that a telemetry record has the required fields.

    Args:
        record: Telemetry record dict.

    Returns:
        True if valid (has finite numeric flow, pressure, vibration),
        False otherwise.
    """
    for key in config.CHANNELS:
        if key not in record:
            return False
        try:
            value = float(record[key])
        except (TypeError, ValueError):
            return False
        if not np.isfinite(value):
            return False
    return True


def reading_from_record(record: dict) -> SensorReading:
    """
    Build a SensorReading from a repository record.

    The timestamp may be a datetime, an ISO-8601 string or epoch
    milliseconds; a missing or unparsable timestamp falls back to now (UTC).

    Raises:
        ValueError: If a channel value is missing or not numeric.
    """
    if not validate_record(record):
        raise ValueError(f"Incomplete telemetry record: {record!r}")

    ts = record.get("timestamp")
    if isinstance(ts, datetime):
        timestamp = ts
    elif isinstance(ts, (int, float)):
        try:
            timestamp = datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            timestamp = datetime.now(timezone.utc)
    elif isinstance(ts, str):
        try:
            timestamp = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            timestamp = datetime.now(timezone.utc)
    else:
        timestamp = datetime.now(timezone.utc)

    return SensorReading(
        timestamp=timestamp,
        flow=float(record["flow"]),
        pressure=float(record["pressure"]),
        vibration=float(record["vibration"]),
    )


# ── Statistics ────────────────────────────────────────────────────

def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return float(min(max(value, low), high))


def z_score(value: float, mean: float, std: float) -> float:
    """Standard score of value; 0 when std is not positive."""
    if std > 0:
        return float((value - mean) / std)
    return 0.0


def pearson_correlation(x, y) -> float:
    """
    Pearson correlation of two equal-length series.

    Returns 0 when the lengths differ, the series are empty, or either
    series has no variance.
    """
    xa = np.asarray(x, dtype=np.float64)
    ya = np.asarray(y, dtype=np.float64)
    if xa.size == 0 or xa.size != ya.size:
        return 0.0
    dx = xa - xa.mean()
    dy = ya - ya.mean()
    x_denom = float(np.dot(dx, dx))
    y_denom = float(np.dot(dy, dy))
    if x_denom <= 0 or y_denom <= 0:
        return 0.0
    return float(np.dot(dx, dy) / np.sqrt(x_denom * y_denom))


def trend_delta(values, span: int = 3) -> float | None:
    """
    Mean of the last `span` values minus the mean of the `span` before them.

    Returns None when fewer than span + 2 values are available.
    """
    values = list(values)
    if len(values) < span + 2:
        return None
    recent = values[-span:]
    earlier = values[:-span][-span:]
    return float(np.mean(recent) - np.mean(earlier))
