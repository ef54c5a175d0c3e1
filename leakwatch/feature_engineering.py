"""
feature_engineering.py — Sequence Statistics and Leak Heuristic
================================================================

Turns a short window of raw readings (flow, pressure, vibration,
timestamp) into the statistics the sequence-level leak heuristic needs.

Output features (per window):
    flow_mean / flow_var            — level and variability of flow
    pressure_mean / pressure_var    — level and variability of pressure
    vibration_mean / vibration_var  — level and variability of vibration
    max_pressure_drop               — largest drop across 3 consecutive readings
    max_vibration                   — highest single vibration sample
    flow_pressure_corr              — Pearson r between flow and pressure

Flags:
    sudden_pressure_drop  — a 3-reading drop larger than 30 % of mean pressure
    high_flow_variation   — flow variance larger than 50 % of mean flow
    high_vibration        — any vibration sample above 1.2 g
    negative_correlation  — flow and pressure anticorrelated (r < -0.5)

A burst pipe pulls pressure down while flow rises, so the strongest
single indicator is the negative flow/pressure correlation.
"""

import logging
import pandas as pd

from . import config
from .utils import pearson_correlation

logger = logging.getLogger("leakwatch.feature_engineering")


def readings_to_dataframe(readings) -> pd.DataFrame:
    """
    Convert readings to a DataFrame with columns timestamp + channels.

    Args:
        readings: Iterable of SensorReading.
    """
    readings = list(readings)
    return pd.DataFrame(
        {
            # Kept as objects: the source may mix time zones
            "timestamp": pd.Series([r.timestamp for r in readings], dtype=object),
            "flow": [r.flow for r in readings],
            "pressure": [r.pressure for r in readings],
            "vibration": [r.vibration for r in readings],
        },
        columns=["timestamp", *config.CHANNELS],
    )


def extract_sequence_features(readings) -> dict | None:
    """
    Compute window statistics and heuristic flags.

    Args:
        readings: Sequence of SensorReading, oldest first.

    Returns:
        Dict of features and boolean flags, or None with fewer than
        3 readings.
    """
    if not readings or len(readings) < 3:
        logger.debug("Insufficient readings for sequence features "
                     f"(got {len(readings) if readings else 0}, need ≥3)")
        return None

    df = readings_to_dataframe(readings)

    means = df[list(config.CHANNELS)].mean()
    variances = df[list(config.CHANNELS)].var(ddof=0)

    # pressure[i] - pressure[i + 2] for every 3-reading sub-window
    drops = (df["pressure"] - df["pressure"].shift(-2)).dropna()
    max_pressure_drop = float(drops.max()) if len(drops) > 0 else 0.0

    max_vibration = float(df["vibration"].max())
    corr = pearson_correlation(df["flow"].to_numpy(), df["pressure"].to_numpy())

    features = {
        "flow_mean": float(means["flow"]),
        "flow_var": float(variances["flow"]),
        "pressure_mean": float(means["pressure"]),
        "pressure_var": float(variances["pressure"]),
        "vibration_mean": float(means["vibration"]),
        "vibration_var": float(variances["vibration"]),
        "max_pressure_drop": max_pressure_drop,
        "max_vibration": max_vibration,
        "flow_pressure_corr": corr,
    }

    features["sudden_pressure_drop"] = bool(
        max_pressure_drop > features["pressure_mean"] * config.PRESSURE_DROP_FRACTION
    )
    features["high_flow_variation"] = bool(
        features["flow_var"] > features["flow_mean"] * config.FLOW_VARIATION_FRACTION
    )
    features["high_vibration"] = bool(max_vibration > config.VIBRATION_CEILING)
    features["negative_correlation"] = bool(corr < config.NEGATIVE_CORRELATION_LIMIT)

    logger.debug(f"Sequence features: {features}")
    return features


def detect_sequence_anomaly(readings) -> bool:
    """
    Sequence-level leak heuristic.

    Anomalous when:
        (sudden pressure drop AND high flow variation)
        OR (high vibration AND (sudden pressure drop OR high flow variation))
        OR negative flow/pressure correlation

    Returns False with fewer than 3 readings.
    """
    features = extract_sequence_features(readings)
    if features is None:
        return False

    drop = features["sudden_pressure_drop"]
    variation = features["high_flow_variation"]
    vibration = features["high_vibration"]

    return bool(
        (drop and variation)
        or (vibration and (drop or variation))
        or features["negative_correlation"]
    )

