"""
train.py — PCA Basis Fitting from Historical Readings
======================================================

Fits the principal-component basis used by the reconstruction scorer
from a history of normal operation and saves it with joblib.

This script can be run standalone:
    python -m leakwatch.train history.csv [output.pkl]

Or called programmatically:
    from leakwatch.train import fit_pca_basis
    basis = fit_pca_basis(readings)

Training flow:
    1. Load readings (CSV with timestamp, flow, pressure, vibration)
    2. Drop incomplete rows and IQR outliers
    3. Normalize with the same seed-extended min/max bounds the engine uses
    4. Build sliding windows of PCA_WINDOW_LENGTH readings, flattened
    5. Fit sklearn PCA and keep components + mean
    6. Save to config.PCA_BASIS_PATH
"""

import logging
import sys

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from . import config
from .pca import PCABasis, save_pca_basis
from .preprocessing import FeatureNormalizer
from .utils import ensure_data_dir, reading_from_record, setup_logging

logger = logging.getLogger("leakwatch.train")


def remove_outliers(df: pd.DataFrame, multiplier: float = None) -> pd.DataFrame:
    """
    Remove rows with any channel outside the IQR fence.

    Lower = Q1 - multiplier * IQR, Upper = Q3 + multiplier * IQR, per channel.
    """
    multiplier = multiplier if multiplier is not None else config.TRAIN_IQR_MULTIPLIER
    mask = pd.Series(True, index=df.index)
    for col in config.CHANNELS:
        q1 = df[col].quantile(0.25)
        q3 = df[col].quantile(0.75)
        iqr = q3 - q1
        mask &= (df[col] >= q1 - multiplier * iqr) & (df[col] <= q3 + multiplier * iqr)

    df_clean = df[mask].reset_index(drop=True)
    dropped = len(df) - len(df_clean)
    if dropped:
        logger.info(f"Removed {dropped} outlier rows ({len(df_clean)} remain)")
    return df_clean


def load_history(path: str) -> list:
    """
    Read a CSV history into SensorReadings, oldest first.

    Rows with a missing, non-numeric or non-finite channel are skipped.
    """
    df = pd.read_csv(path)
    missing = [c for c in config.CHANNELS if c not in df.columns]
    if missing:
        raise ValueError(f"{path} is missing columns {missing}")

    for col in config.CHANNELS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df[list(config.CHANNELS)] = df[list(config.CHANNELS)].replace([np.inf, -np.inf], np.nan)
    before = len(df)
    df = df.dropna(subset=list(config.CHANNELS))
    if len(df) < before:
        logger.warning(f"Skipped {before - len(df)} incomplete rows in {path}")

    df = remove_outliers(df)
    if "timestamp" in df.columns:
        df = df.sort_values("timestamp", kind="stable")

    readings = [reading_from_record(record) for record in df.to_dict("records")]
    logger.info(f"Loaded {len(readings)} readings from {path}")
    return readings


def build_windows(readings, window_length: int = None,
                  normalizer: FeatureNormalizer = None) -> np.ndarray:
    """
    Sliding (stride 1) flattened windows of normalized readings.

    Args:
        readings: Readings in time order.
        window_length: Readings per window. Defaults to PCA_WINDOW_LENGTH.
        normalizer: Normalizer to scale with; by default a fresh one
            extended with every reading.

    Returns:
        Array of shape (n_windows, window_length * 3); n_windows may be 0.
    """
    window_length = window_length or config.PCA_WINDOW_LENGTH
    readings = list(readings)
    if normalizer is None:
        normalizer = FeatureNormalizer()
        for r in readings:
            normalizer.update(r)

    width = window_length * len(config.CHANNELS)
    if len(readings) < window_length:
        return np.empty((0, width))

    normalized = normalizer.normalize_window(readings)
    windows = [normalized[i:i + window_length].ravel()
               for i in range(len(readings) - window_length + 1)]
    return np.array(windows, dtype=np.float64)


def fit_pca_basis(readings, window_length: int = None,
                  n_components: int = None) -> PCABasis | None:
    """
    Fit a PCA basis on windows of normal operation.

    Returns:
        The fitted PCABasis, or None when there are fewer than
        MIN_TRAINING_WINDOWS windows.
    """
    window_length = window_length or config.PCA_WINDOW_LENGTH
    n_components = n_components or config.PCA_N_COMPONENTS

    X = build_windows(readings, window_length)
    if X.shape[0] < config.MIN_TRAINING_WINDOWS:
        logger.error(f"Only {X.shape[0]} training windows, "
                     f"need at least {config.MIN_TRAINING_WINDOWS}")
        return None

    n_components = min(n_components, X.shape[0], X.shape[1])
    pca = PCA(n_components=n_components)
    pca.fit(X)

    explained = float(np.sum(pca.explained_variance_ratio_))
    logger.info(f"PCA fitted on {X.shape[0]} windows: {n_components} components "
                f"explain {explained * 100:.1f}% of the variance")
    return PCABasis(pca.components_, pca.mean_)


def train_pca_from_history(path: str, output_path: str = None) -> bool:
    """
    Complete fitting pipeline: load → clean → window → fit → save.

    Returns:
        True if a basis was saved, False otherwise.
    """
    setup_logging()
    output_path = output_path or config.PCA_BASIS_PATH
    if output_path == config.PCA_BASIS_PATH:
        ensure_data_dir()

    try:
        readings = load_history(path)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot read history from {path}: {e}")
        return False

    basis = fit_pca_basis(readings)
    if basis is None:
        return False

    save_pca_basis(basis, output_path)
    return True


# ── CLI entry point ──────────────────────────────────────────────
if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python -m leakwatch.train HISTORY_CSV [OUTPUT_PKL]")
        sys.exit(2)
    success = train_pca_from_history(sys.argv[1],
                                     sys.argv[2] if len(sys.argv) > 2 else None)
    sys.exit(0 if success else 1)
