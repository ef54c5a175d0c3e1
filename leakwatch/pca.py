"""
pca.py — Principal Component Reconstruction Scorer
===================================================

Scores the recent window of readings by how well it can be rebuilt from
a principal-component basis learned offline on normal operation.

How it works:
    1. Normalize the last `window_length` readings and flatten them into
       one vector [f0, p0, v0, f1, p1, v1, ...] of length window_length * 3.
    2. Center it by subtracting the basis mean vector.
    3. Project onto each component (dot product) and rebuild the vector
       as the sum of component * coefficient.
    4. Mean squared reconstruction error → anomaly score:
           0                                          if mse <= threshold
           1 / (1 + exp(-5 * (mse - 2 * threshold)))  otherwise

Windows that follow the covariance structure of normal flow / pressure /
vibration rebuild almost perfectly; leak signatures do not.
"""

import logging

import joblib
import numpy as np

from . import config

logger = logging.getLogger("leakwatch.pca")


class PCABasis:
    """
    Principal components plus mean vector, trained offline.

    Attributes:
        components (np.ndarray): Shape (n_components, window_length * 3).
        mean (np.ndarray): Shape (window_length * 3,).
    """

    def __init__(self, components, mean):
        components = np.atleast_2d(np.asarray(components, dtype=np.float64))
        mean = np.asarray(mean, dtype=np.float64).ravel()
        if components.shape[1] != mean.shape[0]:
            raise ValueError(
                f"Component length {components.shape[1]} does not match "
                f"mean length {mean.shape[0]}")
        if mean.shape[0] % len(config.CHANNELS) != 0:
            raise ValueError(
                f"Basis length {mean.shape[0]} is not a multiple of "
                f"{len(config.CHANNELS)} channels")
        self.components = components
        self.mean = mean

    @property
    def window_length(self) -> int:
        return self.mean.shape[0] // len(config.CHANNELS)

    @property
    def n_components(self) -> int:
        return self.components.shape[0]


def save_pca_basis(basis: PCABasis, path: str = None) -> None:
    """Serialize a basis to disk using joblib."""
    path = path or config.PCA_BASIS_PATH
    joblib.dump({"components": basis.components, "mean": basis.mean}, path)
    logger.info(f"PCA basis saved to {path}")


def load_pca_basis(path: str = None) -> PCABasis | None:
    """
    Load a basis written by save_pca_basis.

    Returns:
        The basis, or None (logged) if it cannot be read.
    """
    path = path or config.PCA_BASIS_PATH
    try:
        payload = joblib.load(path)
        basis = PCABasis(payload["components"], payload["mean"])
    except Exception as e:
        logger.error(f"Failed to load PCA basis from {path}: {e}")
        return None
    logger.info(f"PCA basis loaded from {path} "
                f"({basis.n_components} components)")
    return basis


class PrincipalComponentAnomalyScorer:
    """
    Reconstruction-error anomaly scorer over the shared sequence buffer.

    Holds no state of its own beyond the configured basis; each call
    reads a snapshot of the buffer.
    """

    def __init__(self, buffer, normalizer, basis: PCABasis = None,
                 threshold: float = None):
        """
        Args:
            buffer: SequenceBuffer shared with the scoring engine.
            normalizer: FeatureNormalizer used to scale the window.
            basis: Optional PCABasis; without one every score is 0.
            threshold: MSE threshold. Defaults to config.PCA_MSE_THRESHOLD.
        """
        self.buffer = buffer
        self.normalizer = normalizer
        self.basis = basis
        self.threshold = threshold if threshold is not None else config.PCA_MSE_THRESHOLD

    @property
    def is_configured(self) -> bool:
        return self.basis is not None

    @property
    def window_length(self) -> int:
        if self.basis is not None:
            return self.basis.window_length
        return config.PCA_WINDOW_LENGTH

    def reconstruction_error(self, window) -> float | None:
        """
        Mean squared reconstruction error of a window.

        Returns None without a basis or with fewer than window_length readings.
        """
        if self.basis is None:
            return None
        length = self.window_length
        window = list(window)
        if len(window) < length:
            return None

        vec = self.normalizer.normalize_window(window[-length:]).ravel()
        centered = vec - self.basis.mean
        coefficients = self.basis.components @ centered
        reconstructed = coefficients @ self.basis.components
        return float(np.mean((centered - reconstructed) ** 2))

    def score(self, window=None) -> float:
        """
        Anomaly score in [0, 1].

        Args:
            window: Readings to score; defaults to a buffer snapshot.

        Returns:
            0 when the window is shorter than window_length or no basis
            is configured.
        """
        if window is None:
            window = self.buffer.snapshot()
        mse = self.reconstruction_error(window)
        if mse is None or mse <= self.threshold:
            return 0.0
        score = 1.0 / (1.0 + np.exp(-config.PCA_SIGMOID_STEEPNESS
                                    * (mse - 2.0 * self.threshold)))
        logger.debug(f"PCA mse={mse:.5f} score={score:.4f}")
        return float(min(max(score, 0.0), 1.0))
