"""
baseline.py — Adaptive Installation Baseline
=============================================

Learns what "normal" looks like for one specific installation and scores
each new reading by how far it deviates from that norm.

States:
    CALIBRATING  — fewer than MIN_BASELINE_SAMPLES readings seen. Readings
                   are collected and scored with the fixed rules in rules.py.
    CALIBRATED   — the BaselineProfile has been computed. Readings are
                   scored with per-channel z-scores against the hour-of-day
                   pattern (when it has enough samples) or the global
                   profile.

The CALIBRATING -> CALIBRATED transition happens exactly once, under the
baseline lock, the first time the sample window reaches the minimum size.

Calibrated score:
    0.35 * min(|z_flow| / 3, 1)
  + 0.35 * min(|z_pressure| / 3, 1)
  + 0.20 * min(|z_vibration| / 3, 1)
  + 0.10 * anticorrelation bonus
clamped to [0, 1]. The bonus, min(max(z_flow, -z_pressure) * 0.2, 1), is
only granted when flow is above (z > 1) and pressure below (z < -1) its
norm at the same time — rising flow with falling pressure is the
canonical leak signature.

Persistence:
    The profile is saved as a versioned JSON document through a
    BaselineStore. On restart the profile is reloaded and synthetic samples
    are regenerated from its statistics (Box–Muller Gaussian), so the
    installation does not have to re-calibrate from zero.
"""

import json
import logging
import math
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import numpy as np

from . import config
from .errors import MalformedProfileError
from .feature_engineering import readings_to_dataframe
from .records import BaselineResult, SensorReading
from .rules import basic_anomaly_score, is_leak_reading
from .utils import clamp, pearson_correlation, trend_delta, z_score

logger = logging.getLogger("leakwatch.baseline")

CALIBRATING = "CALIBRATING"
CALIBRATED = "CALIBRATED"


def _finite(value) -> float:
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f"non-finite value {value!r}")
    return value


@dataclass(frozen=True)
class HourlyPattern:
    """Mean / stddev per channel for one hour of the day."""

    flow_mean: float = 0.0
    flow_std: float = 0.0
    pressure_mean: float = 0.0
    pressure_std: float = 0.0
    vibration_mean: float = 0.0
    vibration_std: float = 0.0
    sample_count: int = 0

    def mean(self, channel: str) -> float:
        return getattr(self, f"{channel}_mean")

    def std(self, channel: str) -> float:
        return getattr(self, f"{channel}_std")

    def to_dict(self, hour: int) -> dict:
        payload = {"hour": hour, "sample_count": self.sample_count}
        for name in config.CHANNELS:
            payload[name] = {"mean": self.mean(name), "std": self.std(name)}
        return payload

    @classmethod
    def from_dict(cls, data: dict) -> "HourlyPattern":
        kwargs = {}
        for name in config.CHANNELS:
            kwargs[f"{name}_mean"] = _finite(data[name]["mean"])
            kwargs[f"{name}_std"] = _finite(data[name]["std"])
        kwargs["sample_count"] = int(data["sample_count"])
        return cls(**kwargs)


@dataclass(frozen=True)
class BaselineProfile:
    """
    Learned behavioural model of one installation.

    Attributes:
        flow_mean .. vibration_std: Global statistics per channel.
        hourly_patterns: Hour of day (0-23) -> HourlyPattern.
        flow_pressure_correlation: Pearson r of flow vs pressure.
        last_updated: Epoch seconds of the last recompute.
    """

    flow_mean: float = 0.0
    flow_std: float = 0.0
    pressure_mean: float = 0.0
    pressure_std: float = 0.0
    vibration_mean: float = 0.0
    vibration_std: float = 0.0
    hourly_patterns: dict = field(default_factory=dict)
    flow_pressure_correlation: float = 0.0
    last_updated: float = 0.0

    def mean(self, channel: str) -> float:
        return getattr(self, f"{channel}_mean")

    def std(self, channel: str) -> float:
        return getattr(self, f"{channel}_std")

    @classmethod
    def from_samples(cls, samples, hourly_significance: int = None) -> "BaselineProfile":
        """
        Batch-compute a profile from calibration samples.

        Hourly patterns are only built for hours with at least
        `hourly_significance` samples.
        """
        significance = (hourly_significance if hourly_significance is not None
                        else config.HOURLY_SIGNIFICANCE)
        samples = list(samples)
        df = readings_to_dataframe(samples)
        channels = list(config.CHANNELS)
        means = df[channels].mean()
        stds = df[channels].std(ddof=0)

        df["hour"] = [r.timestamp.hour for r in samples]
        hourly = {}
        for hour, group in df.groupby("hour"):
            if len(group) < significance:
                continue
            g_means = group[channels].mean()
            g_stds = group[channels].std(ddof=0)
            hourly[int(hour)] = HourlyPattern(
                **{f"{c}_mean": float(g_means[c]) for c in channels},
                **{f"{c}_std": float(g_stds[c]) for c in channels},
                sample_count=int(len(group)),
            )

        return cls(
            **{f"{c}_mean": float(means[c]) for c in channels},
            **{f"{c}_std": float(stds[c]) for c in channels},
            hourly_patterns=hourly,
            flow_pressure_correlation=pearson_correlation(
                df["flow"].to_numpy(), df["pressure"].to_numpy()),
            last_updated=time.time(),
        )

    # ── Serialization ─────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "schema_version": config.BASELINE_SCHEMA_VERSION,
            "global": {
                name: {"mean": self.mean(name), "std": self.std(name)}
                for name in config.CHANNELS
            },
            "flow_pressure_correlation": self.flow_pressure_correlation,
            "last_updated": self.last_updated,
            "hourly_patterns": [
                pattern.to_dict(hour)
                for hour, pattern in sorted(self.hourly_patterns.items())
            ],
        }

    @classmethod
    def from_dict(cls, data) -> "BaselineProfile":
        """
        Rebuild a profile from its serialized form.

        Raises:
            MalformedProfileError: On an unknown schema version, a missing
                field, a non-numeric value or an hour outside 0-23.
        """
        if not isinstance(data, dict):
            raise MalformedProfileError("Baseline profile must be a JSON object")
        version = data.get("schema_version")
        if version != config.BASELINE_SCHEMA_VERSION:
            raise MalformedProfileError(
                f"Unsupported baseline schema version: {version!r}")
        try:
            stats = {}
            for name in config.CHANNELS:
                stats[f"{name}_mean"] = _finite(data["global"][name]["mean"])
                stats[f"{name}_std"] = _finite(data["global"][name]["std"])

            hourly = {}
            for entry in data["hourly_patterns"]:
                hour = int(entry["hour"])
                if not 0 <= hour <= 23:
                    raise ValueError(f"hour out of range: {hour}")
                hourly[hour] = HourlyPattern.from_dict(entry)

            return cls(
                **stats,
                hourly_patterns=hourly,
                flow_pressure_correlation=_finite(data["flow_pressure_correlation"]),
                last_updated=_finite(data["last_updated"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedProfileError(f"Malformed baseline profile: {e}") from e


class JsonFileBaselineStore:
    """
    File-backed baseline store writing one JSON document.

    Writes go to a temporary file that is then renamed over the target,
    so a crash mid-write never leaves a truncated profile behind.
    """

    def __init__(self, path: str = None):
        """
        Args:
            path: Profile file. Defaults to config.BASELINE_PATH.
        """
        self.path = path or config.BASELINE_PATH

    def save(self, profile: BaselineProfile) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(profile.to_dict(), fh, indent=2)
        os.replace(tmp_path, self.path)
        logger.info(f"Baseline profile saved to {self.path}")

    def load(self) -> BaselineProfile | None:
        """
        Returns:
            The stored profile, or None when no profile has been saved.

        Raises:
            MalformedProfileError: If the file is not a valid profile.
        """
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as fh:
            try:
                data = json.load(fh)
            except json.JSONDecodeError as e:
                raise MalformedProfileError(
                    f"Baseline file {self.path} is not valid JSON: {e}") from e
        return BaselineProfile.from_dict(data)


def _format_sigma(z: float) -> str:
    abs_z = abs(z)
    if abs_z > 3:
        label = "extreme"
    elif abs_z > 2:
        label = "very significant"
    else:
        label = "significant"
    return f"{label} ({abs_z:.1f}σ)"


class InstallationBaseline:
    """
    Per-installation behavioural baseline and anomaly scorer.

    Usage:
        baseline = InstallationBaseline(store=JsonFileBaselineStore())
        baseline.load()
        score = baseline.process(reading)
        text = baseline.explain(reading, score)

    Attributes:
        store: BaselineStore used by save() / load(); may be None.
        min_samples (int): Samples needed to calibrate.
        max_samples (int): Bound of the calibration sample window.
        hourly_significance (int): Sample floor for hourly patterns.
    """

    def __init__(self, store=None, min_samples: int = None,
                 max_samples: int = None, hourly_significance: int = None,
                 rng: np.random.Generator = None):
        self.store = store
        self.min_samples = min_samples or config.MIN_BASELINE_SAMPLES
        self.max_samples = max_samples or config.MAX_BASELINE_SAMPLES
        self.hourly_significance = (hourly_significance if hourly_significance is not None
                                    else config.HOURLY_SIGNIFICANCE)
        self._rng = rng or np.random.default_rng()

        self._lock = threading.RLock()
        self._samples: deque = deque(maxlen=self.max_samples)
        self._recent_scores: deque = deque(maxlen=config.BASELINE_SCORE_HISTORY)
        self._profile = BaselineProfile()
        self._calibrated = False

    # ── State ─────────────────────────────────────────────────────

    @property
    def is_calibrated(self) -> bool:
        with self._lock:
            return self._calibrated

    @property
    def state(self) -> str:
        return CALIBRATED if self.is_calibrated else CALIBRATING

    @property
    def profile(self) -> BaselineProfile:
        with self._lock:
            return self._profile

    @property
    def calibration_progress(self) -> int:
        """Calibration progress 0-100; capped at 99 until calibrated."""
        with self._lock:
            if self._calibrated:
                return 100
            progress = int(len(self._samples) * 100 / self.min_samples)
        return min(max(progress, 0), 99)

    def stats(self) -> dict:
        """Current global statistics for display."""
        with self._lock:
            profile = self._profile
            sample_count = len(self._samples)
            calibrated = self._calibrated
        stats = {}
        for name in config.CHANNELS:
            stats[f"{name}_mean"] = profile.mean(name)
            stats[f"{name}_std"] = profile.std(name)
        stats.update({
            "hourly_pattern_count": len(profile.hourly_patterns),
            "sample_count": sample_count,
            "is_calibrated": calibrated,
            "last_updated": profile.last_updated,
        })
        return stats

    # ── Scoring ───────────────────────────────────────────────────

    def process(self, reading: SensorReading) -> float:
        """
        Ingest a reading and return its anomaly score (0-1).

        While calibrating the reading is added to the sample window and
        scored with the fixed rules; the profile is computed the first
        time the window reaches min_samples.
        """
        with self._lock:
            if not self._calibrated or len(self._samples) < self.max_samples:
                self._samples.append(reading)
                if not self._calibrated and len(self._samples) >= self.min_samples:
                    self._profile = BaselineProfile.from_samples(
                        self._samples, self.hourly_significance)
                    self._calibrated = True
                    logger.info(
                        f"Baseline calibrated from {len(self._samples)} samples, "
                        f"{len(self._profile.hourly_patterns)} hourly patterns")
            calibrated = self._calibrated
            profile = self._profile

        if calibrated:
            score = self._calibrated_score(reading, profile)
        else:
            score = basic_anomaly_score(reading)

        with self._lock:
            self._recent_scores.append(score)

        logger.debug(f"Baseline score={score:.4f} "
                     f"({CALIBRATED if calibrated else CALIBRATING})")
        return score

    def analyze(self, reading: SensorReading) -> BaselineResult:
        """Process a reading and bundle score, z-scores and explanation."""
        score = self.process(reading)
        return BaselineResult(
            score=score,
            z_scores=self.z_scores(reading),
            explanation=self.explain(reading, score),
            is_anomaly=score > config.BASELINE_ANOMALY_THRESHOLD,
        )

    def _reference(self, hour: int, profile: BaselineProfile):
        """Hourly pattern when significant, else the global profile."""
        pattern = profile.hourly_patterns.get(hour)
        if pattern is not None and pattern.sample_count > self.hourly_significance:
            return pattern
        return profile

    def _z_scores(self, reading: SensorReading, profile: BaselineProfile) -> dict:
        ref = self._reference(reading.timestamp.hour, profile)
        return {
            name: z_score(reading.channel(name), ref.mean(name), ref.std(name))
            for name in config.CHANNELS
        }

    def z_scores(self, reading: SensorReading) -> dict:
        """
        Per-channel z-scores of a reading against the current profile.

        All zeros while calibrating.
        """
        with self._lock:
            if not self._calibrated:
                return {name: 0.0 for name in config.CHANNELS}
            profile = self._profile
        return self._z_scores(reading, profile)

    def _calibrated_score(self, reading: SensorReading,
                          profile: BaselineProfile) -> float:
        z = self._z_scores(reading, profile)
        weights = config.BASELINE_WEIGHTS

        if z["flow"] > 1.0 and z["pressure"] < -1.0:
            correlation = min(max(z["flow"], -z["pressure"]) * 0.2, 1.0)
        else:
            correlation = 0.0

        total = sum(
            weights[name] * min(abs(z[name]) / config.Z_SCORE_SCALE, 1.0)
            for name in config.CHANNELS
        )
        total += weights["correlation"] * correlation
        return clamp(total)

    # ── Explanation ───────────────────────────────────────────────

    def explain(self, reading: SensorReading, score: float) -> str:
        """
        Human-readable explanation of a baseline score.

        Lists the deviating channels with a severity label, flags the
        high-flow / low-pressure leak pattern, puts the reading in the
        context of its hour of day, and reports the score trend.
        """
        if score < config.BASELINE_EXPLAIN_THRESHOLD:
            return "Normal behaviour within expected parameters."

        lines = [f"Anomaly detected ({int(score * 100)}%):"]

        with self._lock:
            calibrated = self._calibrated
            profile = self._profile
            recent = list(self._recent_scores)

        if not calibrated:
            lines.append(
                f"• Baseline still calibrating ({self.calibration_progress}%): "
                f"assessment based on fixed rules.")
            if is_leak_reading(reading):
                lines.append("• Reading matches the rule-based leak criteria.")
        else:
            z = self._z_scores(reading, profile)
            if z["flow"] > 1.5 and z["pressure"] < -1.5:
                lines.append(f"• {config.CRITICAL_PATTERN_MESSAGE}")
            elif z["flow"] > 2.0:
                lines.append(f"• Abnormally high flow: {_format_sigma(z['flow'])}.")
            elif z["pressure"] < -2.0:
                lines.append(f"• Abnormally low pressure: {_format_sigma(z['pressure'])}.")

            if z["vibration"] > 2.0:
                lines.append(f"• Abnormal vibration detected: "
                             f"{_format_sigma(z['vibration'])}.")

            if reading.timestamp.hour in profile.hourly_patterns:
                degree = "very unusual" if score > 0.7 else "unusual"
                lines.append(f"• In context: this is {degree} behaviour for this "
                             f"time of day ({reading.timestamp:%H:%M}).")

        delta = trend_delta(recent)
        if delta is not None:
            if delta > 0.1:
                lines.append("• Trend: the situation is getting worse over time.")
            elif delta < -0.1:
                lines.append("• Trend: the situation appears to be improving.")

        return "\n".join(lines)

    # ── Calibration control ───────────────────────────────────────

    def recalibrate(self) -> bool:
        """
        Recompute the profile from the current sample window.

        Falls back to CALIBRATING when the window is below min_samples.

        Returns:
            True if the baseline is calibrated afterwards.
        """
        with self._lock:
            if len(self._samples) < self.min_samples:
                self._calibrated = False
                self._profile = BaselineProfile()
                logger.info(f"Recalibration needs {self.min_samples} samples, "
                            f"have {len(self._samples)}; back to calibrating")
                return False
            self._profile = BaselineProfile.from_samples(
                self._samples, self.hourly_significance)
            self._calibrated = True
        logger.info("Baseline recalibrated")
        return True

    def reset(self) -> None:
        """Discard the profile and all samples."""
        with self._lock:
            self._samples.clear()
            self._recent_scores.clear()
            self._profile = BaselineProfile()
            self._calibrated = False
        logger.info("Baseline reset to calibrating")

    # ── Persistence ───────────────────────────────────────────────

    def save(self) -> bool:
        """
        Persist the calibrated profile through the store.

        Returns:
            True on success; False when uncalibrated, storeless, or the
            write failed.
        """
        if self.store is None:
            logger.warning("No baseline store configured, profile not saved")
            return False
        with self._lock:
            if not self._calibrated:
                logger.info("Baseline not calibrated yet, nothing to save")
                return False
            profile = self._profile
        try:
            self.store.save(profile)
            return True
        except OSError as e:
            logger.error(f"Failed to save baseline profile: {e}")
            return False

    def load(self) -> bool:
        """
        Restore the profile from the store and regenerate samples.

        A missing profile leaves the baseline calibrating with an empty
        window; a malformed one is logged and discarded.

        Returns:
            True if a profile was restored.
        """
        if self.store is None:
            return False
        try:
            profile = self.store.load()
        except (MalformedProfileError, OSError) as e:
            logger.error(f"Discarding baseline profile: {e}")
            self.reset()
            return False

        if profile is None:
            logger.info("No saved baseline profile, starting calibration")
            return False

        samples = self._synthetic_samples(profile)
        with self._lock:
            self._profile = profile
            self._samples = deque(samples, maxlen=self.max_samples)
            self._recent_scores.clear()
            self._calibrated = True
        logger.info(f"Baseline profile restored: {len(profile.hourly_patterns)} "
                    f"hourly patterns, {len(samples)} synthetic samples")
        return True

    def _gaussian(self, mean: float, std: float, n: int) -> np.ndarray:
        """Box–Muller draws around mean / std."""
        u1 = 1.0 - self._rng.random(n)  # (0, 1]
        u2 = 1.0 - self._rng.random(n)
        standard = np.sqrt(-2.0 * np.log(u1)) * np.sin(2.0 * np.pi * u2)
        return mean + std * standard

    def _synthetic_samples(self, profile: BaselineProfile) -> list:
        """
        Regenerate representative samples from persisted statistics.

        Up to SYNTHETIC_SAMPLES_PER_HOUR per hourly pattern, then padded
        to min_samples with draws from the global profile.
        """
        now = datetime.now(timezone.utc)
        samples = []

        for hour, pattern in sorted(profile.hourly_patterns.items()):
            n = min(pattern.sample_count, config.SYNTHETIC_SAMPLES_PER_HOUR)
            if n <= 0:
                continue
            values = {name: self._gaussian(pattern.mean(name), pattern.std(name), n)
                      for name in config.CHANNELS}
            minutes = self._rng.integers(0, 60, size=n)
            for i in range(n):
                ts = now.replace(hour=hour, minute=int(minutes[i]),
                                 second=0, microsecond=0)
                samples.append(SensorReading(
                    timestamp=ts,
                    flow=float(values["flow"][i]),
                    pressure=float(values["pressure"][i]),
                    vibration=float(values["vibration"][i]),
                ))

        missing = self.min_samples - len(samples)
        if missing > 0:
            values = {name: self._gaussian(profile.mean(name), profile.std(name), missing)
                      for name in config.CHANNELS}
            offsets = self._rng.integers(0, 24 * 60 * 60, size=missing)
            for i in range(missing):
                samples.append(SensorReading(
                    timestamp=now - timedelta(seconds=int(offsets[i])),
                    flow=float(values["flow"][i]),
                    pressure=float(values["pressure"][i]),
                    vibration=float(values["vibration"][i]),
                ))

        return samples
