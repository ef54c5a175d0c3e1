"""
config.py — Leak Detection Engine Configuration Constants
==========================================================

Centralizes all thresholds, ensemble weights, buffer sizes and file paths
used by the leak detection and forecasting engine. Tuning these values
adjusts how sensitive the system is to leaks and how quickly it reacts.

The engine consumes residential water telemetry:
- Flow sensor (L/min)
- Pressure sensor (kPa)
- Vibration sensor (g, pipe-mounted accelerometer magnitude)
- Readings arrive at a fixed cadence from the device repository.
"""

import os

# ═══════════════════════════════════════════════════════════════════
# SENSOR CHANNELS
# ═══════════════════════════════════════════════════════════════════

# Canonical channel order. Every feature vector handed to a model is
# laid out in this order: [flow, pressure, vibration].
CHANNELS = ("flow", "pressure", "vibration")

# Seed bounds for min/max normalization before any reading has been seen.
# They cover the physical range of a domestic installation.
SEED_BOUNDS = {
    "flow": (0.0, 10.0),
    "pressure": (0.0, 200.0),
    "vibration": (0.0, 2.0),
}

# Value returned by the normalizer when a channel has no variance.
NEUTRAL_NORMALIZED_VALUE = 0.5

# ═══════════════════════════════════════════════════════════════════
# ROLLING BUFFERS
# ═══════════════════════════════════════════════════════════════════

# Capacity of the shared sequence buffer (most recent readings).
SEQUENCE_LENGTH = 10

# Number of fused probabilities kept for trend analysis.
PREDICTION_HISTORY_SIZE = 20

# Readings needed before the ensemble mixes in sequence/PCA scores.
MIN_ENSEMBLE_READINGS = 3

# ═══════════════════════════════════════════════════════════════════
# INSTALLATION BASELINE
# ═══════════════════════════════════════════════════════════════════

# Samples required before the baseline profile is computed.
# 100 readings at one per minute is roughly an hour and a half of
# calibration on a fresh installation.
MIN_BASELINE_SAMPLES = 100

# Upper bound of the calibration sample window (FIFO).
MAX_BASELINE_SAMPLES = 1000

# An hourly pattern is built from >= this many samples and is only used
# for scoring once its sample count exceeds it.
HOURLY_SIGNIFICANCE = 10

# Synthetic samples regenerated per hourly pattern on restore.
SYNTHETIC_SAMPLES_PER_HOUR = 20

# Recent anomaly scores kept for the baseline trend sentence.
BASELINE_SCORE_HISTORY = 20

# Z-score weights for the calibrated anomaly score.
BASELINE_WEIGHTS = {
    "flow": 0.35,
    "pressure": 0.35,
    "vibration": 0.20,
    "correlation": 0.10,
}

# |z| is divided by this before capping each term at 1.
Z_SCORE_SCALE = 3.0

# Below this score the baseline explanation reports normal behaviour.
BASELINE_EXPLAIN_THRESHOLD = 0.4

# Sentence emitted for the high-flow / low-pressure leak signature.
CRITICAL_PATTERN_MESSAGE = ("Critical pattern: high flow with low pressure, "
                            "the primary leak indicator.")

# Baseline score above which a reading is a contextual anomaly.
BASELINE_ANOMALY_THRESHOLD = 0.65

# Version written into persisted baseline profiles.
BASELINE_SCHEMA_VERSION = 1

# ═══════════════════════════════════════════════════════════════════
# RULE-BASED DETECTION (calibration phase / no model loaded)
# ═══════════════════════════════════════════════════════════════════

RULE_HIGH_FLOW = 6.0
RULE_LOW_PRESSURE = 50.0
RULE_HIGH_VIBRATION = 0.8
RULE_SEVERE_VIBRATION = 1.2

# A series is a leak when >= RULE_SERIES_MIN_HITS of the last
# RULE_SERIES_WINDOW readings trip a rule.
RULE_SERIES_WINDOW = 5
RULE_SERIES_MIN_HITS = 3

# ═══════════════════════════════════════════════════════════════════
# PCA RECONSTRUCTION SCORER
# ═══════════════════════════════════════════════════════════════════

PCA_WINDOW_LENGTH = SEQUENCE_LENGTH
PCA_MSE_THRESHOLD = 0.05
PCA_SIGMOID_STEEPNESS = 5.0

# Offline fitting of the basis (train.py).
# Components kept; must not exceed PCA_WINDOW_LENGTH * 3.
PCA_N_COMPONENTS = 6
# IQR multiplier for dropping outlier readings before fitting.
# 1.5 = standard Tukey fence
TRAIN_IQR_MULTIPLIER = 1.5
# Minimum number of sliding windows needed for a meaningful fit.
MIN_TRAINING_WINDOWS = 20

# ═══════════════════════════════════════════════════════════════════
# ENSEMBLE
# ═══════════════════════════════════════════════════════════════════

ENSEMBLE_WEIGHTS = {
    "point": 0.6,
    "sequence": 0.2,
    "pca": 0.2,
}

# Steepness used to turn a reconstruction error into an anomaly score.
RECONSTRUCTION_STEEPNESS = 5.0

# Score contributed by a flagged sequence anomaly in sequence-level scoring.
SEQUENCE_FLAG_SCORE = 0.3

# Readings averaged by detect_in_series.
SERIES_PREDICTION_WINDOW = 5

# Second-half minus first-half mean above which the risk is rising.
RISING_TREND_DELTA = 0.1

# Fraction of the threshold the forecast must exceed to count as risk.
FORECAST_RISK_FACTOR = 0.8

# ═══════════════════════════════════════════════════════════════════
# SEQUENCE ANOMALY HEURISTIC
# ═══════════════════════════════════════════════════════════════════

PRESSURE_DROP_FRACTION = 0.3
FLOW_VARIATION_FRACTION = 0.5
VIBRATION_CEILING = 1.2
NEGATIVE_CORRELATION_LIMIT = -0.5

# ═══════════════════════════════════════════════════════════════════
# EXPLAINABILITY
# ═══════════════════════════════════════════════════════════════════

# Upward perturbation applied to each normalized channel.
SENSITIVITY_DELTA = 0.05
IMPORTANCE_EPSILON = 1e-4

DEFAULT_FEATURE_IMPORTANCE = {
    "flow": 0.4,
    "pressure": 0.3,
    "vibration": 0.3,
}

# Sequence explanations: share of the variance term and the correlation
# factor before renormalization.
VARIANCE_IMPORTANCE_SHARE = 0.7
CORRELATION_IMPORTANCE_SHARE = 0.3
CORRELATION_IMPORTANCE_LIMIT = -0.3

HIGH_PROBABILITY = 0.8
WATCH_PROBABILITY = 0.4

# ═══════════════════════════════════════════════════════════════════
# FORECASTING
# ═══════════════════════════════════════════════════════════════════

FORECAST_INPUT_LENGTH = 5
FORECAST_HORIZON_HOURS = 24
FORECAST_CONFIDENCE_DECAY = 0.025
FORECAST_MAX_CONFIDENCE_LOSS = 0.5
FORECAST_RISK_PROBABILITY = 0.5
FORECAST_SMOOTHING_WINDOW = 3
FORECAST_SMOOTHED_WEIGHT = 0.7
CRITICAL_PROBABILITY = 0.75

# Urgency cut-offs in hours until the forecast turns critical.
IMMEDIATE_HOURS = 6
CRITICAL_HOURS = 12

# ═══════════════════════════════════════════════════════════════════
# CONTEXTUAL FUSION
# ═══════════════════════════════════════════════════════════════════

FUSION_Z_WEIGHTS = {
    "flow": 0.4,
    "pressure": 0.4,
    "vibration": 0.2,
}
LOW_PRESSURE_AMPLIFIER = 1.2
HIGH_PRESSURE_DAMPING = 0.5
FUSION_LEAK_PATTERN_Z = 1.5
FUSION_LEAK_PATTERN_BOOST = 1.3
CONFIDENT_MODEL_PROBABILITY = 0.8
CONFIDENT_MODEL_WEIGHT = 0.7
DEFAULT_MODEL_WEIGHT = 0.6
AGREEMENT_BONUS = 0.2

# ═══════════════════════════════════════════════════════════════════
# ADAPTIVE THRESHOLD
# ═══════════════════════════════════════════════════════════════════

# Starting operating threshold of the scoring engine.
DETECTION_THRESHOLD = 0.65

FEEDBACK_HISTORY_SIZE = 100
FEEDBACK_BATCH_SIZE = 10
THRESHOLD_STEP = 0.05
THRESHOLD_MIN = 0.5
THRESHOLD_MAX = 0.85

# Precision ratios that trigger a raise / lower of the threshold.
LOW_PRECISION_RATIO = 0.6
HIGH_PRECISION_RATIO = 0.9

# ═══════════════════════════════════════════════════════════════════
# PERSISTENCE PATHS
# ═══════════════════════════════════════════════════════════════════

_PKG_DIR = os.path.dirname(os.path.abspath(__file__))

# Directory for the baseline profile and model artifacts.
DATA_DIR = os.environ.get("LEAKWATCH_DATA_DIR",
                          os.path.join(_PKG_DIR, "saved"))

BASELINE_PATH = os.path.join(DATA_DIR, "installation_baseline.json")
POINT_MODEL_PATH = os.path.join(DATA_DIR, "leak_detection.pkl")
SEQUENCE_MODEL_PATH = os.path.join(DATA_DIR, "anomaly_detection.pkl")
FORECAST_MODEL_PATH = os.path.join(DATA_DIR, "leak_forecast.pkl")
PCA_BASIS_PATH = os.path.join(DATA_DIR, "pca_basis.pkl")

# ═══════════════════════════════════════════════════════════════════
# MONITORING LOOP / ALERTS
# ═══════════════════════════════════════════════════════════════════

# Seconds between polling passes of the background monitor.
POLL_INTERVAL_SECONDS = float(os.environ.get("LEAKWATCH_POLL_INTERVAL", "60"))

MQTT_ALERT_TOPIC = "leakwatch/alerts"
MQTT_BROKER_HOST = os.environ.get("LEAKWATCH_MQTT_HOST", "localhost")
MQTT_BROKER_PORT = int(os.environ.get("LEAKWATCH_MQTT_PORT", "1883"))

# ═══════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════

LOG_LEVEL = os.environ.get("LEAKWATCH_LOG_LEVEL", "INFO")
