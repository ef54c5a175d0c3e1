"""
leakwatch — Adaptive Leak Detection and Forecasting for Residential Water
==========================================================================

On-device engine that turns flow / pressure / vibration telemetry into
leak probabilities, explanations, hourly forecasts and alerts.

Architecture:
    Sensor repository → readings (flow, pressure, vibration)
                              ↓
                    LeakMonitor (polling loop)
                              ↓
              ┌───────────────┴────────────────┐
              ↓                                ↓
     LeakScoringEngine                 InstallationBaseline
     1. Min/max normalization          1. Calibration window (100 samples)
     2. Point model                    2. Global + hourly profile
     3. Sequence model + PCA           3. Z-score anomaly score
     4. Series decision                4. Text explanation
              ↓                                ↓
              └──────────► ContextualFusion ◄──┘
                              ↓
              ForecastEngine (24 h) → urgency → Alert → MQTT

Modules:
    config              — Thresholds, weights, buffer sizes, paths
    errors              — Error taxonomy
    records             — Reading / prediction / explanation records
    preprocessing       — Running min/max feature normalization
    windowing           — Sequence buffer and prediction history
    feature_engineering — Window statistics and sequence anomaly heuristic
    rules               — Fixed-threshold leak rules
    baseline            — Per-installation adaptive baseline
    model               — Pluggable model handles
    pca                 — PCA reconstruction anomaly scorer
    inference           — Ensemble scoring engine and series decisions
    explainability      — Feature importance and explanations
    forecast            — Hourly leak probability forecast
    fusion              — Model + baseline contextual fusion
    control_logic       — Adaptive threshold and alert urgency
    train               — Offline PCA basis fitting
    pipeline            — Detection context, monitor loop, MQTT alerts
    utils               — Logging, record parsing, shared statistics
"""

__version__ = "1.0.0"
__author__ = "Water Monitoring IoT Team"
