"""Tests for the hourly leak probability forecast."""

from datetime import timedelta

import numpy as np
import pytest

from leakwatch import config
from leakwatch.explainability import FeatureImportanceStore
from leakwatch.forecast import (
    ForecastEngine,
    hours_until_critical,
    smooth_probabilities,
    weighted_average,
)
from leakwatch.preprocessing import FeatureNormalizer
from leakwatch.records import HourlyPrediction
from leakwatch.windowing import SequenceBuffer

from .conftest import START, constant_model, failing_model, make_reading


def build_forecaster(model, n_readings=5, importance_store=None):
    buffer = SequenceBuffer()
    for i in range(n_readings):
        buffer.append(make_reading(minute=i))
    return ForecastEngine(buffer, FeatureNormalizer(), forecast_model=model,
                          importance_store=importance_store)


class TestProject:

    def test_short_buffer_returns_empty(self):
        forecaster = build_forecaster(constant_model(np.full(24, 0.9)), n_readings=4)
        assert forecaster.project(24) == (0.0, [])

    def test_no_model_returns_empty(self):
        assert build_forecaster(None, n_readings=10).project(24) == (0.0, [])

    def test_failing_model_returns_empty(self):
        assert build_forecaster(failing_model).project(24) == (0.0, [])

    def test_non_finite_output_returns_empty(self):
        assert build_forecaster(constant_model([0.2, float("nan")])).project() == (0.0, [])

    def test_model_sees_last_five_normalized_readings(self):
        seen = []

        def model(window):
            seen.append(np.asarray(window))
            return np.full(24, 0.1)

        build_forecaster(model, n_readings=8).project()
        assert seen[0].shape == (5, 3)
        assert np.all((seen[0] >= 0.0) & (seen[0] <= 1.0))

    def test_horizon_truncates_output(self):
        average, hourly = build_forecaster(constant_model(np.full(30, 0.6))).project(24)
        assert len(hourly) == 24
        assert average == pytest.approx(0.6)

    @pytest.mark.parametrize("horizon", [0, -3])
    def test_non_positive_horizon_returns_empty(self, horizon):
        forecaster = build_forecaster(constant_model(np.full(24, 0.9)))
        assert forecaster.project(horizon) == (0.0, [])

    def test_short_model_output(self):
        _, hourly = build_forecaster(constant_model(np.full(6, 0.2))).project(24)
        assert [p.hour_offset for p in hourly] == [1, 2, 3, 4, 5, 6]

    def test_confidence_decays_with_offset(self):
        _, hourly = build_forecaster(constant_model(np.full(24, 0.2))).project(24)
        assert hourly[0].confidence == pytest.approx(0.975)
        assert hourly[9].confidence == pytest.approx(0.75)
        assert hourly[-1].confidence == pytest.approx(0.5)
        assert all(a.confidence >= b.confidence for a, b in zip(hourly, hourly[1:]))

    def test_timestamps_are_hourly(self):
        _, hourly = build_forecaster(constant_model(np.full(3, 0.2))).project(now=START)
        assert [p.timestamp for p in hourly] == [START + timedelta(hours=h) for h in (1, 2, 3)]

    def test_risk_factors_only_above_risk_level(self):
        store = FeatureImportanceStore({"flow": 0.5, "pressure": 0.5, "vibration": 0.0})
        raw = [0.9, 0.9, 0.9, 0.1, 0.1, 0.1]
        _, hourly = build_forecaster(constant_model(raw), importance_store=store).project()
        assert hourly[0].risk_factors == {
            "flow": pytest.approx(0.5 * 0.975),
            "pressure": pytest.approx(0.5 * 0.975),
            "vibration": 0.0,
        }
        assert hourly[4].risk_factors == {}

    def test_default_importance_without_store(self):
        _, hourly = build_forecaster(constant_model(np.full(3, 0.8))).project()
        assert hourly[0].risk_factors["flow"] == pytest.approx(
            config.DEFAULT_FEATURE_IMPORTANCE["flow"] * 0.975)

    def test_probabilities_are_smoothed(self):
        _, hourly = build_forecaster(constant_model([0.0, 1.0, 0.0])).project()
        assert [p.probability for p in hourly] == pytest.approx([0.35, 0.7 / 3 + 0.3, 0.35])


class TestHelpers:

    def test_smoothing_keeps_short_series(self):
        np.testing.assert_allclose(smooth_probabilities([0.2, 0.9]), [0.2, 0.9])

    def test_smoothing_constant_series(self):
        np.testing.assert_allclose(smooth_probabilities([0.4] * 5), [0.4] * 5)

    def test_weighted_average_favours_near_hours(self):
        assert weighted_average([1.0, 0.0]) == pytest.approx(1 / 1.5)
        assert weighted_average([0.0, 1.0]) == pytest.approx(0.5 / 1.5)
        assert weighted_average([]) == 0.0

    def test_hours_until_critical(self):
        hourly = [HourlyPrediction(hour_offset=h, timestamp=START, probability=p, confidence=1.0)
                  for h, p in ((1, 0.5), (2, 0.8), (3, 0.9))]
        assert hours_until_critical(hourly) == 2
        assert hours_until_critical(hourly, critical=0.95) is None
        assert hours_until_critical([]) is None
