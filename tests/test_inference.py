"""Tests for the ensemble scoring engine and series decisions."""

import numpy as np
import pytest

from leakwatch import config
from leakwatch.control_logic import AdaptiveThresholdController
from leakwatch.inference import LeakScoringEngine, reconstruction_to_score
from leakwatch.model import ModelHandle
from leakwatch.pca import PCABasis, PrincipalComponentAnomalyScorer
from leakwatch.pipeline import DetectionContext
from leakwatch.preprocessing import FeatureNormalizer
from leakwatch.windowing import SequenceBuffer

from .conftest import constant_model, failing_model, make_reading, make_series


def build_engine(point_model=None, sequence_model=None, basis=None, **kwargs):
    normalizer = FeatureNormalizer()
    buffer = SequenceBuffer()
    pca = PrincipalComponentAnomalyScorer(buffer, normalizer, basis=basis)
    return LeakScoringEngine(normalizer, buffer, point_model=point_model,
                             sequence_model=sequence_model, pca_scorer=pca, **kwargs)


def noisy_basis():
    """Single-component basis over 2 readings; most windows rebuild badly."""
    components = np.zeros((1, 6))
    components[0, 0] = 1.0
    return PCABasis(components, np.zeros(6))


class TestReconstructionScore:

    def test_zero_error_is_half(self):
        assert reconstruction_to_score(0.0) == pytest.approx(0.5)

    def test_large_error_saturates_without_overflow(self):
        assert reconstruction_to_score(1e6) == pytest.approx(1.0)


class TestPredict:

    @pytest.mark.parametrize("raw", [-3.0, 0.0, 0.42, 1.0, 5.0, float("nan"), float("inf")])
    def test_output_bounded(self, raw):
        engine = build_engine(point_model=constant_model(raw),
                              sequence_model=constant_model(100.0),
                              basis=noisy_basis())
        readings = make_series([(7.0, 40.0, 1.5), (0.5, 150.0, 0.0)] * 4)
        for r in readings:
            assert 0.0 <= engine.predict(r) <= 1.0

    def test_no_point_model_fails_closed(self):
        engine = build_engine()
        assert engine.predict(make_reading()) == 0.0

    def test_failing_model_fails_closed(self):
        engine = build_engine(point_model=failing_model)
        assert engine.predict(make_reading()) == 0.0

    def test_commits_state(self):
        engine = build_engine(point_model=constant_model(0.2))
        engine.predict(make_reading(flow=20.0))
        assert len(engine.buffer) == 1
        assert engine.history.snapshot() == [0.2]
        assert engine.normalizer.stats()["flow"].max == 20.0

    def test_score_does_not_commit(self):
        engine = build_engine(point_model=constant_model(0.2))
        assert engine.score(make_reading()) == pytest.approx(0.2)
        assert len(engine.buffer) == 0
        assert len(engine.history) == 0

    def test_ensemble_after_three_readings(self):
        engine = build_engine(point_model=constant_model(1.0),
                              sequence_model=constant_model(0.0),
                              basis=noisy_basis())
        zero = (0.0, 0.0, 0.0)
        readings = make_series([zero] * 3)
        assert engine.ensemble_enabled
        assert engine.predict(readings[0]) == pytest.approx(1.0)
        assert engine.predict(readings[1]) == pytest.approx(1.0)
        # 0.6 * point + 0.2 * sequence(0.5) + 0.2 * pca(0)
        assert engine.predict(readings[2]) == pytest.approx(0.7)

    def test_score_of_committed_reading_keeps_window(self):
        engine = build_engine(point_model=constant_model(1.0),
                              sequence_model=constant_model(0.0),
                              basis=noisy_basis())
        readings = make_series([(0.0, 0.0, 0.0)] * 3)
        engine.predict(readings[0])
        engine.predict(readings[1])
        # Latest reading is already buffered: two readings, no ensemble yet
        assert engine.score(readings[1]) == pytest.approx(1.0)
        # An unseen reading extends the window to three
        assert engine.score(readings[2]) == pytest.approx(0.7)
        assert engine.buffer.snapshot() == readings[:2]

    def test_ensemble_needs_pca_basis(self):
        engine = build_engine(point_model=constant_model(1.0),
                              sequence_model=constant_model(0.0))
        assert not engine.ensemble_enabled
        for r in make_series([(2.0, 80.0, 0.1)] * 4):
            assert engine.predict(r) == pytest.approx(1.0)

    def test_detect_single_reading(self):
        engine = build_engine(point_model=constant_model(0.7))
        assert engine.detect(make_reading())
        assert not engine.detect(make_reading(minute=1), threshold=0.75)


class TestDetectInSeries:

    def test_rule_fallback_detects_consistent_leak(self, context, leak_series):
        assert not context.engine.point_model.is_ready
        assert context.engine.detect_in_series(leak_series)

    def test_rule_fallback_normal_series(self, context, normal_series):
        assert not context.engine.detect_in_series(normal_series)

    def test_too_few_readings(self, context, leak_series):
        assert not context.engine.detect_in_series(leak_series[:2])

    def test_average_above_threshold(self, normal_series):
        context = DetectionContext(point_model=constant_model(0.9))
        assert context.engine.detect_in_series(normal_series)
        assert len(context.history) == config.SERIES_PREDICTION_WINDOW

    def test_normal_series_with_model(self, normal_series):
        context = DetectionContext(point_model=constant_model(0.1))
        assert not context.engine.detect_in_series(normal_series)

    def test_sequence_anomaly_with_forecast_risk(self, anticorrelated_series):
        forecast = constant_model(np.full(24, 0.9))
        context = DetectionContext(point_model=constant_model(0.5), forecast_model=forecast)
        assert context.engine.detect_in_series(anticorrelated_series)

    def test_sequence_anomaly_without_supporting_signal(self, anticorrelated_series):
        context = DetectionContext(point_model=constant_model(0.5))
        assert not context.engine.detect_in_series(anticorrelated_series)

    def test_uses_adaptive_threshold(self, normal_series):
        thresholds = AdaptiveThresholdController(threshold=0.8)
        context = DetectionContext(point_model=constant_model(0.7), thresholds=thresholds)
        assert context.engine.threshold == 0.8
        assert not context.engine.detect_in_series(normal_series)
        assert context.engine.detect_in_series(normal_series, threshold=0.6)

    def test_replaces_buffer(self, normal_series):
        context = DetectionContext(point_model=constant_model(0.1))
        context.engine.detect_in_series(normal_series)
        assert context.buffer.snapshot() == normal_series


class TestFeedback:

    def test_forwards_to_controller(self):
        thresholds = AdaptiveThresholdController()
        engine = build_engine(point_model=constant_model(0.9), thresholds=thresholds)
        for i in range(10):
            engine.provide_feedback(make_reading(minute=i), was_correct=i < 4)
        assert engine.threshold == pytest.approx(0.70)

    def test_without_controller(self):
        engine = build_engine()
        assert engine.provide_feedback(make_reading(), True) == config.DETECTION_THRESHOLD

    def test_plain_callables_are_wrapped(self):
        engine = build_engine(point_model=constant_model(0.1))
        assert isinstance(engine.point_model, ModelHandle)
        assert engine.point_model.is_ready
        assert not engine.sequence_model.is_ready
