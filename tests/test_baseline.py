"""Tests for the adaptive installation baseline."""

import json
import logging
import threading

import numpy as np
import pytest

from leakwatch import config
from leakwatch.baseline import (
    CALIBRATED,
    CALIBRATING,
    BaselineProfile,
    InstallationBaseline,
    JsonFileBaselineStore,
)
from leakwatch.errors import MalformedProfileError
from leakwatch.records import BaselineResult

from .conftest import make_reading


class FixedProfileStore:
    """Store that always returns the same profile."""

    def __init__(self, profile):
        self.profile = profile
        self.saved = []

    def load(self):
        return self.profile

    def save(self, profile):
        self.saved.append(profile)


LEAK_PROFILE = BaselineProfile(
    flow_mean=2.0, flow_std=0.5,
    pressure_mean=80.0, pressure_std=5.0,
    vibration_mean=0.1, vibration_std=0.02,
)


def varied_readings(n):
    """Normal readings with some spread, one per minute."""
    return [
        make_reading(2.0 + 0.1 * (i % 5), 80.0 + (i % 3), 0.1 + 0.01 * (i % 4), minute=i)
        for i in range(n)
    ]


@pytest.fixture
def calibrated_baseline():
    baseline = InstallationBaseline(store=FixedProfileStore(LEAK_PROFILE),
                                    rng=np.random.default_rng(1))
    assert baseline.load()
    return baseline


class TestCalibration:

    def test_starts_calibrating(self, baseline):
        assert baseline.state == CALIBRATING
        assert baseline.calibration_progress == 0

    def test_calibrating_uses_rules(self, baseline):
        assert baseline.process(make_reading(2.0, 80.0, 0.1)) == 0.0
        assert baseline.process(make_reading(7.0, 40.0, 0.1)) == pytest.approx(0.8)

    def test_transition_happens_once(self):
        baseline = InstallationBaseline(min_samples=10)
        readings = varied_readings(15)
        for r in readings[:9]:
            baseline.process(r)
        assert not baseline.is_calibrated
        assert baseline.calibration_progress == 90

        baseline.process(readings[9])
        assert baseline.state == CALIBRATED
        profile = baseline.profile

        for r in readings[10:]:
            baseline.process(r)
        assert baseline.profile is profile
        assert baseline.calibration_progress == 100

    def test_hourly_pattern_needs_significance(self):
        baseline = InstallationBaseline(min_samples=10, hourly_significance=10)
        for r in varied_readings(10):
            baseline.process(r)
        assert list(baseline.profile.hourly_patterns) == [8]

        sparse = InstallationBaseline(min_samples=10, hourly_significance=11)
        for r in varied_readings(10):
            sparse.process(r)
        assert sparse.profile.hourly_patterns == {}

    def test_z_scores_zero_while_calibrating(self, baseline):
        assert baseline.z_scores(make_reading(7.0, 40.0, 0.2)) == {
            "flow": 0.0, "pressure": 0.0, "vibration": 0.0}

    def test_recalibrate_without_samples_falls_back(self, calibrated_baseline):
        calibrated_baseline.reset()
        assert not calibrated_baseline.recalibrate()
        assert calibrated_baseline.state == CALIBRATING


class TestScoring:

    def test_normal_reading_scores_low(self, baseline, normal_series):
        for r in normal_series:
            baseline.process(r)
        assert baseline.process(normal_series[2]) < 0.4

    def test_leak_reading_saturates(self, calibrated_baseline):
        reading = make_reading(7.0, 40.0, 0.2)
        z = calibrated_baseline.z_scores(reading)
        assert z["flow"] == pytest.approx(10.0)
        assert z["pressure"] == pytest.approx(-8.0)

        score = calibrated_baseline.process(reading)
        assert score == pytest.approx(1.0)

        text = calibrated_baseline.explain(reading, score)
        assert text.startswith("Anomaly detected (")
        assert config.CRITICAL_PATTERN_MESSAGE in text
        assert "high flow with low pressure" in text

    def test_analyze_bundles_result(self, calibrated_baseline):
        result = calibrated_baseline.analyze(make_reading(7.0, 40.0, 0.2))
        assert isinstance(result, BaselineResult)
        assert result.is_anomaly
        assert set(result.z_scores) == set(config.CHANNELS)
        assert "Critical pattern" in result.explanation

    def test_normal_reading_explanation(self, calibrated_baseline):
        reading = make_reading(2.0, 80.0, 0.1)
        score = calibrated_baseline.process(reading)
        assert score < config.BASELINE_EXPLAIN_THRESHOLD
        assert calibrated_baseline.explain(reading, score) == \
            "Normal behaviour within expected parameters."

    def test_high_flow_only_explanation(self, calibrated_baseline):
        reading = make_reading(4.0, 80.0, 0.1)
        score = calibrated_baseline.process(reading)
        text = calibrated_baseline.explain(reading, max(score, 0.5))
        assert "Abnormally high flow: extreme (4.0σ)" in text

    def test_stats(self, calibrated_baseline):
        stats = calibrated_baseline.stats()
        assert stats["flow_mean"] == 2.0
        assert stats["is_calibrated"] is True
        assert stats["sample_count"] >= config.MIN_BASELINE_SAMPLES


class TestPersistence:

    def test_round_trip(self, tmp_path):
        store = JsonFileBaselineStore(str(tmp_path / "baseline.json"))
        original = InstallationBaseline(store=store, min_samples=20)
        for r in varied_readings(20):
            original.process(r)
        assert original.save()

        restored = InstallationBaseline(store=store, min_samples=20,
                                        rng=np.random.default_rng(3))
        assert restored.load()
        assert restored.is_calibrated
        assert restored.profile == original.profile
        assert restored.stats()["sample_count"] == 20

    def test_document_is_versioned(self, tmp_path):
        path = tmp_path / "baseline.json"
        store = JsonFileBaselineStore(str(path))
        store.save(LEAK_PROFILE)
        data = json.loads(path.read_text())
        assert data["schema_version"] == config.BASELINE_SCHEMA_VERSION
        assert data["global"]["pressure"] == {"mean": 80.0, "std": 5.0}

    def test_missing_file(self, tmp_path):
        baseline = InstallationBaseline(store=JsonFileBaselineStore(str(tmp_path / "none.json")))
        assert not baseline.load()
        assert baseline.state == CALIBRATING

    def test_malformed_file_resets(self, tmp_path):
        path = tmp_path / "baseline.json"
        path.write_text("{not json")
        baseline = InstallationBaseline(store=JsonFileBaselineStore(str(path)))
        baseline.process(make_reading())
        assert not baseline.load()
        assert baseline.state == CALIBRATING
        assert baseline.calibration_progress == 0

    def test_unknown_schema_rejected(self, tmp_path):
        path = tmp_path / "baseline.json"
        data = LEAK_PROFILE.to_dict()
        data["schema_version"] = 99
        path.write_text(json.dumps(data))
        with pytest.raises(MalformedProfileError):
            JsonFileBaselineStore(str(path)).load()
        assert not InstallationBaseline(store=JsonFileBaselineStore(str(path))).load()

    @pytest.mark.parametrize("mutate", [
        lambda d: d["global"].pop("flow"),
        lambda d: d["global"]["pressure"].update(mean="eighty"),
        lambda d: d["hourly_patterns"].append(
            {"hour": 31, "sample_count": 12,
             "flow": {"mean": 1, "std": 1},
             "pressure": {"mean": 1, "std": 1},
             "vibration": {"mean": 1, "std": 1}}),
    ])
    def test_malformed_fields(self, mutate):
        data = LEAK_PROFILE.to_dict()
        mutate(data)
        with pytest.raises(MalformedProfileError):
            BaselineProfile.from_dict(data)

    def test_save_requires_calibration(self):
        store = FixedProfileStore(None)
        baseline = InstallationBaseline(store=store)
        assert not baseline.save()
        assert store.saved == []

    def test_save_without_store(self, calibrated_baseline):
        calibrated_baseline.store = None
        assert not calibrated_baseline.save()

    def test_synthetic_samples_fill_window(self, calibrated_baseline):
        assert calibrated_baseline.stats()["sample_count"] == config.MIN_BASELINE_SAMPLES


class TestConcurrency:

    def test_threads_crossing_min_samples_calibrate_once(self, caplog):
        caplog.set_level(logging.INFO, logger="leakwatch.baseline")
        baseline = InstallationBaseline(min_samples=20)
        readings = varied_readings(60)
        for r in readings[:16]:
            baseline.process(r)
        barrier = threading.Barrier(8)

        def worker(chunk):
            barrier.wait()
            for r in chunk:
                baseline.process(r)

        threads = [threading.Thread(target=worker, args=(readings[16 + 4 * i:20 + 4 * i],))
                   for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        transitions = [rec for rec in caplog.records
                       if rec.getMessage().startswith("Baseline calibrated")]
        assert len(transitions) == 1
        assert baseline.state == CALIBRATED
        assert baseline.profile.flow_mean > 0
