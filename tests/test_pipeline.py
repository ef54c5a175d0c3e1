"""Tests for the detection context, monitoring loop and alert sinks."""

import json
import threading

import numpy as np
import pytest

from leakwatch import config
from leakwatch.baseline import CALIBRATING
from leakwatch.control_logic import IMMEDIATE, URGENT
from leakwatch.model import UNLOADED
from leakwatch.pipeline import DetectionContext, LeakMonitor, MqttAlertSink
from leakwatch.preprocessing import FeatureNormalizer
from leakwatch.records import Alert
from leakwatch.windowing import SequenceBuffer

from .conftest import START, constant_model, make_reading, make_series


class RecordingClient:

    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, topic, payload, qos=0):
        if self.fail:
            raise ConnectionError("broker gone")
        self.published.append((topic, payload, qos))


def failing_sink(alert):
    raise ConnectionError("backend unreachable")


class TestDetectionContext:

    def test_components_share_state(self, context):
        assert context.engine.buffer is context.buffer
        assert context.forecaster.buffer is context.buffer
        assert context.pca_scorer.normalizer is context.normalizer
        assert context.explainer.engine is context.engine
        assert context.forecaster.importance_store is context.importance_store
        assert context.engine.thresholds is context.thresholds

    def test_engine_writes_context_history(self, leak_series):
        context = DetectionContext(point_model=constant_model(0.9))
        assert context.engine.history is context.history
        for r in leak_series:
            context.engine.predict(r)
        assert len(context.history) == len(leak_series)
        context.reset()
        assert len(context.engine.history) == 0
        assert context.explainer.engine.history.trend_delta() is None

    def test_injected_empty_components_are_kept(self):
        buffer = SequenceBuffer(capacity=5)
        normalizer = FeatureNormalizer()
        context = DetectionContext(buffer=buffer, normalizer=normalizer)
        assert context.buffer is buffer
        assert context.engine.buffer is buffer
        assert context.forecaster.buffer is buffer
        assert context.normalizer is normalizer
        context.engine.predict(make_reading())
        assert len(buffer) == 1

    def test_isolated_instances(self):
        a, b = DetectionContext(), DetectionContext()
        a.engine.predict(make_reading())
        assert len(a.buffer) == 1
        assert len(b.buffer) == 0

    def test_from_config_without_artifacts(self, tmp_path, monkeypatch):
        for name, filename in (("BASELINE_PATH", "baseline.json"),
                               ("POINT_MODEL_PATH", "point.pkl"),
                               ("SEQUENCE_MODEL_PATH", "sequence.pkl"),
                               ("FORECAST_MODEL_PATH", "forecast.pkl"),
                               ("PCA_BASIS_PATH", "pca.pkl")):
            monkeypatch.setattr(config, name, str(tmp_path / filename))
        context = DetectionContext.from_config()
        assert context.engine.point_model.state == UNLOADED
        assert context.forecaster.forecast_model.state == UNLOADED
        assert not context.pca_scorer.is_configured
        assert context.baseline.state == CALIBRATING
        assert context.baseline.store.path == str(tmp_path / "baseline.json")

    def test_recalibrate_resets_normalizer(self, context):
        context.normalizer.update(make_reading(flow=50.0))
        assert not context.recalibrate()
        assert context.normalizer.stats()["flow"].max == 10.0

    def test_reset(self, context, leak_series):
        for r in leak_series:
            context.engine.predict(r)
            context.baseline.process(r)
        context.reset()
        assert len(context.buffer) == 0
        assert len(context.history) == 0
        assert context.baseline.calibration_progress == 0


class TestLeakMonitor:

    def test_consistent_leak_raises_alert(self, context, leak_series):
        alerts = []
        monitor = LeakMonitor(context, source=lambda: leak_series, sink=alerts.append)
        alert = monitor.run_once()
        assert isinstance(alert, Alert)
        assert alerts == [alert]
        assert alert.level == URGENT
        assert alert.timestamp == leak_series[-1].timestamp
        assert alert.message.startswith("Leak detected: flow=7.00, pressure=40.00.")
        assert alert.metadata["hours_critical"] == config.FORECAST_HORIZON_HOURS

    def test_imminent_forecast_is_immediate(self, leak_series):
        context = DetectionContext(forecast_model=constant_model(np.full(24, 0.9)))
        alert = LeakMonitor(context, source=lambda: leak_series, sink=lambda a: None).run_once()
        assert alert.level == IMMEDIATE
        assert alert.metadata["hours_critical"] == 1
        assert alert.metadata["forecast_probability"] == pytest.approx(0.9)

    def test_normal_readings_no_alert(self, context, normal_series):
        alerts = []
        monitor = LeakMonitor(context, source=lambda: normal_series, sink=alerts.append)
        assert monitor.run_once() is None
        assert alerts == []
        assert len(context.buffer) == len(normal_series)

    def test_same_readings_evaluated_once(self, context, leak_series):
        alerts = []
        monitor = LeakMonitor(context, source=lambda: leak_series, sink=alerts.append)
        assert monitor.run_once() is not None
        assert monitor.run_once() is None
        assert len(alerts) == 1

    def test_empty_source(self, context):
        assert LeakMonitor(context, source=list, sink=failing_sink).run_once() is None

    def test_sink_failure_does_not_propagate(self, context, leak_series):
        monitor = LeakMonitor(context, source=lambda: leak_series, sink=failing_sink)
        assert monitor.run_once() is not None

    def test_alert_is_json_serializable(self, context, leak_series):
        alert = LeakMonitor(context, source=lambda: leak_series,
                            sink=lambda a: None).run_once()
        payload = json.loads(json.dumps(alert.to_dict()))
        assert payload["timestamp"] == leak_series[-1].timestamp.isoformat()
        assert payload["metadata"]["main_factor"] in config.CHANNELS

    def test_background_loop(self, context):
        polled = threading.Event()

        def source():
            polled.set()
            return []

        monitor = LeakMonitor(context, source=source, sink=failing_sink, interval=0.01)
        monitor.start()
        try:
            assert polled.wait(timeout=5.0)
            assert monitor.is_running
        finally:
            monitor.stop(timeout=5.0)
        assert not monitor.is_running

    def test_loop_survives_source_errors(self, context):
        calls = []
        done = threading.Event()

        def source():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise ConnectionError("repository offline")

        monitor = LeakMonitor(context, source=source, sink=failing_sink, interval=0.01)
        monitor.start()
        try:
            assert done.wait(timeout=5.0)
        finally:
            monitor.stop(timeout=5.0)


class TestMqttAlertSink:

    def alert(self):
        return Alert(timestamp=START, level=URGENT, message="Leak detected",
                     metadata={"probability": 0.8})

    def test_publishes_json(self):
        client = RecordingClient()
        MqttAlertSink(client=client)(self.alert())
        (topic, payload, qos), = client.published
        assert topic == config.MQTT_ALERT_TOPIC
        assert qos == 1
        assert json.loads(payload)["level"] == URGENT

    def test_publish_failure_is_logged(self, caplog):
        MqttAlertSink(client=RecordingClient(fail=True))(self.alert())
        assert "Failed to publish alert" in caplog.text

    def test_custom_topic(self):
        client = RecordingClient()
        MqttAlertSink(topic="site/7/alerts", client=client)(self.alert())
        assert client.published[0][0] == "site/7/alerts"
