"""
pipeline.py — Detection Context, Monitoring Loop and Alert Publication
=======================================================================

Wires the engine components together and drives them from a polling loop.

DetectionContext
    Owns one instance of every stateful component (normalizer, sequence
    buffer, prediction history, baseline, threshold controller, feature
    importances) and hands the shared ones to the engines that need them.
    Nothing is global: tests and multiple installations build their own.

LeakMonitor
    Background thread that, every POLL_INTERVAL_SECONDS:
        readings = source()
        new readings -> engine.predict + baseline.analyze
        engine.detect_in_series(readings)
        if leak:
            forecast -> hours until critical -> urgency
            fusion (model + baseline) -> Alert -> sink(alert)

MqttAlertSink
    Publishes alerts as JSON on the MQTT alert topic (QoS 1). Publication
    is fire-and-forget: failures are logged and never stop the loop.
"""

import json
import logging
import os
import threading

import paho.mqtt.client as mqtt

from . import config
from .baseline import InstallationBaseline, JsonFileBaselineStore
from .control_logic import AdaptiveThresholdController, classify_urgency
from .explainability import ExplainabilityEngine, FeatureImportanceStore
from .forecast import ForecastEngine, hours_until_critical
from .fusion import ContextualFusion
from .inference import LeakScoringEngine
from .model import ModelHandle
from .pca import PrincipalComponentAnomalyScorer, load_pca_basis
from .preprocessing import FeatureNormalizer
from .records import Alert
from .windowing import PredictionHistory, SequenceBuffer

logger = logging.getLogger("leakwatch.pipeline")


class DetectionContext:
    """
    Explicitly owned engine state for one installation.

    Attributes:
        normalizer, buffer, history, baseline, thresholds, importance_store:
            Shared stateful components.
        pca_scorer, forecaster, engine, explainer, fusion: Engines wired
            to the shared components.
    """

    def __init__(self, baseline: InstallationBaseline = None,
                 thresholds: AdaptiveThresholdController = None,
                 point_model=None, sequence_model=None, forecast_model=None,
                 pca_basis=None, normalizer: FeatureNormalizer = None,
                 buffer: SequenceBuffer = None):
        self.normalizer = normalizer if normalizer is not None else FeatureNormalizer()
        self.buffer = buffer if buffer is not None else SequenceBuffer()
        self.history = PredictionHistory()
        self.baseline = baseline if baseline is not None else InstallationBaseline()
        self.thresholds = (thresholds if thresholds is not None
                           else AdaptiveThresholdController())
        self.importance_store = FeatureImportanceStore()

        self.pca_scorer = PrincipalComponentAnomalyScorer(
            self.buffer, self.normalizer, basis=pca_basis)
        self.forecaster = ForecastEngine(
            self.buffer, self.normalizer, forecast_model=forecast_model,
            importance_store=self.importance_store)
        self.engine = LeakScoringEngine(
            self.normalizer, self.buffer,
            point_model=point_model,
            sequence_model=sequence_model,
            pca_scorer=self.pca_scorer,
            forecaster=self.forecaster,
            thresholds=self.thresholds,
            history=self.history,
        )
        self.explainer = ExplainabilityEngine(self.engine, self.importance_store)
        self.fusion = ContextualFusion(self.explainer)

    @classmethod
    def from_config(cls) -> "DetectionContext":
        """
        Build a context from the artifacts under config.DATA_DIR.

        Missing artifacts leave the corresponding model UNLOADED; the
        persisted baseline profile is restored when present.
        """
        def _handle(name, path):
            handle = ModelHandle(name)
            if os.path.exists(path):
                handle.load_artifact(path)
            else:
                logger.info(f"No '{name}' model at {path}, running without it")
            return handle

        pca_basis = None
        if os.path.exists(config.PCA_BASIS_PATH):
            pca_basis = load_pca_basis(config.PCA_BASIS_PATH)

        context = cls(
            baseline=InstallationBaseline(store=JsonFileBaselineStore(config.BASELINE_PATH)),
            point_model=_handle("point", config.POINT_MODEL_PATH),
            sequence_model=_handle("sequence", config.SEQUENCE_MODEL_PATH),
            forecast_model=_handle("forecast", config.FORECAST_MODEL_PATH),
            pca_basis=pca_basis,
        )
        context.baseline.load()
        return context

    def recalibrate(self) -> bool:
        """
        Recompute the baseline profile and restart the feature statistics.

        Returns:
            True if the baseline is calibrated afterwards.
        """
        calibrated = self.baseline.recalibrate()
        self.normalizer.reset()
        return calibrated

    def reset(self) -> None:
        """Return every stateful component to its cold-start state."""
        self.baseline.reset()
        self.normalizer.reset()
        self.buffer.reset()
        self.history.reset()
        self.thresholds.reset()
        self.importance_store.set(config.DEFAULT_FEATURE_IMPORTANCE)
        logger.info("Detection context reset")


# ── Alert sinks ──────────────────────────────────────────────────

class MqttAlertSink:
    """
    Alert sink publishing JSON payloads over MQTT.

    The client is created and connected lazily on the first alert and
    reused afterwards.
    """

    def __init__(self, host: str = None, port: int = None, topic: str = None,
                 client=None):
        self.host = host or config.MQTT_BROKER_HOST
        self.port = port or config.MQTT_BROKER_PORT
        self.topic = topic or config.MQTT_ALERT_TOPIC
        self._client = client
        self._lock = threading.Lock()

    def _get_client(self):
        with self._lock:
            if self._client is not None:
                return self._client
            try:
                client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2,
                                     client_id="leakwatch-monitor")
                client.connect(self.host, self.port, 60)
                client.loop_start()
            except Exception as e:
                logger.error(f"MQTT connection to {self.host}:{self.port} failed: {e}")
                return None
            self._client = client
            logger.info(f"MQTT client connected to {self.host}:{self.port}")
            return client

    def __call__(self, alert: Alert) -> None:
        client = self._get_client()
        if client is None:
            logger.warning("Cannot publish alert, no MQTT client")
            return
        payload = json.dumps(alert.to_dict())
        try:
            client.publish(self.topic, payload, qos=1)
            logger.warning(f"LEAK ALERT published: topic={self.topic} level={alert.level}")
        except Exception as e:
            logger.error(f"Failed to publish alert: {e}")

    def close(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            client.loop_stop()
            client.disconnect()


# ── Monitoring loop ──────────────────────────────────────────────

class LeakMonitor:
    """
    Cancellable polling loop around a DetectionContext.

    Usage:
        monitor = LeakMonitor(context, source=repository.latest_readings)
        monitor.start()
        ...
        monitor.stop()

    Attributes:
        context: DetectionContext driven by the loop.
        source: Callable returning the latest readings, oldest first.
        sink: Callable receiving each Alert.
        interval (float): Seconds between passes.
    """

    def __init__(self, context: DetectionContext, source, sink=None,
                 interval: float = None):
        self.context = context
        self.source = source
        self.sink = sink if sink is not None else MqttAlertSink()
        self.interval = interval if interval is not None else config.POLL_INTERVAL_SECONDS

        self._stop_event = threading.Event()
        self._thread = None
        self._last_seen = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="leakwatch-monitor",
                                        daemon=True)
        self._thread.start()
        logger.info(f"Leak monitor started (every {self.interval:.0f}s)")

    def stop(self, timeout: float = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Leak monitor stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Monitoring pass failed: {e}", exc_info=True)
            self._stop_event.wait(self.interval)

    # ── One pass ──────────────────────────────────────────────────

    def _ingest(self, readings) -> list:
        """Feed readings newer than the last pass to the engine and baseline."""
        fresh = [r for r in readings
                 if self._last_seen is None or r.timestamp > self._last_seen]
        results = []
        for reading in fresh:
            self.context.engine.predict(reading)
            results.append(self.context.baseline.analyze(reading))
        if fresh:
            self._last_seen = fresh[-1].timestamp
        return results

    def run_once(self, readings=None) -> Alert | None:
        """
        Run one detection pass.

        Args:
            readings: Readings to evaluate, oldest first. Defaults to
                calling the source.

        Returns:
            The Alert handed to the sink, or None when no leak was found
            or there was nothing new to evaluate.
        """
        readings = list(readings if readings is not None else self.source())
        if not readings:
            return None

        baseline_results = self._ingest(readings)
        if not baseline_results:
            logger.debug("No new readings since the last pass")
            return None

        context = self.context
        if not context.engine.detect_in_series(readings):
            return None

        latest = readings[-1]
        forecast_probability, hourly = context.forecaster.project()
        hours = hours_until_critical(hourly)
        hours_critical = hours if hours is not None else config.FORECAST_HORIZON_HOURS
        level = classify_urgency(hours_critical)

        probability, explanation = context.fusion.fuse(latest, baseline_results[-1])
        main_factor = explanation.main_factor or "unknown"
        share = explanation.feature_importance.get(main_factor, 0.0)

        message = (f"Leak detected: flow={latest.flow:.2f}, pressure={latest.pressure:.2f}. "
                   f"Main factor: {main_factor} ({share * 100:.0f}%). "
                   f"Confidence: {int(explanation.confidence * 100)}%. "
                   f"Contextual analysis: {explanation.baseline_text}")

        alert = Alert(
            timestamp=latest.timestamp,
            level=level,
            message=message,
            metadata={
                "probability": probability,
                "ai_probability": explanation.ai_probability,
                "baseline_probability": explanation.baseline_probability,
                "forecast_probability": forecast_probability,
                "confidence": explanation.confidence,
                "main_factor": main_factor,
                "hours_critical": hours_critical,
                "baseline_score": baseline_results[-1].score,
                "is_contextual_anomaly": explanation.is_contextual_anomaly,
                "z_scores": explanation.z_scores,
                "threshold": context.engine.threshold,
                "explanation": context.explainer.describe(
                    probability, explanation.feature_importance),
            },
        )
        logger.warning(f"Leak detected ({level}, {hours_critical}h to critical, "
                       f"p={probability:.2f})")

        try:
            self.sink(alert)
        except Exception as e:
            logger.error(f"Alert sink failed: {e}")
        return alert
