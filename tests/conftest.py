"""
Shared fixtures for the leakwatch test suite.

Readings are built with timezone-aware UTC timestamps one minute apart.
Models are plain deterministic callables.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from leakwatch.baseline import InstallationBaseline
from leakwatch.pipeline import DetectionContext
from leakwatch.records import SensorReading

START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def make_reading(flow=2.0, pressure=80.0, vibration=0.1, minute=0, start=START):
    return SensorReading(
        timestamp=start + timedelta(minutes=minute),
        flow=flow,
        pressure=pressure,
        vibration=vibration,
    )


def make_series(values, start=START):
    """Readings from (flow, pressure, vibration) tuples, one minute apart."""
    return [make_reading(f, p, v, minute=i, start=start)
            for i, (f, p, v) in enumerate(values)]


def constant_model(value):
    def score(features):
        return value
    return score


def flow_model(features):
    """Point model that only looks at normalized flow."""
    return float(np.asarray(features)[0])


def failing_model(features):
    raise RuntimeError("interpreter crashed")


@pytest.fixture
def reading():
    return make_reading


@pytest.fixture
def leak_series():
    """Consistent high flow with low pressure."""
    return make_series([(7.0, 40.0, 0.2)] * 5)


@pytest.fixture
def normal_series():
    return make_series([(2.0, 80.0, 0.1)] * 5)


@pytest.fixture
def anticorrelated_series():
    """Flow rising while pressure falls, moderate levels."""
    return make_series([
        (2.0, 80.0, 0.1),
        (2.5, 76.0, 0.1),
        (3.0, 72.0, 0.1),
        (3.5, 68.0, 0.1),
        (4.0, 64.0, 0.1),
    ])


@pytest.fixture
def baseline():
    return InstallationBaseline(rng=np.random.default_rng(7))


@pytest.fixture
def context(baseline):
    return DetectionContext(baseline=baseline)
