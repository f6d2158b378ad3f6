"""Pytest configuration - add src/ to path and shared experiment fixtures."""
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT / "src"))

from experiment_platform.auth import Role  # noqa: E402
from experiment_platform.config import TrackerConfig  # noqa: E402
from experiment_platform.manager import ExperimentManager  # noqa: E402
from experiment_platform.schema import ExperimentSpec, VariantSpec  # noqa: E402
from experiment_platform.store import ExperimentStore  # noqa: E402
from experiment_platform.tracker import MetricsTracker  # noqa: E402


def make_spec(name="Homepage recs", target_metric="conversion_rate", **kwargs):
    """Control/treatment 50/50 spec; keyword args override spec fields."""
    variants = kwargs.pop("variants", None) or [
        VariantSpec(name="control", allocation_percentage=50, is_control=True, config='{"algo": "popular"}'),
        VariantSpec(name="treatment", allocation_percentage=50, config={"algo": "collaborative"}),
    ]
    return ExperimentSpec(name=name, target_metric=target_metric, variants=variants, **kwargs)


@pytest.fixture
def store():
    s = ExperimentStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def manager(store):
    return ExperimentManager(store)


@pytest.fixture
def tracker(store):
    # Background flusher is not started; tests flush explicitly
    return MetricsTracker(store, TrackerConfig(flush_size=1000, flush_interval=3600))


@pytest.fixture
def running_experiment(manager):
    exp = manager.create(make_spec(), role=Role.EXPERIMENTER)
    return manager.start(exp.id, role=Role.EXPERIMENTER)
