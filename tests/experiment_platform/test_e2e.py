"""End-to-end: create -> assign -> track -> analyze produces a launch recommendation."""
import numpy as np
import pytest

from conftest import make_spec
from experiment_platform import (
    Decision,
    ExperimentManager,
    ExperimentStore,
    MetricsTracker,
    Role,
    StatisticalAnalyzer,
    TrackerConfig,
)


@pytest.fixture
def platform():
    store = ExperimentStore(":memory:")
    tracker = MetricsTracker(store, TrackerConfig(flush_size=500, flush_interval=0.05, max_buffer_size=50000))
    tracker.start()
    yield ExperimentManager(store), tracker, StatisticalAnalyzer(store, rng=np.random.default_rng(2024))
    tracker.shutdown()
    store.close()


def test_e2e_conversion_lift(platform):
    """2,000 users, control converts at 4% and treatment at 5% per impression."""
    manager, tracker, analyzer = platform
    exp = manager.create(make_spec(name="Wine pairing CF"), role=Role.EXPERIMENTER)
    exp = manager.start(exp.id, role=Role.EXPERIMENTER)

    seen = {v.id: 0 for v in exp.variants}
    for i in range(2000):
        user = f"user_{i}"
        result = manager.assign(user, exp.id)
        k = seen[result.variant_id]
        seen[result.variant_id] += 1
        for _ in range(10):
            tracker.track_impression(exp.id, result.variant_id, user)
        if result.variant.is_control:
            converts = k % 5 in (0, 1)
        else:
            converts = k % 2 == 0
        if converts:
            tracker.track_conversion(exp.id, result.variant_id, user, value=25.0)
    tracker.shutdown()

    assert tracker.health().buffered == 0
    stats = manager.experiment_stats(exp.id)
    assert stats["total_users"] == 2000
    assert stats["impressions"] == 20000

    [result] = analyzer.analyze(exp.id, "conversion_rate")
    assert result.control_stats.n == 10 * seen[exp.control.id]
    assert result.control_stats.mean == pytest.approx(0.04, abs=0.001)
    assert result.treatment_stats.mean == pytest.approx(0.05, abs=0.001)
    assert result.frequentist.relative_lift == pytest.approx(0.25, abs=0.03)
    assert result.frequentist.is_significant
    assert result.bayesian.probability_better > 0.99
    assert result.recommendation == Decision.LAUNCH

    metrics = tracker.get_experiment_metrics(exp.id)
    assert metrics[exp.control.id]["conversion_rate"] == pytest.approx(result.control_stats.mean)

    done = manager.complete(
        exp.id, role=Role.ADMIN, winner_variant_id=result.treatment_variant_id, conclusion="Launch CF pairing"
    )
    assert done.winner_variant_id == exp.treatments[0].id
