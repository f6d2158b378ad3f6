"""Tests for the statistical analyzer."""
import numpy as np
import pytest

from conftest import make_spec
from experiment_platform.analyze import StatisticalAnalyzer, metric_type_for
from experiment_platform.auth import Role
from experiment_platform.errors import AnalysisTimeoutError, NotFoundError, ValidationError
from experiment_platform.schema import (
    AnalysisStatus,
    Confidence,
    Decision,
    Guardrail,
    MetricType,
    VariantSpec,
)


@pytest.fixture
def analyzer(store):
    return StatisticalAnalyzer(store, rng=np.random.default_rng(42))


def _populate(tracker, exp_id, variant_id, impressions, conversions, clicks=0):
    for i in range(impressions):
        tracker.track_impression(exp_id, variant_id, f"{variant_id}-{i}")
    for i in range(clicks):
        tracker.track_click(exp_id, variant_id, f"{variant_id}-{i}")
    for i in range(conversions):
        tracker.track_conversion(exp_id, variant_id, f"{variant_id}-{i}")
    tracker.flush()


def test_metric_types():
    assert metric_type_for("conversion_rate") == MetricType.RATE
    assert metric_type_for("ctr") == MetricType.RATE
    assert metric_type_for("avg_rating") == MetricType.CONTINUOUS
    with pytest.raises(ValidationError):
        metric_type_for("dwell_time")


def test_unknown_metric_rejected(analyzer, running_experiment):
    with pytest.raises(ValidationError):
        analyzer.analyze(running_experiment.id, "dwell_time")


def test_unknown_experiment(analyzer):
    with pytest.raises(NotFoundError):
        analyzer.analyze("missing")


def test_insufficient_data_is_a_result(analyzer, tracker, running_experiment):
    exp = running_experiment
    _populate(tracker, exp.id, exp.control.id, 50, 2)
    _populate(tracker, exp.id, exp.treatments[0].id, 500, 30)

    [result] = analyzer.analyze(exp.id)
    assert result.status == AnalysisStatus.INSUFFICIENT_DATA
    assert result.insufficient_data
    assert result.recommendation == Decision.CONTINUE
    assert result.confidence == Confidence.LOW
    assert result.frequentist is None
    assert result.control_stats.n == 50
    assert len(analyzer.analysis_history(exp.id)) == 1


def test_minimum_sample_size_override(analyzer, tracker, running_experiment):
    exp = running_experiment
    _populate(tracker, exp.id, exp.control.id, 50, 2)
    _populate(tracker, exp.id, exp.treatments[0].id, 50, 3)
    [result] = analyzer.analyze(exp.id, minimum_sample_size=20)
    assert result.status == AnalysisStatus.OK
    assert result.frequentist is not None


def test_null_effect_continues(analyzer, tracker, running_experiment):
    exp = running_experiment
    _populate(tracker, exp.id, exp.control.id, 1000, 50)
    _populate(tracker, exp.id, exp.treatments[0].id, 1000, 50)

    [result] = analyzer.analyze(exp.id, "conversion_rate")
    assert result.frequentist.p_value == pytest.approx(1.0)
    assert not result.frequentist.is_significant
    assert abs(result.bayesian.probability_better - 0.5) < 0.05
    assert result.recommendation == Decision.CONTINUE


def test_clear_regression_stops(analyzer, tracker, running_experiment):
    exp = running_experiment
    _populate(tracker, exp.id, exp.control.id, 1000, 80)
    _populate(tracker, exp.id, exp.treatments[0].id, 1000, 40)
    [result] = analyzer.analyze(exp.id)
    assert result.frequentist.relative_lift == pytest.approx(-0.5)
    assert result.recommendation == Decision.STOP


def test_guardrail_violation_blocks_launch(analyzer, manager, tracker):
    spec = make_spec(guardrails=[Guardrail("click_rate", "max", 0.05)])
    exp = manager.start(manager.create(spec, role=Role.ADMIN).id, role=Role.ADMIN)
    control, treatment = exp.control.id, exp.treatments[0].id
    _populate(tracker, exp.id, control, 1000, 40, clicks=10)
    _populate(tracker, exp.id, treatment, 1000, 80, clicks=100)

    [result] = analyzer.analyze(exp.id)
    assert result.frequentist.is_significant
    assert result.guardrail_violated
    assert result.recommendation == Decision.INVESTIGATE


def test_continuous_metric_uses_raw_values(analyzer, tracker, running_experiment):
    exp = running_experiment
    control, treatment = exp.control.id, exp.treatments[0].id
    for i in range(200):
        tracker.track_rating(exp.id, control, f"c{i}", rating=3 + i % 2)
        tracker.track_rating(exp.id, treatment, f"t{i}", rating=4 + i % 2)
    tracker.flush()

    [result] = analyzer.analyze(exp.id, "avg_rating")
    assert result.bayesian.model == "normal"
    assert result.control_stats.mean == pytest.approx(3.5)
    assert result.frequentist.relative_lift == pytest.approx(1 / 3.5)
    assert result.recommendation == Decision.LAUNCH


def test_every_treatment_compared_to_control(analyzer, manager, tracker):
    variants = [
        VariantSpec("control", 34, is_control=True),
        VariantSpec("b", 33),
        VariantSpec("c", 33),
    ]
    exp = manager.start(manager.create(make_spec(variants=variants), role=Role.ADMIN).id, role=Role.ADMIN)
    for v in exp.variants:
        _populate(tracker, exp.id, v.id, 200, 10)

    results = analyzer.analyze(exp.id)
    assert len(results) == 2
    assert {r.treatment_variant_id for r in results} == {v.id for v in exp.treatments}
    assert all(r.control_variant_id == exp.control.id for r in results)


def test_timeout_persists_nothing(analyzer, tracker, running_experiment):
    exp = running_experiment
    _populate(tracker, exp.id, exp.control.id, 500, 20)
    _populate(tracker, exp.id, exp.treatments[0].id, 500, 30)
    with pytest.raises(AnalysisTimeoutError):
        analyzer.analyze(exp.id, timeout=0)
    assert analyzer.analysis_history(exp.id) == []


def test_history_is_append_only(analyzer, tracker, running_experiment):
    exp = running_experiment
    _populate(tracker, exp.id, exp.control.id, 200, 10)
    _populate(tracker, exp.id, exp.treatments[0].id, 200, 10)
    first = analyzer.analyze(exp.id)[0]
    _populate(tracker, exp.id, exp.treatments[0].id, 200, 30)
    second = analyzer.analyze(exp.id)[0]

    history = analyzer.analysis_history(exp.id, "conversion_rate")
    assert len(history) == 2
    assert history[0].treatment_stats.n == first.treatment_stats.n == 200
    [latest] = analyzer.latest_analysis(exp.id)
    assert latest.treatment_stats.n == second.treatment_stats.n == 400
    assert latest.to_dict() == second.to_dict()


def test_srm_reported_from_assignments(analyzer, manager, tracker, running_experiment):
    exp = running_experiment
    for i in range(400):
        manager.assign(f"user_{i}", exp.id)
    _populate(tracker, exp.id, exp.control.id, 200, 10)
    _populate(tracker, exp.id, exp.treatments[0].id, 200, 10)
    [result] = analyzer.analyze(exp.id)
    assert result.srm_passed
    assert result.srm_p_value is not None


def test_seeded_analyzers_agree_and_calls_draw_fresh_streams(store, tracker, running_experiment):
    exp = running_experiment
    _populate(tracker, exp.id, exp.control.id, 300, 15)
    _populate(tracker, exp.id, exp.treatments[0].id, 300, 21)

    first = StatisticalAnalyzer(store, rng=np.random.default_rng(7))
    second = StatisticalAnalyzer(store, rng=np.random.default_rng(7))
    a = first.analyze(exp.id)[0].bayesian
    b = second.analyze(exp.id)[0].bayesian
    assert a.probability_better == b.probability_better
    assert (a.credible_low, a.credible_high) == (b.credible_low, b.credible_high)

    # each call works on its own child generator
    again = first.analyze(exp.id)[0].bayesian
    assert (again.expected_loss, again.credible_low) != (a.expected_loss, a.credible_low)
