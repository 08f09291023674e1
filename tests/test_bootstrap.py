"""Tests for core/bootstrap.py: percentile bootstrap confidence intervals."""

import math
from types import SimpleNamespace

import numpy as np
import pytest

from edge_feedback.core.bootstrap import (
    ConfidenceInterval,
    bootstrap_confidence_intervals,
    bootstrap_metric,
    win_rate_pct,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _covers(wins, losses, pushes=0):
    return [1] * wins + [-1] * losses + [0] * pushes


# ---------------------------------------------------------------------------
# win_rate_pct
# ---------------------------------------------------------------------------

def test_win_rate_pct_excludes_pushes():
    assert win_rate_pct(_covers(3, 1, 4)) == pytest.approx(75.0)


def test_win_rate_pct_empty():
    assert win_rate_pct([]) == 0.0


# ---------------------------------------------------------------------------
# bootstrap_confidence_intervals
# ---------------------------------------------------------------------------

def test_bootstrap_empty_input():
    assert bootstrap_confidence_intervals([]) == ConfidenceInterval(0.0, 0.0, 0.0)


def test_bootstrap_hundred_samples():
    ci = bootstrap_confidence_intervals(_covers(55, 45), seed=11)
    assert ci.win_rate == pytest.approx(55.0)
    assert ci.lower < ci.upper
    assert ci.lower < 55.0 < ci.upper


def test_bootstrap_two_samples_is_wide():
    ci = bootstrap_confidence_intervals([1, -1], seed=5)
    assert ci.width > 10


def test_bootstrap_all_wins():
    ci = bootstrap_confidence_intervals(_covers(20, 0), seed=1)
    assert ci == ConfidenceInterval(100.0, 100.0, 100.0)


def test_bootstrap_all_pushes_has_no_rounds():
    ci = bootstrap_confidence_intervals(_covers(0, 0, 10), seed=1)
    assert ci == ConfidenceInterval(0.0, 0.0, 0.0)


def test_bootstrap_accepts_dicts_and_objects():
    samples = [{"cover": 1}, SimpleNamespace(cover=-1), np.int64(1)]
    ci = bootstrap_confidence_intervals(samples, iterations=200, seed=2)
    assert ci.value == pytest.approx(200 / 3)


def test_bootstrap_seed_is_reproducible():
    covers = _covers(30, 25, 5)
    assert (
        bootstrap_confidence_intervals(covers, seed=42)
        == bootstrap_confidence_intervals(covers, seed=42)
    )


@pytest.mark.parametrize("workers", [2, 4, 8])
def test_bootstrap_workers_do_not_change_result(workers):
    covers = _covers(30, 25, 5)
    serial = bootstrap_confidence_intervals(covers, iterations=1100, seed=7, workers=1)
    parallel = bootstrap_confidence_intervals(covers, iterations=1100, seed=7, workers=workers)
    assert parallel == serial


def test_bootstrap_rejects_zero_iterations():
    with pytest.raises(ValueError):
        bootstrap_confidence_intervals([1, -1], iterations=0)


# ---------------------------------------------------------------------------
# bootstrap_metric
# ---------------------------------------------------------------------------

def test_metric_mean():
    data = [float(x) for x in range(1, 11)]
    ci = bootstrap_metric(data, lambda xs: sum(xs) / len(xs), iterations=500, seed=3)
    assert ci.value == pytest.approx(5.5)
    assert ci.lower <= 5.5 <= ci.upper


def test_metric_empty_input():
    assert bootstrap_metric([], lambda xs: 0.0) == ConfidenceInterval(0.0, 0.0, 0.0)


def test_metric_drops_non_finite_rounds():
    # Returns NaN whenever the resample contains the sentinel
    data = [1.0, 2.0, 3.0, -1.0]

    def _mean_or_nan(xs):
        return math.nan if -1.0 in xs else sum(xs) / len(xs)

    ci = bootstrap_metric(data, _mean_or_nan, iterations=500, seed=9)
    assert math.isnan(ci.value)
    assert 1.0 <= ci.lower <= ci.upper <= 3.0


def test_metric_workers_do_not_change_result():
    data = [0.91, -1.0, 0.5, 1.2, -1.0, 0.3]
    serial = bootstrap_metric(data, max, iterations=800, seed=4, workers=1)
    parallel = bootstrap_metric(data, max, iterations=800, seed=4, workers=3)
    assert parallel == serial


def test_confidence_interval_to_dict():
    assert ConfidenceInterval(55.0, 45.0, 65.0).to_dict() == {
        "value": 55.0, "lower": 45.0, "upper": 65.0,
    }


# ---------------------------------------------------------------------------
# numpy inputs
# ---------------------------------------------------------------------------

def test_bootstrap_accepts_numpy_array():
    ci = bootstrap_confidence_intervals(np.array([1, -1, 1, 1]), iterations=300, seed=6)
    assert ci.value == pytest.approx(75.0)
    assert ci.lower <= ci.upper


def test_bootstrap_empty_numpy_array():
    assert bootstrap_confidence_intervals(np.array([], dtype=int)) == ConfidenceInterval(0.0, 0.0, 0.0)


def test_metric_accepts_numpy_array():
    ci = bootstrap_metric(np.array([1.0, 2.0, 3.0]), np.mean, iterations=300, seed=6)
    assert ci.value == pytest.approx(2.0)
    assert 1.0 <= ci.lower <= ci.upper <= 3.0


def test_metric_empty_numpy_array():
    assert bootstrap_metric(np.array([]), np.mean) == ConfidenceInterval(0.0, 0.0, 0.0)
