"""Tests for core/platt.py: Platt-scaling fit, apply and Brier score."""

import pytest

from edge_feedback.core.platt import (
    A_MAX,
    IDENTITY,
    MIN_FIT_SAMPLES,
    PlattParams,
    apply_platt,
    brier_score,
    clamp_params,
    fit_platt,
    logit,
    pairs_from_validations,
    sigmoid,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _pairs(prob, n, wins):
    """n pairs at ``prob`` of which the first ``wins`` are outcome 1."""
    return [(prob, 1 if i < wins else 0) for i in range(n)]


def _overconfident():
    # Model says 90% / 10%, reality is 70% / 30%
    return _pairs(0.9, 100, 70) + _pairs(0.1, 100, 30)


# ---------------------------------------------------------------------------
# logit / sigmoid / clamp_params
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("p", [0.01, 0.2, 0.5, 0.73, 0.99])
def test_sigmoid_inverts_logit(p):
    assert sigmoid(logit(p)) == pytest.approx(p)


def test_sigmoid_extreme_inputs_are_finite():
    assert sigmoid(-800.0) == pytest.approx(0.0)
    assert sigmoid(800.0) == pytest.approx(1.0)


def test_clamp_params_bounds():
    params = clamp_params(5.0, -3.0)
    assert params == PlattParams(2.0, -0.5)
    assert clamp_params(-1.0, 0.9).a > 0
    assert clamp_params(-1.0, 0.9).b == 0.5


# ---------------------------------------------------------------------------
# fit_platt
# ---------------------------------------------------------------------------

def test_fit_empty_is_identity():
    assert fit_platt([]) == IDENTITY


def test_fit_below_minimum_is_identity():
    pairs = _pairs(0.9, MIN_FIT_SAMPLES - 1, 2)
    assert fit_platt(pairs) == IDENTITY


def test_fit_overconfident_shrinks_slope():
    params = fit_platt(_overconfident())
    # sigmoid(A · logit(0.9)) = 0.7  →  A = logit(0.7) / logit(0.9) ≈ 0.386
    assert params.a == pytest.approx(logit(0.7) / logit(0.9), abs=0.05)
    assert params.b == pytest.approx(0.0, abs=0.05)


def test_fit_underconfident_hits_upper_bound():
    pairs = _pairs(0.6, 100, 90) + _pairs(0.4, 100, 10)
    params = fit_platt(pairs)
    assert params.a == pytest.approx(A_MAX, abs=1e-3)
    assert -0.5 <= params.b <= 0.5


def test_fit_tolerates_boundary_probabilities():
    pairs = _pairs(0.0, 15, 2) + _pairs(1.0, 15, 13)
    params = fit_platt(pairs)
    assert 0 < params.a <= A_MAX
    assert -0.5 <= params.b <= 0.5


# ---------------------------------------------------------------------------
# apply_platt
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("p", [0.01, 0.25, 0.5, 0.6123, 0.99])
def test_apply_identity_is_exact(p):
    assert apply_platt(p) == p


@pytest.mark.parametrize("raw, expected", [(1.5, 0.99), (-0.2, 0.01), (0.0, 0.01), (1.0, 0.99)])
def test_apply_clamps_input(raw, expected):
    assert apply_platt(raw) == expected


def test_apply_output_stays_in_range_under_any_valid_params():
    params = PlattParams(2.0, 0.5)
    assert 0.0 < apply_platt(1.5, params) < 1.0


def test_apply_overconfident_model_pulls_toward_half():
    params = PlattParams(0.5, 0.0)
    assert 0.5 < apply_platt(0.9, params) < 0.9
    assert 0.1 < apply_platt(0.1, params) < 0.5


# ---------------------------------------------------------------------------
# pairs_from_validations / brier_score
# ---------------------------------------------------------------------------

def test_pairs_from_validations():
    pairs = pairs_from_validations([
        {"home_win_prob": 65.0, "actual_winner": "home"},
        {"home_win_prob": 40.0, "actual_winner": "away"},
    ])
    assert pairs == [(pytest.approx(0.65), 1), (pytest.approx(0.40), 0)]


def test_brier_empty():
    assert brier_score([]) is None


def test_brier_known_value():
    # (0.8 - 1)^2 = 0.04 and (0.3 - 0)^2 = 0.09
    assert brier_score([(0.8, 1), (0.3, 0)]) == pytest.approx(0.065)


def test_fit_improves_brier_on_miscalibrated_data():
    pairs = _overconfident()
    params = fit_platt(pairs)
    assert brier_score(pairs, params) < brier_score(pairs)
