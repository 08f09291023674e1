"""Tests for services/recalibration.py: versioned Platt model history."""

import pytest
from unittest.mock import MagicMock, patch

from edge_feedback.core.platt import IDENTITY, PlattParams
from edge_feedback.models import RecalibrationModel
from edge_feedback.services.recalibration import (
    apply_recalibration,
    fit_from_validations,
    fit_recalibration,
    get_model_history,
    load_current_model,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _overconfident_pairs():
    return (
        [(0.9, 1 if i < 70 else 0) for i in range(100)]
        + [(0.1, 1 if i < 30 else 0) for i in range(100)]
    )


# ---------------------------------------------------------------------------
# load_current_model
# ---------------------------------------------------------------------------

def test_load_current_model_defaults_to_identity(db):
    assert load_current_model(db) == IDENTITY


def test_load_current_model_returns_latest_version(db):
    db.add(RecalibrationModel(version=1, a=0.8, b=0.1, sample_count=50))
    db.add(RecalibrationModel(version=2, a=0.6, b=-0.2, sample_count=80))
    db.commit()
    assert load_current_model(db) == PlattParams(0.6, -0.2)


# ---------------------------------------------------------------------------
# fit_recalibration
# ---------------------------------------------------------------------------

def test_fit_insufficient_data_records_identity(db):
    result = fit_recalibration(db, [(0.7, 1)] * 5)
    assert result["status"] == "insufficient_data"
    assert (result["A"], result["B"]) == (1.0, 0.0)
    assert result["version"] == 1
    assert load_current_model(db) == IDENTITY


def test_fit_appends_versions(db):
    first = fit_recalibration(db, _overconfident_pairs(), changed_by="nightly")
    second = fit_recalibration(db, _overconfident_pairs(), changed_by="nightly")

    assert first["status"] == "ok"
    assert (first["version"], second["version"]) == (1, 2)
    assert db.query(RecalibrationModel).count() == 2

    history = get_model_history(db)
    assert [h["version"] for h in history] == [2, 1]
    assert history[0]["changed_by"] == "nightly"


def test_fit_stores_brier_diagnostics(db):
    result = fit_recalibration(db, _overconfident_pairs())
    diag = result["diagnostics"]
    assert diag["brier_after"] < diag["brier_before"]

    row = db.query(RecalibrationModel).one()
    assert row.brier_after == pytest.approx(diag["brier_after"])
    assert row.a == pytest.approx(result["A"])


def test_fit_dry_run_writes_nothing():
    db = MagicMock()
    result = fit_recalibration(db, _overconfident_pairs(), apply_changes=False)
    assert result["version"] is None
    assert result["applied"] is False
    db.add.assert_not_called()
    db.commit.assert_not_called()


def test_fit_from_validations_converts_percent_scale(db):
    validations = [{"home_win_prob": 90.0, "actual_winner": "home" if i < 7 else "away"}
                   for i in range(10)] * 3
    result = fit_from_validations(db, validations, set_as_active=False)
    assert result["sample_count"] == 30
    assert result["A"] < 1.0


# ---------------------------------------------------------------------------
# apply_recalibration
# ---------------------------------------------------------------------------

def test_apply_without_model_is_identity():
    assert apply_recalibration(0.63) == 0.63


def test_apply_uses_stored_model(db):
    db.add(RecalibrationModel(version=1, a=0.5, b=0.0, sample_count=40))
    db.commit()
    assert apply_recalibration(0.9, db=db) < 0.9


def test_apply_explicit_params_skip_store():
    with patch("edge_feedback.services.recalibration.load_current_model") as loader:
        value = apply_recalibration(0.9, params=PlattParams(0.5, 0.0), db=MagicMock())
    loader.assert_not_called()
    assert 0.5 < value < 0.9
