"""Tests for services/store.py: keyed insert-if-absent and upsert."""

import pytest
from unittest.mock import patch

from edge_feedback.models import DecisionOutcome, DecisionRun, ExperimentAssignment
from edge_feedback.services.store import insert_if_absent, upsert

ASSIGN_KEY = ("subject_id", "experiment_name")
OUTCOME_KEY = ("run_id", "position_index")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _assignment(variant):
    return {"subject_id": "user_1", "experiment_name": "exp_a", "variant": variant}


def _outcome(run_id, result, net_units):
    return {
        "run_id": run_id,
        "position_index": 0,
        "candidate_id": "g0_home",
        "stake": 1.0,
        "expected_value": 0.04,
        "result": result,
        "net_units": net_units,
    }


def _run(db):
    run = DecisionRun(
        subject_id="user_1", bankroll=100.0, config_version=1,
        selected_slate=[{"candidate_id": "g0_home"}], selected_count=1,
    )
    db.add(run)
    db.commit()
    return run.id


@pytest.fixture(params=["native", "savepoint"])
def dialect_path(request):
    """Run each test through ON CONFLICT and through the SAVEPOINT fallback."""
    if request.param == "native":
        yield request.param
    else:
        with patch("edge_feedback.services.store._native_insert", return_value=None):
            yield request.param


# ---------------------------------------------------------------------------
# insert_if_absent
# ---------------------------------------------------------------------------

def test_insert_if_absent_creates_row(db, dialect_path):
    insert_if_absent(db, ExperimentAssignment, _assignment("control"), key=ASSIGN_KEY)
    db.commit()
    assert db.query(ExperimentAssignment).one().variant == "control"


def test_insert_if_absent_keeps_first_row(db, dialect_path):
    insert_if_absent(db, ExperimentAssignment, _assignment("control"), key=ASSIGN_KEY)
    db.commit()
    insert_if_absent(db, ExperimentAssignment, _assignment("treatment"), key=ASSIGN_KEY)
    db.commit()

    rows = db.query(ExperimentAssignment).all()
    assert len(rows) == 1
    assert rows[0].variant == "control"


def test_insert_if_absent_other_key_is_independent(db, dialect_path):
    insert_if_absent(db, ExperimentAssignment, _assignment("control"), key=ASSIGN_KEY)
    other = dict(_assignment("treatment"), experiment_name="exp_b")
    insert_if_absent(db, ExperimentAssignment, other, key=ASSIGN_KEY)
    db.commit()
    assert db.query(ExperimentAssignment).count() == 2


# ---------------------------------------------------------------------------
# upsert
# ---------------------------------------------------------------------------

def test_upsert_inserts_then_overwrites(db, dialect_path):
    run_id = _run(db)
    columns = ("result", "net_units")

    upsert(db, DecisionOutcome, _outcome(run_id, -1, -1.0), key=OUTCOME_KEY, update_columns=columns)
    db.commit()
    upsert(db, DecisionOutcome, _outcome(run_id, 1, 0.95), key=OUTCOME_KEY, update_columns=columns)
    db.commit()

    row = db.query(DecisionOutcome).one()
    assert row.result == 1
    assert row.net_units == pytest.approx(0.95)
    assert row.candidate_id == "g0_home"


def test_upsert_leaves_unlisted_columns(db, dialect_path):
    run_id = _run(db)
    upsert(db, DecisionOutcome, _outcome(run_id, 1, 0.9), key=OUTCOME_KEY,
           update_columns=("net_units",))
    db.commit()
    changed = dict(_outcome(run_id, -1, 0.5), candidate_id="other")
    upsert(db, DecisionOutcome, changed, key=OUTCOME_KEY, update_columns=("net_units",))
    db.commit()

    row = db.query(DecisionOutcome).one()
    assert row.net_units == pytest.approx(0.5)
    assert row.result == 1
    assert row.candidate_id == "g0_home"
