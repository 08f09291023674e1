"""
Experiment bucketing and arm-level result aggregation.

Subjects are placed into control/treatment by a deterministic hash
(see core.stats_math.polynomial_hash) and the first placement is persisted.
Every later lookup returns the stored arm, so a future change to the hash
cannot silently move a subject that is already enrolled.

All public functions receive a SQLAlchemy Session and return plain values
or dicts so they can be called from FastAPI endpoints or batch jobs.
"""

import logging
import os
from typing import Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from edge_feedback.core.bootstrap import ConfidenceInterval, bootstrap_confidence_intervals
from edge_feedback.core.stats_math import (
    CONTROL,
    TREATMENT,
    VARIANTS,
    ats_win_rate,
    bucket_variant,
    calculate_significance,
)
from edge_feedback.models import ExperimentAssignment, ExperimentOutcome
from edge_feedback.services.store import insert_if_absent

logger = logging.getLogger(__name__)

_RESULT_LABELS = {
    "win": "win",
    "loss": "loss",
    "push": "push",
    1: "win",
    -1: "loss",
    0: "push",
}

_COVER_FLAGS = {"win": 1, "loss": -1, "push": 0}


def _default_treatment_pct() -> Optional[float]:
    # Optional weighted split (0-100).  Unset keeps the 50/50 hash-parity contract.
    raw = os.getenv("AB_TREATMENT_PCT")
    return float(raw) if raw else None


def _normalize_variant(variant: str) -> str:
    if variant not in VARIANTS:
        raise ValueError(f"Unknown variant {variant!r}; expected one of {VARIANTS}")
    return variant


def _normalize_result(result: Union[str, int, None]) -> Optional[str]:
    if result is None:
        return None
    if isinstance(result, str):
        result = result.lower()
    label = _RESULT_LABELS.get(result)
    if label is None:
        raise ValueError(f"Unknown result {result!r}; expected win/loss/push or 1/-1/0")
    return label


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

def _stored_variant(db: Session, subject_id: str, experiment_name: str) -> Optional[str]:
    row = (
        db.query(ExperimentAssignment.variant)
        .filter(
            ExperimentAssignment.subject_id == subject_id,
            ExperimentAssignment.experiment_name == experiment_name,
        )
        .first()
    )
    return row[0] if row else None


def assign_variant(
    db: Session,
    subject_id: str,
    experiment_name: str,
    treatment_pct: Optional[float] = None,
) -> str:
    """
    Return the subject's arm for an experiment, enrolling it on first sight.

    The first computation is written with an atomic insert-if-absent keyed
    on (subject_id, experiment_name).  If a concurrent caller got there
    first, its row wins and is what this call returns.
    """
    stored = _stored_variant(db, subject_id, experiment_name)
    if stored is not None:
        return stored

    if treatment_pct is None:
        treatment_pct = _default_treatment_pct()
    variant = bucket_variant(subject_id, experiment_name, treatment_pct)

    insert_if_absent(
        db,
        ExperimentAssignment,
        {
            "subject_id": subject_id,
            "experiment_name": experiment_name,
            "variant": variant,
        },
        key=("subject_id", "experiment_name"),
    )
    db.commit()

    stored = _stored_variant(db, subject_id, experiment_name)
    if stored != variant:
        logger.info(
            "Assignment race for %r/%r: kept stored %s over computed %s",
            subject_id, experiment_name, stored, variant,
        )
    else:
        logger.info("Assigned %r to %s in %r", subject_id, variant, experiment_name)
    return stored


def get_experiment_assignments(db: Session, experiment_name: str) -> List[Dict]:
    rows = (
        db.query(ExperimentAssignment)
        .filter(ExperimentAssignment.experiment_name == experiment_name)
        .order_by(ExperimentAssignment.assigned_at.asc())
        .all()
    )
    return [
        {
            "subject_id": r.subject_id,
            "variant": r.variant,
            "assigned_at": r.assigned_at.isoformat() if r.assigned_at else None,
        }
        for r in rows
    ]


def count_assignments(db: Session, experiment_name: str) -> Dict[str, int]:
    counts = {CONTROL: 0, TREATMENT: 0}
    rows = (
        db.query(ExperimentAssignment.variant, func.count(ExperimentAssignment.id))
        .filter(ExperimentAssignment.experiment_name == experiment_name)
        .group_by(ExperimentAssignment.variant)
        .all()
    )
    for variant, n in rows:
        counts[variant] = n
    return counts


def list_experiments(db: Session) -> List[str]:
    """Distinct experiment names that have assignments or outcomes."""
    names = {n for (n,) in db.query(ExperimentAssignment.experiment_name).distinct()}
    names.update(n for (n,) in db.query(ExperimentOutcome.experiment_name).distinct())
    return sorted(names)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

def record_outcome(
    db: Session,
    experiment_name: str,
    subject_id: str,
    variant: str,
    result: Union[str, int, None] = None,
    net_units: Optional[float] = None,
    prediction_ref: Optional[str] = None,
) -> ExperimentOutcome:
    """Append one outcome row.  ``result`` accepts win/loss/push or ATS 1/-1/0."""
    row = ExperimentOutcome(
        experiment_name=experiment_name,
        subject_id=subject_id,
        variant=_normalize_variant(variant),
        result=_normalize_result(result),
        net_units=net_units,
        prediction_ref=prediction_ref,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.debug(
        "Outcome recorded: %s/%s %s result=%s units=%s",
        experiment_name, variant, subject_id, row.result, net_units,
    )
    return row


def _empty_arm() -> Dict:
    return {"count": 0, "wins": 0, "losses": 0, "win_rate": 0.0, "avg_net_units": 0.0}


def get_results(db: Session, experiment_name: str) -> Dict:
    """
    Per-arm aggregates for an experiment.

    Only win/loss rows enter the win rate (pushes and NULL results are
    counted in ``count`` but not in the contingency table).  The average
    net units is taken over rows with a non-NULL value.
    """
    rows = (
        db.query(
            ExperimentOutcome.variant,
            ExperimentOutcome.result,
            func.count(ExperimentOutcome.id),
            func.sum(ExperimentOutcome.net_units),
            func.count(ExperimentOutcome.net_units),
        )
        .filter(ExperimentOutcome.experiment_name == experiment_name)
        .group_by(ExperimentOutcome.variant, ExperimentOutcome.result)
        .all()
    )

    arms = {CONTROL: _empty_arm(), TREATMENT: _empty_arm()}
    net_totals = {CONTROL: [0.0, 0], TREATMENT: [0.0, 0]}

    for variant, result, n_rows, net_sum, net_count in rows:
        if variant not in arms:
            continue
        arm = arms[variant]
        arm["count"] += n_rows
        if result == "win":
            arm["wins"] += n_rows
        elif result == "loss":
            arm["losses"] += n_rows
        net_totals[variant][0] += net_sum or 0.0
        net_totals[variant][1] += net_count or 0

    for variant, arm in arms.items():
        arm["win_rate"] = ats_win_rate(arm["wins"], arm["losses"])
        total, n = net_totals[variant]
        arm["avg_net_units"] = total / n if n else 0.0

    return {
        CONTROL: arms[CONTROL],
        TREATMENT: arms[TREATMENT],
        "improvement": {
            "win_rate": arms[TREATMENT]["win_rate"] - arms[CONTROL]["win_rate"],
            "net_units": arms[TREATMENT]["avg_net_units"] - arms[CONTROL]["avg_net_units"],
        },
    }


def get_experiment_report(db: Session, experiment_name: str) -> Dict:
    """Results, assignment split and chi-square verdict for one experiment."""
    results = get_results(db, experiment_name)
    significance = calculate_significance(
        results[CONTROL]["wins"],
        results[CONTROL]["losses"],
        results[TREATMENT]["wins"],
        results[TREATMENT]["losses"],
    )
    logger.debug(
        "Experiment %r: chi2=%.3f p=%.4f", experiment_name,
        significance.chi_square, significance.p_value,
    )
    return {
        "experiment_name": experiment_name,
        "results": results,
        "assignments": count_assignments(db, experiment_name),
        "significance": significance.to_dict(),
    }


def experiment_win_rate_ci(
    db: Session,
    experiment_name: str,
    variant: str,
    iterations: int = 1000,
    seed: Optional[int] = None,
) -> ConfidenceInterval:
    """Bootstrap CI on one arm's win rate from its recorded outcomes."""
    rows = (
        db.query(ExperimentOutcome.result)
        .filter(
            ExperimentOutcome.experiment_name == experiment_name,
            ExperimentOutcome.variant == _normalize_variant(variant),
            ExperimentOutcome.result.isnot(None),
        )
        .all()
    )
    covers = [_COVER_FLAGS[r] for (r,) in rows if r in _COVER_FLAGS]
    return bootstrap_confidence_intervals(covers, iterations=iterations, seed=seed)
