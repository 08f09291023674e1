"""
Decision-engine run tracking.

A run is the slate of stakes the decision engine selected at one point in
time.  It is recorded at selection time and reconciled once its positions
settle:

    record_decision_run()          - persist inputs, slate, audit constraints
    validate_decision_run()        - upsert per-position outcomes, compute
                                     win rate / net units / max drawdown
    analyze_decision_performance() - roll up validated runs per config version

Validation is idempotent: outcomes are keyed by (run_id, position_index) and
summary fields are last-write-wins, so a retried settlement delivery never
double counts.  ``validated`` only ever moves from False to True.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from edge_feedback.core.stats_math import ats_win_rate, max_drawdown
from edge_feedback.models import DecisionOutcome, DecisionRun
from edge_feedback.services.errors import InvalidOutcomeError, RunNotFoundError
from edge_feedback.services.store import upsert

logger = logging.getLogger(__name__)

_VALID_RESULTS = (1, -1, 0)

_SLATE_FIELDS = ("candidate_id", "stake", "expected_value", "group_tag")


def _slate_entry(position: Mapping) -> Dict:
    return {field: position.get(field) for field in _SLATE_FIELDS}


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def record_decision_run(
    db: Session,
    meta: Mapping,
    selected_slate: Sequence[Mapping],
    constraints: Optional[Mapping] = None,
    alternatives: Optional[Sequence[Mapping]] = None,
) -> str:
    """
    Persist a decision-engine run and return its id.

    ``meta`` carries subject_id, bankroll, domain_tag, config_version and
    candidate_count.  Constraints and alternatives are stored for audit
    only; nothing here enforces them.
    """
    slate = [_slate_entry(p) for p in selected_slate]
    run = DecisionRun(
        subject_id=meta["subject_id"],
        bankroll=meta["bankroll"],
        domain_tag=meta.get("domain_tag"),
        config_version=meta["config_version"],
        candidate_count=meta.get("candidate_count", 0),
        selected_slate=slate,
        selected_count=len(slate),
        constraints=dict(constraints) if constraints else None,
        alternatives=list(alternatives) if alternatives else None,
    )
    db.add(run)
    db.commit()
    db.refresh(run)

    logger.info(
        "Decision run %s recorded: %d/%d selected (config v%s, %s)",
        run.id, run.selected_count, run.candidate_count,
        run.config_version, run.domain_tag,
    )
    return run.id


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_outcomes(run: DecisionRun, outcomes: Sequence[Mapping]) -> None:
    slate_len = len(run.selected_slate or [])
    seen = set()
    for o in outcomes:
        idx = o.get("position_index")
        if not isinstance(idx, int) or isinstance(idx, bool) or not 0 <= idx < slate_len:
            raise InvalidOutcomeError(
                f"position_index={idx!r} is outside run {run.id}'s slate "
                f"(0..{slate_len - 1})"
            )
        if idx in seen:
            raise InvalidOutcomeError(f"position_index={idx} appears more than once")
        seen.add(idx)
        if o.get("result") not in _VALID_RESULTS:
            raise InvalidOutcomeError(
                f"result={o.get('result')!r} for position {idx} must be 1, -1 or 0"
            )
        if o.get("net_units") is None:
            raise InvalidOutcomeError(f"net_units missing for position {idx}")


def summarize_outcomes(outcomes: Sequence[Mapping]) -> Dict:
    """Win rate (pushes excluded), total net units and max drawdown, in input order."""
    wins = sum(1 for o in outcomes if o["result"] == 1)
    losses = sum(1 for o in outcomes if o["result"] == -1)
    net = [float(o["net_units"]) for o in outcomes]
    return {
        "actual_win_rate": ats_win_rate(wins, losses),
        "actual_net_units": sum(net),
        "max_drawdown": max_drawdown(net),
    }


def validate_decision_run(
    db: Session,
    run_id: str,
    outcomes: Sequence[Mapping],
) -> Dict:
    """
    Reconcile a run against realized results.

    Each outcome: {position_index, result (1/-1/0), net_units, external_ref?}.
    Every position_index is checked against the slate before anything is
    written; one bad index rejects the whole call.

    Raises:
        RunNotFoundError:    unknown run_id.
        InvalidOutcomeError: out-of-range or repeated position_index, or a
                             malformed result.
    """
    run = db.query(DecisionRun).filter(DecisionRun.id == run_id).first()
    if run is None:
        raise RunNotFoundError(run_id)

    _check_outcomes(run, outcomes)

    slate = run.selected_slate or []
    for o in outcomes:
        idx = o["position_index"]
        position = slate[idx] or {}
        upsert(
            db,
            DecisionOutcome,
            {
                "run_id": run_id,
                "position_index": idx,
                "candidate_id": position.get("candidate_id") or f"pos_{idx}",
                "stake": position.get("stake") or 0.0,
                "expected_value": position.get("expected_value") or 0.0,
                "external_ref": o.get("external_ref"),
                "result": o["result"],
                "net_units": float(o["net_units"]),
            },
            key=("run_id", "position_index"),
            update_columns=("external_ref", "result", "net_units"),
        )

    summary = summarize_outcomes(outcomes)
    was_validated = bool(run.validated)
    run.actual_win_rate = summary["actual_win_rate"]
    run.actual_net_units = summary["actual_net_units"]
    run.max_drawdown = summary["max_drawdown"]
    run.validated = True
    run.validated_at = datetime.utcnow()
    db.commit()

    logger.info(
        "Decision run %s %svalidated: %d outcomes, win %.1f%%, net %+.2fu, max DD %.2fu",
        run_id, "re-" if was_validated else "", len(outcomes),
        summary["actual_win_rate"], summary["actual_net_units"], summary["max_drawdown"],
    )
    return {"run_id": run_id, "validated": True, "outcome_count": len(outcomes), **summary}


# ---------------------------------------------------------------------------
# Roll-up
# ---------------------------------------------------------------------------

def _validated_runs(db: Session, config_version: int, since: datetime) -> List[DecisionRun]:
    return (
        db.query(DecisionRun)
        .filter(
            DecisionRun.config_version == config_version,
            DecisionRun.validated.is_(True),
            DecisionRun.created_at >= since,
        )
        .all()
    )


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def analyze_decision_performance(
    db: Session,
    config_version: int,
    window_days: int = 30,
) -> Dict:
    """
    Unweighted means over validated runs of ``config_version`` in the window.

    ``vs_previous.improvement`` compares average net units with
    ``config_version - 1`` over the same window (0 when it has no runs).
    """
    since = datetime.utcnow() - timedelta(days=window_days)
    runs = _validated_runs(db, config_version, since)

    if not runs:
        return {
            "avg_positions": 0.0,
            "portfolio_win_rate": 0.0,
            "avg_net_units": 0.0,
            "run_count": 0,
            "vs_previous": {"improvement": 0.0},
        }

    avg_net = _mean([r.actual_net_units or 0.0 for r in runs])

    improvement = 0.0
    if config_version > 1:
        previous = _validated_runs(db, config_version - 1, since)
        if previous:
            improvement = avg_net - _mean([r.actual_net_units or 0.0 for r in previous])

    return {
        "avg_positions": _mean([float(r.selected_count or 0) for r in runs]),
        "portfolio_win_rate": _mean([r.actual_win_rate or 0.0 for r in runs]),
        "avg_net_units": avg_net,
        "run_count": len(runs),
        "vs_previous": {"improvement": improvement},
    }


def get_unvalidated_runs(db: Session) -> List[DecisionRun]:
    """Runs still awaiting settlement, oldest first."""
    return (
        db.query(DecisionRun)
        .filter(DecisionRun.validated.is_(False))
        .order_by(DecisionRun.created_at.asc())
        .all()
    )


def get_recent_runs(
    db: Session,
    config_version: int,
    window_days: int = 30,
    limit: int = 20,
) -> List[Dict]:
    since = datetime.utcnow() - timedelta(days=window_days)
    rows = (
        db.query(DecisionRun)
        .filter(
            DecisionRun.config_version == config_version,
            DecisionRun.validated.is_(True),
            DecisionRun.created_at >= since,
        )
        .order_by(DecisionRun.created_at.desc())
        .limit(limit)
        .all()
    )
    return [run_to_dict(r) for r in rows]


def run_to_dict(run: DecisionRun) -> Dict:
    return {
        "id": run.id,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "subject_id": run.subject_id,
        "domain_tag": run.domain_tag,
        "config_version": run.config_version,
        "candidate_count": run.candidate_count,
        "selected_count": run.selected_count,
        "validated": run.validated,
        "actual_win_rate": run.actual_win_rate,
        "actual_net_units": run.actual_net_units,
        "max_drawdown": run.max_drawdown,
    }
