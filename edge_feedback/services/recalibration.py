"""
Probability recalibration service (Platt scaling).

Raw model probabilities are mapped through

    calibrated(p) = sigmoid(A * logit(p) + B)

with A in (0, 2] and B in [-0.5, 0.5].  The math lives in core.platt; this
module owns the versioned history:

    - Every retraining appends a new recalibration_models row with the next
      version number.  Nothing is overwritten.
    - The "current" model is simply the highest version.
    - Before/after Brier scores are stored with each version for audit.

Minimum sample requirement: 20 (probability, outcome) pairs.  Below that the
fit is the identity (A=1, B=0) and is still recorded when applied, so the
history shows the retraining ran.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from edge_feedback.core.platt import (
    IDENTITY,
    MIN_FIT_SAMPLES,
    PlattParams,
    apply_platt,
    brier_score,
    fit_platt,
    pairs_from_validations,
)
from edge_feedback.models import RecalibrationModel

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Current model loading
# ---------------------------------------------------------------------------

def _latest_row(db: Session) -> Optional[RecalibrationModel]:
    return (
        db.query(RecalibrationModel)
        .order_by(RecalibrationModel.version.desc())
        .first()
    )


def load_current_model(db: Session) -> PlattParams:
    """
    Coefficients of the latest recalibration version.

    Falls back to the identity when no model has ever been trained.
    """
    latest = _latest_row(db)
    if latest is None:
        return IDENTITY
    logger.debug("Loaded recalibration v%d: A=%.4f B=%.4f", latest.version, latest.a, latest.b)
    return PlattParams(latest.a, latest.b)


def get_model_history(db: Session, limit: int = 20) -> List[Dict]:
    rows = (
        db.query(RecalibrationModel)
        .order_by(RecalibrationModel.version.desc())
        .limit(limit)
        .all()
    )
    return [_row_to_dict(r) for r in rows]


def _row_to_dict(row: RecalibrationModel) -> Dict:
    return {
        "version": row.version,
        "A": row.a,
        "B": row.b,
        "sample_count": row.sample_count,
        "trained_at": row.trained_at.isoformat() if row.trained_at else None,
        "brier_before": row.brier_before,
        "brier_after": row.brier_after,
        "changed_by": row.changed_by,
    }


def _next_version(db: Session) -> int:
    current = db.query(func.max(RecalibrationModel.version)).scalar()
    return (current or 0) + 1


# ---------------------------------------------------------------------------
# Fit / apply
# ---------------------------------------------------------------------------

def fit_recalibration(
    db: Session,
    pairs: Sequence[Tuple[float, int]],
    changed_by: str = "auto",
    apply_changes: bool = True,
) -> Dict:
    """
    Fit Platt parameters on settled (raw_prob, outcome) pairs.

    Args:
        db:             SQLAlchemy session.
        pairs:          Raw probabilities (0-1) with binary outcomes.
        changed_by:     Who triggered the run ("auto" or user identifier).
        apply_changes:  If False, return the fit without writing a version
                        (dry-run mode).

    Returns:
        dict with keys:
            status        "ok" | "insufficient_data"
            A, B          fitted coefficients
            sample_count  int
            version       new version number, or None on dry-run
            diagnostics   brier_before / brier_after
            timestamp     ISO string
    """
    pairs = [(float(p), int(o)) for p, o in pairs]
    params = fit_platt(pairs)

    diag = {
        "brier_before": brier_score(pairs),
        "brier_after": brier_score(pairs, params),
    }
    status = "ok" if len(pairs) >= MIN_FIT_SAMPLES else "insufficient_data"
    if status == "insufficient_data":
        logger.info(
            "Recalibration fit on %d pairs (< %d), identity model",
            len(pairs), MIN_FIT_SAMPLES,
        )

    version = None
    if apply_changes:
        version = _next_version(db)
        db.add(RecalibrationModel(
            version=version,
            a=params.a,
            b=params.b,
            sample_count=len(pairs),
            trained_at=datetime.utcnow(),
            brier_before=diag["brier_before"],
            brier_after=diag["brier_after"],
            changed_by=changed_by,
        ))
        db.commit()
        logger.info(
            "Recalibration v%d: A=%.4f B=%.4f (n=%d, brier %.4f -> %.4f, by %s)",
            version, params.a, params.b, len(pairs),
            diag["brier_before"] or 0, diag["brier_after"] or 0, changed_by,
        )

    return {
        "status": status,
        "A": params.a,
        "B": params.b,
        "sample_count": len(pairs),
        "version": version,
        "applied": apply_changes,
        "diagnostics": diag,
        "timestamp": datetime.utcnow().isoformat(),
    }


def fit_from_validations(
    db: Session,
    validations: Iterable[Mapping],
    set_as_active: bool = True,
    changed_by: str = "auto",
) -> Dict:
    """Fit from {home_win_prob (0-100), actual_winner home|away} records."""
    return fit_recalibration(
        db,
        pairs_from_validations(validations),
        changed_by=changed_by,
        apply_changes=set_as_active,
    )


def apply_recalibration(
    raw_prob: float,
    params: Optional[PlattParams] = None,
    db: Optional[Session] = None,
) -> float:
    """
    Recalibrate one raw probability.

    Explicit ``params`` take precedence; otherwise the current stored model
    is used when a session is supplied; otherwise the identity.
    """
    if params is None:
        params = load_current_model(db) if db is not None else IDENTITY
    return apply_platt(raw_prob, params)
