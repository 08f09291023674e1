"""
FastAPI application for the Edge Feedback loop
Experiments, probability recalibration, decision-run tracking and bootstrap CIs
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging
import os

import numpy as np
from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from edge_feedback.models import get_db, init_db
from edge_feedback.core.bootstrap import (
    bootstrap_confidence_intervals,
    bootstrap_metric,
    win_rate_pct,
)
from edge_feedback.core.platt import clamp_params
from edge_feedback.core.stats_math import calculate_significance
from edge_feedback.services import ab_testing, decision_tracking, recalibration
from edge_feedback.services.errors import InvalidOutcomeError, RunNotFoundError
from edge_feedback.schemas import (
    AssignRequest,
    AssignResponse,
    ConfidenceIntervalResponse,
    DecisionRunCreate,
    DecisionRunCreated,
    MetricBootstrapRequest,
    OutcomeCreate,
    OutcomeResponse,
    RecalibrationApplyRequest,
    RecalibrationApplyResponse,
    RecalibrationFitRequest,
    SignificanceRequest,
    SignificanceResponse,
    ValidateRunRequest,
    ValidateRunResponse,
    WinRateBootstrapRequest,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BOOTSTRAP_ITERATIONS = int(os.getenv("BOOTSTRAP_ITERATIONS", "1000"))
BOOTSTRAP_WORKERS = int(os.getenv("BOOTSTRAP_WORKERS", "1"))
DECISION_WINDOW_DAYS = int(os.getenv("DECISION_WINDOW_DAYS", "30"))
CORS_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()
]

METRICS: Dict[str, Callable[[List[float]], float]] = {
    "mean": lambda xs: float(np.mean(xs)),
    "median": lambda xs: float(np.median(xs)),
    "sum": lambda xs: float(np.sum(xs)),
    "win_rate": lambda xs: win_rate_pct([int(x) for x in xs]),
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Edge Feedback API")
    init_db()
    yield
    logger.info("Shutting down Edge Feedback API")


app = FastAPI(
    title="Edge Feedback",
    description="Experiment, recalibration and decision-tracking feedback loop",
    version="1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# HEALTH
# ============================================================================

@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {
        "status": "healthy",
        "database": "connected",
        "timestamp": datetime.utcnow().isoformat(),
    }
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {e}"
    return health


# ============================================================================
# EXPERIMENTS
# ============================================================================

@app.get("/api/experiments")
async def list_experiments(db: Session = Depends(get_db)):
    return {"experiments": ab_testing.list_experiments(db)}


@app.post("/api/experiments/{name}/assign", response_model=AssignResponse)
async def assign_variant(name: str, payload: AssignRequest, db: Session = Depends(get_db)):
    """Sticky control/treatment assignment for a subject."""
    variant = ab_testing.assign_variant(
        db, payload.subject_id, name, treatment_pct=payload.treatment_pct
    )
    return AssignResponse(experiment_name=name, subject_id=payload.subject_id, variant=variant)


@app.post("/api/experiments/{name}/outcomes", response_model=OutcomeResponse)
async def record_outcome(name: str, payload: OutcomeCreate, db: Session = Depends(get_db)):
    row = ab_testing.record_outcome(
        db,
        name,
        payload.subject_id,
        payload.variant,
        result=payload.result,
        net_units=payload.net_units,
        prediction_ref=payload.prediction_ref,
    )
    return OutcomeResponse(
        id=row.id,
        experiment_name=row.experiment_name,
        variant=row.variant,
        result=row.result,
        net_units=row.net_units,
    )


@app.get("/api/experiments/{name}")
async def get_experiment_report(
    name: str,
    with_ci: bool = Query(False, description="Add bootstrap CIs on each arm's win rate"),
    db: Session = Depends(get_db),
):
    """
    Per-arm results, assignment split and chi-square significance.

    An experiment with no data returns zeroed arms, not 404.
    """
    report = ab_testing.get_experiment_report(db, name)
    if with_ci:
        report["confidence_intervals"] = {
            variant: ab_testing.experiment_win_rate_ci(
                db, name, variant, iterations=BOOTSTRAP_ITERATIONS
            ).to_dict()
            for variant in ("control", "treatment")
        }
    return report


@app.post("/api/significance", response_model=SignificanceResponse)
async def get_significance(payload: SignificanceRequest):
    result = calculate_significance(
        payload.control_wins,
        payload.control_losses,
        payload.treatment_wins,
        payload.treatment_losses,
    )
    return SignificanceResponse(**result.to_dict())


# ============================================================================
# RECALIBRATION
# ============================================================================

@app.post("/api/recalibration/fit")
async def fit_recalibration(payload: RecalibrationFitRequest, db: Session = Depends(get_db)):
    """
    Fit Platt coefficients and append a new model version.

    Body:
        dry_run=true  returns the fit and diagnostics without writing a version.
    """
    logger.info(
        "Recalibration triggered by %s (dry_run=%s, n=%d)",
        payload.changed_by, payload.dry_run, len(payload.pairs),
    )
    return recalibration.fit_recalibration(
        db,
        [(p.raw_prob, p.outcome) for p in payload.pairs],
        changed_by=payload.changed_by,
        apply_changes=not payload.dry_run,
    )


@app.post("/api/recalibration/apply", response_model=RecalibrationApplyResponse)
async def apply_recalibration(payload: RecalibrationApplyRequest, db: Session = Depends(get_db)):
    if payload.A is not None:
        params = clamp_params(payload.A, payload.B)
    else:
        params = recalibration.load_current_model(db)
    return RecalibrationApplyResponse(
        raw_prob=payload.raw_prob,
        calibrated_prob=recalibration.apply_recalibration(payload.raw_prob, params),
        A=params.a,
        B=params.b,
    )


@app.get("/api/recalibration/current")
async def current_recalibration(db: Session = Depends(get_db)):
    return recalibration.load_current_model(db).to_dict()


@app.get("/api/recalibration/history")
async def recalibration_history(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return {"models": recalibration.get_model_history(db, limit=limit)}


# ============================================================================
# DECISION RUNS
# ============================================================================

@app.post("/api/decision-runs", response_model=DecisionRunCreated)
async def record_decision_run(payload: DecisionRunCreate, db: Session = Depends(get_db)):
    run_id = decision_tracking.record_decision_run(
        db,
        meta={
            "subject_id": payload.subject_id,
            "bankroll": payload.bankroll,
            "domain_tag": payload.domain_tag,
            "config_version": payload.config_version,
            "candidate_count": payload.candidate_count,
        },
        selected_slate=[p.model_dump() for p in payload.selected_slate],
        constraints=payload.constraints,
        alternatives=payload.alternatives,
    )
    return DecisionRunCreated(run_id=run_id)


@app.get("/api/decision-runs/performance")
async def analyze_decision_performance(
    config_version: int = Query(..., ge=1),
    window_days: Optional[int] = Query(None, ge=1, le=3650),
    db: Session = Depends(get_db),
):
    return decision_tracking.analyze_decision_performance(
        db, config_version, window_days=window_days or DECISION_WINDOW_DAYS
    )


@app.get("/api/decision-runs/unvalidated")
async def unvalidated_runs(db: Session = Depends(get_db)):
    runs = decision_tracking.get_unvalidated_runs(db)
    return {"runs": [decision_tracking.run_to_dict(r) for r in runs]}


@app.post("/api/decision-runs/{run_id}/validate", response_model=ValidateRunResponse)
async def validate_decision_run(
    run_id: str,
    payload: ValidateRunRequest,
    db: Session = Depends(get_db),
):
    """Reconcile a run with realized outcomes.  Safe to retry."""
    summary = decision_tracking.validate_decision_run(
        db, run_id, [o.model_dump() for o in payload.outcomes]
    )
    return ValidateRunResponse(**summary)


# ============================================================================
# BOOTSTRAP
# Plain ``def`` so the resampling runs in FastAPI's threadpool.
# ============================================================================

@app.post("/api/bootstrap/win-rate", response_model=ConfidenceIntervalResponse)
def bootstrap_win_rate(payload: WinRateBootstrapRequest):
    ci = bootstrap_confidence_intervals(
        payload.covers,
        iterations=payload.iterations or BOOTSTRAP_ITERATIONS,
        seed=payload.seed,
        workers=BOOTSTRAP_WORKERS,
    )
    return ConfidenceIntervalResponse(**ci.to_dict())


@app.post("/api/bootstrap/metric", response_model=ConfidenceIntervalResponse)
def bootstrap_named_metric(payload: MetricBootstrapRequest):
    ci = bootstrap_metric(
        payload.data,
        METRICS[payload.metric],
        iterations=payload.iterations or BOOTSTRAP_ITERATIONS,
        seed=payload.seed,
        workers=BOOTSTRAP_WORKERS,
    )
    return ConfidenceIntervalResponse(**ci.to_dict())


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(RunNotFoundError)
async def run_not_found_handler(request, exc):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidOutcomeError)
async def invalid_outcome_handler(request, exc):
    logger.warning("Rejected outcomes on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
