"""
Pydantic request/response schemas for the Edge Feedback API.

Request bodies are validated here so the service layer only ever sees
well-formed values; malformed payloads are rejected with 422 before any
database work happens.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------

class AssignRequest(BaseModel):
    """Payload for POST /api/experiments/{name}/assign."""

    subject_id: str = Field(..., max_length=200)
    treatment_pct: Optional[float] = Field(
        None, ge=0, le=100, description="Weighted split; omit for the 50/50 hash parity"
    )


class AssignResponse(BaseModel):
    experiment_name: str
    subject_id: str
    variant: Literal["control", "treatment"]


class OutcomeCreate(BaseModel):
    """
    Payload for POST /api/experiments/{name}/outcomes.

    ``result`` accepts "win" / "loss" / "push" or the ATS flags 1 / -1 / 0.
    """

    subject_id: str = Field(..., max_length=200)
    variant: Literal["control", "treatment"]
    result: Optional[Union[int, str]] = None
    net_units: Optional[float] = None
    prediction_ref: Optional[str] = Field(None, max_length=200)

    @field_validator("result")
    @classmethod
    def validate_result(cls, v: Optional[Union[int, str]]) -> Optional[Union[int, str]]:
        if v is None:
            return v
        if isinstance(v, str):
            v = v.lower()
            if v not in ("win", "loss", "push"):
                raise ValueError(f"result={v!r} must be win, loss or push")
        elif v not in (1, -1, 0):
            raise ValueError(f"result={v} must be 1, -1 or 0")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "subject_id": "user_42",
                "variant": "treatment",
                "result": "win",
                "net_units": 0.91,
            }
        }
    }


class OutcomeResponse(BaseModel):
    id: int
    experiment_name: str
    variant: str
    result: Optional[str]
    net_units: Optional[float]


class SignificanceRequest(BaseModel):
    """Payload for POST /api/significance (2x2 win/loss table)."""

    control_wins: int = Field(..., ge=0)
    control_losses: int = Field(..., ge=0)
    treatment_wins: int = Field(..., ge=0)
    treatment_losses: int = Field(..., ge=0)


class SignificanceResponse(BaseModel):
    chi_square: float
    p_value: float
    significant: bool


# ---------------------------------------------------------------------------
# Recalibration
# ---------------------------------------------------------------------------

class CalibrationPair(BaseModel):
    raw_prob: float = Field(..., ge=0.0, le=1.0)
    outcome: Literal[0, 1]


class RecalibrationFitRequest(BaseModel):
    """
    Payload for POST /api/recalibration/fit.

    Fewer than 20 pairs is not an error: the fit returns the identity
    model and ``status`` is ``insufficient_data``.
    """

    pairs: List[CalibrationPair] = Field(default_factory=list)
    dry_run: bool = Field(False, description="Return the fit without storing a version")
    changed_by: str = Field("api", max_length=100)


class RecalibrationApplyRequest(BaseModel):
    """Out-of-range probabilities are clamped, not rejected."""

    raw_prob: float
    A: Optional[float] = Field(None, description="Override coefficient; default is the stored model")
    B: Optional[float] = None

    @model_validator(mode="after")
    def validate_pair(self) -> "RecalibrationApplyRequest":
        if (self.A is None) != (self.B is None):
            raise ValueError("A and B must be supplied together")
        return self


class RecalibrationApplyResponse(BaseModel):
    raw_prob: float
    calibrated_prob: float
    A: float
    B: float


# ---------------------------------------------------------------------------
# Decision runs
# ---------------------------------------------------------------------------

class SlatePosition(BaseModel):
    candidate_id: str
    stake: float = Field(..., ge=0)
    expected_value: float
    group_tag: Optional[str] = None


class DecisionRunCreate(BaseModel):
    """Payload for POST /api/decision-runs."""

    subject_id: str = Field(..., min_length=1)
    bankroll: float = Field(..., gt=0)
    domain_tag: Optional[str] = None
    config_version: int = Field(..., ge=1)
    candidate_count: int = Field(0, ge=0)
    selected_slate: List[SlatePosition]
    constraints: Optional[Dict[str, Any]] = None
    alternatives: Optional[List[Dict[str, Any]]] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "subject_id": "user_42",
                "bankroll": 1000.0,
                "domain_tag": "ncaab",
                "config_version": 3,
                "candidate_count": 14,
                "selected_slate": [
                    {"candidate_id": "g101_home", "stake": 1.0, "expected_value": 0.043},
                    {"candidate_id": "g107_away", "stake": 0.5, "expected_value": 0.021},
                ],
                "constraints": {"max_positions": 5, "max_exposure_pct": 15},
            }
        }
    }


class DecisionRunCreated(BaseModel):
    run_id: str


class PositionOutcome(BaseModel):
    position_index: int = Field(..., ge=0)
    result: Literal[1, -1, 0] = Field(..., description="1 = win, -1 = loss, 0 = push")
    net_units: float
    external_ref: Optional[str] = None


class ValidateRunRequest(BaseModel):
    outcomes: List[PositionOutcome]


class ValidateRunResponse(BaseModel):
    run_id: str
    validated: bool
    outcome_count: int
    actual_win_rate: float
    actual_net_units: float
    max_drawdown: float


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

class WinRateBootstrapRequest(BaseModel):
    covers: List[Literal[1, -1, 0]]
    iterations: Optional[int] = Field(None, ge=1, le=100_000)
    seed: Optional[int] = Field(None, ge=0)


class MetricBootstrapRequest(BaseModel):
    """``win_rate`` treats ``data`` as cover flags; the rest as plain numbers."""

    data: List[float]
    metric: Literal["mean", "median", "sum", "win_rate"] = "mean"
    iterations: Optional[int] = Field(None, ge=1, le=100_000)
    seed: Optional[int] = Field(None, ge=0)


class ConfidenceIntervalResponse(BaseModel):
    value: float
    lower: float
    upper: float
