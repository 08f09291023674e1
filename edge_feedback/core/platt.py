"""Platt scaling: two-parameter logistic recalibration of raw probabilities.

``calibrated(p) = sigmoid(A · logit(p) + B)``

``A`` stretches (A > 1) or shrinks (A < 1) the model's confidence around
0.5; ``B`` shifts every prediction toward one side.  ``(A=1, B=0)`` is the
identity.

Design decisions
----------------
* The fit is a bounded maximum-likelihood problem solved with
  ``scipy.optimize.minimize`` (L-BFGS-B, analytic gradient).  Any optimizer
  converging to the same logistic MLE is equivalent; exact coefficients for
  arbitrary data are therefore not part of the contract.
* ``A ∈ (0, 2]`` and ``B ∈ [-0.5, 0.5]`` are hard bounds.  They keep one bad
  retraining batch from inverting or flattening the model's ranking.
* Below :data:`MIN_FIT_SAMPLES` pairs the fit always returns the identity:
  twenty coin flips cannot distinguish miscalibration from noise.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Final, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Fewer (probability, outcome) pairs than this always yield the identity.
MIN_FIT_SAMPLES: Final[int] = 20

A_MIN: Final[float] = 1e-6
A_MAX: Final[float] = 2.0
B_MIN: Final[float] = -0.5
B_MAX: Final[float] = 0.5

#: Output clamp applied to raw probabilities before recalibration.
APPLY_FLOOR: Final[float] = 0.01
APPLY_CEIL: Final[float] = 0.99

#: Inner clamp keeping ``logit`` finite while fitting.
_FIT_EPS: Final[float] = 1e-7


@dataclass(frozen=True)
class PlattParams:
    """Recalibration coefficients."""

    a: float
    b: float

    @property
    def is_identity(self) -> bool:
        return self.a == 1.0 and self.b == 0.0

    def to_dict(self) -> dict:
        return {"A": self.a, "B": self.b}


IDENTITY: Final[PlattParams] = PlattParams(1.0, 0.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def logit(p: float) -> float:
    return math.log(p / (1.0 - p))


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def clamp_params(a: float, b: float) -> PlattParams:
    """Force coefficients into ``A ∈ (0, 2]``, ``B ∈ [-0.5, 0.5]``."""
    return PlattParams(_clamp(float(a), A_MIN, A_MAX), _clamp(float(b), B_MIN, B_MAX))


# ---------------------------------------------------------------------------
# Fit / apply
# ---------------------------------------------------------------------------


def fit_platt(pairs: Sequence[Tuple[float, int]]) -> PlattParams:
    """Maximum-likelihood Platt fit over ``(raw_prob, outcome)`` pairs.

    Args:
        pairs: Raw probabilities on the 0–1 scale paired with binary
            outcomes (1 = event happened, 0 = it did not).

    Returns:
        Clamped :class:`PlattParams`; :data:`IDENTITY` when fewer than
        :data:`MIN_FIT_SAMPLES` pairs are supplied.
    """
    if len(pairs) < MIN_FIT_SAMPLES:
        return IDENTITY

    probs = np.clip(np.array([p for p, _ in pairs], dtype=float), _FIT_EPS, 1.0 - _FIT_EPS)
    y = np.array([1.0 if o else 0.0 for _, o in pairs], dtype=float)
    x = np.log(probs / (1.0 - probs))

    def _nll(theta: np.ndarray) -> Tuple[float, np.ndarray]:
        z = theta[0] * x + theta[1]
        # log(1 + e^z) - y·z is the per-sample negative log-likelihood
        loss = float(np.mean(np.logaddexp(0.0, z) - y * z))
        resid = 0.5 * (1.0 + np.tanh(0.5 * z)) - y
        grad = np.array([np.mean(resid * x), np.mean(resid)])
        return loss, grad

    result = minimize(
        _nll,
        x0=np.array([1.0, 0.0]),
        jac=True,
        method="L-BFGS-B",
        bounds=[(A_MIN, A_MAX), (B_MIN, B_MAX)],
    )
    if not result.success:
        logger.warning(
            "Platt fit did not converge (n=%d): %s, using best point found",
            len(pairs), result.message,
        )

    return clamp_params(result.x[0], result.x[1])


def apply_platt(raw_prob: float, params: PlattParams = IDENTITY) -> float:
    """Recalibrate one raw probability.

    The input is clamped to ``[0.01, 0.99]`` first, so ``apply_platt(1.5)``
    is 0.99 under the identity.  The identity returns the clamped input
    unchanged (no ``sigmoid(logit(p))`` rounding).
    """
    p = _clamp(float(raw_prob), APPLY_FLOOR, APPLY_CEIL)
    if params.is_identity:
        return p
    return sigmoid(params.a * logit(p) + params.b)


def pairs_from_validations(
    validations: Iterable[Mapping],
) -> List[Tuple[float, int]]:
    """Convert settled home-win predictions into fit pairs.

    Each validation carries ``home_win_prob`` on the 0–100 scale and
    ``actual_winner`` of ``"home"`` or ``"away"``.
    """
    return [
        (float(v["home_win_prob"]) / 100.0, 1 if v["actual_winner"] == "home" else 0)
        for v in validations
    ]


def brier_score(
    pairs: Sequence[Tuple[float, int]],
    params: Optional[PlattParams] = None,
) -> Optional[float]:
    """Mean squared error between (optionally recalibrated) probability and outcome."""
    if not pairs:
        return None
    if params is None:
        return sum((p - o) ** 2 for p, o in pairs) / len(pairs)
    return sum((apply_platt(p, params) - o) ** 2 for p, o in pairs) / len(pairs)
