"""Experiment and risk mathematics: the single source of truth.

Every function here is **pure**: no I/O, no logging, no side effects.
Services import from this module; never reimplement these formulas locally.

The pieces exposed are:

1. **Bucketing hash**: the 32-bit polynomial string hash that places a
   subject into an experiment arm.
2. **Chi-square significance**: the 2×2 (df=1) contingency test with a
   closed-form p-value built on the Abramowitz–Stegun ``erf``.
3. **Drawdown**: single-pass peak-to-trough scan over a P&L sequence.

Design decisions
----------------
* :func:`polynomial_hash` is pinned.  Stored assignments make bucketing
  sticky, but any subject seen for the first time after a change to this
  function would land in a different arm than an identical subject seen
  before it.  Treat its definition as a breaking-change boundary.
* ``erf`` is the A&S 7.1.26 rational approximation (|error| ≤ 1.5e-7), not
  ``math.erf``.  The constants are reproduced exactly so p-values match the
  numbers stored by every other implementation of this test.
* Drawdown is measured in absolute units from a running peak that starts at
  0, so a sequence that opens with losses draws down from the baseline.

Run tests with::

    pytest tests/test_stats_math.py -v
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final, Iterable

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Abramowitz & Stegun 7.1.26 coefficients.
_ERF_A1: Final[float] = 0.254829592
_ERF_A2: Final[float] = -0.284496736
_ERF_A3: Final[float] = 1.421413741
_ERF_A4: Final[float] = -1.453152027
_ERF_A5: Final[float] = 1.061405429
_ERF_P: Final[float] = 0.3275911

#: Two-sided significance threshold for the chi-square test.
SIGNIFICANCE_ALPHA: Final[float] = 0.05

_INT32_MASK: Final[int] = 0xFFFFFFFF
_INT32_SIGN: Final[int] = 0x80000000

CONTROL: Final[str] = "control"
TREATMENT: Final[str] = "treatment"
VARIANTS: Final[tuple] = (CONTROL, TREATMENT)


# ---------------------------------------------------------------------------
# Bucketing
# ---------------------------------------------------------------------------


def _to_int32(value: int) -> int:
    value &= _INT32_MASK
    return value - (1 << 32) if value & _INT32_SIGN else value


def polynomial_hash(text: str) -> int:
    """32-bit signed polynomial hash: ``h = h*31 + ord(ch)`` per code point.

    The accumulator is wrapped to signed 32-bit after every character, so
    the result always lies in ``[-2**31, 2**31 - 1]``::

        polynomial_hash("")   → 0
        polynomial_hash("a")  → 97
        polynomial_hash("ab") → 3105
    """
    h = 0
    for ch in text:
        h = _to_int32(h * 31 + ord(ch))
    return h


def bucket_variant(
    subject_id: str,
    experiment_name: str,
    treatment_pct: float | None = None,
) -> str:
    """Compute (never look up) the arm for a subject.

    Base contract: ``abs(hash(subject_id + experiment_name)) % 2`` with
    0 → control and 1 → treatment.

    Args:
        subject_id: Subject identifier; the empty string is valid.
        experiment_name: Experiment identifier; the empty string is valid.
        treatment_pct: Optional weighted split in ``[0, 100]``.  When set,
            ``abs(hash) % 100 < treatment_pct`` selects treatment.

    Raises:
        ValueError: If ``treatment_pct`` lies outside ``[0, 100]``.
    """
    h = abs(polynomial_hash(subject_id + experiment_name))
    if treatment_pct is None:
        return TREATMENT if h % 2 == 1 else CONTROL
    if not 0.0 <= treatment_pct <= 100.0:
        raise ValueError(f"treatment_pct={treatment_pct!r} must be within [0, 100]")
    return TREATMENT if (h % 100) < treatment_pct else CONTROL


# ---------------------------------------------------------------------------
# Normal / chi-square distribution
# ---------------------------------------------------------------------------


def erf(x: float) -> float:
    """Abramowitz–Stegun rational approximation of the error function."""
    sign = -1.0 if x < 0 else 1.0
    x = abs(x)
    t = 1.0 / (1.0 + _ERF_P * x)
    poly = ((((_ERF_A5 * t + _ERF_A4) * t + _ERF_A3) * t + _ERF_A2) * t + _ERF_A1) * t
    return sign * (1.0 - poly * math.exp(-x * x))


def normal_cdf(z: float) -> float:
    """Standard normal CDF Φ(z) = (1 + erf(z/√2)) / 2."""
    return (1.0 + erf(z / math.sqrt(2.0))) / 2.0


def chi_square_p_value(chi_square: float) -> float:
    """Upper-tail p-value of a df=1 chi-square statistic.

    χ²(1) = Z², so ``P(X ≥ x) = 1 − (2Φ(√x) − 1)``.
    """
    if chi_square <= 0:
        return 1.0
    return 1.0 - (2.0 * normal_cdf(math.sqrt(chi_square)) - 1.0)


@dataclass(frozen=True)
class SignificanceResult:
    chi_square: float
    p_value: float
    significant: bool

    def to_dict(self) -> dict:
        return {
            "chi_square": self.chi_square,
            "p_value": self.p_value,
            "significant": self.significant,
        }


NO_SIGNAL: Final[SignificanceResult] = SignificanceResult(0.0, 1.0, False)


def calculate_significance(
    control_wins: int,
    control_losses: int,
    treatment_wins: int,
    treatment_losses: int,
) -> SignificanceResult:
    """Pearson chi-square test on the 2×2 win/loss table (df = 1).

    Expected cells are each group's total times the pooled win rate (wins)
    or its complement (losses).  A group with zero observations carries no
    signal and returns ``χ² = 0, p = 1`` rather than raising.

    Example::

        calculate_significance(50, 50, 60, 40)   → χ² ≈ 2.02, p ≈ 0.155
        calculate_significance(150, 50, 180, 20) → χ² ≈ 15.6, significant
    """
    n_control = control_wins + control_losses
    n_treatment = treatment_wins + treatment_losses
    if n_control == 0 or n_treatment == 0:
        return NO_SIGNAL

    pooled = (control_wins + treatment_wins) / (n_control + n_treatment)

    cells = (
        (control_wins, n_control * pooled),
        (control_losses, n_control * (1.0 - pooled)),
        (treatment_wins, n_treatment * pooled),
        (treatment_losses, n_treatment * (1.0 - pooled)),
    )
    # An expected count of 0 only occurs when the observed count is also 0
    # (pooled rate of exactly 0 or 1); such a cell contributes nothing.
    chi_square = sum(
        (observed - expected) ** 2 / expected
        for observed, expected in cells
        if expected > 0
    )

    p_value = chi_square_p_value(chi_square)
    return SignificanceResult(
        chi_square=chi_square,
        p_value=p_value,
        significant=p_value < SIGNIFICANCE_ALPHA,
    )


# ---------------------------------------------------------------------------
# P&L path metrics
# ---------------------------------------------------------------------------


def max_drawdown(net_units: Iterable[float]) -> float:
    """Worst decline from the running peak of cumulative P&L.

    ``peak`` starts at the 0 baseline, so ``[-1, -1]`` has drawdown 2.0::

        max_drawdown([2.0, -3.0, 1.0]) → 3.0
        max_drawdown([])               → 0.0
    """
    cumulative = peak = worst = 0.0
    for value in net_units:
        cumulative += value
        if cumulative > peak:
            peak = cumulative
        drawdown = peak - cumulative
        if drawdown > worst:
            worst = drawdown
    return worst


def ats_win_rate(wins: int, losses: int) -> float:
    """Win percentage over decided results; pushes never enter the denominator."""
    decided = wins + losses
    return (wins / decided) * 100.0 if decided > 0 else 0.0
