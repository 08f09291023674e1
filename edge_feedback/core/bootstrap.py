"""Percentile bootstrap confidence intervals.

Two entry points:

1. :func:`bootstrap_confidence_intervals` - ATS win rate over samples
   carrying a cover flag (+1 covered, -1 failed, 0 push).
2. :func:`bootstrap_metric` - the same procedure for any scalar statistic.

Both return the statistic on the observed data plus the 2.5th / 97.5th
percentiles of its resampled distribution.

Iterations are split into fixed-size chunks, each driven by its own child
of ``numpy.random.SeedSequence(seed)``.  Chunks may run on a thread pool;
because a chunk's draws depend only on its position, the sorted
distribution (and therefore every percentile) is identical for any
``workers`` value once ``seed`` is fixed.
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Final, List, Optional, Sequence

import numpy as np

#: Rounds generated per seeded chunk.  Changing it changes seeded results.
_CHUNK_SIZE: Final[int] = 250

_LOWER_Q: Final[float] = 0.025
_UPPER_Q: Final[float] = 0.975

DEFAULT_ITERATIONS: Final[int] = 1000


@dataclass(frozen=True)
class ConfidenceInterval:
    value: float
    lower: float
    upper: float

    @property
    def win_rate(self) -> float:
        return self.value

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def to_dict(self) -> dict:
        return {"value": self.value, "lower": self.lower, "upper": self.upper}


_EMPTY: Final[ConfidenceInterval] = ConfidenceInterval(0.0, 0.0, 0.0)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _cover_of(sample: Any) -> int:
    if isinstance(sample, (int, np.integer)):
        return int(sample)
    if isinstance(sample, dict):
        return int(sample["cover"])
    return int(sample.cover)


def _percentile(sorted_values: Sequence[float], q: float) -> float:
    if not sorted_values:
        return 0.0
    idx = min(int(math.floor(len(sorted_values) * q)), len(sorted_values) - 1)
    return float(sorted_values[idx])


def _chunk_plan(iterations: int, seed: Optional[int]) -> List[tuple]:
    sizes = [_CHUNK_SIZE] * (iterations // _CHUNK_SIZE)
    if iterations % _CHUNK_SIZE:
        sizes.append(iterations % _CHUNK_SIZE)
    children = np.random.SeedSequence(seed).spawn(len(sizes))
    return list(zip(sizes, children))


def _run_chunks(
    plan: List[tuple],
    chunk_fn: Callable[[int, np.random.SeedSequence], List[float]],
    workers: int,
) -> List[float]:
    if workers <= 1 or len(plan) <= 1:
        chunks = [chunk_fn(size, ss) for size, ss in plan]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            chunks = list(pool.map(lambda item: chunk_fn(*item), plan))
    values = [v for chunk in chunks for v in chunk]
    values.sort()
    return values


def _check_iterations(iterations: int) -> None:
    if iterations < 1:
        raise ValueError(f"iterations must be >= 1, got {iterations}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def win_rate_pct(covers: Sequence[int]) -> float:
    """Percentage of decided samples (cover ≠ 0) that covered."""
    wins = sum(1 for c in covers if c == 1)
    losses = sum(1 for c in covers if c == -1)
    decided = wins + losses
    return (wins / decided) * 100.0 if decided else 0.0


def bootstrap_confidence_intervals(
    samples: Sequence[Any],
    iterations: int = DEFAULT_ITERATIONS,
    seed: Optional[int] = None,
    workers: int = 1,
) -> ConfidenceInterval:
    """Bootstrap CI for the ATS win rate (percent).

    Args:
        samples: Cover flags as ints, or dicts / objects exposing ``cover``.
        iterations: Number of resampling rounds.
        seed: Fixes the draws; ``None`` draws fresh OS entropy.
        workers: Thread-pool size.  Results do not depend on it.

    Returns:
        :class:`ConfidenceInterval` whose ``value`` (alias ``win_rate``) is
        the observed rate.  Rounds containing only pushes are dropped.
        Small samples yield wide intervals; that is the correct answer.
    """
    _check_iterations(iterations)
    if len(samples) == 0:
        return _EMPTY

    covers = np.array([_cover_of(s) for s in samples], dtype=np.int8)
    n = len(covers)

    def _chunk(size: int, ss: np.random.SeedSequence) -> List[float]:
        rng = np.random.default_rng(ss)
        drawn = covers[rng.integers(0, n, size=(size, n))]
        wins = (drawn == 1).sum(axis=1)
        decided = wins + (drawn == -1).sum(axis=1)
        mask = decided > 0
        return (wins[mask] / decided[mask] * 100.0).tolist()

    rates = _run_chunks(_chunk_plan(iterations, seed), _chunk, workers)
    return ConfidenceInterval(
        value=win_rate_pct(covers.tolist()),
        lower=_percentile(rates, _LOWER_Q),
        upper=_percentile(rates, _UPPER_Q),
    )


def bootstrap_metric(
    data: Sequence[Any],
    metric_fn: Callable[[List[Any]], float],
    iterations: int = DEFAULT_ITERATIONS,
    seed: Optional[int] = None,
    workers: int = 1,
) -> ConfidenceInterval:
    """Bootstrap CI for an arbitrary scalar statistic.

    ``metric_fn`` receives a resampled list the same length as ``data``.
    Rounds where it returns NaN or ±inf are dropped.  ``value`` is
    ``metric_fn(data)`` on the original data.
    """
    _check_iterations(iterations)
    if len(data) == 0:
        return _EMPTY

    items = list(data)
    n = len(items)

    def _chunk(size: int, ss: np.random.SeedSequence) -> List[float]:
        rng = np.random.default_rng(ss)
        out = []
        for row in rng.integers(0, n, size=(size, n)):
            value = float(metric_fn([items[i] for i in row]))
            if math.isfinite(value):
                out.append(value)
        return out

    values = _run_chunks(_chunk_plan(iterations, seed), _chunk, workers)
    return ConfidenceInterval(
        value=float(metric_fn(items)),
        lower=_percentile(values, _LOWER_Q),
        upper=_percentile(values, _UPPER_Q),
    )
