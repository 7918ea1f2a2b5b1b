"""Shared constants, errors and closed-form helpers for the MDA bound table."""

from __future__ import annotations

import math
from enum import Enum
from typing import List, Union

import numpy as np

# Hypotheses 0 and 1 carry no probing work; tables keep them as zero entries.
HYPOTHESIS_START = 2
DEFAULT_SIGNIFICANCE = 0.05
DEFAULT_MAX_HYPOTHESIS = 16
DEFAULT_MAX_BRANCH = 1
# Section III.B of the 2009 MDA paper finds this to be a reasonable value.
DEFAULT_RATIO = 0.9
DEFAULT_MAX_ITERATIONS = 100_000

PROBABILITY_DTYPE = np.longdouble
COUNT_DTYPE = np.int64


class SignificanceSchedule(str, Enum):
    """How the per-node significance is split across hypotheses."""

    GEOMETRIC = "geometric"
    UNIFORM = "uniform"


class BoundError(RuntimeError):
    """Base class for failures raised by the bound table."""


class BoundAllocationError(BoundError):
    """Raised when the table or its scratch vectors cannot be allocated."""


class BoundClosedError(BoundError):
    """Raised when a closed table is asked to grow."""


class BoundComputationDivergedError(BoundError):
    """Raised when a hypothesis does not reach its stopping test in time."""

    def __init__(self, hypothesis: int, iterations: int) -> None:
        super().__init__(
            f"Stopping point for hypothesis {hypothesis} not reached "
            f"after {iterations} diagonals"
        )
        self.hypothesis = hypothesis
        self.iterations = iterations


def node_confidence(graph_confidence: float, max_branch: int) -> float:
    """Return the per-node bound for a graph-wide bound and branch count.

    Implements equation (10) of the 2009 MDA paper: with at most
    ``max_branch`` load balancers on the path, each node gets
    ``1 - (1 - graph_confidence) ** (1 / max_branch)``.
    """

    if isinstance(max_branch, bool) or not isinstance(max_branch, int):
        raise ValueError("max_branch must be an integer")
    if max_branch < 1:
        raise ValueError("max_branch must be positive")
    if not 0.0 < graph_confidence < 1.0:
        raise ValueError("graph_confidence must lie strictly between 0 and 1")
    power = 1.0 / max_branch
    return 1.0 - math.pow(1.0 - graph_confidence, power)


def coerce_schedule(value: Union[str, SignificanceSchedule]) -> SignificanceSchedule:
    try:
        return SignificanceSchedule(value)
    except ValueError:
        choices = ", ".join(item.value for item in SignificanceSchedule)
        raise ValueError(f"Unknown significance schedule {value!r} (expected one of: {choices})") from None


def significance_levels(
    confidence: float,
    max_hypothesis: int,
    *,
    ratio: float = DEFAULT_RATIO,
    schedule: Union[str, SignificanceSchedule] = SignificanceSchedule.GEOMETRIC,
) -> np.ndarray:
    """Pre-compute the per-hypothesis significance levels ``a_k``.

    Follows equations (8) and (9) of the 2009 MDA paper.  Entries 0 and 1 are
    zero so the table lines up with the stopping-point table, ``a_2`` is
    ``(1 - ratio) * confidence`` and each later level decays by ``ratio``.
    The uniform schedule assigns ``confidence`` to every hypothesis instead,
    which reproduces the original per-hypothesis MDA table.

    Levels are evaluated in double precision and widened afterwards.
    """

    schedule = coerce_schedule(schedule)
    levels: List[float] = [0.0] * (max_hypothesis + 1)
    if schedule is SignificanceSchedule.UNIFORM:
        for hypothesis in range(HYPOTHESIS_START, max_hypothesis + 1):
            levels[hypothesis] = confidence
    else:
        first = (1.0 - ratio) * confidence
        for hypothesis in range(HYPOTHESIS_START, max_hypothesis + 1):
            # Indexes are one larger than the corresponding paper indexes.
            levels[hypothesis] = first * math.pow(ratio, hypothesis - HYPOTHESIS_START)
    return np.array(levels, dtype=PROBABILITY_DTYPE)


def probes_at(diagonal: int, column: int) -> int:
    """Translate grid position ``(diagonal, column)`` into a probe count."""

    return diagonal + column - 1


__all__ = [
    "BoundAllocationError",
    "BoundClosedError",
    "BoundComputationDivergedError",
    "BoundError",
    "COUNT_DTYPE",
    "DEFAULT_MAX_BRANCH",
    "DEFAULT_MAX_HYPOTHESIS",
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_RATIO",
    "DEFAULT_SIGNIFICANCE",
    "HYPOTHESIS_START",
    "PROBABILITY_DTYPE",
    "SignificanceSchedule",
    "coerce_schedule",
    "node_confidence",
    "probes_at",
    "significance_levels",
]
