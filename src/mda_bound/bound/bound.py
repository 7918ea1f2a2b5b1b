"""Stopping-point table for the Multipath Detection Algorithm.

The table answers one question for the probing engine: after how many
probes toward a router may we assert, at the configured significance, that
all ``k`` of its load-balanced interfaces have been seen?  Error bounding
follows the May 2007 Paris Traceroute workshop and April 2009 Infocom MDA
papers.

For every hypothesis ``k`` the probing process is a coupon-collector
Markov chain.  The chain is walked one diagonal at a time: diagonal ``i``
holds, for each column ``j`` (interfaces observed so far), the probability
of the state with ``i + j - 1`` probes sent.  Once a smaller hypothesis
``j + 1`` has its stopping point, the matching cell of column ``j`` becomes
absorbing, since the prober would already have stopped there.
"""

from __future__ import annotations

import logging
import operator
import sys
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, TextIO, Tuple, Union

import numpy as np

from .bound_common import (
    COUNT_DTYPE,
    DEFAULT_MAX_BRANCH,
    DEFAULT_MAX_HYPOTHESIS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_RATIO,
    DEFAULT_SIGNIFICANCE,
    HYPOTHESIS_START,
    PROBABILITY_DTYPE,
    BoundAllocationError,
    BoundClosedError,
    BoundComputationDivergedError,
    SignificanceSchedule,
    coerce_schedule,
    node_confidence,
    probes_at,
    significance_levels,
)
from .state import StateVectors

logger = logging.getLogger(__name__)


def _require_int(name: str, value: object, minimum: int) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        number = operator.index(value)  # type: ignore[arg-type]
    except TypeError:
        raise ValueError(f"{name} must be an integer") from None
    if number < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return number


def _require_probability(name: str, value: float) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number") from None
    if not 0.0 < number < 1.0:
        raise ValueError(f"{name} must lie strictly between 0 and 1")
    return number


def _allocate(length: int, dtype: type) -> np.ndarray:
    try:
        return np.zeros(length, dtype=dtype)
    except MemoryError as exc:
        raise BoundAllocationError(
            f"Unable to allocate bound tables for {length - 1} hypotheses"
        ) from exc


@dataclass(frozen=True)
class BoundConfig:
    """Parameters of a bound table.

    Two conventions are accepted for the graph-wide bound.
    ``graph_significance`` is the probability of missing at least one
    interface anywhere on the path (the original tool passes 0.05).
    ``graph_confidence`` is the probability of finding them all and is
    converted with ``1 - graph_confidence``.  At most one may be given;
    with neither, a significance of 0.05 is used.
    """

    graph_significance: Optional[float] = None
    graph_confidence: Optional[float] = None
    max_hypothesis: int = DEFAULT_MAX_HYPOTHESIS
    max_branch: int = DEFAULT_MAX_BRANCH
    schedule: Union[str, SignificanceSchedule] = SignificanceSchedule.GEOMETRIC
    ratio: float = DEFAULT_RATIO
    max_iterations: int = DEFAULT_MAX_ITERATIONS

    def __post_init__(self) -> None:
        if self.graph_significance is not None and self.graph_confidence is not None:
            raise ValueError("graph_significance and graph_confidence are mutually exclusive")
        if self.graph_significance is not None:
            object.__setattr__(
                self,
                "graph_significance",
                _require_probability("graph_significance", self.graph_significance),
            )
        if self.graph_confidence is not None:
            object.__setattr__(
                self,
                "graph_confidence",
                _require_probability("graph_confidence", self.graph_confidence),
            )
        object.__setattr__(
            self, "max_hypothesis", _require_int("max_hypothesis", self.max_hypothesis, 1)
        )
        object.__setattr__(self, "max_branch", _require_int("max_branch", self.max_branch, 1))
        object.__setattr__(
            self, "max_iterations", _require_int("max_iterations", self.max_iterations, 1)
        )
        object.__setattr__(self, "ratio", _require_probability("ratio", self.ratio))
        object.__setattr__(self, "schedule", coerce_schedule(self.schedule))

    @property
    def significance(self) -> float:
        """Graph-wide failure probability under the significance convention."""

        if self.graph_significance is not None:
            return self.graph_significance
        if self.graph_confidence is not None:
            return 1.0 - self.graph_confidence
        return DEFAULT_SIGNIFICANCE

    def node_significance(self) -> float:
        return node_confidence(self.significance, self.max_branch)


# ---------------------------------------------------------------------------
# Per-hypothesis walk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Advancing:
    """No smaller hypothesis has absorbed any column yet."""

    diagonal: int


@dataclass(frozen=True)
class Absorbed:
    """Columns below ``cutoff`` are absorbed and no longer walked."""

    diagonal: int
    cutoff: int


@dataclass(frozen=True)
class Stopped:
    probes: int
    probability: np.longdouble


WalkState = Union[Advancing, Absorbed, Stopped]


class HypothesisWalk:
    """Walks the state space of one hypothesis until its stopping test holds.

    ``stopping_points`` must already hold the final entries of every smaller
    hypothesis; the entry for ``hypothesis`` itself is ignored.
    """

    def __init__(
        self,
        hypothesis: int,
        stopping_points: np.ndarray,
        threshold: np.longdouble,
        vectors: StateVectors,
    ) -> None:
        if hypothesis < HYPOTHESIS_START:
            raise ValueError(f"hypothesis must be at least {HYPOTHESIS_START}")
        if len(vectors) < hypothesis:
            raise ValueError("state vectors are shorter than the hypothesis")
        self.hypothesis = hypothesis
        self.threshold = PROBABILITY_DTYPE(threshold)
        # Stopping points of smaller hypotheses, indexed by column + 1.
        self._limits = [int(value) for value in stopping_points[:hypothesis]] + [0]
        total = PROBABILITY_DTYPE(hypothesis)
        columns = np.arange(hypothesis, dtype=PROBABILITY_DTYPE)
        self._repeat = columns / total
        self._discover = (total - columns + 1) / total
        self._vectors = vectors
        self._vectors.reset()
        self._cutoff = HYPOTHESIS_START
        self._mass = PROBABILITY_DTYPE(1)
        self._diagonal = 0
        self.state: WalkState = Advancing(0)

    @property
    def diagonal(self) -> int:
        """Number of diagonals computed so far."""

        return self._diagonal

    def _try_stop(self) -> Optional[Stopped]:
        # Only the "one interface left to confirm" column is still live.
        if self._cutoff != self.hypothesis - 1 or self._mass > self.threshold:
            return None
        probes = probes_at(self._diagonal, self.hypothesis - 1)
        self.state = Stopped(probes=probes, probability=self._mass)
        return self.state

    def _advance(self) -> None:
        diagonal = self._diagonal + 1
        hypothesis = self.hypothesis
        prior = self._vectors.prior
        current = self._vectors.current
        repeat = self._repeat
        discover = self._discover
        limits = self._limits
        mass = self._mass
        for column in range(self._cutoff, hypothesis):
            mass = prior[column] * repeat[column] + current[column - 1] * discover[column]
            if probes_at(diagonal, column) == limits[column + 1]:
                prior[column] = 0
                current[column] = 0
                self._cutoff = column + 1
            else:
                current[column] = mass
        if diagonal == 1:
            # Cell (1, 1) was seeded by reset(); column 1 is walked from now on.
            self._cutoff = 1
        self._mass = mass
        self._diagonal = diagonal
        self._vectors.swap()
        if self._cutoff > 1:
            self.state = Absorbed(diagonal=diagonal, cutoff=self._cutoff)
        else:
            self.state = Advancing(diagonal)

    def step(self) -> WalkState:
        """Run the stopping test, then compute one diagonal if it failed."""

        if isinstance(self.state, Stopped):
            return self.state
        stopped = self._try_stop()
        if stopped is not None:
            return stopped
        self._advance()
        return self.state

    def run(self, max_iterations: int) -> Stopped:
        if isinstance(self.state, Stopped):
            return self.state
        while True:
            stopped = self._try_stop()
            if stopped is not None:
                return stopped
            if self._diagonal >= max_iterations:
                raise BoundComputationDivergedError(self.hypothesis, self._diagonal)
            self._advance()


# ---------------------------------------------------------------------------
# Published tables
# ---------------------------------------------------------------------------


def _require_hypothesis(hypothesis: object) -> int:
    return _require_int("hypothesis", hypothesis, HYPOTHESIS_START)


def _format_probability(value: np.longdouble) -> str:
    return np.format_float_scientific(value, precision=12, unique=False)


@dataclass(frozen=True, eq=False)
class BoundSnapshot:
    """Immutable view of a fully built table.

    Arrays are indexed by hypothesis and cover ``0..max_hypothesis``; entries
    0 and 1 are zero and never returned by the accessors.
    """

    max_hypothesis: int
    confidence: float
    stopping_points: np.ndarray
    significance_levels: np.ndarray
    failure_probabilities: np.ndarray

    def __post_init__(self) -> None:
        for array in (self.stopping_points, self.significance_levels, self.failure_probabilities):
            if array.shape[0] != self.max_hypothesis + 1:
                raise ValueError("table length does not match max_hypothesis")
            array.setflags(write=False)

    def covers(self, hypothesis: int) -> bool:
        return _require_hypothesis(hypothesis) <= self.max_hypothesis

    def stopping_point(self, hypothesis: int) -> int:
        """Return the probe count for ``hypothesis``, or 0 if not yet built."""

        if not self.covers(hypothesis):
            return 0
        return int(self.stopping_points[hypothesis])

    def significance_level(self, hypothesis: int) -> np.longdouble:
        if not self.covers(hypothesis):
            return PROBABILITY_DTYPE(0)
        return self.significance_levels[hypothesis]

    def failure_probability(self, hypothesis: int) -> np.longdouble:
        if not self.covers(hypothesis):
            return PROBABILITY_DTYPE(0)
        return self.failure_probabilities[hypothesis]

    def rows(self) -> List[Tuple[int, int]]:
        return [
            (hypothesis, int(self.stopping_points[hypothesis]))
            for hypothesis in range(HYPOTHESIS_START, self.max_hypothesis + 1)
        ]

    def failure_rows(self) -> List[Tuple[int, np.longdouble]]:
        return [
            (hypothesis, self.failure_probabilities[hypothesis])
            for hypothesis in range(HYPOTHESIS_START, self.max_hypothesis + 1)
        ]

    def as_dict(self) -> Dict[str, object]:
        hypotheses = range(HYPOTHESIS_START, self.max_hypothesis + 1)
        return {
            "confidence": self.confidence,
            "max_hypothesis": self.max_hypothesis,
            "stopping_points": {str(h): int(self.stopping_points[h]) for h in hypotheses},
            "significance_levels": {str(h): float(self.significance_levels[h]) for h in hypotheses},
            "failure_probabilities": {
                str(h): float(self.failure_probabilities[h]) for h in hypotheses
            },
        }


class BoundTable:
    """Stopping points for hypotheses ``2..max_hypothesis``.

    Lookups read an immutable :class:`BoundSnapshot` and never block on a
    build.  :meth:`grow` builds the new hypotheses into copies of the current
    tables and publishes them in one step, so readers see either the old
    table or the fully grown one.
    """

    def __init__(self, config: Optional[BoundConfig] = None) -> None:
        self._config = config if config is not None else BoundConfig()
        self._confidence = self._config.node_significance()
        self._lock = threading.RLock()
        self._build_lock = threading.Lock()
        self._closed = False
        self._snapshot: Optional[BoundSnapshot] = None
        with self._build_lock:
            started = time.perf_counter()
            self._vectors: Optional[StateVectors] = StateVectors(
                max(self._config.max_hypothesis, HYPOTHESIS_START)
            )
            self._publish(self._build(None, self._config.max_hypothesis))
        logger.info(
            "Built stopping points for hypotheses %d..%d in %.3fs (node significance %.6g)",
            HYPOTHESIS_START,
            self._config.max_hypothesis,
            time.perf_counter() - started,
            self._confidence,
        )

    @classmethod
    def from_confidence(
        cls,
        graph_confidence: float,
        max_hypothesis: int = DEFAULT_MAX_HYPOTHESIS,
        max_branch: int = DEFAULT_MAX_BRANCH,
        **options: object,
    ) -> "BoundTable":
        config = BoundConfig(
            graph_confidence=graph_confidence,
            max_hypothesis=max_hypothesis,
            max_branch=max_branch,
            **options,  # type: ignore[arg-type]
        )
        return cls(config)

    @classmethod
    def from_significance(
        cls,
        graph_significance: float,
        max_hypothesis: int = DEFAULT_MAX_HYPOTHESIS,
        max_branch: int = DEFAULT_MAX_BRANCH,
        **options: object,
    ) -> "BoundTable":
        config = BoundConfig(
            graph_significance=graph_significance,
            max_hypothesis=max_hypothesis,
            max_branch=max_branch,
            **options,  # type: ignore[arg-type]
        )
        return cls(config)

    def __enter__(self) -> "BoundTable":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    @property
    def config(self) -> BoundConfig:
        return self._config

    @property
    def confidence(self) -> float:
        """Per-node value the significance levels are derived from."""

        return self._confidence

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def max_hypothesis(self) -> int:
        snapshot = self._published()
        return 0 if snapshot is None else snapshot.max_hypothesis

    def snapshot(self) -> BoundSnapshot:
        snapshot = self._published()
        if snapshot is None:
            raise BoundClosedError("Bound table has been closed")
        return snapshot

    def grow(self, end: int) -> bool:
        """Extend coverage to ``end`` hypotheses.

        Returns ``False`` without touching the table when ``end`` is already
        covered.  Existing stopping points are kept and only the new
        hypotheses are built.  On failure the previous table stays published.
        """

        end = _require_int("end", end, 1)
        with self._build_lock:
            with self._lock:
                if self._closed:
                    raise BoundClosedError("Cannot grow a closed bound table")
                current = self._snapshot
            assert current is not None
            if end <= current.max_hypothesis:
                logger.debug(
                    "Hypothesis %d already covered (max %d)", end, current.max_hypothesis
                )
                return False
            started = time.perf_counter()
            self._publish(self._build(current, end))
        logger.info(
            "Grew stopping points from %d to %d hypotheses in %.3fs",
            current.max_hypothesis,
            end,
            time.perf_counter() - started,
        )
        return True

    def stopping_point(self, hypothesis: int) -> int:
        """Return the probe count for ``hypothesis`` (0 beyond coverage)."""

        snapshot = self._published()
        if snapshot is None:
            _require_hypothesis(hypothesis)
            logger.warning("Stopping point lookup on a closed bound table")
            return 0
        return snapshot.stopping_point(hypothesis)

    def dump_rows(self) -> List[Tuple[int, int]]:
        snapshot = self._published()
        if snapshot is None:
            logger.warning("Dump requested on a closed bound table")
            return []
        return snapshot.rows()

    def failure_rows(self) -> List[Tuple[int, np.longdouble]]:
        snapshot = self._published()
        if snapshot is None:
            logger.warning("Failure dump requested on a closed bound table")
            return []
        return snapshot.failure_rows()

    def dump(self, sink: Optional[TextIO] = None) -> None:
        out = sys.stdout if sink is None else sink
        for hypothesis, probes in self.dump_rows():
            out.write(f"{hypothesis} - {probes}\n")

    def failure_dump(self, sink: Optional[TextIO] = None) -> None:
        out = sys.stdout if sink is None else sink
        out.write("Expected failure:\n")
        for hypothesis, probability in self.failure_rows():
            out.write(f"{hypothesis} - {_format_probability(probability)}\n")

    def close(self) -> None:
        """Drop the tables and scratch vectors; later lookups return 0."""

        with self._build_lock:
            with self._lock:
                self._closed = True
                self._snapshot = None
            self._vectors = None

    def _published(self) -> Optional[BoundSnapshot]:
        with self._lock:
            return self._snapshot

    def _publish(self, snapshot: BoundSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def _build(self, previous: Optional[BoundSnapshot], end: int) -> BoundSnapshot:
        # Callers hold the build lock; nothing here is visible until published.
        start = HYPOTHESIS_START if previous is None else previous.max_hypothesis + 1
        stopping_points = _allocate(end + 1, COUNT_DTYPE)
        failures = _allocate(end + 1, PROBABILITY_DTYPE)
        if previous is not None:
            stopping_points[: previous.max_hypothesis + 1] = previous.stopping_points
            failures[: previous.max_hypothesis + 1] = previous.failure_probabilities
        try:
            levels = significance_levels(
                self._confidence,
                end,
                ratio=self._config.ratio,
                schedule=self._config.schedule,
            )
        except MemoryError as exc:
            raise BoundAllocationError(
                f"Unable to allocate significance levels for {end} hypotheses"
            ) from exc

        vectors = self._vectors
        assert vectors is not None
        if len(vectors) < end:
            vectors.resize(end)

        for hypothesis in range(start, end + 1):
            walk = HypothesisWalk(hypothesis, stopping_points, levels[hypothesis], vectors)
            stopped = walk.run(self._config.max_iterations)
            stopping_points[hypothesis] = stopped.probes
            failures[hypothesis] = stopped.probability
            logger.debug(
                "Hypothesis %d stops after %d probes (failure %s, level %s)",
                hypothesis,
                stopped.probes,
                _format_probability(stopped.probability),
                _format_probability(levels[hypothesis]),
            )

        return BoundSnapshot(
            max_hypothesis=end,
            confidence=self._confidence,
            stopping_points=stopping_points,
            significance_levels=levels,
            failure_probabilities=failures,
        )


__all__ = [
    "Absorbed",
    "Advancing",
    "BoundConfig",
    "BoundSnapshot",
    "BoundTable",
    "HypothesisWalk",
    "Stopped",
    "WalkState",
]
