from __future__ import annotations

import io
import json
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import numpy as np
import pytest

from mda_bound.bound import (
    Absorbed,
    Advancing,
    BoundAllocationError,
    BoundClosedError,
    BoundComputationDivergedError,
    BoundConfig,
    BoundTable,
    HypothesisWalk,
    SignificanceSchedule,
    StateVectors,
    Stopped,
    node_confidence,
    significance_levels,
)

# Stopping points for hypotheses 2.. with a graph-wide significance of 0.05.
GEOMETRIC_005 = [
    9, 17, 24, 33, 42, 51, 60, 70, 81, 91, 102, 113, 125, 136, 148,
    161, 173, 186, 199, 213, 226, 240, 254,
]
# The classic per-hypothesis MDA table.
UNIFORM_005 = [6, 11, 16, 21, 26, 32, 38, 44, 50, 57, 63, 69, 76, 82, 89]
GEOMETRIC_005_TWO_BRANCHES = [10, 18, 27, 36, 45, 55, 66]


def _points(table: BoundTable) -> list[int]:
    return [probes for _, probes in table.dump_rows()]


def test_default_table_matches_reference_sequence() -> None:
    table = BoundTable()

    assert table.max_hypothesis == 16
    assert table.confidence == pytest.approx(0.05)
    assert _points(table) == GEOMETRIC_005[:15]


def test_confidence_convention_matches_significance_convention() -> None:
    by_confidence = BoundTable.from_confidence(0.95, max_hypothesis=16, max_branch=1)
    by_significance = BoundTable.from_significance(0.05, max_hypothesis=16, max_branch=1)

    assert by_confidence.confidence == by_significance.confidence
    assert _points(by_confidence) == _points(by_significance) == GEOMETRIC_005[:15]


def test_significance_convention_with_confidence_value_is_much_looser() -> None:
    # Passing 0.95 as a significance asks for a 95% miss rate per node.
    table = BoundTable.from_significance(0.95, max_hypothesis=6)

    assert table.confidence == pytest.approx(0.95)
    assert _points(table) == [5, 9, 14, 19, 25]


def test_uniform_schedule_reproduces_published_mda_table() -> None:
    table = BoundTable.from_confidence(0.95, max_hypothesis=16, max_branch=1, schedule="uniform")

    assert _points(table)[:4] == [6, 11, 16, 21]
    assert _points(table) == UNIFORM_005
    snapshot = table.snapshot()
    assert float(snapshot.failure_probability(2)) == 0.03125


def test_more_branches_need_more_probes() -> None:
    table = BoundTable.from_significance(0.05, max_hypothesis=8, max_branch=2)

    assert table.confidence == pytest.approx(1 - 0.95 ** 0.5)
    assert _points(table) == GEOMETRIC_005_TWO_BRANCHES


@pytest.mark.parametrize("schedule", list(SignificanceSchedule))
def test_stopping_points_are_monotonic(schedule: SignificanceSchedule) -> None:
    table = BoundTable(BoundConfig(max_hypothesis=24, schedule=schedule))
    points = _points(table)

    assert all(lower <= higher for lower, higher in zip(points, points[1:]))


@pytest.mark.parametrize("schedule", list(SignificanceSchedule))
def test_recorded_failure_stays_below_significance(schedule: SignificanceSchedule) -> None:
    snapshot = BoundTable(BoundConfig(max_hypothesis=20, schedule=schedule)).snapshot()

    for hypothesis in range(2, 21):
        failure = snapshot.failure_probability(hypothesis)
        assert 0 < failure <= snapshot.significance_level(hypothesis)


def test_failure_probability_for_two_interfaces_is_exact() -> None:
    snapshot = BoundTable().snapshot()

    # Nine probes all hitting the first interface: 2 ** -8.
    assert snapshot.failure_probability(2) == np.longdouble(2) ** -8
    assert float(snapshot.failure_probability(3)) == pytest.approx(0.0030329836272546752, rel=1e-12)


def test_significance_levels_follow_geometric_decay() -> None:
    table = BoundTable()
    snapshot = table.snapshot()

    assert float(snapshot.significance_level(2)) == pytest.approx(0.1 * table.confidence)
    for hypothesis in range(3, 17):
        assert float(snapshot.significance_level(hypothesis)) == pytest.approx(
            float(snapshot.significance_level(hypothesis - 1)) * 0.9
        )


def test_incremental_growth_equals_batch_build() -> None:
    grown = BoundTable(BoundConfig(max_hypothesis=8))
    assert grown.grow(24) is True
    batch = BoundTable(BoundConfig(max_hypothesis=24))

    grown_snapshot = grown.snapshot()
    batch_snapshot = batch.snapshot()
    assert grown.max_hypothesis == 24
    assert _points(grown) == _points(batch) == GEOMETRIC_005
    assert np.array_equal(grown_snapshot.stopping_points, batch_snapshot.stopping_points)
    assert np.array_equal(grown_snapshot.significance_levels, batch_snapshot.significance_levels)
    assert np.array_equal(
        grown_snapshot.failure_probabilities, batch_snapshot.failure_probabilities
    )


def test_grow_within_coverage_is_a_noop() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=10))
    before = table.snapshot()

    assert table.grow(10) is False
    assert table.grow(4) is False
    assert table.snapshot() is before
    assert table.max_hypothesis == 10


def test_grow_keeps_existing_entries() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=6))
    before = table.snapshot()

    table.grow(12)
    after = table.snapshot()
    assert np.array_equal(after.stopping_points[:7], before.stopping_points)
    assert np.array_equal(after.failure_probabilities[:7], before.failure_probabilities)
    # The old snapshot is never mutated in place.
    assert before.max_hypothesis == 6
    assert before.stopping_point(12) == 0


def test_lookup_beyond_coverage_returns_zero() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=5))

    assert table.stopping_point(5) == 33
    assert table.stopping_point(6) == 0
    assert table.stopping_point(1000) == 0


@pytest.mark.parametrize("hypothesis", [0, 1, -3, True, 2.5, "3"])
def test_lookup_rejects_invalid_hypotheses(hypothesis) -> None:
    table = BoundTable(BoundConfig(max_hypothesis=4))

    with pytest.raises(ValueError):
        table.stopping_point(hypothesis)


def test_lookup_accepts_numpy_integers() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=4))

    assert table.stopping_point(np.int64(3)) == 17


def test_snapshot_arrays_are_read_only() -> None:
    snapshot = BoundTable(BoundConfig(max_hypothesis=4)).snapshot()

    with pytest.raises(ValueError):
        snapshot.stopping_points[2] = 1


def test_table_with_single_hypothesis_has_no_stopping_points() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=1))

    assert table.dump_rows() == []
    assert table.stopping_point(2) == 0
    table.grow(3)
    assert _points(table) == [9, 17]


def test_ceiling_allows_exactly_the_needed_diagonals() -> None:
    # Hypothesis 2 stops once nine diagonals have been walked.
    table = BoundTable(BoundConfig(max_hypothesis=2, max_iterations=9))
    assert table.stopping_point(2) == 9

    with pytest.raises(BoundComputationDivergedError) as excinfo:
        BoundTable(BoundConfig(max_hypothesis=2, max_iterations=8))
    assert excinfo.value.hypothesis == 2
    assert excinfo.value.iterations == 8


def test_diverging_growth_leaves_table_untouched() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=8, max_iterations=60))
    before = table.snapshot()

    with pytest.raises(BoundComputationDivergedError) as excinfo:
        table.grow(12)
    assert excinfo.value.hypothesis == 9
    assert table.snapshot() is before
    assert table.max_hypothesis == 8
    assert table.stopping_point(9) == 0
    assert _points(table) == GEOMETRIC_005[:7]


def test_allocation_failure_during_growth_is_atomic(monkeypatch) -> None:
    table = BoundTable(BoundConfig(max_hypothesis=16))
    before = table.snapshot()
    real_zeros = np.zeros

    def fake_zeros(shape, *args, **kwargs):
        if isinstance(shape, int) and shape > 20:
            raise MemoryError("simulated allocation failure")
        return real_zeros(shape, *args, **kwargs)

    monkeypatch.setattr(np, "zeros", fake_zeros)
    with pytest.raises(BoundAllocationError):
        table.grow(32)
    assert table.snapshot() is before
    assert table.max_hypothesis == 16

    monkeypatch.undo()
    assert table.grow(24) is True
    assert _points(table) == GEOMETRIC_005


def test_concurrent_lookups_never_see_partial_growth() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=4))
    failures: list[str] = []
    done = threading.Event()

    def reader() -> None:
        while not done.is_set():
            snapshot = table.snapshot()
            points = [snapshot.stopping_point(h) for h in range(2, snapshot.max_hypothesis + 1)]
            if len(snapshot.stopping_points) != snapshot.max_hypothesis + 1:
                failures.append("length mismatch")
            if 0 in points:
                failures.append(f"unbuilt entry in {points}")
            if points != sorted(points):
                failures.append(f"non-monotonic {points}")

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for thread in readers:
        thread.start()
    try:
        for end in (8, 12, 16, 20, 24):
            table.grow(end)
    finally:
        done.set()
        for thread in readers:
            thread.join()

    assert failures == []
    assert _points(table) == GEOMETRIC_005


def test_concurrent_growth_is_serialised() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=4))
    threads = [threading.Thread(target=table.grow, args=(end,)) for end in (10, 16, 24, 12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert table.max_hypothesis == 24
    assert _points(table) == GEOMETRIC_005


def test_closed_table_reports_without_raising_on_lookup() -> None:
    with BoundTable(BoundConfig(max_hypothesis=4)) as table:
        assert table.stopping_point(3) == 17
    assert table.closed
    assert table.stopping_point(3) == 0
    assert table.max_hypothesis == 0
    assert table.dump_rows() == []
    with pytest.raises(BoundClosedError):
        table.grow(8)
    with pytest.raises(BoundClosedError):
        table.snapshot()


def test_dump_writes_hypothesis_lines() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=4))
    sink = io.StringIO()

    table.dump(sink)

    assert sink.getvalue() == "2 - 9\n3 - 17\n4 - 24\n"


def test_failure_dump_lists_recorded_probabilities() -> None:
    table = BoundTable(BoundConfig(max_hypothesis=3))
    sink = io.StringIO()

    table.failure_dump(sink)

    lines = sink.getvalue().splitlines()
    assert lines[0] == "Expected failure:"
    assert [line.split(" - ")[0] for line in lines[1:]] == ["2", "3"]
    assert float(lines[1].split(" - ")[1]) == pytest.approx(0.00390625)


def test_snapshot_exports_json_compatible_mapping() -> None:
    snapshot = BoundTable(BoundConfig(max_hypothesis=4)).snapshot()

    payload = json.loads(json.dumps(snapshot.as_dict()))

    assert payload["max_hypothesis"] == 4
    assert payload["stopping_points"] == {"2": 9, "3": 17, "4": 24}
    assert payload["significance_levels"]["2"] == pytest.approx(0.005)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"graph_significance": 0.05, "graph_confidence": 0.95},
        {"graph_significance": 0.0},
        {"graph_confidence": 1.0},
        {"graph_significance": "high"},
        {"max_branch": 0},
        {"max_hypothesis": 0},
        {"max_hypothesis": 4.0},
        {"max_iterations": 0},
        {"ratio": 1.0},
        {"schedule": "harmonic"},
    ],
)
def test_config_rejects_invalid_values(kwargs) -> None:
    with pytest.raises(ValueError):
        BoundConfig(**kwargs)


def test_config_normalises_schedule_and_conventions() -> None:
    config = BoundConfig(graph_confidence=0.9, schedule="uniform")

    assert config.schedule is SignificanceSchedule.UNIFORM
    assert config.significance == pytest.approx(0.1)
    assert BoundConfig().significance == 0.05
    assert BoundConfig(graph_significance=0.01, max_branch=4).node_significance() == pytest.approx(
        node_confidence(0.01, 4)
    )


def test_walk_moves_from_advancing_to_absorbed_to_stopped() -> None:
    stopping_points = np.zeros(4, dtype=np.int64)
    stopping_points[2] = 9
    levels = significance_levels(node_confidence(0.05, 1), 3)
    walk = HypothesisWalk(3, stopping_points, levels[3], StateVectors(3))

    states = []
    while not isinstance(walk.state, Stopped):
        states.append(walk.step())

    # Column 1 is absorbed where hypothesis 2 stops: nine probes.
    assert states[:8] == [Advancing(diagonal) for diagonal in range(1, 9)]
    assert states[8:16] == [Absorbed(diagonal=diagonal, cutoff=2) for diagonal in range(9, 17)]
    stopped = states[16]
    assert isinstance(stopped, Stopped)
    assert stopped.probes == 17
    assert stopped.probability <= levels[3]
    assert walk.step() is stopped


def test_walk_run_enforces_ceiling() -> None:
    stopping_points = np.zeros(4, dtype=np.int64)
    stopping_points[2] = 9
    levels = significance_levels(node_confidence(0.05, 1), 3)

    vectors = StateVectors(3)
    assert HypothesisWalk(3, stopping_points, levels[3], vectors).run(16).probes == 17
    with pytest.raises(BoundComputationDivergedError):
        HypothesisWalk(3, stopping_points, levels[3], vectors).run(15)


def test_walk_rejects_short_vectors() -> None:
    with pytest.raises(ValueError):
        HypothesisWalk(5, np.zeros(6, dtype=np.int64), np.longdouble(0.01), StateVectors(4))
