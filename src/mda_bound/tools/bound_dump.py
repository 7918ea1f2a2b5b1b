"""Print the MDA stopping-point table.

Builds a :class:`mda_bound.bound.BoundTable` from command-line parameters
and prints one ``hypothesis - probes`` line per hypothesis, optionally
followed by the failure probability recorded at each stopping point.  With
``--json`` the whole snapshot is written as a JSON document instead.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, Optional, Sequence

from mda_bound.bound import BoundConfig, BoundError, BoundTable, SignificanceSchedule
from mda_bound.bound.bound_common import (
    DEFAULT_MAX_BRANCH,
    DEFAULT_MAX_HYPOTHESIS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_RATIO,
)

PROG = "mda-bound-dump"

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Compute MDA stopping points and print them",
    )
    bound = parser.add_mutually_exclusive_group()
    bound.add_argument(
        "--significance",
        type=float,
        default=None,
        help="Graph-wide probability of missing an interface (default: 0.05)",
    )
    bound.add_argument(
        "--confidence",
        type=float,
        default=None,
        help="Graph-wide probability of finding every interface",
    )
    parser.add_argument(
        "--max-hypothesis",
        type=int,
        default=DEFAULT_MAX_HYPOTHESIS,
        help="Largest number of interfaces to build stopping points for",
    )
    parser.add_argument(
        "--max-branch",
        type=int,
        default=DEFAULT_MAX_BRANCH,
        help="Assumed maximum number of load balancers on the path",
    )
    parser.add_argument(
        "--schedule",
        choices=[item.value for item in SignificanceSchedule],
        default=SignificanceSchedule.GEOMETRIC.value,
        help="How the per-node significance is spread across hypotheses",
    )
    parser.add_argument(
        "--ratio",
        type=float,
        default=DEFAULT_RATIO,
        help="Decay ratio of the geometric schedule",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=DEFAULT_MAX_ITERATIONS,
        help="Diagonals walked per hypothesis before giving up",
    )
    parser.add_argument(
        "--grow-to",
        type=int,
        default=None,
        help="Grow the table to this hypothesis after building it",
    )
    parser.add_argument(
        "--failures",
        action="store_true",
        help="Also print the failure probability recorded at each stopping point",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Write the table as JSON",
    )
    parser.add_argument("--verbose", action="store_true", help="Log build progress")
    return parser.parse_args(None if argv is None else list(argv))


def _config_from_args(args: argparse.Namespace) -> BoundConfig:
    return BoundConfig(
        graph_significance=args.significance,
        graph_confidence=args.confidence,
        max_hypothesis=args.max_hypothesis,
        max_branch=args.max_branch,
        schedule=args.schedule,
        ratio=args.ratio,
        max_iterations=args.max_iterations,
    )


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = _parse_args(list(argv) if argv is not None else None)
    if args.verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    try:
        config = _config_from_args(args)
        with BoundTable(config) as table:
            if args.grow_to is not None:
                table.grow(args.grow_to)
            if args.json:
                json.dump(table.snapshot().as_dict(), sys.stdout, indent=2)
                sys.stdout.write("\n")
            else:
                table.dump(sys.stdout)
                if args.failures:
                    table.failure_dump(sys.stdout)
        return 0
    except (BoundError, ValueError) as exc:
        logger.debug("Bound table failed", exc_info=True)
        print(f"{PROG}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
