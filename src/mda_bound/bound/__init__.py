"""MDA stopping-point table and the diagonal walk that builds it."""

from .bound import (
    Absorbed,
    Advancing,
    BoundConfig,
    BoundSnapshot,
    BoundTable,
    HypothesisWalk,
    Stopped,
    WalkState,
)
from .bound_common import (
    BoundAllocationError,
    BoundClosedError,
    BoundComputationDivergedError,
    BoundError,
    SignificanceSchedule,
    node_confidence,
    significance_levels,
)
from .flow import MdaFlow, MdaFlowState
from .state import StateVectors

__all__ = [
    "Absorbed",
    "Advancing",
    "BoundAllocationError",
    "BoundClosedError",
    "BoundComputationDivergedError",
    "BoundConfig",
    "BoundError",
    "BoundSnapshot",
    "BoundTable",
    "HypothesisWalk",
    "MdaFlow",
    "MdaFlowState",
    "SignificanceSchedule",
    "StateVectors",
    "Stopped",
    "WalkState",
    "node_confidence",
    "significance_levels",
]
