"""Stopping-point bounds for Multipath Detection Algorithm probing."""

from __future__ import annotations

import importlib
from types import ModuleType
from typing import TYPE_CHECKING, Any

_EXPORTS = {
    "BoundAllocationError": "mda_bound.bound",
    "BoundClosedError": "mda_bound.bound",
    "BoundComputationDivergedError": "mda_bound.bound",
    "BoundConfig": "mda_bound.bound",
    "BoundError": "mda_bound.bound",
    "BoundSnapshot": "mda_bound.bound",
    "BoundTable": "mda_bound.bound",
    "MdaFlow": "mda_bound.bound",
    "MdaFlowState": "mda_bound.bound",
    "SignificanceSchedule": "mda_bound.bound",
    "node_confidence": "mda_bound.bound",
}
_SUBMODULES = ("bound", "tools")

__all__ = sorted([*_EXPORTS, *_SUBMODULES])


def __getattr__(name: str) -> Any:
    """Lazily import the table so ``mda_bound.tools`` stays cheap to load."""

    if name in _SUBMODULES:
        module: ModuleType = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module
    if name in _EXPORTS:
        value = getattr(importlib.import_module(_EXPORTS[name]), name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(list(__all__) + list(globals().keys()))


if TYPE_CHECKING:  # pragma: no cover - imported for static analyzers
    from .bound import (  # noqa: F401
        BoundAllocationError,
        BoundClosedError,
        BoundComputationDivergedError,
        BoundConfig,
        BoundError,
        BoundSnapshot,
        BoundTable,
        MdaFlow,
        MdaFlowState,
        SignificanceSchedule,
        node_confidence,
    )
