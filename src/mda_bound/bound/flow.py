"""Flow identifiers used to match in-flight MDA probes with their replies."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import IntEnum


class MdaFlowState(IntEnum):
    AVAILABLE = 0
    UNAVAILABLE = 1
    TESTING = 2
    TIMEOUT = 3


@dataclass(frozen=True)
class MdaFlow:
    """A probe flow and what the prober currently knows about it."""

    flow_id: int
    state: MdaFlowState = MdaFlowState.AVAILABLE

    def __post_init__(self) -> None:
        if isinstance(self.flow_id, bool) or not isinstance(self.flow_id, int):
            raise ValueError("flow_id must be an integer")
        if self.flow_id < 0:
            raise ValueError("flow_id must be non-negative")
        object.__setattr__(self, "state", MdaFlowState(self.state))

    def with_state(self, state: MdaFlowState) -> "MdaFlow":
        return dataclasses.replace(self, state=state)


__all__ = ["MdaFlow", "MdaFlowState"]
