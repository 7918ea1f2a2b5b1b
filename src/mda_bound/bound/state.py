"""Rolling diagonal buffers used while building the bound table."""

from __future__ import annotations

import numpy as np

from .bound_common import PROBABILITY_DTYPE, BoundAllocationError


def _allocate(length: int) -> np.ndarray:
    try:
        return np.zeros(length, dtype=PROBABILITY_DTYPE)
    except MemoryError as exc:
        raise BoundAllocationError(
            f"Unable to allocate state vectors of length {length}"
        ) from exc


class StateVectors:
    """Two adjacent diagonals of the probing state space.

    ``prior`` holds the previous diagonal and ``current`` the one being
    filled.  Cell ``j`` is the probability of having observed exactly ``j``
    distinct interfaces at the probe count of that diagonal.
    """

    def __init__(self, length: int) -> None:
        if length < 2:
            raise ValueError("state vectors need at least two cells")
        self.prior = _allocate(length)
        self.current = _allocate(length)

    def __len__(self) -> int:
        return int(self.prior.shape[0])

    def reset(self) -> None:
        """Start a new walk from state (1, 1) with probability one."""

        self.prior.fill(0)
        self.current.fill(0)
        self.current[1] = PROBABILITY_DTYPE(1)

    def swap(self) -> None:
        self.prior, self.current = self.current, self.prior

    def resize(self, length: int) -> None:
        """Reallocate both buffers; contents are scratch and are dropped."""

        if length < 2:
            raise ValueError("state vectors need at least two cells")
        prior = _allocate(length)
        current = _allocate(length)
        self.prior, self.current = prior, current


__all__ = ["StateVectors"]
