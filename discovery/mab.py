"""Feed composition as a multi-armed bandit over stacks (Thompson sampling)."""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Optional, Protocol

import numpy as np

from discovery.errors import SelectionError
from discovery.models import Document


class Sampler(Protocol):
    def sample(self, alpha: float, beta: float) -> float: ...


class BetaSampler:
    def __init__(self, rng: Optional[np.random.Generator] = None) -> None:
        self.rng = rng or np.random.default_rng()

    def sample(self, alpha: float, beta: float) -> float:
        return float(self.rng.beta(alpha, beta))


class Arm(Protocol):
    @property
    def alpha(self) -> float: ...

    @property
    def beta(self) -> float: ...

    def __len__(self) -> int: ...

    def pop_best(self) -> Document: ...


def _sample(sampler: Sampler, arm: Arm) -> float:
    try:
        value = float(sampler.sample(arm.alpha, arm.beta))
    except Exception as e:
        raise SelectionError(f"Sampling failed: {e}") from e
    if not math.isfinite(value):
        raise SelectionError(f"Sampler returned a non-finite value: {value}")
    return value


def select(max_documents: int, stacks: Sequence[Arm], sampler: Sampler) -> list[Document]:
    """Draw up to `max_documents` documents from `stacks`.

    Every non-empty stack gets a sample from its Beta(alpha, beta)
    distribution. The stack with the highest sample hands out its best
    document and is resampled; emptied stacks drop out. Ties go to the stack
    that comes first. Documents are popped from the stacks.

    The draw order is decided before anything is popped, so a failing
    sampler leaves every stack untouched.
    """
    if not stacks:
        raise SelectionError("No stacks to select from")
    if max_documents <= 0:
        return []

    remaining = {idx: len(arm) for idx, arm in enumerate(stacks) if len(arm) > 0}
    samples = {idx: _sample(sampler, stacks[idx]) for idx in remaining}
    order: list[int] = []
    while samples and len(order) < max_documents:
        best = max(samples, key=lambda idx: (samples[idx], -idx))
        order.append(best)
        remaining[best] -= 1
        if remaining[best] == 0:
            del samples[best]
        else:
            samples[best] = _sample(sampler, stacks[best])

    return [stacks[idx].pop_best() for idx in order]
