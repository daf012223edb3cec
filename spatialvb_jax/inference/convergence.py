# spatialvb_jax/inference/convergence.py
from __future__ import annotations

import logging
import math
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_CONVERGENCE_REGISTRY = {}


def register(name: str, obj):
    if name in _CONVERGENCE_REGISTRY:
        raise KeyError(f"Convergence detector '{name}' already registered.")
    _CONVERGENCE_REGISTRY[name] = obj


def get(name: str):
    try:
        return _CONVERGENCE_REGISTRY[name]
    except KeyError:
        raise KeyError(
            f"Unknown convergence detector '{name}'. "
            f"Available: {list(_CONVERGENCE_REGISTRY.keys())}"
        )


@runtime_checkable
class ConvergenceDetector(Protocol):
    """Decides after each iteration whether to stop, given the global objective."""
    needs_free_energy: bool

    def reset(self) -> None:
        ...

    def test(self, objective: float) -> bool:
        ...


class CountingConvergenceDetector:
    """Stop after a fixed number of iterations."""
    needs_free_energy = False

    def __init__(self, max_iterations: int = 10):
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        self.max_iterations = max_iterations
        self.iterations = 0

    def reset(self) -> None:
        self.iterations = 0

    def test(self, objective: float) -> bool:
        self.iterations += 1
        logger.info(f"Iteration {self.iterations}: objective {objective:g}")
        return self.iterations >= self.max_iterations


class FchangeConvergenceDetector:
    """Stop when the free energy changes by less than `fchange`, or after max_iterations."""
    needs_free_energy = True

    def __init__(self, max_iterations: int = 10, fchange: float = 0.01):
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        self.max_iterations = max_iterations
        self.fchange = fchange
        self.iterations = 0
        self.previous = math.nan

    def reset(self) -> None:
        self.iterations = 0
        self.previous = math.nan

    def test(self, objective: float) -> bool:
        self.iterations += 1
        change = objective - self.previous
        self.previous = objective
        logger.info(f"Iteration {self.iterations}: F = {objective:g} (change {change:g})")
        if abs(change) < self.fchange:
            logger.info(f"Converged: free energy change {change:g} below {self.fchange:g}")
            return True
        return self.iterations >= self.max_iterations


register("maxits", CountingConvergenceDetector)
register("fchange", FchangeConvergenceDetector)
