# spatialvb_jax/optimisation/zero_finder.py
"""
Root finding for monotonically decreasing scalar functions.

The finder first expands from an initial guess in the direction the sign
of f points to (f > 0 means the zero lies above), growing the step
geometrically until the zero is bracketed or a search bound is hit. The
bracket is then refined by a pluggable guesstimator until a tolerance is
met or the evaluation budget runs out.

Every evaluation may cost a dense N x N inversion, so the budget is small
and the function may replace a proposed point with one whose matrices are
already cached (`Function1D.pick_faster_guess`).
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)

Point = Tuple[float, float]  # (x, f(x))


class Function1D:
    """Scalar function of one variable, optionally able to suggest cheap points."""

    def __call__(self, x: float) -> float:
        raise NotImplementedError

    def pick_faster_guess(self, guess: float, lower: float, upper: float) -> Optional[float]:
        """A point in (lower, upper) cheaper to evaluate than `guess`, or None."""
        return None


@runtime_checkable
class Guesstimator(Protocol):
    def guess(self, lower: Point, upper: Point) -> float:
        ...


class BisectionGuesstimator:
    """Arithmetic midpoint of the bracket."""

    def guess(self, lower: Point, upper: Point) -> float:
        return 0.5 * (lower[0] + upper[0])


class LogBisectionGuesstimator:
    """Geometric midpoint; suits scale parameters spanning decades."""

    def guess(self, lower: Point, upper: Point) -> float:
        lo, hi = min(lower[0], upper[0]), max(lower[0], upper[0])
        if lo <= 0:
            return 0.5 * (lo + hi)
        return math.sqrt(lo * hi)


@dataclass(frozen=True)
class ZeroFinderCFG:
    """Configuration for DescendingZeroFinder."""
    initial_guess: float = 0.0
    initial_scale: Optional[float] = None  # defaults to |guess| (or 1 at 0)
    scale_growth: float = 2.0
    search_min: float = -math.inf
    search_max: float = math.inf
    tol_x: float = 0.0
    ratio_tol_x: float = 1.0  # active when > 1 and the bracket is positive
    tol_y: float = 0.0
    max_evaluations: int = 100


@dataclass
class ZeroFinderRun:
    """Result of a root search."""
    x: float
    evaluations: int
    converged: bool


class DescendingZeroFinder:
    """
    Find x with f(x) = 0 for a decreasing f.

    Examples:
        >>> finder = DescendingZeroFinder(f, ZeroFinderCFG(initial_guess=1.0, search_min=0.0,
        ...                                                ratio_tol_x=1.01, max_evaluations=12),
        ...                               LogBisectionGuesstimator())
        >>> finder.find_zero().x
    """

    def __init__(self, fcn, cfg: ZeroFinderCFG = ZeroFinderCFG(), guesstimator: Optional[Guesstimator] = None):
        if not cfg.search_min < cfg.search_max:
            raise ValueError(f"Empty search interval [{cfg.search_min}, {cfg.search_max}]")
        if cfg.scale_growth <= 0:
            raise ValueError(f"scale_growth must be positive, got {cfg.scale_growth}")
        if cfg.max_evaluations < 1:
            raise ValueError(f"max_evaluations must be at least 1, got {cfg.max_evaluations}")
        self.fcn = fcn
        self.cfg = cfg
        self.guesstimator = guesstimator if guesstimator is not None else BisectionGuesstimator()

    def _bracket_converged(self, lower: Point, upper: Point) -> bool:
        lo, hi = min(lower[0], upper[0]), max(lower[0], upper[0])
        if hi - lo <= self.cfg.tol_x:
            return True
        return self.cfg.ratio_tol_x > 1 and lo > 0 and hi / lo <= self.cfg.ratio_tol_x

    def find_zero(self) -> ZeroFinderRun:
        cfg = self.cfg
        evaluations = 0

        def evaluate(x: float) -> float:
            nonlocal evaluations
            evaluations += 1
            return float(self.fcn(x))

        x = min(max(float(cfg.initial_guess), cfg.search_min), cfg.search_max)
        scale = cfg.initial_scale
        if scale is None:
            scale = abs(x) if x != 0 else 1.0
        if scale <= 0:
            raise ValueError(f"initial_scale must be positive, got {scale}")

        y = evaluate(x)
        if abs(y) <= cfg.tol_y:
            return ZeroFinderRun(x, evaluations, True)

        # Expansion: walk towards the zero until the sign flips.
        lower: Optional[Point] = None
        upper: Optional[Point] = None
        if y > 0:
            lower = (x, y)
        else:
            upper = (x, y)
        while lower is None or upper is None:
            going_up = upper is None
            here = lower if going_up else upper
            bound = cfg.search_max if going_up else cfg.search_min
            if here[0] == bound:
                logger.warning(
                    f"Zero lies beyond the search bound {bound:g} (f={here[1]:g}); returning the bound"
                )
                return ZeroFinderRun(bound, evaluations, False)
            if evaluations >= cfg.max_evaluations:
                logger.warning(
                    f"Zero finder used all {cfg.max_evaluations} evaluations before bracketing; "
                    f"returning {here[0]:g}"
                )
                return ZeroFinderRun(here[0], evaluations, False)
            step = scale if going_up else -scale
            x = min(max(here[0] + step, cfg.search_min), cfg.search_max)
            scale *= cfg.scale_growth
            y = evaluate(x)
            if abs(y) <= cfg.tol_y:
                return ZeroFinderRun(x, evaluations, True)
            if y > 0:
                lower = (x, y)
            else:
                upper = (x, y)

        # Refinement inside [lower, upper] (lower holds f > 0).
        while not self._bracket_converged(lower, upper):
            if evaluations >= cfg.max_evaluations:
                best = self.guesstimator.guess(lower, upper)
                logger.warning(
                    f"Zero finder used all {cfg.max_evaluations} evaluations; "
                    f"bracket [{min(lower[0], upper[0]):g}, {max(lower[0], upper[0]):g}], "
                    f"returning {best:g}"
                )
                return ZeroFinderRun(best, evaluations, False)
            x = self.guesstimator.guess(lower, upper)
            lo, hi = min(lower[0], upper[0]), max(lower[0], upper[0])
            pick = getattr(self.fcn, "pick_faster_guess", None)
            if pick is not None and lo < x < hi:
                faster = pick(x, lo, hi)
                if faster is not None:
                    x = faster
            y = evaluate(x)
            if abs(y) <= cfg.tol_y:
                return ZeroFinderRun(x, evaluations, True)
            if y > 0:
                lower = (x, y)
            else:
                upper = (x, y)

        return ZeroFinderRun(self.guesstimator.guess(lower, upper), evaluations, True)
