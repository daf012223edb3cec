# spatialvb_jax/optimisation/__init__.py
from .zero_finder import (
    Function1D,
    Guesstimator,
    BisectionGuesstimator,
    LogBisectionGuesstimator,
    DescendingZeroFinder,
    ZeroFinderCFG,
    ZeroFinderRun,
)
from .smoothing import (
    DerivFdRho,
    DerivFdDelta,
    DerivEdDelta,
    optimize_evidence,
    optimize_smoothing_scale,
    brute_force_delta_profile,
)

__all__ = [
    "Function1D",
    "Guesstimator",
    "BisectionGuesstimator",
    "LogBisectionGuesstimator",
    "DescendingZeroFinder",
    "ZeroFinderCFG",
    "ZeroFinderRun",
    "DerivFdRho",
    "DerivFdDelta",
    "DerivEdDelta",
    "optimize_evidence",
    "optimize_smoothing_scale",
    "brute_force_delta_profile",
]
