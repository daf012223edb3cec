# spatialvb_jax/inference/__init__.py
"""
Inference layer.

An inference method consumes VoxelData and three collaborators (forward
model, noise model, convergence detector) and iterates until the detector
says stop. Spatial VB is the method implemented here; the evidence
optimisation correction and the convergence detectors live beside it so
they can be reused by other VB variants.
"""

from __future__ import annotations

from .base import InferenceMethod
from .convergence import (
    ConvergenceDetector,
    CountingConvergenceDetector,
    FchangeConvergenceDetector,
    get as get_convergence,
)
from .evidence import full_evidence_optimisation, simultaneous_evidence_optimisation
from .spatialvb import SpatialVB, SpatialVBCFG, SpatialVBRun, EO_MODES

__all__ = [
    "InferenceMethod",
    "ConvergenceDetector",
    "CountingConvergenceDetector",
    "FchangeConvergenceDetector",
    "get_convergence",
    "full_evidence_optimisation",
    "simultaneous_evidence_optimisation",
    "SpatialVB",
    "SpatialVBCFG",
    "SpatialVBRun",
    "EO_MODES",
]
