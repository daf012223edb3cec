# spatialvb_jax/__init__.py
"""
Spatial variational Bayes on 3D grids.

Per-location (voxel) parameter estimation where neighbouring locations are
coupled through a spatial prior whose hyperparameters are re-estimated as
the iterations proceed.
"""
from __future__ import annotations

import jax

# Covariance inversions and evidence derivatives need double precision.
jax.config.update("jax_enable_x64", True)

from .core import (  # noqa: E402
    ConfigurationError,
    InternalConsistencyError,
    NumericalDegeneracyError,
    MVNDist,
    VoxelData,
    coords_from_mask,
)
from .inference import SpatialVB, SpatialVBCFG, SpatialVBRun  # noqa: E402
from .runner import run, RunCFG, RunOut  # noqa: E402

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "InternalConsistencyError",
    "NumericalDegeneracyError",
    "MVNDist",
    "VoxelData",
    "coords_from_mask",
    "SpatialVB",
    "SpatialVBCFG",
    "SpatialVBRun",
    "run",
    "RunCFG",
    "RunOut",
]
