# spatialvb_jax/core/__init__.py
from .errors import (
    ConfigurationError,
    InternalConsistencyError,
    NumericalDegeneracyError,
)
from .mvn import MVNDist
from .data import VoxelData, coords_from_mask
from .log import warn_once, reset_warnings

__all__ = [
    "ConfigurationError",
    "InternalConsistencyError",
    "NumericalDegeneracyError",
    "MVNDist",
    "VoxelData",
    "coords_from_mask",
    "warn_once",
    "reset_warnings",
]
