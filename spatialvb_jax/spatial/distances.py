# spatialvb_jax/spatial/distances.py
from __future__ import annotations

import logging
from typing import Literal, Sequence

import jax.numpy as jnp
import numpy as np

from ..core.errors import ConfigurationError
from ..core.log import warn_once

logger = logging.getLogger(__name__)

DistanceMeasure = Literal["dist1", "dist2", "mdist"]

DISTANCE_MEASURES = ("dist1", "dist2", "mdist")

# Dense N x N matrices are held per cached delta; above this, say so.
LARGE_N_WARNING = 7500


def distance_matrix(
    coords,
    measure: DistanceMeasure = "dist1",
    voxel_size: Sequence[float] = (1.0, 1.0, 1.0),
) -> jnp.ndarray:
    """
    Pairwise distances between locations.

    Args:
        coords: (N, 3) integer grid coordinates
        measure: "dist1" Euclidean, "dist2" near-squared Euclidean
            ((sum d^2)^0.995, kept just below 1 so the covariance stays
            positive definite), "mdist" Manhattan
        voxel_size: per-axis scale from grid index to millimetres

    Returns:
        Symmetric (N, N) float64 array with a zero diagonal.
    """
    if measure not in DISTANCE_MEASURES:
        raise ConfigurationError(
            f"Unrecognised distance measure '{measure}'. Available: {list(DISTANCE_MEASURES)}"
        )
    pos = np.asarray(coords, dtype=np.float64) * np.asarray(voxel_size, dtype=np.float64)
    n_loc = pos.shape[0]
    if n_loc > LARGE_N_WARNING:
        gb = 2.5 * n_loc * n_loc * 8 / 1e9
        logger.warning(
            f"{n_loc} locations: spatial covariance matrices will need roughly {gb:.1f} GB of memory"
        )

    pos = jnp.asarray(pos)
    diff = pos[:, None, :] - pos[None, :, :]
    if measure == "dist1":
        dist = jnp.sqrt(jnp.sum(diff ** 2, axis=-1))
    elif measure == "dist2":
        dist = jnp.sum(diff ** 2, axis=-1) ** 0.995
    else:
        warn_once(logger, "Manhattan distances may lead to numerical problems in the spatial covariance")
        dist = jnp.sum(jnp.abs(diff), axis=-1)

    logger.info(f"Using distance measure '{measure}' for {n_loc} locations")
    return dist
