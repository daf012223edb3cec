# spatialvb_jax/spatial/neighbours.py
"""
Grid adjacency from scattered integer coordinates.

Locations are addressed by a linear offset z*xsize*ysize + y*xsize + x.
Because the coordinates are ordered by z, then y, then x, the offsets are
strictly increasing and a neighbour can be found by binary search.

Neighbour lists keep probe order (+x, -x, +y, -y, +z, -z). Second-order
lists keep duplicates: a location reachable through two different
first-order neighbours appears twice. Shrinkage precisions count paths, so
the duplicates matter.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import cached_property
from typing import Tuple

import numpy as np

from ..core.errors import ConfigurationError, InternalConsistencyError
from ..core.log import warn_once

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdjacencyGraph:
    """
    First- and second-order neighbours of each location (0-based indices).

    Built once per run by `build_adjacency`; read-only afterwards.
    """
    neighbours: Tuple[Tuple[int, ...], ...]
    neighbours2: Tuple[Tuple[int, ...], ...]
    spatial_dims: int

    def __len__(self) -> int:
        return len(self.neighbours)

    @cached_property
    def counts(self) -> np.ndarray:
        """Number of first-order neighbours per location, (N,)."""
        return np.array([len(n) for n in self.neighbours], dtype=np.int64)

    @cached_property
    def counts2(self) -> np.ndarray:
        """Number of second-order entries per location (duplicates counted), (N,)."""
        return np.array([len(n) for n in self.neighbours2], dtype=np.int64)

    def edge_index(self, order: int = 1) -> Tuple[np.ndarray, np.ndarray]:
        """
        Directed edges as (src, dst) arrays.

        One edge per list entry: for every location `dst` and every entry `src`
        in its neighbour list. `segment_sum(values[src], dst, N)` then gives the
        per-location sum over neighbours, duplicates included.
        """
        if order == 1:
            lists = self.neighbours
        elif order == 2:
            lists = self.neighbours2
        else:
            raise ValueError(f"order must be 1 or 2, got {order}")
        dst = np.repeat(np.arange(len(lists), dtype=np.int64), [len(n) for n in lists])
        src = np.fromiter((n for ns in lists for n in ns), dtype=np.int64, count=dst.size)
        return src, dst


def is_correctly_ordered(coords) -> bool:
    """
    True when coordinates increase strictly by z, then y, then x.

    For each consecutive pair the signed step
    sign(dx) + 10*sign(dy) + 100*sign(dz) must be positive.
    """
    coords = np.asarray(coords)
    if coords.shape[0] < 2:
        return True
    step = np.sign(np.diff(coords, axis=0))
    d = step[:, 0] + 10 * step[:, 1] + 100 * step[:, 2]
    return bool(np.all(d > 0))


def check_spatial_dims(spatial_dims: int) -> int:
    try:
        dims = int(spatial_dims)
    except (TypeError, ValueError):
        raise ConfigurationError(f"spatial_dims must be an integer, got {spatial_dims!r}")
    if dims != spatial_dims or not 0 <= dims <= 3:
        raise ConfigurationError(f"spatial_dims must be 0, 1, 2 or 3, got {spatial_dims!r}")
    if dims == 1:
        warn_once(logger, "spatial_dims=1 is very unlikely to be a good idea")
    elif dims == 2:
        warn_once(logger, "spatial_dims=2 only smooths within slices")
    return dims


def build_adjacency(coords, spatial_dims: int = 3) -> AdjacencyGraph:
    """
    Build the adjacency graph for integer grid coordinates.

    Args:
        coords: (N, 3) non-negative integers, ordered by z, then y, then x
        spatial_dims: 0..3; the first `2 * spatial_dims` probes are used

    Returns:
        AdjacencyGraph with first- and second-order neighbour lists.

    Raises:
        ConfigurationError: mis-ordered coordinates or bad spatial_dims
        InternalConsistencyError: adjacency turned out asymmetric
    """
    dims = check_spatial_dims(spatial_dims)
    coords = np.asarray(coords, dtype=np.int64)
    if coords.ndim != 2 or coords.shape[1] != 3 or coords.shape[0] == 0:
        raise ConfigurationError(f"coords must be a non-empty (N, 3) array, got shape {coords.shape}")
    if np.any(coords < 0):
        raise ConfigurationError("coords must be non-negative")
    if not is_correctly_ordered(coords):
        raise ConfigurationError(
            "Coordinates must be ordered by z, then y, then x to use adjacency-based priors"
        )

    n_loc = coords.shape[0]
    xsize, ysize, _ = (coords.max(axis=0) + 1).tolist()
    offsets = coords[:, 2] * xsize * ysize + coords[:, 1] * xsize + coords[:, 0]

    # +x, -x, +y, -y, +z, -z
    all_probes = [1, -1, xsize, -xsize, xsize * ysize, -xsize * ysize]
    probes = all_probes[: 2 * dims]

    neighbours = []
    for v in range(n_loc):
        pos = int(offsets[v])
        found = []
        for n, delta in enumerate(probes):
            # Row and slice wrap-around for the x and y probes; z needs none
            # since out-of-range offsets are simply not found.
            if n < 4:
                modulus = abs(all_probes[n + 2])
                if delta > 0 and pos % modulus >= modulus - delta:
                    continue
                if delta < 0 and pos % modulus < -delta:
                    continue
            target = pos + delta
            idx = int(np.searchsorted(offsets, target))
            if idx < n_loc and offsets[idx] == target:
                found.append(idx)
        neighbours.append(tuple(found))

    neighbours2 = []
    for v in range(n_loc):
        second = []
        for n1 in neighbours[v]:
            back = neighbours[n1].count(v)
            if back != 1:
                raise InternalConsistencyError(
                    f"Location {v} appears {back} times in the neighbour list of location {n1}; "
                    "adjacency must be symmetric"
                )
            second.extend(n2 for n2 in neighbours[n1] if n2 != v)
        neighbours2.append(tuple(second))

    logger.debug(f"Built adjacency for {n_loc} locations ({dims} spatial dims)")
    return AdjacencyGraph(tuple(neighbours), tuple(neighbours2), dims)
