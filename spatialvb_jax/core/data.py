# spatialvb_jax/core/data.py
"""
Data view layer.

Voxel time series plus their integer grid coordinates. Containers only:
no model assumptions and no inference logic.

Layout:
  data:   (N, T) one row per location, one column per timepoint
  coords: (N, 3) integer (x, y, z), ordered by z, then y, then x
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Union

import jax.numpy as jnp
import numpy as np

from .errors import ConfigurationError


@dataclass(frozen=True)
class VoxelData:
    """
    Per-location observations on an integer grid.

    voxel_size scales integer coordinates into physical distances (mm);
    it only matters for distance-based (evidence) priors.
    """
    data: jnp.ndarray           # (N, T)
    coords: np.ndarray          # (N, 3) int
    voxel_size: tuple = field(default=(1.0, 1.0, 1.0))

    def __post_init__(self):
        data = jnp.asarray(self.data)
        coords = np.asarray(self.coords)
        if data.ndim == 1:
            data = data[:, None]
        if data.ndim != 2:
            raise ConfigurationError(f"data must be (N, T), got shape {data.shape}")
        if coords.ndim != 2 or coords.shape[1] != 3:
            raise ConfigurationError(f"coords must be (N, 3), got shape {coords.shape}")
        if coords.shape[0] != data.shape[0]:
            raise ConfigurationError(
                f"coords describe {coords.shape[0]} locations but data has {data.shape[0]}"
            )
        if len(self.voxel_size) != 3:
            raise ConfigurationError(f"voxel_size must have 3 entries, got {self.voxel_size}")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "coords", coords.astype(np.int64))
        object.__setattr__(self, "voxel_size", tuple(float(s) for s in self.voxel_size))

    @classmethod
    def from_volume(cls, volume, mask=None, voxel_size: Sequence[float] = (1.0, 1.0, 1.0)) -> "VoxelData":
        """
        Build from a 4D (X, Y, Z, T) array, keeping voxels where `mask` is nonzero.

        Without a mask every voxel is kept.
        """
        volume = np.asarray(volume)
        if volume.ndim == 3:
            volume = volume[..., None]
        if volume.ndim != 4:
            raise ConfigurationError(f"volume must be (X, Y, Z, T), got shape {volume.shape}")
        if mask is None:
            mask = np.ones(volume.shape[:3], dtype=bool)
        coords = coords_from_mask(mask)
        data = volume[coords[:, 0], coords[:, 1], coords[:, 2], :]
        return cls(jnp.asarray(data), coords, tuple(voxel_size))

    @property
    def num_timepoints(self) -> int:
        return self.data.shape[1]

    def location(self, v: int) -> jnp.ndarray:
        """Time series for location v, (T,)."""
        return self.data[v]

    def __len__(self) -> int:
        return self.data.shape[0]


def coords_from_mask(mask: Union[np.ndarray, jnp.ndarray]) -> np.ndarray:
    """
    Integer (x, y, z) coordinates of the nonzero entries of a 3D mask.

    Rows come out ordered by z, then y, then x, which is the order the
    adjacency builder requires.
    """
    mask = np.asarray(mask)
    if mask.ndim != 3:
        raise ConfigurationError(f"mask must be 3D (X, Y, Z), got shape {mask.shape}")
    # Transposing to (Z, Y, X) makes nonzero() return rows in z-major order.
    z, y, x = np.nonzero(np.transpose(mask != 0, (2, 1, 0)))
    return np.stack([x, y, z], axis=1).astype(np.int64)
