# spatialvb_jax/spatial/covariance.py
"""
Distance-derived covariance matrices and their inverses, cached by the
smoothing scale delta.

    C(delta)      = exp(-0.5 * D / delta)      (identity at delta = 0)
    C^-1(delta)   cached
    C^-1 (C o D) C^-1, tr(C^-1 (C o D))        cached

The cache is owned by one engine run. Population of a key is serialised
with a per-key lock so concurrent callers compute each inverse once.
"""
from __future__ import annotations

import bisect
import logging
import threading
from typing import Dict, Optional, Sequence, Tuple

import jax.numpy as jnp

from ..core.errors import InternalConsistencyError
from ..core.log import warn_once
from .distances import DistanceMeasure, distance_matrix

logger = logging.getLogger(__name__)

# Relative asymmetry tolerated in C^-1 (C o D) C^-1 before symmetrising.
SYMMETRY_TOLERANCE = 1e-5


class CovarianceCache:
    """
    Memoised C^-1(delta) and C^-1 (C o D) C^-1 for one distance matrix.

    Args:
        distances: (N, N) symmetric distance matrix
        retain: keep every computed delta. With retain=False only the most
            recently computed delta is held, bounding memory to one entry.
    """

    def __init__(self, distances, retain: bool = True):
        self._dist = jnp.asarray(distances, dtype=jnp.float64)
        if self._dist.ndim != 2 or self._dist.shape[0] != self._dist.shape[1]:
            raise ValueError(f"distances must be square, got shape {self._dist.shape}")
        self.retain = retain
        self._cinv: Dict[float, jnp.ndarray] = {}
        self._ci_codist_ci: Dict[float, Tuple[jnp.ndarray, float]] = {}
        self._locks: Dict[Tuple[str, float], threading.Lock] = {}
        self._guard = threading.Lock()

    @classmethod
    def from_coords(
        cls,
        coords,
        measure: DistanceMeasure = "dist1",
        voxel_size: Sequence[float] = (1.0, 1.0, 1.0),
        retain: bool = True,
    ) -> "CovarianceCache":
        return cls(distance_matrix(coords, measure, voxel_size), retain=retain)

    @property
    def distances(self) -> jnp.ndarray:
        return self._dist

    @property
    def num_locations(self) -> int:
        return self._dist.shape[0]

    def cached_deltas(self) -> Tuple[float, ...]:
        return tuple(sorted(self._cinv))

    # ---- locking ----

    def _lock_for(self, kind: str, delta: float) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((kind, delta), threading.Lock())

    def _store(self, table: dict, delta: float, value) -> None:
        if not self.retain:
            table.clear()
            with self._guard:
                self._locks = {k: lk for k, lk in self._locks.items() if k[1] == delta}
        table[delta] = value

    # ---- matrices ----

    def get_c(self, delta: float) -> jnp.ndarray:
        """Covariance exp(-0.5 D / delta); identity for delta = 0."""
        delta = float(delta)
        if delta < 0:
            raise ValueError(f"delta must be non-negative, got {delta}")
        if delta == 0.0:
            return jnp.eye(self.num_locations, dtype=self._dist.dtype)
        return jnp.exp(-0.5 * self._dist / delta)

    def get_cinv(self, delta: float) -> jnp.ndarray:
        """Inverse covariance at `delta`, computed once and cached."""
        delta = float(delta)
        cached = self._cinv.get(delta)
        if cached is not None:
            return cached
        with self._lock_for("cinv", delta):
            cached = self._cinv.get(delta)
            if cached is not None:
                return cached
            c = self.get_c(delta)
            cinv = jnp.linalg.inv(c)
            if not bool(jnp.all(jnp.isfinite(cinv))):
                warn_once(
                    logger,
                    f"Spatial covariance is numerically singular (delta={delta:g}); "
                    "falling back to the pseudo-inverse",
                )
                cinv = jnp.linalg.pinv(c, hermitian=True)
            self._store(self._cinv, delta, cinv)
            return cinv

    def get_ci_codist_ci(self, delta: float) -> Tuple[jnp.ndarray, float]:
        """
        C^-1 (C o D) C^-1 and tr(C^-1 (C o D)) at `delta`.

        The product is symmetrised; an asymmetry larger than
        SYMMETRY_TOLERANCE * max|M| means the inverse is broken.
        """
        delta = float(delta)
        cached = self._ci_codist_ci.get(delta)
        if cached is not None:
            return cached
        with self._lock_for("cicodistci", delta):
            cached = self._ci_codist_ci.get(delta)
            if cached is not None:
                return cached
            cinv = self.get_cinv(delta)
            ci_codist = cinv @ (self.get_c(delta) * self._dist)
            trace = float(jnp.trace(ci_codist))
            m = ci_codist @ cinv
            m_sym = 0.5 * (m + m.T)
            scale = float(jnp.max(jnp.abs(m)))
            err = float(jnp.max(jnp.abs(m_sym - m)))
            if err > SYMMETRY_TOLERANCE * scale:
                raise InternalConsistencyError(
                    f"C^-1 (C o D) C^-1 is not symmetric at delta={delta:g}: "
                    f"max asymmetry {err:g} vs scale {scale:g}"
                )
            value = (m_sym, trace)
            self._store(self._ci_codist_ci, delta, value)
            return value

    def get_cached_in_range(
        self,
        guess: float,
        lower: float,
        upper: float,
        allow_endpoints: bool = False,
    ) -> Optional[float]:
        """
        A cached delta inside (lower, upper), preferring the one closest to `guess`.

        Endpoints qualify only when `allow_endpoints`. Returns None when no
        cached delta lies in the interval.
        """
        if not lower < guess < upper:
            raise ValueError(f"guess {guess} must lie strictly inside ({lower}, {upper})")
        keys = sorted(self._cinv)
        start = bisect.bisect_left(keys, lower) if allow_endpoints else bisect.bisect_right(keys, lower)
        best = None
        for key in keys[start:]:
            if key > upper or (key == upper and not allow_endpoints):
                break
            # Ascending scan: take keys below the guess, then the first key
            # above it if that one is closer.
            if best is None or key < guess or key - guess < guess - best:
                best = key
        return best
