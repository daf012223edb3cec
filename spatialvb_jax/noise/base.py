# spatialvb_jax/noise/base.py
from __future__ import annotations

from typing import Any, Protocol, Tuple, runtime_checkable

import jax.numpy as jnp

from ..core.mvn import MVNDist
from ..models.base import Linearization

_NOISE_REGISTRY = {}


def register(name: str, obj):
    if name in _NOISE_REGISTRY:
        raise KeyError(f"Noise model '{name}' already registered.")
    _NOISE_REGISTRY[name] = obj


def get(name: str):
    try:
        return _NOISE_REGISTRY[name]
    except KeyError:
        raise KeyError(
            f"Unknown noise model '{name}'. "
            f"Available: {list(_NOISE_REGISTRY.keys())}"
        )


@runtime_checkable
class NoiseModel(Protocol):
    """
    Per-location VB updates for the model parameters and the noise.

    All methods act on ONE location and must be pure jnp functions of their
    arguments (pytrees), so the engine can `jax.vmap` and `jax.jit` them.

    Contract
    --------
    update_theta returns the new posterior AND the posterior that the same
    data would give without any prior (needed by evidence optimisation).
    """

    def initial_params(self) -> Tuple[Any, Any]:
        """(posterior, prior) noise parameters shared by all locations."""
        ...

    def update_theta(
        self, noise: Any, posterior: MVNDist, prior: MVNDist, linear: Linearization, data: jnp.ndarray
    ) -> Tuple[MVNDist, MVNDist]:
        ...

    def update_noise(
        self, noise: Any, noise_prior: Any, posterior: MVNDist, linear: Linearization, data: jnp.ndarray
    ) -> Any:
        ...

    def free_energy(
        self,
        noise: Any,
        noise_prior: Any,
        posterior: MVNDist,
        prior: MVNDist,
        linear: Linearization,
        data: jnp.ndarray,
    ) -> jnp.ndarray:
        ...
