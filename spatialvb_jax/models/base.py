# spatialvb_jax/models/base.py
"""
Forward models and their linearisation.

A forward model maps a parameter vector (P,) to a predicted time series
(T,). VB updates work on the first-order expansion around a centre:

    g(theta) ~ offset + J (theta - centre)

which `Linearization.at` builds with `jax.jacfwd`. Everything here is
per-location; the engine vectorises over locations with `jax.vmap`.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import jax
import jax.numpy as jnp
from jax.tree_util import register_pytree_node_class

from ..core.mvn import MVNDist

_MODEL_REGISTRY = {}


def register(name: str, obj):
    if name in _MODEL_REGISTRY:
        raise KeyError(f"Forward model '{name}' already registered.")
    _MODEL_REGISTRY[name] = obj


def get(name: str):
    try:
        return _MODEL_REGISTRY[name]
    except KeyError:
        raise KeyError(
            f"Unknown forward model '{name}'. "
            f"Available: {list(_MODEL_REGISTRY.keys())}"
        )


class FwdModel:
    """
    Base class for forward models.

    Subclasses set `num_params` and `param_names` and implement `evaluate`
    (pure, jnp-only so it can be differentiated and vmapped) and
    `initial_dists`.
    """
    name: str = ""
    num_params: int = 0
    param_names: Tuple[str, ...] = ()

    def evaluate(self, params: jnp.ndarray) -> jnp.ndarray:
        raise NotImplementedError

    def initial_dists(self) -> Tuple[MVNDist, MVNDist]:
        """Default (prior, posterior) shared by all locations."""
        raise NotImplementedError

    def init_params(self, posterior: MVNDist, data: jnp.ndarray) -> MVNDist:
        """Data-driven starting posterior for one location. Default: unchanged."""
        return posterior


@register_pytree_node_class
@dataclass(frozen=True)
class Linearization:
    """
    First-order expansion of a forward model around `centre`.

    centre:   (P,)
    offset:   (T,)   g(centre)
    jacobian: (T, P) dg/dtheta at centre
    """
    centre: jnp.ndarray
    offset: jnp.ndarray
    jacobian: jnp.ndarray

    def tree_flatten(self):
        return (self.centre, self.offset, self.jacobian), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        return cls(*children)

    @classmethod
    def at(cls, fn, centre: jnp.ndarray) -> "Linearization":
        centre = jnp.asarray(centre)
        return cls(centre, fn(centre), jax.jacfwd(fn)(centre))

    def predict(self, params: jnp.ndarray) -> jnp.ndarray:
        return self.offset + self.jacobian @ (params - self.centre)
