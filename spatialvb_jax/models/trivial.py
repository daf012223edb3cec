# spatialvb_jax/models/trivial.py
from __future__ import annotations

import jax.numpy as jnp

from ..core.mvn import MVNDist
from .base import FwdModel


class TrivialFwdModel(FwdModel):
    """
    One parameter, constant signal: g(theta) = theta * ones(T).

    Prior is effectively flat; the posterior starts at 0 with precision 10.
    """
    name = "trivial"
    num_params = 1
    param_names = ("p",)

    def __init__(self, num_timepoints: int, prior_precision: float = 1e-12):
        self.num_timepoints = int(num_timepoints)
        self.prior_precision = float(prior_precision)

    def evaluate(self, params):
        return jnp.ones((self.num_timepoints,)) * params[0]

    def initial_dists(self):
        prior = MVNDist.diag(jnp.zeros(1), jnp.array([self.prior_precision]))
        posterior = MVNDist.diag(jnp.zeros(1), jnp.array([10.0]))
        return prior, posterior
