# spatialvb_jax/models/exponential.py
from __future__ import annotations

import jax.numpy as jnp

from ..core.mvn import MVNDist
from .base import FwdModel


class ExpDecayFwdModel(FwdModel):
    """
    Mono-exponential decay: g(amp, rate) = amp * exp(-rate * t).

    Nonlinear in `rate`, so the linearisation centre matters.
    """
    name = "exp"
    num_params = 2
    param_names = ("amp", "rate")

    def __init__(self, times, amp_precision: float = 1e-6, rate_mean: float = 1.0, rate_precision: float = 1.0):
        self.times = jnp.asarray(times, dtype=jnp.float64)
        self.amp_precision = float(amp_precision)
        self.rate_mean = float(rate_mean)
        self.rate_precision = float(rate_precision)

    def evaluate(self, params):
        return params[0] * jnp.exp(-params[1] * self.times)

    def initial_dists(self):
        means = jnp.array([0.0, self.rate_mean])
        prior = MVNDist.diag(means, jnp.array([self.amp_precision, self.rate_precision]))
        posterior = MVNDist.diag(means, jnp.array([self.amp_precision * 10, self.rate_precision * 10]))
        return prior, posterior

    def init_params(self, posterior, data):
        # Start the amplitude at the first sample.
        return posterior.with_means(posterior.means.at[0].set(data[0]))
