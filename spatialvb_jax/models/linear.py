# spatialvb_jax/models/linear.py
from __future__ import annotations

from typing import Optional, Sequence

import jax.numpy as jnp

from ..core.errors import ConfigurationError
from ..core.mvn import MVNDist
from .base import FwdModel


class LinearFwdModel(FwdModel):
    """
    Fixed design matrix: g(theta) = X theta + offset.

    Args:
        design: (T, P) design matrix
        offset: optional (T,) baseline
        prior_precision: diagonal prior precision per parameter
        param_names: optional names, default ("beta0", "beta1", ...)
    """
    name = "linear"

    def __init__(
        self,
        design,
        offset=None,
        prior_precision=1e-12,
        param_names: Optional[Sequence[str]] = None,
    ):
        design = jnp.asarray(design, dtype=jnp.float64)
        if design.ndim != 2:
            raise ConfigurationError(f"design must be (T, P), got shape {design.shape}")
        self.design = design
        self.offset = jnp.zeros(design.shape[0]) if offset is None else jnp.asarray(offset)
        self.num_params = design.shape[1]
        self.prior_precision = jnp.broadcast_to(jnp.asarray(prior_precision, dtype=jnp.float64), (self.num_params,))
        if param_names is None:
            param_names = tuple(f"beta{i}" for i in range(self.num_params))
        if len(param_names) != self.num_params:
            raise ConfigurationError(
                f"{len(param_names)} parameter names for {self.num_params} parameters"
            )
        self.param_names = tuple(param_names)

    def evaluate(self, params):
        return self.offset + self.design @ params

    def initial_dists(self):
        zeros = jnp.zeros(self.num_params)
        prior = MVNDist.diag(zeros, self.prior_precision)
        posterior = MVNDist.diag(zeros, jnp.full((self.num_params,), 10.0))
        return prior, posterior
