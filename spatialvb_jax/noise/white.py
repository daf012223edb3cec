# spatialvb_jax/noise/white.py
"""
Gaussian white noise with a Gamma prior on the noise precision phi.

    y = g(theta) + e,   e ~ N(0, phi^-1 I),   phi ~ Ga(shape c, scale s)

Under the linearisation g(theta) ~ offset + J (theta - centre) all VB
updates are closed form (Chappell et al. 2009).
"""
from __future__ import annotations

from dataclasses import dataclass

import jax.numpy as jnp
from jax.scipy.special import digamma, gammaln
from jax.tree_util import register_pytree_node_class

from ..core.mvn import MVNDist
from ..models.base import Linearization


@register_pytree_node_class
@dataclass(frozen=True)
class WhiteNoiseParams:
    """Gamma distribution on the noise precision: mean = scale * shape."""
    scale: jnp.ndarray
    shape: jnp.ndarray

    def tree_flatten(self):
        return (self.scale, self.shape), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        return cls(*children)

    @property
    def mean_precision(self) -> jnp.ndarray:
        return self.scale * self.shape


class WhiteNoiseModel:
    """
    White noise VB updates.

    Args:
        prior_scale, prior_shape: Gamma prior on phi (default: mean 1, very broad)
    """
    name = "white"

    def __init__(self, prior_scale: float = 1e6, prior_shape: float = 1e-6):
        self.prior_scale = float(prior_scale)
        self.prior_shape = float(prior_shape)

    def initial_params(self):
        prior = WhiteNoiseParams(jnp.asarray(self.prior_scale), jnp.asarray(self.prior_shape))
        return prior, prior

    @staticmethod
    def _working_data(linear: Linearization, data):
        # Data in the linear model's frame: y - offset + J centre = J theta + e
        return data - linear.offset + linear.jacobian @ linear.centre

    def update_theta(self, noise, posterior, prior, linear, data):
        phi = noise.mean_precision
        J = linear.jacobian
        k = self._working_data(linear, data)
        jtj = phi * (J.T @ J)
        jty = phi * (J.T @ k)

        precisions = prior.precisions + jtj
        means = jnp.linalg.solve(precisions, prior.precisions @ prior.means + jty)
        without_prior = MVNDist(jnp.linalg.solve(jtj, jty), jtj)
        return MVNDist(means, precisions), without_prior

    def update_noise(self, noise, noise_prior, posterior, linear, data):
        J = linear.jacobian
        resid = data - linear.predict(posterior.means)
        cov = jnp.linalg.inv(posterior.precisions)
        n_t = data.shape[0]
        inv_scale = 1.0 / noise_prior.scale + 0.5 * (resid @ resid + jnp.trace(cov @ (J.T @ J)))
        shape = noise_prior.shape + 0.5 * n_t
        return WhiteNoiseParams(1.0 / inv_scale, shape)

    def free_energy(self, noise, noise_prior, posterior, prior, linear, data):
        J = linear.jacobian
        n_t = data.shape[0]
        n_p = posterior.means.shape[0]
        resid = data - linear.predict(posterior.means)
        cov = jnp.linalg.inv(posterior.precisions)
        s, c = noise.scale, noise.shape
        s0, c0 = noise_prior.scale, noise_prior.shape

        # E[log p(y | theta, phi)]
        expected_loglik = (
            -0.5 * s * c * (resid @ resid + jnp.trace(cov @ (J.T @ J)))
            + 0.5 * n_t * (digamma(c) + jnp.log(s))
            - 0.5 * n_t * jnp.log(2.0 * jnp.pi)
        )

        # KL(q(theta) || p(theta))
        dm = posterior.means - prior.means
        _, logdet_post = jnp.linalg.slogdet(posterior.precisions)
        _, logdet_prior = jnp.linalg.slogdet(prior.precisions)
        kl_theta = 0.5 * (
            jnp.trace(prior.precisions @ cov) + dm @ prior.precisions @ dm - n_p + logdet_post - logdet_prior
        )

        # KL(q(phi) || p(phi)) for Gamma(shape, scale)
        kl_phi = (
            (c - c0) * (digamma(c) + jnp.log(s))
            - c
            - gammaln(c)
            - c * jnp.log(s)
            + c * s / s0
            + gammaln(c0)
            + c0 * jnp.log(s0)
        )
        return expected_loglik - kl_theta - kl_phi
