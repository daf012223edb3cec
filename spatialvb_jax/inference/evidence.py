# spatialvb_jax/inference/evidence.py
"""
Evidence-optimisation (EO) posterior correction.

After the per-location VB update, the posterior of parameter k is
recomputed jointly over all locations from the posteriors obtained
WITHOUT the spatial prior and the spatial precision S_k:

    Sigma_k^-1 = diag(X'X) + S_k
    mu_k       = Sigma_k (X'y - X'X mu_others)

- full: one N x N system per parameter, other parameters held at their
  current posterior means.
- simultaneous: one NP x NP system over all parameters at once. Memory
  grows as (NP)^2; intended for small problems.

Rows of the simultaneous system are ordered parameter-major: k * N + v.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence

import jax.numpy as jnp
from jax.scipy.linalg import block_diag

from ..core.log import warn_once
from ..core.mvn import MVNDist

logger = logging.getLogger(__name__)


def _xytr(without_prior: MVNDist, prior: MVNDist) -> jnp.ndarray:
    # (N, P): precision_wo @ (mean_wo - m0) per location
    return jnp.einsum("nij,nj->ni", without_prior.precisions, without_prior.means - prior.means)


def full_evidence_optimisation(
    posterior: MVNDist,
    without_prior: MVNDist,
    prior: MVNDist,
    spatial_precisions: Sequence[Optional[jnp.ndarray]],
    first_parameter: int = 0,
    use_covariance_marginals: bool = False,
    keep_interparameter_covariances: bool = False,
) -> MVNDist:
    """
    Per-parameter EO correction of a batched posterior.

    Args:
        posterior: (N, P) posterior after the VB update
        without_prior: (N, P) posterior of the same update without any prior
        prior: initial (non-spatial) prior, (P,)
        spatial_precisions: per parameter, (N, N) spatial precision S_k
        first_parameter: parameters below this index are left untouched
        use_covariance_marginals: write Sigma_k(v, v) into a diagonal
            covariance instead of Sigma_k^-1(v, v) into a diagonal precision
        keep_interparameter_covariances: only update the means

    Returns:
        Corrected posterior.
    """
    n_params = posterior.num_params
    prec_wo = without_prior.precisions
    xytr = _xytr(without_prior, prior)
    mu_post = posterior.means - prior.means

    means = posterior.means
    diag_prec = posterior.diag_precisions
    diag_cov = posterior.variances
    for k in range(first_parameter, n_params):
        s_k = spatial_precisions[k]
        if s_k is None:
            raise ValueError(f"No spatial precision for parameter {k}")
        xxtr = prec_wo[:, k, k]
        mu_others = mu_post.at[:, k].set(0.0)
        xxtr_mu_others = jnp.einsum("nj,nj->n", prec_wo[:, k, :], mu_others)

        sigma_inv = jnp.diag(xxtr) + s_k
        sigma = jnp.linalg.inv(sigma_inv)
        mu = sigma @ (xytr[:, k] - xxtr_mu_others)

        means = means.at[:, k].set(mu + prior.means[k])
        diag_prec = diag_prec.at[:, k].set(jnp.diagonal(sigma_inv))
        diag_cov = diag_cov.at[:, k].set(jnp.diagonal(sigma))

    if use_covariance_marginals:
        warn_once(logger, "Full evidence optimisation: writing covariance marginals")
        return MVNDist.diag(means, 1.0 / diag_cov)
    if keep_interparameter_covariances:
        warn_once(logger, "Full evidence optimisation: keeping inter-parameter covariances from VB")
        return posterior.with_means(means)
    warn_once(logger, "Full evidence optimisation: writing precision marginals")
    return MVNDist.diag(means, diag_prec)


def _location_blocks(matrix: jnp.ndarray, n_loc: int, n_params: int) -> jnp.ndarray:
    # (N, P, P) blocks of a parameter-major (NP, NP) matrix
    rows = jnp.arange(n_loc)[:, None] + n_loc * jnp.arange(n_params)[None, :]
    return matrix[rows[:, :, None], rows[:, None, :]]


def simultaneous_evidence_optimisation(
    posterior: MVNDist,
    without_prior: MVNDist,
    prior: MVNDist,
    spatial_precisions: Sequence[jnp.ndarray],
    use_covariance_marginals: bool = False,
) -> MVNDist:
    """
    EO correction solving for all parameters at once.

    The per-location P x P blocks of the joint precision (or covariance)
    become the new per-location precisions (or covariances).
    """
    warn_once(logger, "Using simultaneous evidence optimisation")
    n_loc, n_params = posterior.means.shape
    if any(s is None for s in spatial_precisions):
        raise ValueError("Simultaneous evidence optimisation needs a spatial precision for every parameter")

    ci = block_diag(*spatial_precisions)
    idx = jnp.arange(n_loc)
    xxtr = jnp.zeros((n_loc * n_params, n_loc * n_params))
    for k1 in range(n_params):
        for k2 in range(n_params):
            xxtr = xxtr.at[k1 * n_loc + idx, k2 * n_loc + idx].set(without_prior.precisions[:, k1, k2])
    xytr = _xytr(without_prior, prior).T.reshape(-1)

    sigma_inv = xxtr + ci
    mu = jnp.linalg.solve(sigma_inv, xytr)
    means = mu.reshape(n_params, n_loc).T + prior.means[None, :]

    if use_covariance_marginals:
        covs = _location_blocks(jnp.linalg.inv(sigma_inv), n_loc, n_params)
        return MVNDist(means, jnp.linalg.inv(covs))
    return MVNDist(means, _location_blocks(sigma_inv, n_loc, n_params))
