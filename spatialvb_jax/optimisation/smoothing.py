# spatialvb_jax/optimisation/smoothing.py
"""
Smoothing-scale (delta) and amplitude (rho) estimation for distance-based
spatial priors.

The spatial precision of parameter k is  S_k = exp(rho) C^-1(delta) p0_k.
delta is found as the zero of a derivative that is decreasing in delta:

- DerivEdDelta: derivative of the evidence, using the per-location
  posteriors computed without the spatial prior (evidence optimisation).
- DerivFdDelta: derivative of the free energy, using the ratios of
  posterior to prior moments.

For each delta, rho has a closed form; DerivFdRho is the search fallback
when that closed form is not finite.
"""
from __future__ import annotations

import logging
import math
from typing import List, Optional, Tuple

import jax.numpy as jnp

from ..core.log import warn_once
from ..spatial.covariance import CovarianceCache
from .zero_finder import (
    BisectionGuesstimator,
    DescendingZeroFinder,
    Function1D,
    LogBisectionGuesstimator,
    ZeroFinderCFG,
)

logger = logging.getLogger(__name__)

# Below ~0.05 inversions become painfully slow; above 1e3 the evidence is flat.
EVIDENCE_DELTA_RANGE = (0.05, 1e3)
# Above 1e15, exp(-0.5 / delta) == 1 and C is singular.
FREE_ENERGY_DELTA_RANGE = (0.2, 1e15)
RHO_RANGE = (-70.0, 70.0)
DELTA_RATIO_TOL = 1.01


class DerivFdRho(Function1D):
    """dF/drho at fixed delta."""

    def __init__(self, cache: CovarianceCache, cov_ratio, mean_diff_ratio, delta: float):
        self.cache = cache
        self.cov_ratio = jnp.asarray(cov_ratio)
        self.mean_diff_ratio = jnp.asarray(mean_diff_ratio)
        self.delta = float(delta)

    def __call__(self, rho: float) -> float:
        cinv = self.cache.get_cinv(self.delta)
        n_loc = self.cache.num_locations
        scale = math.exp(rho)
        tr = float(jnp.sum(self.cov_ratio * jnp.diagonal(cinv)))
        quad = float(self.mean_diff_ratio @ cinv @ self.mean_diff_ratio)
        return 0.5 * n_loc - 0.5 * scale * tr - 0.5 * scale * quad


class DerivFdDelta(Function1D):
    """
    dF/ddelta with rho optimised out.

    Args:
        cache: covariance cache for the run
        cov_ratio: (N,) posterior variance / prior variance of the parameter
        mean_diff_ratio: (N,) (posterior mean - prior mean) / prior std
        allow_rho: estimate rho (type 'R'); otherwise rho = 0
    """

    def __init__(self, cache: CovarianceCache, cov_ratio, mean_diff_ratio, allow_rho: bool = True):
        self.cache = cache
        self.cov_ratio = jnp.asarray(cov_ratio)
        self.mean_diff_ratio = jnp.asarray(mean_diff_ratio)
        self.allow_rho = allow_rho

    def pick_faster_guess(self, guess: float, lower: float, upper: float) -> Optional[float]:
        return self.cache.get_cached_in_range(guess, lower, upper)

    def optimize_rho(self, delta: float) -> float:
        if not self.allow_rho:
            return 0.0
        cinv = self.cache.get_cinv(delta)
        n_loc = self.cache.num_locations
        # Ignores the hyperprior on rho; the difference is negligible in practice.
        tmp = float(jnp.sum(self.cov_ratio * jnp.diagonal(cinv))) + float(
            self.mean_diff_ratio @ cinv @ self.mean_diff_ratio
        )
        if tmp > 0:
            rho = -math.log(tmp / n_loc)
            if math.isfinite(rho):
                return rho
        # A broken inverse can make tmp negative: search instead.
        warn_once(logger, "Closed-form rho was not finite; searching for rho instead")
        fcn = DerivFdRho(self.cache, self.cov_ratio, self.mean_diff_ratio, delta)
        cfg = ZeroFinderCFG(
            initial_guess=1.0,
            tol_y=1e-4,
            tol_x=1e-3,
            search_min=RHO_RANGE[0],
            search_max=RHO_RANGE[1],
        )
        return DescendingZeroFinder(fcn, cfg, BisectionGuesstimator()).find_zero().x

    def __call__(self, delta: float) -> float:
        rho = self.optimize_rho(delta)
        m, trace = self.cache.get_ci_codist_ci(delta)
        scale = math.exp(rho)
        out = trace
        out -= scale * float(jnp.sum(self.cov_ratio * jnp.diagonal(m)))
        out -= scale * float(self.mean_diff_ratio @ m @ self.mean_diff_ratio)
        return out / (-4.0 * delta * delta)


class DerivEdDelta(Function1D):
    """
    Evidence derivative d/ddelta for parameter k.

    Uses the per-location posteriors computed without the spatial prior:
    X'X = precision_kk and X'y = precision_kk (mean_k - m0_k), both
    rescaled so the prior on parameter k has unit variance.

    Args:
        cache: covariance cache for the run
        means_wo: (N, P) posterior means without the spatial prior
        precisions_wo: (N, P, P) posterior precisions without the spatial prior
        k: parameter index
        prior_mean: initial prior mean of parameter k
        prior_precision: initial prior precision of parameter k
        allow_rho: estimate rho (type 'R'); otherwise rho = 0
    """

    def __init__(
        self,
        cache: CovarianceCache,
        means_wo,
        precisions_wo,
        k: int,
        prior_mean: float,
        prior_precision: float,
        allow_rho: bool = False,
    ):
        self.cache = cache
        self.allow_rho = allow_rho
        prec_kk = jnp.asarray(precisions_wo)[:, k, k]
        diff = jnp.asarray(means_wo)[:, k] - prior_mean
        self.xxtr = prec_kk / prior_precision
        self.xytr = self.xxtr * diff * math.sqrt(prior_precision)

    def pick_faster_guess(self, guess: float, lower: float, upper: float) -> Optional[float]:
        return self.cache.get_cached_in_range(guess, lower, upper)

    def _sigma_mu(self, delta: float) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
        cinv = self.cache.get_cinv(delta)
        sigma = jnp.linalg.inv(jnp.diag(self.xxtr) + cinv)
        return cinv, sigma, sigma @ self.xytr

    def optimize_rho(self, delta: float) -> float:
        if not self.allow_rho:
            return 0.0
        cinv, sigma, mu = self._sigma_mu(delta)
        n_loc = self.cache.num_locations
        rho = -math.log(float(jnp.trace((sigma + jnp.outer(mu, mu)) @ cinv)) / n_loc)
        logger.debug(f"rho = {rho:g} at delta = {delta:g}")
        return rho

    def __call__(self, delta: float) -> float:
        m, trace = self.cache.get_ci_codist_ci(delta)
        _, sigma, mu = self._sigma_mu(delta)
        out = trace
        out -= float(jnp.sum(sigma * m))  # tr(Sigma M) for symmetric M
        out -= float(mu @ m @ mu)
        return out / (-4.0 * delta * delta)


def optimize_evidence(
    cache: CovarianceCache,
    means_wo,
    precisions_wo,
    k: int,
    prior_mean: float,
    prior_precision: float,
    guess: float,
    allow_rho: bool = False,
    new_delta_evaluations: int = 10,
) -> Tuple[float, float]:
    """
    delta (and rho) for parameter k by evidence optimisation.

    Returns:
        (delta, rho); rho is 0 when `allow_rho` is False.
    """
    fcn = DerivEdDelta(cache, means_wo, precisions_wo, k, prior_mean, prior_precision, allow_rho)
    lo, hi = EVIDENCE_DELTA_RANGE
    guess = min(max(float(guess), lo), hi)
    cfg = ZeroFinderCFG(
        initial_guess=guess,
        initial_scale=guess * 0.009,
        scale_growth=16.0,
        search_min=lo,
        search_max=hi,
        ratio_tol_x=DELTA_RATIO_TOL,
        max_evaluations=2 + new_delta_evaluations,
    )
    delta = DescendingZeroFinder(fcn, cfg, LogBisectionGuesstimator()).find_zero().x
    warn_once(logger, f"Hard limits on delta: [{lo:g}, {hi:g}]")
    return delta, fcn.optimize_rho(delta)


def brute_force_delta_profile(
    cache: CovarianceCache,
    cov_ratio,
    mean_diff_ratio,
    start: float = 1e-3,
    stop: float = 1e4,
) -> List[Tuple[float, float, float, float]]:
    """
    Free-energy terms over a log grid of delta (diagnostics only).

    Rows are (delta, -0.5 log|C|, -0.5 tr(C^-1 diag(cr)), -0.5 mdr' C^-1 mdr),
    with delta multiplied by sqrt(2) each step. Each row is also logged.
    """
    cov_ratio = jnp.asarray(cov_ratio)
    mdr = jnp.asarray(mean_diff_ratio)
    rows = []
    delta = start
    logger.info("Brute-force delta profile: delta, -0.5 logdet C, -0.5 tr(Cinv cr), -0.5 mdr' Cinv mdr")
    while delta < stop:
        _, logdet = jnp.linalg.slogdet(cache.get_c(delta))
        cinv = cache.get_cinv(delta)
        row = (
            delta,
            -0.5 * float(logdet),
            -0.5 * float(jnp.sum(cov_ratio * jnp.diagonal(cinv))),
            -0.5 * float(mdr @ cinv @ mdr),
        )
        logger.info("BRUTEFORCE=" + "\t".join(f"{x:g}" for x in row))
        rows.append(row)
        delta *= math.sqrt(2.0)
    return rows


def optimize_smoothing_scale(
    cache: CovarianceCache,
    cov_ratio,
    mean_diff_ratio,
    guess: float,
    allow_rho: bool = True,
    allow_delta: bool = True,
    new_delta_evaluations: int = 10,
    brute_force: bool = False,
) -> Tuple[float, float]:
    """
    delta (and rho) for one parameter by free-energy optimisation.

    With allow_delta=False the guess is returned unchanged, together with
    rho re-optimised at that delta.
    """
    fcn = DerivFdDelta(cache, cov_ratio, mean_diff_ratio, allow_rho)
    if brute_force:
        brute_force_delta_profile(cache, cov_ratio, mean_diff_ratio)

    if not allow_delta:
        return float(guess), fcn.optimize_rho(guess)

    lo, hi = FREE_ENERGY_DELTA_RANGE
    cfg = ZeroFinderCFG(
        initial_guess=guess,
        search_min=lo,
        search_max=hi,
        ratio_tol_x=DELTA_RATIO_TOL,
        max_evaluations=2 + new_delta_evaluations,
    )
    delta = DescendingZeroFinder(fcn, cfg, LogBisectionGuesstimator()).find_zero().x
    return delta, fcn.optimize_rho(delta)
