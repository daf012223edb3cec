# spatialvb_jax/inference/spatialvb.py
"""
Spatial variational Bayes.

Per-location VB with priors that couple neighbouring locations. Each
parameter k carries one prior type (see spatial.priors):

- nonspatial (N, I, A): the usual per-location prior,
- shrinkage (m, M, p, P, S): neighbour-mean prior with a precision
  `akmean_k` estimated in closed form every iteration,
- smoothing (R, D, F): Gaussian-process prior with covariance
  exp(-0.5 D / delta_k), scaled by exp(rho_k); delta (and rho) are found
  by root finding on the evidence or free-energy derivative.

One iteration:
  1. re-estimate akmean (shrinkage)
  2. re-estimate delta / rho (smoothing)
  3. build the spatial precision matrix of each parameter
  4. derive every location's prior from its neighbours' posteriors
  5. VB update of the parameters (noise model), optional evidence-
     optimisation correction, VB update of the noise, re-linearise
  6. convergence test on the summed free energy

Hyperparameter updates are skipped on the first iteration unless
`update_spatial_prior_on_first_iteration` is set. Per-location work is
vectorised with `jax.vmap`.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jax.tree_util import tree_map

from ..core.data import VoxelData
from ..core.errors import ConfigurationError, NumericalDegeneracyError
from ..core.log import warn_once
from ..core.mvn import MVNDist
from ..models.base import Linearization
from ..optimisation.smoothing import (
    DerivEdDelta,
    DerivFdDelta,
    optimize_evidence,
    optimize_smoothing_scale,
)
from ..spatial.covariance import CovarianceCache
from ..spatial.distances import DISTANCE_MEASURES
from ..spatial.neighbours import AdjacencyGraph, build_adjacency, check_spatial_dims
from ..spatial.priors import (
    DEFAULT_PRIOR_TYPES,
    PriorFamily,
    SpatialPriorType,
    expand_prior_types,
    prior_string,
    shrinkage_type,
)
from ..spatial.shrinkage import (
    dirichlet_precision,
    floor_akmean,
    limit_increase,
    second_order_precision,
    shrinkage_location_priors,
    update_akmean,
)
from .base import InferenceMethod
from .evidence import full_evidence_optimisation, simultaneous_evidence_optimisation

logger = logging.getLogger(__name__)

EOMode = Literal["auto", "off", "delta", "full", "simultaneous"]
EO_MODES = ("auto", "off", "delta", "full", "simultaneous")

INITIAL_AKMEAN = 1e-8
DEFAULT_INITIAL_DELTA = 0.5

_T = SpatialPriorType


@dataclass(frozen=True)
class SpatialVBCFG:
    """
    Configuration for spatial VB.

    evidence_optimisation:
      "auto"          full EO when any parameter uses D or R, else off
      "off"           D/R use free-energy optimisation of delta
      "delta"         delta by EO, no posterior correction
      "full"          delta by EO plus per-parameter posterior correction
      "simultaneous"  delta by EO plus joint posterior correction
    max_precision_increase:
      multiplicative ceiling on akmean / delta growth per iteration; -1 disables.
    """
    spatial_dims: int = 3
    prior_types: str = DEFAULT_PRIOR_TYPES
    distance_measure: str = "dist1"
    max_precision_increase: float = -1.0
    fixed_delta: float = -1.0  # required (>= 0) for F; otherwise the initial delta, -1 meaning 0.5
    fixed_rho: float = 0.0
    update_spatial_prior_on_first_iteration: bool = False
    new_delta_evaluations: int = 10
    evidence_optimisation: EOMode = "auto"
    use_covariance_marginals: bool = False
    keep_interparameter_covariances: bool = False
    first_parameter_for_full_eo: int = 0
    always_initial_delta_guess: float = -1.0
    brute_force_delta_search: bool = False
    cache_covariances: bool = True
    calc_free_energy: bool = True
    halt_bad_voxel: bool = False

    def __post_init__(self):
        check_spatial_dims(self.spatial_dims)
        if self.distance_measure not in DISTANCE_MEASURES:
            raise ConfigurationError(
                f"Unrecognised distance measure '{self.distance_measure}'. "
                f"Available: {list(DISTANCE_MEASURES)}"
            )
        if not (self.max_precision_increase == -1 or self.max_precision_increase > 1):
            raise ConfigurationError(
                f"max_precision_increase must be > 1 or -1, got {self.max_precision_increase}"
            )
        if self.fixed_delta < 0 and self.fixed_delta != -1:
            raise ConfigurationError(f"fixed_delta must be >= 0 (or -1 for unset), got {self.fixed_delta}")
        if self.new_delta_evaluations < 1:
            raise ConfigurationError(
                f"new_delta_evaluations must be positive, got {self.new_delta_evaluations}"
            )
        if self.evidence_optimisation not in EO_MODES:
            raise ConfigurationError(
                f"Unknown evidence_optimisation '{self.evidence_optimisation}'. Available: {list(EO_MODES)}"
            )
        if self.use_covariance_marginals and self.keep_interparameter_covariances:
            raise ConfigurationError(
                "use_covariance_marginals and keep_interparameter_covariances are mutually exclusive"
            )
        if self.first_parameter_for_full_eo < 0:
            raise ConfigurationError(
                f"first_parameter_for_full_eo must be >= 0, got {self.first_parameter_for_full_eo}"
            )

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "SpatialVBCFG":
        """
        Build from a command-line style option map (string keys, string or native values).

        Flags are true when present with an empty value, True, or a
        true-like string. Unrecognised keys are ignored (they usually belong
        to the model or the noise).
        """
        kwargs: Dict[str, Any] = {}
        typed = {
            "spatial-dims": ("spatial_dims", int),
            "param-spatial-priors": ("prior_types", str),
            "distance-measure": ("distance_measure", str),
            "spatial-speed": ("max_precision_increase", float),
            "fixed-delta": ("fixed_delta", float),
            "fixed-rho": ("fixed_rho", float),
            "new-delta-iterations": ("new_delta_evaluations", int),
            "always-initial-delta-guess": ("always_initial_delta_guess", float),
        }
        flags = {
            "update-spatial-prior-on-first-iteration": "update_spatial_prior_on_first_iteration",
            "use-covariance-marginals": "use_covariance_marginals",
            "keep-interparameter-covariances": "keep_interparameter_covariances",
            "brute-force-delta-search": "brute_force_delta_search",
            "halt-on-bad-voxel": "halt_bad_voxel",
        }
        for key, value in options.items():
            if key in typed:
                name, conv = typed[key]
                kwargs[name] = _convert(key, value, conv)
            elif key in flags:
                kwargs[flags[key]] = _flag(key, value)

        if "first-parameter-for-full-eo" in options:
            # 1-based on the command line
            kwargs["first_parameter_for_full_eo"] = _convert(
                "first-parameter-for-full-eo", options["first-parameter-for-full-eo"], int
            ) - 1

        def flag(key):
            return key in options and _flag(key, options[key])

        prior_types = kwargs.get("prior_types", DEFAULT_PRIOR_TYPES)
        if flag("use-simultaneous-evidence-optimization"):
            kwargs["evidence_optimisation"] = "simultaneous"
        elif flag("use-full-evidence-optimization"):
            kwargs["evidence_optimisation"] = "full"
        elif not flag("no-eo") and any(c in prior_types for c in "DR"):
            # D/R priors switch full EO on unless explicitly disabled
            if flag("slow-eo"):
                kwargs["evidence_optimisation"] = "simultaneous"
            else:
                warn_once(logger, "Defaulting to full (non-simultaneous) evidence optimisation")
                kwargs["evidence_optimisation"] = "full"
        elif flag("use-evidence-optimization"):
            kwargs["evidence_optimisation"] = "delta"
        elif flag("no-eo"):
            kwargs["evidence_optimisation"] = "off"
        return cls(**kwargs)


def _convert(key: str, value: Any, conv):
    try:
        if conv is int and isinstance(value, str):
            return int(value.strip())
        return conv(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for --{key}: {value!r}")


def _flag(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = "" if value is None else str(value).strip().lower()
    if text in ("", "1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid value for flag --{key}: {value!r}")


@dataclass
class SpatialVBRun:
    """Spatial VB results (per-location arrays are batched over N)."""
    posterior: MVNDist
    posterior_without_prior: Optional[MVNDist]
    prior: MVNDist
    noise: Any
    free_energy: Optional[jnp.ndarray]   # (N,)
    delta: np.ndarray                    # (P,)
    rho: np.ndarray                      # (P,)
    akmean: np.ndarray                   # (P,)
    prior_types: Tuple[SpatialPriorType, ...]
    iterations: int
    objective_trace: list = field(default_factory=list)
    resels: Dict[str, Optional[np.ndarray]] = field(default_factory=dict)


def _where_locations(bad: jnp.ndarray, old: MVNDist, new: MVNDist) -> MVNDist:
    return MVNDist(
        jnp.where(bad[:, None], old.means, new.means),
        jnp.where(bad[:, None, None], old.precisions, new.precisions),
    )


def _finite_locations(dist: MVNDist) -> jnp.ndarray:
    return jnp.all(jnp.isfinite(dist.means), axis=1) & jnp.all(jnp.isfinite(dist.precisions), axis=(1, 2))


class SpatialVB(InferenceMethod):
    """
    Spatial variational Bayes over a grid of locations.

    Examples:
        >>> from spatialvb_jax import SpatialVB, SpatialVBCFG, VoxelData
        >>> from spatialvb_jax.models import TrivialFwdModel
        >>> from spatialvb_jax.noise import WhiteNoiseModel
        >>> from spatialvb_jax.inference import CountingConvergenceDetector
        >>>
        >>> data = VoxelData(Y, coords)
        >>> method = SpatialVB(SpatialVBCFG(prior_types="S"))
        >>> out = method.run(data, TrivialFwdModel(Y.shape[1]), WhiteNoiseModel(),
        ...                  CountingConvergenceDetector(10))
        >>> out.posterior.means  # (N, 1)
    """

    def __init__(self, cfg: SpatialVBCFG = SpatialVBCFG()):
        self.cfg = cfg

    # ------------------------------------------------------------------
    # setup
    # ------------------------------------------------------------------

    def _eo_mode(self, types: Sequence[SpatialPriorType]) -> str:
        mode = self.cfg.evidence_optimisation
        if mode == "auto":
            if any(t.allows_delta for t in types):
                warn_once(logger, "Defaulting to full (non-simultaneous) evidence optimisation")
                return "full"
            return "off"
        return mode

    def _check_inputs(self, data, model, prior, posterior, image_priors, locked_centres, initial_posteriors, types):
        n_loc = len(data)
        n_params = model.num_params
        if prior.means.shape != (n_params,) or prior.precisions.shape != (n_params, n_params):
            raise ConfigurationError(
                f"prior must have means ({n_params},) and precisions ({n_params}, {n_params})"
            )
        if posterior.means.shape != (n_params,):
            raise ConfigurationError(f"posterior must have means ({n_params},)")
        if not prior.is_diagonal():
            raise ConfigurationError("Spatial priors require a diagonal initial prior precision")
        for k, t in enumerate(types):
            if t is _T.IMAGE:
                if image_priors is None or k not in image_priors:
                    raise ConfigurationError(f"Parameter {k} uses an image prior but none was supplied")
                if jnp.shape(image_priors[k]) != (n_loc,):
                    raise ConfigurationError(
                        f"Image prior for parameter {k} must have shape ({n_loc},), "
                        f"got {jnp.shape(image_priors[k])}"
                    )
        if locked_centres is not None and jnp.shape(locked_centres) != (n_loc, n_params):
            raise ConfigurationError(
                f"locked_centres must have shape ({n_loc}, {n_params}), got {jnp.shape(locked_centres)}"
            )
        if initial_posteriors is not None and (
            initial_posteriors.means.shape != (n_loc, n_params)
            or initial_posteriors.precisions.shape != (n_loc, n_params, n_params)
        ):
            raise ConfigurationError(
                f"initial_posteriors must be batched over {n_loc} locations and {n_params} parameters"
            )

    # ------------------------------------------------------------------
    # iteration steps
    # ------------------------------------------------------------------

    def _update_hyperparameters(
        self,
        types,
        names,
        delta: np.ndarray,
        rho: np.ndarray,
        akmean: np.ndarray,
        first: bool,
        use_eo: bool,
        cache: Optional[CovarianceCache],
        prior: MVNDist,
        posterior: MVNDist,
        without_prior: MVNDist,
    ) -> None:
        cfg = self.cfg
        p0 = np.asarray(prior.diag_precisions)
        m0 = np.asarray(prior.means)
        variances = None
        for k, t in enumerate(types):
            if t.family is PriorFamily.NONSPATIAL:
                delta[k], rho[k] = 0.0, 0.0
                logger.info(f"SpatialPrior {k} ({names[k]}) type {t.value} : 0 0 0")
                continue
            if t.is_shrinkage:
                delta[k], rho[k] = -1.0, 0.0
                logger.info(f"SpatialPrior {k} ({names[k]}) type {t.value} : {akmean[k]:g} 0 0")
                continue

            if t is _T.FIXED:
                delta[k], rho[k] = cfg.fixed_delta, cfg.fixed_rho
                if cfg.brute_force_delta_search:
                    if variances is None:
                        variances = posterior.variances
                    cov_ratio = variances[:, k] * p0[k]
                    mdr = (posterior.means[:, k] - m0[k]) * math.sqrt(p0[k])
                    optimize_smoothing_scale(
                        cache, cov_ratio, mdr, delta[k], allow_rho=False, allow_delta=False, brute_force=True
                    )
                logger.info(f"SpatialPrior {k} ({names[k]}) type F : {delta[k]:g} {rho[k]:g} 0")
                continue

            if first and not cfg.update_spatial_prior_on_first_iteration:
                continue

            previous = float(delta[k])
            guess = cfg.always_initial_delta_guess if cfg.always_initial_delta_guess > 0 else previous
            if use_eo:
                new_delta, new_rho = optimize_evidence(
                    cache,
                    without_prior.means,
                    without_prior.precisions,
                    k,
                    float(m0[k]),
                    float(p0[k]),
                    guess,
                    allow_rho=t.allows_rho,
                    new_delta_evaluations=cfg.new_delta_evaluations,
                )
                rho_fn = DerivEdDelta(
                    cache, without_prior.means, without_prior.precisions, k, float(m0[k]), float(p0[k]), t.allows_rho
                ).optimize_rho
                tag = "eo"
            else:
                warn_once(logger, f"Using {t.value} priors without evidence optimisation")
                if variances is None:
                    variances = posterior.variances
                cov_ratio = variances[:, k] * p0[k]
                mdr = (posterior.means[:, k] - m0[k]) * math.sqrt(p0[k])
                new_delta, new_rho = optimize_smoothing_scale(
                    cache,
                    cov_ratio,
                    mdr,
                    guess,
                    allow_rho=t.allows_rho,
                    new_delta_evaluations=cfg.new_delta_evaluations,
                    brute_force=cfg.brute_force_delta_search,
                )
                rho_fn = DerivFdDelta(cache, cov_ratio, mdr, t.allows_rho).optimize_rho
                tag = "vb"

            limited = limit_increase(new_delta, previous, cfg.max_precision_increase, f"delta {k}")
            if limited != new_delta:
                new_delta, new_rho = limited, rho_fn(limited)
            delta[k], rho[k] = new_delta, new_rho
            logger.info(f"SpatialPrior {k} ({names[k]}) type {t.value} {tag} : {new_delta:g} {new_rho:g} 0")

    def _spatial_precisions(
        self,
        types,
        delta: np.ndarray,
        rho: np.ndarray,
        akmean: np.ndarray,
        correction: Optional[str],
        cache: Optional[CovarianceCache],
        prior: MVNDist,
        n_loc: int,
        shrink_matrix: Optional[jnp.ndarray],
    ):
        p0 = np.asarray(prior.diag_precisions)
        out = []
        for k, t in enumerate(types):
            s_k = None
            if t.is_shrinkage:
                if correction is not None:
                    s_k = shrink_matrix * akmean[k]
            elif t.is_smoothing or correction is not None:
                if delta[k] == 0:
                    s_k = jnp.eye(n_loc) * p0[k]
                else:
                    s_k = cache.get_cinv(delta[k]) * math.exp(rho[k]) * p0[k]
            out.append(s_k)
        return out

    def _location_priors(
        self,
        types,
        first: bool,
        prior: MVNDist,
        posterior: MVNDist,
        sinvs,
        akmean: np.ndarray,
        shrink: Optional[SpatialPriorType],
        graph: Optional[AdjacencyGraph],
        sts: Optional[jnp.ndarray],
        image_priors,
    ) -> Tuple[MVNDist, jnp.ndarray]:
        n_loc = posterior.means.shape[0]
        p0 = prior.diag_precisions
        m0 = prior.means
        fard = jnp.zeros(n_loc)

        if shrink is not None:
            s_prec, s_mean = shrinkage_location_priors(
                shrink, graph, posterior.means, jnp.asarray(akmean), prior, sts
            )

        precs, means = [], []
        for k, t in enumerate(types):
            prec_k = jnp.full((n_loc,), p0[k])
            mean_k = jnp.full((n_loc,), m0[k])
            if t.is_shrinkage:
                prec_k, mean_k = s_prec[:, k], s_mean[:, k]
            elif t is _T.ARD:
                if not first:
                    ard = 1.0 / posterior.diag_precisions[:, k] + posterior.means[:, k] ** 2
                    prec_k = 1.0 / ard
                    fard = fard - 2.0 * jnp.log(2.0 / ard)
            elif t is _T.IMAGE:
                mean_k = jnp.asarray(image_priors[k], dtype=mean_k.dtype)
            elif t.is_smoothing:
                s_k = sinvs[k]
                diag = jnp.diagonal(s_k)
                dev = posterior.means[:, k] - m0[k]
                # sum over n != v of S(n, v) (mu_n - m0)
                weighted = s_k.T @ dev - diag * dev
                prec_k = diag
                mean_k = m0[k] - weighted / diag
            precs.append(prec_k)
            means.append(mean_k)

        return MVNDist.diag(jnp.stack(means, axis=1), jnp.stack(precs, axis=1)), fard

    def _keep_finite(self, new: MVNDist, old: MVNDist, what: str) -> MVNDist:
        good = _finite_locations(new)
        if bool(jnp.all(good)):
            return new
        bad = ~good
        idx = np.flatnonzero(np.asarray(bad))
        if self.cfg.halt_bad_voxel:
            raise NumericalDegeneracyError(
                f"Non-finite {what} at {idx.size} locations (first: {idx[:10].tolist()})"
            )
        warn_once(logger, f"Non-finite {what} found; keeping the previous estimate at those locations")
        logger.warning(f"Non-finite {what} at {idx.size} locations (first: {idx[:10].tolist()})")
        return _where_locations(bad, old, new)

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------

    def run(
        self,
        data: VoxelData,
        model,
        noise,
        convergence,
        *,
        prior: Optional[MVNDist] = None,
        posterior: Optional[MVNDist] = None,
        image_priors: Optional[Mapping[int, Any]] = None,
        locked_centres=None,
        initial_posteriors: Optional[MVNDist] = None,
    ) -> SpatialVBRun:
        """
        Run spatial VB to convergence.

        Args:
            data: voxel time series and coordinates
            model: forward model (models.FwdModel)
            noise: noise model (noise.NoiseModel)
            convergence: convergence detector
            prior: initial (non-spatial) prior; default from the model
            posterior: starting posterior; default from the model
            image_priors: {k: (N,) prior means} for parameters of type I
            locked_centres: (N, P) fixed linearisation centres
            initial_posteriors: batched (N, P) posterior to continue from

        Returns:
            SpatialVBRun
        """
        cfg = self.cfg
        n_loc = len(data)
        n_params = model.num_params
        names = tuple(model.param_names) or tuple(str(k) for k in range(n_params))

        # ---- configuration checks (fatal) ----
        types = expand_prior_types(cfg.prior_types, n_params)
        logger.info(f"Spatial prior types: {prior_string(types)}")
        shrink = shrinkage_type(types)
        mode = self._eo_mode(types)
        use_eo = mode in ("delta", "full", "simultaneous")
        correction = mode if mode in ("full", "simultaneous") else None

        if _T.FIXED in types and cfg.fixed_delta < 0:
            raise ConfigurationError("Prior type F needs fixed_delta >= 0")
        initial_delta = DEFAULT_INITIAL_DELTA if cfg.fixed_delta < 0 else cfg.fixed_delta
        if shrink is not None and cfg.spatial_dims == 0:
            raise ConfigurationError("Shrinkage priors need spatial_dims >= 1")
        if correction is not None and shrink in (_T.MRF, _T.MRF2, _T.PENNY):
            raise ConfigurationError(
                f"Evidence optimisation supports shrinkage types S and p only, got {shrink.value}"
            )
        if correction == "simultaneous" and cfg.first_parameter_for_full_eo != 0:
            raise ConfigurationError("Simultaneous evidence optimisation updates every parameter")
        if correction is not None and cfg.first_parameter_for_full_eo >= n_params:
            raise ConfigurationError(
                f"first_parameter_for_full_eo={cfg.first_parameter_for_full_eo} but there are {n_params} parameters"
            )

        default_prior, default_posterior = model.initial_dists()
        prior = default_prior if prior is None else prior
        posterior = default_posterior if posterior is None else posterior
        self._check_inputs(data, model, prior, posterior, image_priors, locked_centres, initial_posteriors, types)

        # ---- spatial structures ----
        graph = build_adjacency(data.coords, cfg.spatial_dims) if shrink is not None else None
        cache = None
        if any(t.is_smoothing for t in types):
            cache = CovarianceCache.from_coords(
                data.coords, cfg.distance_measure, data.voxel_size, retain=cfg.cache_covariances
            )
        sts = second_order_precision(graph) if shrink is _T.SECOND_ORDER else None
        if shrink is _T.SECOND_ORDER:
            warn_once(logger, "Using the 'S' prior with a constant diagonal weight of 1e-06")
        shrink_matrix = sts
        if shrink is _T.DIRICHLET and correction is not None:
            shrink_matrix = dirichlet_precision(graph)

        # ---- per-location state ----
        Y = data.data
        if initial_posteriors is not None:
            post = initial_posteriors
        else:
            post = jax.vmap(model.init_params)(posterior.broadcast(n_loc), Y)
        post_wo = post
        prior_loc = prior.broadcast(n_loc)
        noise_post0, noise_prior0 = noise.initial_params()
        noise_post = tree_map(lambda x: jnp.broadcast_to(x, (n_loc,) + jnp.shape(x)), noise_post0)
        noise_prior = tree_map(lambda x: jnp.broadcast_to(x, (n_loc,) + jnp.shape(x)), noise_prior0)

        linearize = jax.jit(jax.vmap(lambda c: Linearization.at(model.evaluate, c)))
        update_theta = jax.jit(jax.vmap(noise.update_theta))
        update_noise = jax.jit(jax.vmap(noise.update_noise))
        free_energy = jax.jit(jax.vmap(noise.free_energy))

        centres = jnp.asarray(locked_centres) if locked_centres is not None else post.means
        lin = linearize(centres)

        # ---- hyperparameters ----
        akmean = np.full(n_params, INITIAL_AKMEAN)
        delta = np.full(n_params, initial_delta)
        rho = np.zeros(n_params)
        for k, t in enumerate(types):
            if t is _T.FIXED:
                rho[k] = cfg.fixed_rho

        need_f = cfg.calc_free_energy or getattr(convergence, "needs_free_energy", False)
        F = None
        trace = []
        convergence.reset()
        first = True
        iterations = 0

        while True:
            iterations += 1
            logger.debug(f"Spatial VB iteration {iterations}")

            # 1. shrinkage precision
            if shrink is not None and (not first or cfg.update_spatial_prior_on_first_iteration):
                variances = post.variances
                for k, t in enumerate(types):
                    if t is not shrink:
                        continue
                    new = floor_akmean(update_akmean(shrink, graph, post.means[:, k], variances[:, k]), k)
                    akmean[k] = limit_increase(new, akmean[k], cfg.max_precision_increase, f"akmean {k}")
                logger.info(f"New akmean: {akmean.tolist()}")

            # 2. smoothing scales
            self._update_hyperparameters(
                types, names, delta, rho, akmean, first, use_eo, cache, prior, post, post_wo
            )

            # 3. spatial precision matrices
            sinvs = self._spatial_precisions(
                types, delta, rho, akmean, correction, cache, prior, n_loc, shrink_matrix
            )

            # 4. per-location priors
            prior_loc, fard = self._location_priors(
                types, first, prior, post, sinvs, akmean, shrink, graph, sts, image_priors
            )

            # 5. parameter update
            new_post, new_wo = update_theta(noise_post, post, prior_loc, lin, Y)
            post = self._keep_finite(new_post, post, "posterior")
            # the posterior without prior is only read by evidence optimisation
            if use_eo:
                post_wo = self._keep_finite(new_wo, post_wo, "posterior without prior")

            if correction == "full":
                post = full_evidence_optimisation(
                    post,
                    post_wo,
                    prior,
                    sinvs,
                    first_parameter=cfg.first_parameter_for_full_eo,
                    use_covariance_marginals=cfg.use_covariance_marginals,
                    keep_interparameter_covariances=cfg.keep_interparameter_covariances,
                )
            elif correction == "simultaneous":
                post = simultaneous_evidence_optimisation(
                    post, post_wo, prior, sinvs, use_covariance_marginals=cfg.use_covariance_marginals
                )

            # noise update and re-linearisation
            noise_post = update_noise(noise_post, noise_prior, post, lin, Y)
            if locked_centres is None:
                lin = linearize(post.means)

            # 6. convergence
            if need_f:
                F = free_energy(noise_post, noise_prior, post, prior_loc, lin, Y) + fard
                objective = float(jnp.sum(F))
            else:
                objective = math.nan
            trace.append(objective)
            first = False
            if convergence.test(objective):
                break

        resels = self._coefficient_resels(post, post_wo if use_eo else None, prior_loc, names)

        return SpatialVBRun(
            posterior=post,
            posterior_without_prior=post_wo if use_eo else None,
            prior=prior_loc,
            noise=noise_post,
            free_energy=F,
            delta=delta,
            rho=rho,
            akmean=akmean,
            prior_types=types,
            iterations=iterations,
            objective_trace=trace,
            resels=resels,
        )

    @staticmethod
    def _coefficient_resels(post: MVNDist, post_wo: Optional[MVNDist], prior_loc: MVNDist, names):
        """Mean per-location effective degrees of freedom of each parameter (Penny et al. 2005)."""
        post_var = post.variances
        gamma_vb = np.asarray(jnp.mean(1.0 - post_var * prior_loc.diag_precisions, axis=0))
        gamma_eo = None
        if post_wo is not None:
            gamma_eo = np.asarray(jnp.mean(post_var / post_wo.variances, axis=0))
        for k, name in enumerate(names):
            eo = f"{gamma_eo[k]:g}" if gamma_eo is not None else "n/a"
            logger.info(f"Coefficient resels per location for {name}: {gamma_vb[k]:g} (vb) or {eo} (eo)")
        return {"vb": gamma_vb, "eo": gamma_eo}
