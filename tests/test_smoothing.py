import jax.numpy as jnp
import numpy as np
import pytest

from spatialvb_jax.core.data import coords_from_mask
from spatialvb_jax.optimisation.smoothing import (
    EVIDENCE_DELTA_RANGE,
    DerivEdDelta,
    DerivFdDelta,
    brute_force_delta_profile,
    optimize_evidence,
    optimize_smoothing_scale,
)
from spatialvb_jax.spatial.covariance import CovarianceCache


def _cache():
    coords = coords_from_mask(np.ones((4, 4, 2), dtype=bool))
    return CovarianceCache.from_coords(coords, "dist1")


def test_closed_form_rho_for_independent_locations():
    # far-apart locations: C is the identity, so rho = -log(mean(cr + mdr^2))
    coords = np.array([[0, 0, 0], [100, 0, 0], [200, 0, 0]])
    cache = CovarianceCache.from_coords(coords)
    fcn = DerivFdDelta(cache, jnp.ones(3), jnp.zeros(3), allow_rho=True)
    assert fcn.optimize_rho(1.0) == pytest.approx(0.0, abs=1e-10)

    fcn = DerivFdDelta(cache, jnp.full(3, 2.0), jnp.zeros(3), allow_rho=True)
    assert fcn.optimize_rho(1.0) == pytest.approx(-np.log(2.0), abs=1e-10)


def test_rho_disabled():
    cache = _cache()
    fcn = DerivFdDelta(cache, jnp.ones(32), jnp.zeros(32), allow_rho=False)
    assert fcn.optimize_rho(2.0) == 0.0


def test_fixed_delta_returns_guess():
    cache = _cache()
    delta, rho = optimize_smoothing_scale(
        cache, jnp.ones(32), jnp.zeros(32), 1.7, allow_rho=False, allow_delta=False
    )
    assert delta == 1.7
    assert rho == 0.0


def test_free_energy_delta_is_finite():
    cache = _cache()
    rng = np.random.default_rng(0)
    mdr = jnp.asarray(rng.normal(size=32))
    delta, rho = optimize_smoothing_scale(cache, jnp.full(32, 0.1), mdr, 1.0, allow_rho=True)
    assert np.isfinite(delta) and delta > 0
    assert np.isfinite(rho)


def test_brute_force_profile():
    cache = _cache()
    rows = brute_force_delta_profile(cache, jnp.ones(32), jnp.zeros(32), start=1.0, stop=4.0)
    assert len(rows) == 4
    assert rows[0][0] == 1.0
    assert rows[2][0] == pytest.approx(2.0)
    assert all(np.isfinite(r).all() for r in map(np.asarray, rows))


def test_evidence_delta_for_independent_field():
    # spatially uncorrelated parameter values push delta to the lower limit
    cache = _cache()
    rng = np.random.default_rng(0)
    means_wo = jnp.asarray(rng.normal(size=(32, 1)))
    precisions_wo = jnp.full((32, 1, 1), 100.0)
    delta, rho = optimize_evidence(cache, means_wo, precisions_wo, 0, 0.0, 1.0, 0.5)

    lo, hi = EVIDENCE_DELTA_RANGE
    assert lo <= delta <= hi
    assert delta < 1.0
    assert rho == 0.0


def test_evidence_rho():
    cache = _cache()
    rng = np.random.default_rng(1)
    means_wo = jnp.asarray(rng.normal(size=(32, 1)))
    precisions_wo = jnp.full((32, 1, 1), 10.0)
    fcn = DerivEdDelta(cache, means_wo, precisions_wo, 0, 0.0, 1.0, allow_rho=True)
    assert np.isfinite(fcn.optimize_rho(1.0))
    assert np.isfinite(fcn(1.0))
