import logging

import jax.numpy as jnp
import numpy as np
import pytest

from spatialvb_jax.core.data import VoxelData
from spatialvb_jax.core.errors import ConfigurationError, NumericalDegeneracyError
from spatialvb_jax.core.mvn import MVNDist
from spatialvb_jax.inference import (
    CountingConvergenceDetector,
    FchangeConvergenceDetector,
    SpatialVB,
    SpatialVBCFG,
)
from spatialvb_jax.inference.spatialvb import INITIAL_AKMEAN
from spatialvb_jax.models import ExpDecayFwdModel, LinearFwdModel, TrivialFwdModel
from spatialvb_jax.noise import WhiteNoiseModel
from spatialvb_jax.optimisation.smoothing import EVIDENCE_DELTA_RANGE
from spatialvb_jax.spatial.priors import expand_prior_types


def _make_problem(shape=(4, 4, 3), n_t=6, field=None, noise_std=0.3, seed=0):
    rng = np.random.default_rng(seed)
    n_loc = int(np.prod(shape))
    if field is None:
        field = rng.normal(size=n_loc)
    volume = np.zeros(shape + (n_t,))
    data = VoxelData.from_volume(volume)
    y = np.asarray(field)[:, None] + noise_std * rng.normal(size=(n_loc, n_t))
    return VoxelData(jnp.asarray(y), data.coords, data.voxel_size)


def _run(cfg, data, model=None, iterations=4, **kwargs):
    if model is None:
        model = TrivialFwdModel(data.num_timepoints, prior_precision=1.0)
    return SpatialVB(cfg).run(
        data, model, WhiteNoiseModel(), CountingConvergenceDetector(iterations), **kwargs
    )


def test_shrinkage_on_constant_field():
    data = _make_problem(shape=(5, 5, 5), n_t=8, field=np.full(125, 2.0), noise_std=0.1)
    model = TrivialFwdModel(8)
    out = _run(SpatialVBCFG(prior_types="S"), data, model=model, iterations=5)

    means = np.asarray(out.posterior.means[:, 0])
    assert np.all(np.isfinite(means))
    assert np.all(np.abs(means - 2.0) < 0.2)
    assert out.akmean[0] > INITIAL_AKMEAN
    assert out.delta[0] == -1.0
    assert out.iterations == 5
    assert len(out.objective_trace) == 5
    assert np.all(np.isfinite(out.objective_trace))
    assert out.posterior_without_prior is None


def test_runs_are_deterministic():
    data = _make_problem()
    cfg = SpatialVBCFG(prior_types="D")
    a = _run(cfg, data)
    b = _run(cfg, data)
    np.testing.assert_array_equal(np.asarray(a.posterior.means), np.asarray(b.posterior.means))
    np.testing.assert_array_equal(a.delta, b.delta)


def test_nonspatial_prior_is_untouched():
    data = _make_problem()
    model = TrivialFwdModel(data.num_timepoints, prior_precision=0.5)
    out = _run(SpatialVBCFG(prior_types="N"), data, model=model)

    np.testing.assert_allclose(out.prior.means, 0.0)
    np.testing.assert_allclose(out.prior.diag_precisions, 0.5)
    assert out.delta[0] == 0.0
    assert out.rho[0] == 0.0


@pytest.mark.parametrize("prior_types", ["D", "R"])
@pytest.mark.parametrize("mode", ["auto", "off", "delta", "full", "simultaneous"])
def test_smoothing_priors(prior_types, mode):
    data = _make_problem()
    out = _run(SpatialVBCFG(prior_types=prior_types, evidence_optimisation=mode), data)

    assert np.all(np.isfinite(np.asarray(out.posterior.means)))
    assert np.all(np.isfinite(np.asarray(out.posterior.precisions)))
    assert out.delta[0] > 0
    assert np.isfinite(out.rho[0])
    if prior_types == "D":
        assert out.rho[0] == 0.0
    if mode in ("auto", "delta", "full", "simultaneous"):
        lo, hi = EVIDENCE_DELTA_RANGE
        assert lo <= out.delta[0] <= hi
        assert out.posterior_without_prior is not None
        assert out.resels["eo"].shape == (1,)
    else:
        assert out.posterior_without_prior is None


def test_smoothing_prior_mean_follows_neighbours():
    data = _make_problem()
    out = _run(SpatialVBCFG(prior_types="D"), data)
    # the spatial prior pulls each location towards its neighbours: prior
    # means are less spread out than the posterior means
    assert float(jnp.std(out.prior.means[:, 0])) < float(jnp.std(out.posterior.means[:, 0]))


def test_delta_not_updated_on_first_iteration():
    data = _make_problem()
    out = _run(SpatialVBCFG(prior_types="D"), data, iterations=1)
    assert out.delta[0] == 0.5

    # start from per-location data means so the first update has something to fit
    start = MVNDist.diag(jnp.mean(data.data, axis=1, keepdims=True), jnp.full((len(data), 1), 10.0))
    out = _run(
        SpatialVBCFG(prior_types="D", update_spatial_prior_on_first_iteration=True),
        data,
        iterations=1,
        initial_posteriors=start,
    )
    lo, hi = EVIDENCE_DELTA_RANGE
    assert out.delta[0] != 0.5
    assert lo <= out.delta[0] <= hi


def test_fixed_prior():
    data = _make_problem()
    out = _run(SpatialVBCFG(prior_types="F", fixed_delta=1.5, fixed_rho=0.3), data)
    assert out.delta[0] == 1.5
    assert out.rho[0] == 0.3
    assert np.all(np.isfinite(np.asarray(out.posterior.means)))


def test_fixed_prior_converges_on_grid():
    data = _make_problem(shape=(5, 5, 5), n_t=8, noise_std=0.2, seed=4)
    cfg = SpatialVBCFG(prior_types="F", fixed_delta=1.0)
    a = _run(cfg, data, iterations=14)
    b = _run(cfg, data, iterations=15)
    again = _run(cfg, data, iterations=15)

    means = np.asarray(b.posterior.means)
    assert np.all(np.isfinite(means))
    assert np.max(np.abs(means - np.asarray(a.posterior.means))) < 1e-4
    np.testing.assert_array_equal(means, np.asarray(again.posterior.means))
    np.testing.assert_array_equal(np.asarray(b.prior.means), np.asarray(again.prior.means))


def test_fixed_prior_profile_logged_on_first_iteration(caplog):
    data = _make_problem(shape=(3, 3, 2))
    cfg = SpatialVBCFG(prior_types="F", fixed_delta=1.0, brute_force_delta_search=True)
    with caplog.at_level(logging.INFO):
        out = _run(cfg, data, iterations=1)
    assert out.delta[0] == 1.0
    assert any(r.getMessage().startswith("BRUTEFORCE=") for r in caplog.records)


def test_fixed_prior_needs_delta():
    data = _make_problem()
    with pytest.raises(ConfigurationError):
        _run(SpatialVBCFG(prior_types="F"), data)


def test_image_prior():
    data = _make_problem()
    image = jnp.linspace(-1.0, 1.0, len(data))
    out = _run(SpatialVBCFG(prior_types="I"), data, image_priors={0: image})
    np.testing.assert_allclose(out.prior.means[:, 0], image)

    with pytest.raises(ConfigurationError):
        _run(SpatialVBCFG(prior_types="I"), data)
    with pytest.raises(ConfigurationError):
        _run(SpatialVBCFG(prior_types="I"), data, image_priors={0: image[:-1]})


def test_ard_prior():
    rng = np.random.default_rng(3)
    n_t = 10
    design = np.stack([np.ones(n_t), np.linspace(-1.0, 1.0, n_t)], axis=1)
    data = _make_problem(n_t=n_t)
    y = 1.0 + 0.1 * rng.normal(size=(len(data), n_t))
    data = VoxelData(jnp.asarray(y), data.coords)
    model = LinearFwdModel(design, prior_precision=1e-6)

    out = _run(SpatialVBCFG(prior_types="NA"), data, model=model)

    np.testing.assert_allclose(out.prior.diag_precisions[:, 0], 1e-6)
    assert bool(jnp.all(out.prior.diag_precisions[:, 1] > 1e-6))
    assert np.all(np.isfinite(out.objective_trace))


def test_ard_precision_uses_marginal_precision():
    # correlated parameters: 1/P_kk differs from the marginal variance
    means = jnp.array([[0.5, 1.0], [-0.2, 2.0]])
    precisions = jnp.array([[[4.0, 3.0], [3.0, 4.0]], [[2.0, -1.0], [-1.0, 5.0]]])
    posterior = MVNDist(means, precisions)
    prior = MVNDist.diag(jnp.zeros(2), jnp.full(2, 1e-6))
    types = expand_prior_types("NA", 2)

    prior_loc, fard = SpatialVB()._location_priors(
        types, False, prior, posterior, [None, None], np.full(2, INITIAL_AKMEAN), None, None, None, None
    )

    ard = 1.0 / precisions[:, 1, 1] + means[:, 1] ** 2
    np.testing.assert_allclose(prior_loc.diag_precisions[:, 1], 1.0 / ard)
    np.testing.assert_allclose(prior_loc.diag_precisions[:, 0], 1e-6)
    np.testing.assert_allclose(fard, -2.0 * jnp.log(2.0 / ard))
    by_variance = 1.0 / (posterior.variances[:, 1] + means[:, 1] ** 2)
    assert not np.allclose(prior_loc.diag_precisions[:, 1], by_variance)


def test_ard_prior_follows_previous_posterior():
    n_t = 10
    design = np.stack([np.ones(n_t), np.linspace(0.5, 1.5, n_t)], axis=1)
    data = _make_problem(n_t=n_t, seed=5)
    model = LinearFwdModel(design, prior_precision=1e-6)
    cfg = SpatialVBCFG(prior_types="NA")

    one = _run(cfg, data, model=model, iterations=1)
    two = _run(cfg, data, model=model, iterations=2)

    post = one.posterior
    expected = 1.0 / (1.0 / post.diag_precisions[:, 1] + post.means[:, 1] ** 2)
    np.testing.assert_allclose(two.prior.diag_precisions[:, 1], expected, rtol=1e-10)


def test_mixed_priors_on_nonlinear_model():
    times = jnp.linspace(0.0, 4.0, 8)
    data = _make_problem(n_t=8)
    rng = np.random.default_rng(5)
    y = 5.0 * np.exp(-0.5 * np.asarray(times))[None, :] + 0.05 * rng.normal(size=(len(data), 8))
    data = VoxelData(jnp.asarray(y), data.coords)

    out = _run(SpatialVBCFG(prior_types="SN"), data, model=ExpDecayFwdModel(times), iterations=10)

    means = np.asarray(out.posterior.means)
    assert np.all(np.isfinite(means))
    assert np.all(np.abs(means[:, 0] - 5.0) < 1.0)
    assert out.delta.tolist() == [-1.0, 0.0]


def test_free_energy_convergence():
    data = _make_problem()
    out = SpatialVB(SpatialVBCFG(prior_types="N")).run(
        data,
        TrivialFwdModel(data.num_timepoints, prior_precision=1.0),
        WhiteNoiseModel(),
        FchangeConvergenceDetector(max_iterations=50, fchange=1e-3),
    )
    trace = out.objective_trace
    assert out.iterations < 50
    assert np.all(np.isfinite(trace))
    assert trace[-1] >= trace[0] - 1e-6
    assert out.free_energy.shape == (len(data),)


def test_free_energy_off():
    data = _make_problem()
    out = _run(SpatialVBCFG(prior_types="N", calc_free_energy=False), data, iterations=2)
    assert out.free_energy is None
    assert np.all(np.isnan(out.objective_trace))


def test_bad_location_keeps_previous_posterior():
    data = _make_problem()
    y = np.asarray(data.data).copy()
    y[3, :] = np.nan
    data = VoxelData(jnp.asarray(y), data.coords)

    out = _run(SpatialVBCFG(prior_types="N"), data, iterations=2)
    means = np.asarray(out.posterior.means[:, 0])
    assert means[3] == 0.0
    assert np.all(np.isfinite(means))

    with pytest.raises(NumericalDegeneracyError):
        _run(SpatialVBCFG(prior_types="N", halt_bad_voxel=True), data, iterations=2)


def test_rank_deficient_design_without_evidence_optimisation():
    # collinear columns: the data alone cannot identify both parameters
    data = _make_problem()
    model = LinearFwdModel(np.ones((data.num_timepoints, 2)) * np.array([1.0, 2.0]), prior_precision=1.0)
    out = _run(SpatialVBCFG(prior_types="NN", halt_bad_voxel=True), data, model=model, iterations=3)

    assert np.all(np.isfinite(np.asarray(out.posterior.means)))
    assert out.posterior_without_prior is None


@pytest.mark.parametrize(
    "cfg",
    [
        SpatialVBCFG(prior_types="mD", evidence_optimisation="full"),
        SpatialVBCFG(prior_types="SD", spatial_dims=0),
        SpatialVBCFG(prior_types="DD", evidence_optimisation="simultaneous", first_parameter_for_full_eo=1),
        SpatialVBCFG(prior_types="DD", evidence_optimisation="full", first_parameter_for_full_eo=2),
        SpatialVBCFG(prior_types="DDD"),
    ],
)
def test_configuration_errors(cfg):
    data = _make_problem()
    model = LinearFwdModel(np.ones((data.num_timepoints, 2)) * np.array([1.0, 2.0]), prior_precision=1.0)
    with pytest.raises(ConfigurationError):
        _run(cfg, data, model=model)


def test_locked_centres_shape_checked():
    data = _make_problem()
    with pytest.raises(ConfigurationError):
        _run(SpatialVBCFG(prior_types="N"), data, locked_centres=jnp.zeros((3, 1)))


def test_initial_posteriors_continue_a_run():
    data = _make_problem()
    first = _run(SpatialVBCFG(prior_types="S"), data, iterations=3)
    second = _run(SpatialVBCFG(prior_types="S"), data, iterations=1, initial_posteriors=first.posterior)
    assert np.all(np.isfinite(np.asarray(second.posterior.means)))
    assert second.posterior_without_prior is None
