import jax.numpy as jnp
import numpy as np
import pytest

from spatialvb_jax.core.mvn import MVNDist
from spatialvb_jax.models import LinearFwdModel, Linearization
from spatialvb_jax.noise import WhiteNoiseModel, WhiteNoiseParams


def _make_problem():
    y = jnp.array([1.0, 2.0, 1.5, 2.5, 2.0])
    model = LinearFwdModel(jnp.ones((5, 1)), prior_precision=2.0)
    prior, posterior = model.initial_dists()
    lin = Linearization.at(model.evaluate, posterior.means)
    return y, model, prior, posterior, lin


def test_theta_update_is_conjugate():
    y, _, prior, posterior, lin = _make_problem()
    noise = WhiteNoiseParams(jnp.asarray(2.0), jnp.asarray(2.0))  # phi = 4
    post, wo = WhiteNoiseModel().update_theta(noise, posterior, prior, lin, y)

    assert float(post.precisions[0, 0]) == pytest.approx(2.0 + 4.0 * 5)
    assert float(post.means[0]) == pytest.approx(4.0 * float(jnp.sum(y)) / (2.0 + 20.0))
    # without the prior: the least-squares fit
    assert float(wo.means[0]) == pytest.approx(float(jnp.mean(y)))
    assert float(wo.precisions[0, 0]) == pytest.approx(20.0)


def test_noise_update():
    y, _, prior, posterior, lin = _make_problem()
    white = WhiteNoiseModel()
    noise_post, noise_prior = white.initial_params()
    post, _ = white.update_theta(noise_post, posterior, prior, lin, y)
    new = white.update_noise(noise_post, noise_prior, post, lin, y)

    assert float(new.shape) == pytest.approx(1e-6 + 2.5)
    resid = y - post.means[0]
    expected_inv_scale = 1e-6 + 0.5 * (float(resid @ resid) + 5.0 / float(post.precisions[0, 0]))
    assert float(new.scale) == pytest.approx(1.0 / expected_inv_scale)


def test_free_energy_increases_with_updates():
    y, _, prior, posterior, lin = _make_problem()
    white = WhiteNoiseModel()
    noise, noise_prior = white.initial_params()

    post, _ = white.update_theta(noise, posterior, prior, lin, y)
    f0 = float(white.free_energy(noise, noise_prior, post, prior, lin, y))
    noise = white.update_noise(noise, noise_prior, post, lin, y)
    f1 = float(white.free_energy(noise, noise_prior, post, prior, lin, y))
    post, _ = white.update_theta(noise, post, prior, lin, y)
    f2 = float(white.free_energy(noise, noise_prior, post, prior, lin, y))

    assert np.isfinite(f0)
    assert f1 >= f0 - 1e-9
    assert f2 >= f1 - 1e-9


def test_mvn_diag_helpers():
    dist = MVNDist.diag(jnp.zeros((3, 2)), jnp.full((3, 2), 4.0))
    assert dist.precisions.shape == (3, 2, 2)
    assert dist.is_diagonal()
    np.testing.assert_allclose(dist.variances, 0.25)
    assert len(dist) == 3
    assert dist[1].means.shape == (2,)
