import jax.numpy as jnp
import numpy as np
import pytest

from spatialvb_jax import RunCFG, SpatialVB, SpatialVBCFG, VoxelData, run
from spatialvb_jax.inference import CountingConvergenceDetector
from spatialvb_jax.noise import WhiteNoiseModel


def _make_data(n_t=5):
    rng = np.random.default_rng(0)
    volume = 1.0 + 0.1 * rng.normal(size=(3, 3, 3, n_t))
    return VoxelData.from_volume(volume)


def test_run_by_name():
    data = _make_data()
    out = run(
        method=SpatialVB(SpatialVBCFG(prior_types="S")),
        data=data,
        model="trivial",
        model_kwargs={"num_timepoints": data.num_timepoints},
        convergence_kwargs={"max_iterations": 3},
    )
    assert out.diagnostics["method"] == "SpatialVB"
    assert out.diagnostics["iterations"] == 3
    assert out.diagnostics["delta"] == [-1.0]
    assert np.isfinite(out.diagnostics["final_objective"])
    assert out.result.posterior.means.shape == (27, 1)


def test_run_with_objects():
    from spatialvb_jax.models import TrivialFwdModel

    data = _make_data()
    out = run(
        method=SpatialVB(SpatialVBCFG(prior_types="N")),
        data=data,
        model=TrivialFwdModel(data.num_timepoints),
        noise=WhiteNoiseModel(),
        convergence=CountingConvergenceDetector(2),
        cfg=RunCFG(log_diagnostics=False),
        locked_centres=jnp.ones((27, 1)),
    )
    assert out.diagnostics["iterations"] == 2
    assert len(out.result.objective_trace) == 2


def test_kwargs_need_a_name():
    data = _make_data()
    with pytest.raises(TypeError):
        run(
            method=SpatialVB(),
            data=data,
            model=object(),
            model_kwargs={"num_timepoints": 5},
        )


def test_unknown_name():
    data = _make_data()
    with pytest.raises(KeyError):
        run(method=SpatialVB(), data=data, model="biexponential")
