def test_imports():
    import spatialvb_jax

    from spatialvb_jax import SpatialVB, SpatialVBCFG, VoxelData, MVNDist
    from spatialvb_jax.spatial import build_adjacency, CovarianceCache, SpatialPriorType
    from spatialvb_jax.optimisation import DescendingZeroFinder

    # models
    from spatialvb_jax.models import get as get_model
    get_model("trivial")
    get_model("linear")
    get_model("exp")

    # noise
    from spatialvb_jax.noise import get as get_noise
    get_noise("white")

    # convergence
    from spatialvb_jax.inference import get_convergence
    get_convergence("maxits")
    get_convergence("fchange")


def test_x64_enabled():
    import jax.numpy as jnp
    import spatialvb_jax  # noqa: F401

    assert jnp.zeros(1).dtype == jnp.float64
