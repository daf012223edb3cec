import pytest

from spatialvb_jax.core.errors import ConfigurationError
from spatialvb_jax.inference import SpatialVBCFG


def test_defaults():
    cfg = SpatialVBCFG()
    assert cfg.spatial_dims == 3
    assert cfg.prior_types == "S+"
    assert cfg.evidence_optimisation == "auto"
    assert cfg.max_precision_increase == -1.0


def test_from_options_values():
    cfg = SpatialVBCFG.from_options(
        {
            "param-spatial-priors": "ND",
            "spatial-dims": "2",
            "spatial-speed": "2.5",
            "distance-measure": "dist2",
            "fixed-delta": "3",
            "new-delta-iterations": "4",
            "first-parameter-for-full-eo": "2",
            "update-spatial-prior-on-first-iteration": "",
            "halt-on-bad-voxel": True,
            "model": "trivial",  # not ours, ignored
        }
    )
    assert cfg.prior_types == "ND"
    assert cfg.spatial_dims == 2
    assert cfg.max_precision_increase == 2.5
    assert cfg.distance_measure == "dist2"
    assert cfg.fixed_delta == 3.0
    assert cfg.new_delta_evaluations == 4
    assert cfg.first_parameter_for_full_eo == 1
    assert cfg.update_spatial_prior_on_first_iteration
    assert cfg.halt_bad_voxel


@pytest.mark.parametrize(
    "options, mode",
    [
        ({}, "auto"),
        ({"no-eo": ""}, "off"),
        ({"use-evidence-optimization": "true"}, "delta"),
        ({"use-full-evidence-optimization": ""}, "full"),
        ({"use-simultaneous-evidence-optimization": ""}, "simultaneous"),
        ({"slow-eo": "", "param-spatial-priors": "D"}, "simultaneous"),
        ({"slow-eo": "", "param-spatial-priors": "S+"}, "auto"),
        ({"use-full-evidence-optimization": "", "no-eo": ""}, "full"),
        ({"param-spatial-priors": "ND"}, "full"),
        ({"use-evidence-optimization": "", "param-spatial-priors": "D"}, "full"),
        ({"use-evidence-optimization": "", "param-spatial-priors": "NR"}, "full"),
        ({"use-evidence-optimization": "", "slow-eo": "", "param-spatial-priors": "D"}, "simultaneous"),
        ({"use-evidence-optimization": "", "no-eo": "", "param-spatial-priors": "D"}, "delta"),
        ({"no-eo": "", "param-spatial-priors": "D"}, "off"),
        ({"use-evidence-optimization": "", "param-spatial-priors": "M+"}, "delta"),
    ],
)
def test_from_options_eo_mode(options, mode):
    assert SpatialVBCFG.from_options(options).evidence_optimisation == mode


@pytest.mark.parametrize(
    "options",
    [
        {"spatial-dims": "three"},
        {"spatial-dims": "5"},
        {"spatial-speed": "0.5"},
        {"distance-measure": "chebyshev"},
        {"fixed-delta": "-2"},
        {"new-delta-iterations": "0"},
        {"brute-force-delta-search": "maybe"},
        {"use-covariance-marginals": "", "keep-interparameter-covariances": ""},
    ],
)
def test_from_options_rejects(options):
    with pytest.raises(ConfigurationError):
        SpatialVBCFG.from_options(options)


def test_direct_validation():
    with pytest.raises(ConfigurationError):
        SpatialVBCFG(evidence_optimisation="sometimes")
    with pytest.raises(ConfigurationError):
        SpatialVBCFG(first_parameter_for_full_eo=-1)
    SpatialVBCFG(max_precision_increase=1.5)
