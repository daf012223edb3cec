# spatialvb_jax/spatial/__init__.py
from .neighbours import AdjacencyGraph, build_adjacency, is_correctly_ordered
from .distances import distance_matrix, DISTANCE_MEASURES
from .covariance import CovarianceCache
from .priors import (
    PriorFamily,
    SpatialPriorType,
    DEFAULT_PRIOR_TYPES,
    expand_prior_types,
    shrinkage_type,
    prior_string,
)
from .shrinkage import (
    second_order_precision,
    dirichlet_precision,
    update_akmean,
    shrinkage_location_priors,
)

__all__ = [
    "AdjacencyGraph",
    "build_adjacency",
    "is_correctly_ordered",
    "distance_matrix",
    "DISTANCE_MEASURES",
    "CovarianceCache",
    "PriorFamily",
    "SpatialPriorType",
    "DEFAULT_PRIOR_TYPES",
    "expand_prior_types",
    "shrinkage_type",
    "prior_string",
    "second_order_precision",
    "dirichlet_precision",
    "update_akmean",
    "shrinkage_location_priors",
]
