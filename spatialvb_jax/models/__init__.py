# spatialvb_jax/models/__init__.py

from .base import register, get, FwdModel, Linearization

from .trivial import TrivialFwdModel
from .linear import LinearFwdModel
from .exponential import ExpDecayFwdModel

# --------------------------------------------------
# Registry (classes; instantiate with model-specific arguments)
# --------------------------------------------------
register("trivial", TrivialFwdModel)
register("linear", LinearFwdModel)
register("exp", ExpDecayFwdModel)

__all__ = [
    "get",
    "FwdModel",
    "Linearization",
    "TrivialFwdModel",
    "LinearFwdModel",
    "ExpDecayFwdModel",
]
