# spatialvb_jax/noise/__init__.py

from .base import register, get, NoiseModel
from .white import WhiteNoiseModel, WhiteNoiseParams

# --------------------------------------------------
# Registry
# --------------------------------------------------
register("white", WhiteNoiseModel)

__all__ = ["get", "NoiseModel", "WhiteNoiseModel", "WhiteNoiseParams"]
