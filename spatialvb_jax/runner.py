# spatialvb_jax/runner.py
"""
Orchestration layer: (data + collaborators + inference method) -> result.

Wires together:
  - VoxelData
  - a forward model, a noise model and a convergence detector, given as
    objects or by registry name
  - an InferenceMethod (e.g. SpatialVB)
  - standardised diagnostics

The runner does not assume anything about the method beyond `.run()`;
diagnostics are extracted opportunistically.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .core.data import VoxelData
from .inference.base import InferenceMethod
from .inference import convergence as _convergence
from . import models as _models
from . import noise as _noise

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunCFG:
    """
    Thin orchestration config.

    log_diagnostics: log the diagnostics dictionary at INFO after the run.
    """
    log_diagnostics: bool = True


@dataclass
class RunOut:
    """
    Standardised output from a run.

    `result` is the method-specific run object (e.g. SpatialVBRun); common
    fields are copied into `diagnostics` when available.
    """
    result: Any
    diagnostics: Dict[str, Any]


def _resolve(obj, registry_get, kwargs: Optional[Dict[str, Any]]):
    if isinstance(obj, str):
        return registry_get(obj)(**(kwargs or {}))
    if kwargs:
        raise TypeError("Constructor arguments are only accepted with a registry name")
    return obj


def run(
    *,
    method: InferenceMethod,
    data: VoxelData,
    model: Union[str, Any],
    noise: Union[str, Any] = "white",
    convergence: Union[str, Any] = "maxits",
    model_kwargs: Optional[Dict[str, Any]] = None,
    noise_kwargs: Optional[Dict[str, Any]] = None,
    convergence_kwargs: Optional[Dict[str, Any]] = None,
    cfg: RunCFG = RunCFG(),
    **kwargs,
) -> RunOut:
    """
    One-shot runner.

    Args:
        method: inference method (e.g. SpatialVB)
        data: voxel data
        model: forward model, or a registered name ("trivial", "linear", "exp")
        noise: noise model, or a registered name ("white")
        convergence: convergence detector, or a registered name ("maxits", "fchange")
        model_kwargs / noise_kwargs / convergence_kwargs: constructor
            arguments when the collaborator is given by name
        cfg: runner configuration
        **kwargs: forwarded to `method.run` (prior, image_priors, ...)

    Returns:
        RunOut with the method-specific result and standardised diagnostics

    Examples:
        >>> from spatialvb_jax import run, SpatialVB, SpatialVBCFG, VoxelData
        >>>
        >>> out = run(
        ...     method=SpatialVB(SpatialVBCFG(prior_types="D")),
        ...     data=VoxelData(Y, coords),
        ...     model="trivial",
        ...     model_kwargs={"num_timepoints": Y.shape[1]},
        ...     convergence_kwargs={"max_iterations": 20},
        ... )
        >>> print(out.diagnostics["delta"])
    """
    model = _resolve(model, _models.get, model_kwargs)
    noise = _resolve(noise, _noise.get, noise_kwargs)
    convergence = _resolve(convergence, _convergence.get, convergence_kwargs)

    out = method.run(data, model, noise, convergence, **kwargs)

    diagnostics = {"method": method.__class__.__name__}
    if hasattr(out, "iterations"):
        diagnostics["iterations"] = int(out.iterations)
    if hasattr(out, "objective_trace") and len(out.objective_trace) > 0:
        diagnostics["initial_objective"] = float(out.objective_trace[0])
        diagnostics["final_objective"] = float(out.objective_trace[-1])
    if hasattr(out, "delta"):
        diagnostics["delta"] = [float(d) for d in out.delta]

    if cfg.log_diagnostics:
        logger.info(f"Run diagnostics: {diagnostics}")
    return RunOut(result=out, diagnostics=diagnostics)
