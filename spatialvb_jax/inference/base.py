# spatialvb_jax/inference/base.py
from __future__ import annotations

from typing import Protocol, runtime_checkable, Any


@runtime_checkable
class InferenceMethod(Protocol):
    """
    Protocol for inference methods.

    Design principles
    -----------------
    - An InferenceMethod consumes voxel data plus three collaborators:
      a forward model, a noise model and a convergence detector.
    - It MUST treat the collaborators as black boxes behind their protocols.
    - It MAY accept configuration through its own frozen *CFG dataclass.

    Canonical contract
    ------------------
    The exact `run` signature is method-specific, but all methods:
    - accept VoxelData as input,
    - iterate until the convergence detector says stop,
    - return a method-specific *Run object.
    """

    def run(self, data, model, noise, convergence, *args, **kwargs) -> Any:
        """
        Run inference on the given data.

        Returns
        -------
        Any
            Method-specific results (posteriors, hyperparameters, traces).
        """
        ...
