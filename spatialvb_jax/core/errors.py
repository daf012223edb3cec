# spatialvb_jax/core/errors.py
"""
Exception types.

- ConfigurationError: invalid user options or input layout, raised at setup.
- InternalConsistencyError: a structure that should be impossible was built
  (asymmetric adjacency, asymmetric covariance product). Aborts the run.
- NumericalDegeneracyError: only raised when the caller asked for bad
  locations to halt the run; otherwise degeneracies are logged and recovered.
"""
from __future__ import annotations


class ConfigurationError(ValueError):
    pass


class InternalConsistencyError(RuntimeError):
    pass


class NumericalDegeneracyError(ArithmeticError):
    pass
