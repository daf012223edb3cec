# spatialvb_jax/spatial/priors.py
"""
Per-parameter spatial prior types.

A prior string assigns one character per model parameter, e.g. "NDD" or
"S+". A single '+' repeats the character before it until the string covers
every parameter ("NS+" on four parameters is "NSSS").
"""
from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence, Tuple

from ..core.errors import ConfigurationError

DEFAULT_PRIOR_TYPES = "S+"


class PriorFamily(Enum):
    NONSPATIAL = "nonspatial"
    SHRINKAGE = "shrinkage"
    SMOOTHING = "smoothing"


class SpatialPriorType(Enum):
    NONSPATIAL = "N"
    IMAGE = "I"
    ARD = "A"
    EVIDENCE_RHO = "R"
    EVIDENCE = "D"
    FIXED = "F"
    MRF = "m"
    MRF2 = "M"
    DIRICHLET = "p"
    PENNY = "P"
    SECOND_ORDER = "S"

    @property
    def family(self) -> PriorFamily:
        if self in _SHRINKAGE:
            return PriorFamily.SHRINKAGE
        if self in _SMOOTHING:
            return PriorFamily.SMOOTHING
        return PriorFamily.NONSPATIAL

    @property
    def is_shrinkage(self) -> bool:
        return self.family is PriorFamily.SHRINKAGE

    @property
    def is_smoothing(self) -> bool:
        return self.family is PriorFamily.SMOOTHING

    @property
    def allows_delta(self) -> bool:
        return self in (SpatialPriorType.EVIDENCE_RHO, SpatialPriorType.EVIDENCE)

    @property
    def allows_rho(self) -> bool:
        return self is SpatialPriorType.EVIDENCE_RHO


_SHRINKAGE = frozenset(SpatialPriorType(c) for c in "mMpPS")
_SMOOTHING = frozenset(SpatialPriorType(c) for c in "RDF")


def expand_prior_types(spec: str, num_params: int) -> Tuple[SpatialPriorType, ...]:
    """
    Expand a prior string to one SpatialPriorType per parameter.

    Raises:
        ConfigurationError: unknown character, misplaced or repeated '+',
            or a length that does not match `num_params`
    """
    if not isinstance(spec, str):
        raise ConfigurationError(f"prior types must be a string, got {spec!r}")
    plus = spec.find("+")
    if plus >= 0:
        if plus == 0:
            raise ConfigurationError(f"'+' in prior types '{spec}' must follow a prior type character")
        if "+" in spec[plus + 1:]:
            raise ConfigurationError(f"prior types '{spec}' may contain at most one '+'")
        before, after = spec[: plus - 1], spec[plus + 1:]
        fill = max(num_params - len(before) - len(after), 0)
        spec = before + spec[plus - 1] * fill + after

    if len(spec) != num_params:
        raise ConfigurationError(
            f"prior types '{spec}' have {len(spec)} entries but the model has {num_params} parameters"
        )

    types = []
    for k, ch in enumerate(spec):
        try:
            types.append(SpatialPriorType(ch))
        except ValueError:
            raise ConfigurationError(
                f"Invalid spatial prior type '{ch}' for parameter {k}. "
                f"Available: {[t.value for t in SpatialPriorType]}"
            )
    return tuple(types)


def shrinkage_type(types: Sequence[SpatialPriorType]) -> Optional[SpatialPriorType]:
    """
    The one shrinkage type used by `types`, or None.

    Raises:
        ConfigurationError: more than one shrinkage type is present
    """
    found = {t for t in types if t.is_shrinkage}
    if len(found) > 1:
        raise ConfigurationError(
            f"Only one shrinkage prior type may be used at a time, got {sorted(t.value for t in found)}"
        )
    return found.pop() if found else None


def prior_string(types: Sequence[SpatialPriorType]) -> str:
    return "".join(t.value for t in types)
