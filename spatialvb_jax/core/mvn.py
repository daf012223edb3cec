# spatialvb_jax/core/mvn.py
from __future__ import annotations

from dataclasses import dataclass

import jax.numpy as jnp
from jax.tree_util import register_pytree_node_class


@register_pytree_node_class
@dataclass(frozen=True)
class MVNDist:
    """
    Multivariate normal in precision form (pytree, JIT-friendly).

    means:      (P,)   or (N, P) when batched over locations
    precisions: (P, P) or (N, P, P)

    Batched instances are produced by `jax.vmap` over per-location functions,
    or by `MVNDist.broadcast`.
    """
    means: jnp.ndarray
    precisions: jnp.ndarray

    def tree_flatten(self):
        return (self.means, self.precisions), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        return cls(*children)

    # ---- construction ----

    @classmethod
    def from_covariance(cls, means, covariance) -> "MVNDist":
        return cls(jnp.asarray(means), jnp.linalg.inv(jnp.asarray(covariance)))

    @classmethod
    def diag(cls, means, precisions) -> "MVNDist":
        """Independent parameters: `precisions` holds the diagonal, (..., P)."""
        precisions = jnp.asarray(precisions)
        eye = jnp.eye(precisions.shape[-1], dtype=precisions.dtype)
        return cls(jnp.asarray(means), precisions[..., :, None] * eye)

    def broadcast(self, n: int) -> "MVNDist":
        """Repeat a single-location distribution over `n` locations."""
        return MVNDist(
            jnp.broadcast_to(self.means, (n,) + self.means.shape),
            jnp.broadcast_to(self.precisions, (n,) + self.precisions.shape),
        )

    # ---- views ----

    @property
    def num_params(self) -> int:
        return self.means.shape[-1]

    @property
    def covariance(self) -> jnp.ndarray:
        return jnp.linalg.inv(self.precisions)

    @property
    def variances(self) -> jnp.ndarray:
        return jnp.diagonal(self.covariance, axis1=-2, axis2=-1)

    @property
    def diag_precisions(self) -> jnp.ndarray:
        return jnp.diagonal(self.precisions, axis1=-2, axis2=-1)

    def is_diagonal(self) -> bool:
        off = self.precisions - self.diag_precisions[..., :, None] * jnp.eye(self.num_params)
        return bool(jnp.all(off == 0))

    # ---- updates ----

    def with_means(self, means) -> "MVNDist":
        return MVNDist(jnp.asarray(means), self.precisions)

    def with_precisions(self, precisions) -> "MVNDist":
        return MVNDist(self.means, jnp.asarray(precisions))

    def with_covariance(self, covariance) -> "MVNDist":
        return MVNDist(self.means, jnp.linalg.inv(jnp.asarray(covariance)))

    def __len__(self) -> int:
        if self.means.ndim < 2:
            raise TypeError("len() of an unbatched MVNDist")
        return self.means.shape[0]

    def __getitem__(self, v) -> "MVNDist":
        return MVNDist(self.means[v], self.precisions[v])
