# spatialvb_jax/spatial/shrinkage.py
"""
Shrinkage (Markov random field) spatial priors.

A shrinkage prior ties each parameter map to a discrete Laplacian S on the
adjacency graph with a single scalar precision `akmean` per parameter:

    p(w_k) ~ N(0, (akmean_k * S'S)^-1)

akmean is re-estimated each iteration in closed form (Penny et al. 2005):

    1/g_k  = 0.5 tr(Sigma_k S'S) + 0.5 w_k' S'S w_k + 1/q1
    akmean = g_k (N/2 + q2),   q1 = 10, q2 = 1

Variants (one character each):
  m  MRF with Dirichlet boundary (missing neighbours count as zero)
  M  MRF without boundary correction
  p  second-order Laplacian with Dirichlet boundary
  P  second-order Laplacian (Penny)
  S  second-order Laplacian with a small diagonal weight, exact S'S
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from ..core.log import warn_once
from ..core.mvn import MVNDist
from .neighbours import AdjacencyGraph
from .priors import SpatialPriorType

logger = logging.getLogger(__name__)

# Diagonal weight of the 'S' operator.
STS_TINY = 1e-6
# Hyperprior on akmean: 1/q1 and q2.
INV_Q1 = 0.1
Q2 = 1.0
AKMEAN_FLOOR = 1e-50
RATE_LIMIT_FLOOR = 0.5

_S = SpatialPriorType


def second_order_precision(graph: AdjacencyGraph, tiny: float = STS_TINY) -> jnp.ndarray:
    """
    S'S for S = (Laplacian + tiny * I), built directly from the graph.

    diag:            N_v + (N_v + tiny)^2
    first order:     -(N_v + N_j + 2 tiny)
    second order:    +1 per two-step path (duplicates accumulate)
    """
    n_loc = len(graph)
    nn = graph.counts.astype(np.float64)
    sts = np.zeros((n_loc, n_loc))
    sts[np.diag_indices(n_loc)] = nn + (nn + tiny) ** 2
    src, dst = graph.edge_index(1)
    sts[dst, src] = -(nn[dst] + nn[src] + 2 * tiny)
    src2, dst2 = graph.edge_index(2)
    np.add.at(sts, (dst2, src2), 1.0)
    return jnp.asarray(sts)


def dirichlet_precision(graph: AdjacencyGraph) -> jnp.ndarray:
    """
    Second-order precision with Dirichlet boundary ('p').

    diag 4 d^2 + N_v, first order -4 d, +1 per two-step path.
    """
    n_loc = len(graph)
    dims = graph.spatial_dims
    nn = graph.counts.astype(np.float64)
    mat = np.zeros((n_loc, n_loc))
    mat[np.diag_indices(n_loc)] = 4 * dims * dims + nn
    src, dst = graph.edge_index(1)
    mat[dst, src] = -4.0 * dims
    src2, dst2 = graph.edge_index(2)
    np.add.at(mat, (dst2, src2), 1.0)
    return jnp.asarray(mat)


def _neighbour_sum(graph: AdjacencyGraph, values: jnp.ndarray, order: int) -> jnp.ndarray:
    src, dst = graph.edge_index(order)
    return jax.ops.segment_sum(values[src], jnp.asarray(dst), num_segments=len(graph))


def _diag_weight(ptype: SpatialPriorType, nn: jnp.ndarray, dims: int) -> jnp.ndarray:
    """Diagonal of S'S (or of S for the MRF variants) per location."""
    if ptype is _S.MRF:
        return jnp.full(nn.shape, 2.0 * dims)
    if ptype is _S.MRF2:
        return nn + 1e-8
    if ptype is _S.DIRICHLET:
        return 4.0 * dims * dims + nn
    if ptype is _S.SECOND_ORDER:
        return (nn + STS_TINY) ** 2 + nn
    if ptype is _S.PENNY:
        return nn * nn + nn
    raise ValueError(f"{ptype} is not a shrinkage prior")


def update_akmean(
    ptype: SpatialPriorType,
    graph: AdjacencyGraph,
    means: jnp.ndarray,
    variances: jnp.ndarray,
) -> float:
    """
    Closed-form akmean for one parameter.

    Args:
        ptype: shrinkage variant
        graph: adjacency graph
        means: (N,) posterior means of the parameter
        variances: (N,) posterior variances of the parameter

    Returns:
        New akmean (before flooring or rate limiting).
    """
    dims = graph.spatial_dims
    nn = jnp.asarray(graph.counts, dtype=means.dtype)

    # tr(Sigma_k S'S) with a diagonal Sigma_k
    tmp1 = jnp.sum(variances * _diag_weight(ptype, nn, dims))

    base = STS_TINY if ptype is _S.SECOND_ORDER else 0.0
    swk = base * means + nn * means - _neighbour_sum(graph, means, 1)
    if ptype in (_S.DIRICHLET, _S.MRF):
        swk = swk + means * (2.0 * dims - nn)

    if ptype in (_S.MRF, _S.MRF2):
        tmp2 = jnp.dot(swk, means)
    else:
        tmp2 = jnp.sum(swk ** 2)

    logger.debug(f"akmean terms: tmp1={float(tmp1):g}, tmp2={float(tmp2):g}")
    gk = 1.0 / (0.5 * tmp1 + 0.5 * tmp2 + INV_Q1)
    return float(gk * (0.5 * len(graph) + Q2))


def floor_akmean(value: float, k: int) -> float:
    if value < AKMEAN_FLOOR:
        logger.warning(f"akmean for parameter {k} was {value:g}; flooring at {AKMEAN_FLOOR:g}")
        warn_once(logger, "akmean value was tiny")
        return AKMEAN_FLOOR
    return value


def limit_increase(new: float, previous: float, factor: float, what: str) -> float:
    """
    Cap `new` at max(previous * factor, 0.5) when factor > 0.

    `factor` of -1 disables the limit.
    """
    if factor <= 0:
        return new
    ceiling = max(previous * factor, RATE_LIMIT_FLOOR)
    if new > ceiling:
        logger.info(f"Rate-limiting the increase on {what}: was {new:g}, now {ceiling:g}")
        return ceiling
    return new


def shrinkage_location_priors(
    ptype: SpatialPriorType,
    graph: AdjacencyGraph,
    post_means: jnp.ndarray,
    akmean: jnp.ndarray,
    prior: MVNDist,
    sts: Optional[jnp.ndarray] = None,
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """
    Per-location prior (diagonal precisions, means) implied by neighbour means.

    Args:
        ptype: shrinkage variant
        graph: adjacency graph
        post_means: (N, P) current posterior means
        akmean: (P,) shrinkage precisions
        prior: initial (non-spatial) prior, diagonal precision
        sts: S'S matrix, required for 'S'

    Returns:
        precisions (N, P), means (N, P). Only the columns of parameters using
        `ptype` are meaningful; the caller keeps those.
    """
    akmean = jnp.asarray(akmean)
    p0 = prior.diag_precisions
    m0 = prior.means

    if ptype is _S.SECOND_ORDER:
        if sts is None:
            raise ValueError("The 'S' prior needs its S'S matrix")
        diag = jnp.diagonal(sts)
        weight = STS_TINY + jnp.sum(sts, axis=1) - diag
        contrib = sts @ post_means - diag[:, None] * post_means
        precisions = akmean[None, :] * diag[:, None]
        return precisions, contrib / weight[:, None]

    dims = graph.spatial_dims
    nn = jnp.asarray(graph.counts, dtype=post_means.dtype)
    nn2 = jnp.asarray(graph.counts2, dtype=post_means.dtype)

    contrib8 = 8.0 * _neighbour_sum(graph, post_means, 1)
    weight8 = 8.0 * nn
    contrib12 = -_neighbour_sum(graph, post_means, 2)
    weight12 = -nn2
    if ptype is _S.DIRICHLET:
        weight8 = jnp.full(nn.shape, 16.0 * dims)
        weight12 = -(4.0 * dims * dims - nn)

    spatial = akmean[None, :] * _diag_weight(ptype, nn, dims)[:, None]
    if ptype in (_S.DIRICHLET, _S.MRF):
        precisions = spatial
    else:
        precisions = p0[None, :] + spatial

    denom = jnp.where(weight8 != 0, weight8 + weight12, 1.0)
    m_tmp = jnp.where((weight8 != 0)[:, None], (contrib8 + contrib12) / denom[:, None], 0.0)
    if ptype is _S.MRF:
        m_tmp = contrib8 / (16.0 * dims)
    elif ptype is _S.MRF2:
        m_tmp = contrib8 / (8.0 * (nn + 1e-8))[:, None]

    if ptype in (_S.MRF, _S.MRF2):
        means = spatial * m_tmp / precisions
    else:
        means = (spatial * m_tmp + p0[None, :] * m0[None, :]) / precisions
    return precisions, means
