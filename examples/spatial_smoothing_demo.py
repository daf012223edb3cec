"""
Spatial priors on a noisy 3D field using spatialvb_jax.

A smooth field (a Gaussian blob) is observed with heavy noise at every
voxel of a small grid. The same data are fitted with a nonspatial prior
(N), a shrinkage prior (S) and an evidence-optimised smoothing prior (D),
and the middle slice of each posterior mean is plotted.
"""

import logging

import matplotlib.pyplot as plt
import numpy as np

from spatialvb_jax import SpatialVB, SpatialVBCFG, VoxelData, run

logging.basicConfig(level=logging.WARNING)


# ============================================================
# Synthetic data
# ============================================================

def make_volume(shape=(10, 10, 4), n_t=6, noise_std=1.0, seed=0):
    """(X, Y, Z, T) volume: Gaussian blob plus white noise."""
    rng = np.random.default_rng(seed)
    x, y, z = np.meshgrid(*[np.arange(s) for s in shape], indexing="ij")
    centre = np.array(shape) / 2.0
    r2 = (x - centre[0]) ** 2 + (y - centre[1]) ** 2 + (z - centre[2]) ** 2
    truth = 3.0 * np.exp(-r2 / 12.0)
    volume = truth[..., None] + noise_std * rng.normal(size=shape + (n_t,))
    return truth, volume


def to_volume(values, coords, shape):
    out = np.full(shape, np.nan)
    out[coords[:, 0], coords[:, 1], coords[:, 2]] = np.asarray(values)
    return out


# ============================================================
# Demo
# ============================================================

def demo():
    print("=" * 70)
    print("Spatial VB: nonspatial vs shrinkage vs smoothing priors")
    print("=" * 70)

    shape = (10, 10, 4)
    truth, volume = make_volume(shape)
    data = VoxelData.from_volume(volume, voxel_size=(2.0, 2.0, 2.0))
    print(f"\n✓ {len(data)} voxels, {data.num_timepoints} timepoints")

    fits = {}
    print(f"\n{'prior':<8} {'RMSE':<10} {'delta':<10} {'iters':<6}")
    print("-" * 36)
    for prior_types in ("N", "S", "D"):
        out = run(
            method=SpatialVB(SpatialVBCFG(prior_types=prior_types)),
            data=data,
            model="trivial",
            model_kwargs={"num_timepoints": data.num_timepoints, "prior_precision": 1.0},
            convergence="fchange",
            convergence_kwargs={"max_iterations": 20},
        )
        means = to_volume(out.result.posterior.means[:, 0], data.coords, shape)
        rmse = float(np.sqrt(np.nanmean((means - truth) ** 2)))
        fits[prior_types] = means
        print(f"{prior_types:<8} {rmse:<10.3f} {out.diagnostics['delta'][0]:<10.3g} {out.diagnostics['iterations']:<6}")

    sl = shape[2] // 2
    fig, axes = plt.subplots(1, 4, figsize=(14, 3.5))
    panels = [("truth", truth)] + [(f"prior {k}", v) for k, v in fits.items()]
    for ax, (title, img) in zip(axes, panels):
        im = ax.imshow(img[:, :, sl].T, origin="lower", vmin=-0.5, vmax=3.0, cmap="viridis")
        ax.set_title(title)
        ax.set_xticks([])
        ax.set_yticks([])
    fig.colorbar(im, ax=axes, shrink=0.8)
    plt.show()


if __name__ == "__main__":
    demo()
