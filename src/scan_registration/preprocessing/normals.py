"""
Per-point normal estimation by local PCA.

For each point, neighbors within ``radius`` are gathered through a
:class:`VoxelIndex` whose cell edge equals the radius, so the 3x3x3 block
around the point covers the whole search sphere. The normal is the
eigenvector of the smallest eigenvalue of the neighborhood covariance,
flipped to agree with the supplied up direction. Points with fewer than
``min_neighbors`` neighbors (the point itself included) take the up
direction as their normal.
"""

from __future__ import annotations

import numpy as np

from .point_set import PointSet
from .voxel_index import VoxelIndex


def estimate_normals(
    points: PointSet,
    radius: float,
    up: np.ndarray,
    min_neighbors: int = 3,
) -> np.ndarray:
    """
    Estimate unit normals for every point of ``points``.

    Args:
        points: Point set (typically one voxel-downsampled pyramid level)
        radius: Neighborhood radius in meters (about 3x the voxel size)
        up: Unit up direction used for orientation and as fallback normal
        min_neighbors: Minimum neighborhood size for a PCA normal

    Returns:
        (N, 3) array of unit normals
    """
    up = np.asarray(up, dtype=float).reshape(3)
    n = len(points)
    if n == 0:
        return np.empty((0, 3))

    pos = points.positions
    index = VoxelIndex.build(points, cell_size=radius)
    r2 = radius * radius

    # Moments are accumulated relative to the query point for numerical stability
    counts = np.zeros(n, dtype=np.int64)
    first = np.zeros((n, 3))
    second = np.zeros((n, 3, 3))
    for q_idx, p_idx in index.candidate_pairs(pos):
        d = pos[p_idx] - pos[q_idx]
        inside = np.einsum("ij,ij->i", d, d) <= r2
        if not inside.any():
            continue
        q = q_idx[inside]
        d = d[inside]
        counts[q] += 1
        first[q] += d
        second[q] += d[:, :, None] * d[:, None, :]

    normals = np.tile(up, (n, 1))
    enough = counts >= min_neighbors
    if not enough.any():
        return normals

    c = counts[enough].astype(float)
    mean = first[enough] / c[:, None]
    cov = second[enough] / c[:, None, None] - mean[:, :, None] * mean[:, None, :]

    # eigh returns eigenvalues ascending; column 0 is the surface normal
    _, vecs = np.linalg.eigh(cov)
    est = vecs[:, :, 0]
    est /= np.linalg.norm(est, axis=1, keepdims=True)

    # Orient by up (flip to face similar direction)
    flip = est @ up < 0
    est[flip] *= -1.0
    normals[enough] = est
    return normals
