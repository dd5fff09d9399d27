"""
Point set container shared by every pipeline stage.

A point set is an ordered (N, 3) array of positions in meters with optional
unit normals and confidence weights in [0, 1]. Pyramid levels additionally
carry the voxel size they were built at, their bounds and the up vector used
to orient their normals.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np

from ..utils.point_cloud_filters import create_finite_mask


@dataclass(frozen=True, eq=False)
class PointSet:
    """Immutable point set.

    Attributes:
        positions: (N, 3) float64 positions
        normals: Optional (N, 3) unit normals
        confidences: Optional (N,) confidence weights in [0, 1]
        voxel_size: Voxel size this set was built at (pyramid levels only)
        up: Up vector used to orient normals (pyramid levels only)
        name: Identity of the source (e.g. model asset id), echoed in results
    """

    positions: np.ndarray
    normals: Optional[np.ndarray] = None
    confidences: Optional[np.ndarray] = None
    voxel_size: Optional[float] = None
    up: Optional[np.ndarray] = field(default=None, repr=False)
    name: Optional[str] = None

    def __post_init__(self) -> None:
        pos = np.asarray(self.positions, dtype=float)
        if pos.size == 0:
            pos = pos.reshape(0, 3)
        if pos.ndim != 2 or pos.shape[1] != 3:
            raise ValueError(f"Expected Nx3 positions, got shape {pos.shape}")
        object.__setattr__(self, "positions", pos)

        n = len(pos)
        if self.normals is not None:
            nrm = np.asarray(self.normals, dtype=float).reshape(-1, 3) if n else np.empty((0, 3))
            if nrm.shape != (n, 3):
                raise ValueError(f"Expected {n}x3 normals, got shape {nrm.shape}")
            object.__setattr__(self, "normals", nrm)
        if self.confidences is not None:
            conf = np.asarray(self.confidences, dtype=float).reshape(-1)
            if conf.shape != (n,):
                raise ValueError(f"Expected {n} confidences, got shape {conf.shape}")
            object.__setattr__(self, "confidences", conf)

    @classmethod
    def from_arrays(
        cls,
        positions: np.ndarray,
        normals: Optional[np.ndarray] = None,
        confidences: Optional[np.ndarray] = None,
        *,
        name: Optional[str] = None,
    ) -> "PointSet":
        """Build a point set from caller arrays, copying them so callers keep ownership."""
        return cls(
            positions=np.array(positions, dtype=float, copy=True),
            normals=None if normals is None else np.array(normals, dtype=float, copy=True),
            confidences=None if confidences is None else np.array(confidences, dtype=float, copy=True),
            name=name,
        )

    def __len__(self) -> int:
        return len(self.positions)

    @property
    def is_empty(self) -> bool:
        return len(self.positions) == 0

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    def subset(self, mask_or_index: np.ndarray) -> "PointSet":
        """Return a new point set restricted to a boolean mask or index array."""
        return replace(
            self,
            positions=self.positions[mask_or_index],
            normals=None if self.normals is None else self.normals[mask_or_index],
            confidences=None if self.confidences is None else self.confidences[mask_or_index],
        )

    def finite(self) -> "PointSet":
        """Drop points whose positions contain NaN or Inf."""
        mask = create_finite_mask(self.positions)
        if mask.all():
            return self
        return self.subset(mask)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Axis-aligned bounds (min, max); raises on an empty set."""
        if self.is_empty:
            raise ValueError("Cannot compute bounds of an empty point set")
        return self.positions.min(axis=0), self.positions.max(axis=0)

    def bbox_center(self) -> np.ndarray:
        lo, hi = self.bounds()
        return 0.5 * (lo + hi)
