"""
Scan / model preprocessing into multi-resolution pyramids.

The Preprocessor filters the raw scan (finite, confidence, range), cleans the
model (finite only) and builds one pyramid level per voxel size. Every level
is derived from the same filtered point set, never from the previous level,
so downsampling error does not compound across levels.
"""

from __future__ import annotations

import time
from typing import List, Optional, Sequence

import numpy as np

from ..acceleration.parallel_executor import TaskParallelExecutor
from ..utils.config import RegistrationConfig
from ..utils.logging import setup_logger
from ..utils.point_cloud_filters import (
    create_confidence_mask,
    create_finite_mask,
    create_range_mask,
    get_filter_statistics,
)
from .normals import estimate_normals
from .point_set import PointSet
from .voxel_index import MODE_CENTROID, VoxelIndex

logger = setup_logger(__name__)


def voxel_downsample(points: PointSet, voxel_size: float) -> PointSet:
    """Average all points falling in each cell of edge ``voxel_size`` to one point."""
    return VoxelIndex.build(points, cell_size=voxel_size, mode=MODE_CENTROID).to_point_set()


def _check_voxel_sizes(voxel_sizes: Sequence[float]) -> List[float]:
    sizes = [float(v) for v in voxel_sizes]
    if not sizes:
        raise ValueError("At least one voxel size is required")
    if any((not np.isfinite(v)) or v <= 0 for v in sizes):
        raise ValueError(f"Voxel sizes must be positive, got {sizes}")
    if any(b >= a for a, b in zip(sizes, sizes[1:])):
        raise ValueError(
            f"Voxel sizes must be strictly decreasing (coarsest first), got {sizes}; "
            "sort them descending before building a pyramid"
        )
    return sizes


class Preprocessor:
    """
    Turns raw scan and model point sets into pyramids with per-point normals.

    Args:
        config: Registration configuration (filters, voxel sizes, normal radius)
        executor: Optional executor used to build levels concurrently
    """

    def __init__(self, config: Optional[RegistrationConfig] = None, executor: Optional[TaskParallelExecutor] = None):
        self.config = config or RegistrationConfig()
        self.executor = executor

    # ------------------------ Filtering ------------------------
    def filter_scan(self, scan: PointSet) -> PointSet:
        """
        Drop non-finite, low-confidence and out-of-range scan points.

        Returns a new point set; the caller's arrays are never modified.
        """
        cfg = self.config
        n_total = len(scan)
        finite = create_finite_mask(scan.positions)
        n_finite = int(finite.sum())

        mask = finite & create_confidence_mask(scan.confidences, n_total, cfg.min_confidence)
        # Range test on finite rows only; NaN rows are already excluded by the mask
        safe_positions = np.where(finite[:, None], scan.positions, 0.0) if n_total else scan.positions
        mask &= create_range_mask(safe_positions, cfg.min_range, cfg.max_range, origin=cfg.sensor_origin)

        filtered = scan.subset(mask)
        stats = get_filter_statistics(
            n_total,
            n_finite,
            len(filtered),
            min_confidence=cfg.min_confidence if scan.confidences is not None else None,
            min_range=cfg.min_range,
            max_range=cfg.max_range,
        )
        logger.info(
            "Scan filter kept %d/%d points (%.1f%%; %s; %d non-finite)",
            stats["filtered_points"],
            stats["total_points"],
            stats["percentage"],
            stats["filter_description"],
            stats["non_finite_points"],
        )
        return filtered

    def prepare_model(self, model: PointSet) -> PointSet:
        """Drop non-finite model points; model samples are trusted otherwise."""
        cleaned = model.finite()
        dropped = len(model) - len(cleaned)
        if dropped:
            logger.warning("Dropped %d non-finite model points", dropped)
        return cleaned

    # ------------------------ Pyramid ------------------------
    def build_level(self, voxel_size: float, points: PointSet, up: np.ndarray) -> PointSet:
        """
        Build a single pyramid level at ``voxel_size`` from ``points``.

        Source normals, when present, survive as cell averages; otherwise
        normals are estimated by local PCA and oriented toward ``up``.
        """
        cfg = self.config
        level = voxel_downsample(points, voxel_size)

        if cfg.max_points_per_level is not None and len(level) > cfg.max_points_per_level:
            stride = int(np.ceil(len(level) / cfg.max_points_per_level))
            level = level.subset(np.arange(0, len(level), stride))

        if level.normals is None:
            normals = estimate_normals(
                level,
                radius=cfg.normal_radius_factor * voxel_size,
                up=up,
                min_neighbors=cfg.min_normal_neighbors,
            )
        else:
            normals = level.normals

        return PointSet(
            positions=level.positions,
            normals=normals,
            confidences=level.confidences,
            voxel_size=float(voxel_size),
            up=np.asarray(up, dtype=float).copy(),
            name=points.name,
        )

    def build_pyramid(
        self,
        points: PointSet,
        up: np.ndarray,
        voxel_sizes: Optional[Sequence[float]] = None,
    ) -> List[PointSet]:
        """
        Build one level per voxel size, coarsest first.

        Args:
            points: Filtered point set (scan or model)
            up: Unit up vector used to orient normals
            voxel_sizes: Strictly decreasing voxel sizes; defaults to the
                configured sizes sorted descending

        Returns:
            List of point sets, one per voxel size
        """
        sizes = _check_voxel_sizes(
            self.config.sorted_voxel_sizes() if voxel_sizes is None else voxel_sizes
        )
        start = time.time()

        if self.executor is not None and len(sizes) > 1:
            levels = self.executor.map_tasks(
                items=sizes,
                worker_fn=self.build_level,
                worker_kwargs={"points": points, "up": up},
            )
        else:
            levels = [self.build_level(v, points, up) for v in sizes]

        logger.info(
            "Pyramid for '%s' built in %.3fs: %s",
            points.name or "points",
            time.time() - start,
            ", ".join(f"{v:g} m -> {len(lvl)}" for v, lvl in zip(sizes, levels)),
        )
        return levels
