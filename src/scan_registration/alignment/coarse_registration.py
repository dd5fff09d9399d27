"""
Coarse Pose Estimation

Generates a small set of seed poses that place the model near the scan, so
that fine ICP starts inside the right basin of convergence.

Steps:
- gravity: rotate the model's up axis onto the scan's up axis
- pca: align the dominant horizontal axis of the model with the scan's
- center: move the model's bounding-box center onto the scan's
- yaw sweep: extra seeds rotated about up by configured offsets
- scoring: truncated point-to-plane RMS on the coarsest level, ascending

All poses are 4x4 model-in-world transforms.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from ..preprocessing.point_set import PointSet
from ..preprocessing.voxel_index import VoxelIndex
from ..utils.logging import setup_logger
from ..utils.rigid_transform import (
    apply_transformation,
    make_transform,
    normalize_vector,
    rotation_about_axis,
    rotation_between,
)

logger = setup_logger(__name__)

# Horizontal spread with eigenvalue ratio above this has no dominant axis
ISOTROPY_RATIO = 0.9


@dataclass
class CandidateSeed:
    """A seed pose with its coarse-fit score (lower is better)."""

    pose: np.ndarray
    score: float
    yaw_offset_deg: float
    yaw_deg: float
    rank: int = 0


def _horizontal_basis(up: np.ndarray) -> np.ndarray:
    """Two orthonormal vectors spanning the plane orthogonal to ``up`` (rows)."""
    helper = np.eye(3)[int(np.argmin(np.abs(up)))]
    u = normalize_vector(np.cross(up, helper))
    w = np.cross(up, u)
    return np.vstack([u, w])


def _wrap_half_turn(angle_deg: float) -> float:
    """Wrap an axis angle to (-90, 90]; principal axes carry a 180 degree ambiguity."""
    a = (angle_deg + 90.0) % 180.0 - 90.0
    if a <= -90.0:
        a += 180.0
    return a


@dataclass
class CoarsePoseEstimator:
    up: np.ndarray = field(default_factory=lambda: np.array([0.0, 1.0, 0.0]))
    model_up: Optional[np.ndarray] = None
    yaw_offsets_deg: Sequence[float] = (0.0, 45.0, -45.0, 90.0, -90.0)
    top_k: int = 2
    use_pca: bool = True
    score_distance: float = 0.08

    def __post_init__(self) -> None:
        self.up = normalize_vector(self.up)
        self.model_up = self.up.copy() if self.model_up is None else normalize_vector(self.model_up)

    def estimate(
        self,
        model: PointSet,
        scan: PointSet,
        scan_index: Optional[VoxelIndex] = None,
    ) -> List[CandidateSeed]:
        """
        Propose the top-K seed poses for coarsest-level ``model`` and ``scan``.

        Args:
            model: Coarsest model pyramid level
            scan: Coarsest scan pyramid level (normals required for scoring)
            scan_index: Optional prebuilt raw index over ``scan``

        Returns:
            Seeds sorted by ascending score, at most ``top_k`` of them
        """
        if model.is_empty or scan.is_empty:
            raise ValueError("Coarse pose estimation requires non-empty model and scan")

        R_gravity = rotation_between(self.model_up, self.up)
        model_pts = apply_transformation(model.positions, make_transform(R_gravity, np.zeros(3)))
        scan_center = scan.bbox_center()

        degenerate = len(model) < 3 or len(scan) < 3
        if degenerate:
            logger.warning(
                "Too few points for PCA (model=%d, scan=%d); using gravity + centering only.",
                len(model),
                len(scan),
            )
            offsets: Sequence[float] = (0.0,)
            base_yaw = 0.0
        else:
            offsets = self.yaw_offsets_deg
            base_yaw = self._pca_yaw(model_pts, scan.positions) if self.use_pca else 0.0

        if scan_index is None:
            scan_index = VoxelIndex.build(scan, cell_size=max(self.score_distance, scan.voxel_size or 0.0))

        seeds = []
        for offset in offsets:
            yaw = base_yaw + float(offset)
            R = rotation_about_axis(self.up, np.deg2rad(yaw)) @ R_gravity
            pose = self._centered_pose(R, model.positions, scan_center)
            score = self._score(pose, model, scan, scan_index)
            seeds.append(CandidateSeed(pose=pose, score=score, yaw_offset_deg=float(offset), yaw_deg=yaw))
            logger.debug("Seed yaw %.1f deg (offset %.1f): score %.5f", yaw, offset, score)

        # Stable sort keeps configuration order among equal scores
        seeds.sort(key=lambda s: s.score)
        selected = seeds[: max(1, self.top_k)]
        for rank, seed in enumerate(selected):
            seed.rank = rank

        logger.info(
            "Coarse alignment: %d seeds scored, keeping %d (best yaw %.1f deg, score %.5f)",
            len(seeds),
            len(selected),
            selected[0].yaw_deg,
            selected[0].score,
        )
        return selected

    # ------------------------ Methods ------------------------
    def _pca_yaw(self, model_pts: np.ndarray, scan_pts: np.ndarray) -> float:
        """Yaw (deg) about up turning the model's dominant horizontal axis onto the scan's."""
        basis = _horizontal_basis(self.up)
        angle_model = self._dominant_angle(model_pts @ basis.T)
        angle_scan = self._dominant_angle(scan_pts @ basis.T)
        if angle_model is None or angle_scan is None:
            logger.debug("Horizontal spread is isotropic; skipping PCA yaw.")
            return 0.0
        return _wrap_half_turn(angle_scan - angle_model)

    @staticmethod
    def _dominant_angle(xy: np.ndarray) -> Optional[float]:
        A = xy - xy.mean(axis=0)
        C = (A.T @ A) / max(1, len(A))
        w, V = np.linalg.eigh(C)
        # eigh sorts ascending
        if w[1] <= 0 or w[0] / w[1] >= ISOTROPY_RATIO:
            return None
        axis = V[:, 1]
        return float(np.degrees(np.arctan2(axis[1], axis[0])))

    @staticmethod
    def _centered_pose(R: np.ndarray, model_pts: np.ndarray, scan_center: np.ndarray) -> np.ndarray:
        rotated = model_pts @ R.T
        center = 0.5 * (rotated.min(axis=0) + rotated.max(axis=0))
        return make_transform(R, scan_center - center)

    def _score(self, pose: np.ndarray, model: PointSet, scan: PointSet, scan_index: VoxelIndex) -> float:
        """Truncated point-to-plane RMS; unmatched model points count as the gate distance."""
        gate = self.score_distance
        moved = apply_transformation(model.positions, pose)
        idx, _ = scan_index.nearest_many(moved, gate)
        residuals = np.full(len(moved), gate)
        matched = idx >= 0
        if matched.any():
            diff = moved[matched] - scan.positions[idx[matched]]
            if scan.normals is not None:
                r = np.abs(np.einsum("ij,ij->i", diff, scan.normals[idx[matched]]))
            else:
                r = np.linalg.norm(diff, axis=1)
            residuals[matched] = np.minimum(r, gate)
        return float(np.sqrt(np.mean(residuals ** 2)))
