"""
ICP Refinement

Robust point-to-plane ICP swept over the pyramid from coarse to fine.
Each iteration:
1. Transforms the model level by the current pose
2. Finds the nearest scan point within the level's correspondence gate
3. Rejects pairs whose normals disagree (|cos| below threshold)
4. Computes signed point-to-plane residuals on the scan normals
5. Trims the largest residuals, keeping the best fraction
6. Applies Huber weights to the remaining residuals
7. Solves the 6-DoF linearized system and composes the update on the left

Numerical faults (too few surviving correspondences, singular systems) end
refinement of that seed on that level; they never escape the refiner.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from ..acceleration.parallel_executor import TaskParallelExecutor
from ..preprocessing.point_set import PointSet
from ..preprocessing.voxel_index import VoxelIndex
from ..utils.config import ICPLevelParams, RegistrationConfig
from ..utils.logging import setup_logger
from ..utils.rigid_transform import (
    apply_transformation,
    orthonormalize_transform,
    rotate_vectors,
    rotation_angle_deg,
    se3_increment,
    skew,
)
from .coarse_registration import CandidateSeed
from .results import (
    STOP_CONVERGED,
    STOP_MAX_ITERATIONS,
    STOP_NUMERICAL_FAILURE,
    LevelReport,
)

logger = setup_logger(__name__)

# Minimum correspondences for a 6-DoF solve
MIN_CORRESPONDENCES = 3
# Eigenvalues below this fraction of the largest are treated as unconstrained
DEGENERACY_RATIO = 1e-6
# Seeds whose final RMSE differs by less than this fraction of the finest voxel tie
RMSE_TIE_FACTOR = 1e-3


class NumericalFailure(RuntimeError):
    """Raised inside an iteration when the least-squares step cannot be computed."""


class Correspondences(NamedTuple):
    """Trimmed correspondences of one iteration (model side already transformed)."""

    source: np.ndarray
    target: np.ndarray
    normals: np.ndarray
    residuals: np.ndarray
    n_valid: int
    n_model: int

    @property
    def rmse(self) -> float:
        return float(np.sqrt(np.mean(self.residuals ** 2)))

    @property
    def inlier_fraction(self) -> float:
        return len(self.residuals) / self.n_model if self.n_model else 0.0


@dataclass
class SeedRefinement:
    """A seed after refinement over all pyramid levels."""

    seed: CandidateSeed
    pose: np.ndarray
    levels: List[LevelReport] = field(default_factory=list)

    @property
    def rmse(self) -> float:
        return self.levels[-1].rmse if self.levels else float("inf")

    @property
    def inlier_fraction(self) -> float:
        return self.levels[-1].inlier_fraction if self.levels else 0.0

    @property
    def iterations(self) -> int:
        return sum(r.iterations for r in self.levels)


class ICPRefiner:
    """
    Robust point-to-plane ICP over model/scan pyramids.

    The refiner holds configuration only; all per-request data (pyramids,
    indexes, poses) is passed in, so one instance may serve several threads.
    """

    def __init__(self, config: Optional[RegistrationConfig] = None):
        self.config = config or RegistrationConfig()

    def level_params(self, level: int, voxel_size: float) -> ICPLevelParams:
        return self.config.level_params(level, voxel_size)

    # ------------------------ Target indexes ------------------------
    def build_target_index(self, scan_level: PointSet, params: ICPLevelParams) -> VoxelIndex:
        """Raw-mode index over a scan level; cell edge covers the correspondence gate."""
        cell = max(params.max_correspondence_distance, params.voxel_size)
        return VoxelIndex.build(scan_level, cell_size=cell)

    def prepare_targets(self, scan_pyramid: Sequence[PointSet]) -> List[VoxelIndex]:
        """Build one read-only index per scan level, shared by every seed."""
        start = time.time()
        indexes = [
            self.build_target_index(level, self.level_params(i, level.voxel_size))
            for i, level in enumerate(scan_pyramid)
        ]
        logger.debug(
            "Built %d scan indexes in %.4f s (cells per level: %s)",
            len(indexes),
            time.time() - start,
            [idx.n_cells for idx in indexes],
        )
        return indexes

    # ------------------------ Per-iteration steps ------------------------
    def find_correspondences(
        self,
        model_level: PointSet,
        scan_level: PointSet,
        index: VoxelIndex,
        pose: np.ndarray,
        params: ICPLevelParams,
    ) -> Correspondences:
        """
        Gate, score and trim correspondences of ``model_level`` placed at ``pose``.

        Raises:
            NumericalFailure: If fewer than 3 correspondences survive trimming
        """
        if scan_level.normals is None:
            raise ValueError("Scan level has no normals; build it through the Preprocessor")

        moved = apply_transformation(model_level.positions, pose)
        idx, _ = index.nearest_many(moved, params.max_correspondence_distance)
        valid = idx >= 0

        if model_level.normals is not None and valid.any():
            moved_normals = rotate_vectors(model_level.normals[valid], pose)
            cos = np.abs(np.einsum("ij,ij->i", moved_normals, scan_level.normals[idx[valid]]))
            agree = np.zeros_like(valid)
            agree[np.flatnonzero(valid)] = cos >= params.normal_cos_min
            valid = agree

        source = moved[valid]
        target = scan_level.positions[idx[valid]]
        normals = scan_level.normals[idx[valid]]
        residuals = np.einsum("ij,ij->i", source - target, normals)

        n_valid = len(residuals)
        n_keep = int(np.floor(params.trim_fraction * n_valid + 1e-9))
        if n_keep < MIN_CORRESPONDENCES:
            raise NumericalFailure(
                f"only {n_keep} of {n_valid} correspondences left after trimming "
                f"(trim fraction {params.trim_fraction:g})"
            )

        keep = np.argsort(np.abs(residuals), kind="stable")[:n_keep]
        return Correspondences(
            source=source[keep],
            target=target[keep],
            normals=normals[keep],
            residuals=residuals[keep],
            n_valid=n_valid,
            n_model=len(moved),
        )

    @staticmethod
    def huber_weights(residuals: np.ndarray, delta: float) -> np.ndarray:
        a = np.abs(residuals)
        return np.where(a <= delta, 1.0, delta / np.maximum(a, 1e-12))

    def estimate_increment(self, corr: Correspondences, huber_delta: float) -> np.ndarray:
        """
        Solve the weighted point-to-plane normal equations for xi = (omega, v).

        Directions the point-to-plane system leaves unconstrained (e.g. sliding
        along a single plane) are filled in from the point-to-point
        linearization.
        """
        w = self.huber_weights(corr.residuals, huber_delta)
        J = np.hstack([np.cross(corr.source, corr.normals), corr.normals])
        H = (J * w[:, None]).T @ J
        g = J.T @ (w * corr.residuals)

        eigvals, eigvecs = np.linalg.eigh(H)
        lam_max = float(eigvals[-1])
        if not np.isfinite(lam_max) or lam_max <= 0.0:
            raise NumericalFailure("point-to-plane normal matrix is zero")

        strong = eigvals > DEGENERACY_RATIO * lam_max
        Vs = eigvecs[:, strong]
        xi = -Vs @ ((Vs.T @ g) / eigvals[strong])

        if not strong.all():
            Vd = eigvecs[:, ~strong]
            xi_pp = self._point_to_point_increment(corr, w)
            xi = xi + Vd @ (Vd.T @ xi_pp)

        if not np.all(np.isfinite(xi)):
            raise NumericalFailure("non-finite pose increment")
        return xi

    @staticmethod
    def _point_to_point_increment(corr: Correspondences, weights: np.ndarray) -> np.ndarray:
        # Linearized p + omega x p + v - q = 0, stacked 3 rows per correspondence
        k = len(corr.source)
        A = np.zeros((k, 3, 6))
        A[:, :, :3] = -np.stack([skew(p) for p in corr.source])
        A[:, :, 3:] = np.eye(3)
        b = corr.source - corr.target
        sw = np.sqrt(weights)[:, None]
        A = (A * sw[:, :, None]).reshape(3 * k, 6)
        b = (b * sw).reshape(3 * k)
        xi, *_ = np.linalg.lstsq(A, -b, rcond=None)
        return xi

    # ------------------------ Level / seed loops ------------------------
    def evaluate(
        self,
        model_level: PointSet,
        scan_level: PointSet,
        index: VoxelIndex,
        pose: np.ndarray,
        params: ICPLevelParams,
    ) -> Tuple[float, float, int]:
        """
        Measure a pose without refining it.

        Returns:
            Tuple of (rmse, inlier_fraction, n_correspondences); (inf, 0.0, 0)
            when too few correspondences survive.
        """
        try:
            corr = self.find_correspondences(model_level, scan_level, index, pose, params)
        except NumericalFailure:
            return float("inf"), 0.0, 0
        return corr.rmse, corr.inlier_fraction, len(corr.residuals)

    def refine_level(
        self,
        model_level: PointSet,
        scan_level: PointSet,
        index: VoxelIndex,
        pose: np.ndarray,
        params: ICPLevelParams,
        level: int = 0,
    ) -> Tuple[np.ndarray, LevelReport]:
        """
        Iterate point-to-plane ICP on one level until convergence or the cap.

        Args:
            model_level: Model pyramid level (with normals)
            scan_level: Scan pyramid level (with normals)
            index: Raw index over ``scan_level``
            pose: Starting 4x4 model-in-world pose
            params: Resolved level parameters
            level: Level number for reporting

        Returns:
            Tuple of (refined_pose, level_report)
        """
        pose = np.array(pose, dtype=float, copy=True)
        previous_rmse = float("inf")
        n_iterations = 0
        stop_reason = STOP_MAX_ITERATIONS
        level_start = time.time()

        for iteration in range(params.max_iterations):
            try:
                corr = self.find_correspondences(model_level, scan_level, index, pose, params)
                xi = self.estimate_increment(corr, params.huber_delta)
            except (NumericalFailure, np.linalg.LinAlgError) as e:
                logger.warning(
                    "Level %d (voxel %.3f m) iteration %d: numerical failure (%s); stopping level.",
                    level,
                    params.voxel_size,
                    iteration + 1,
                    e,
                )
                stop_reason = STOP_NUMERICAL_FAILURE
                break

            delta = se3_increment(xi)
            # Increments are estimated in the scan frame, so compose on the left
            pose = orthonormalize_transform(delta @ pose)
            current_rmse = corr.rmse
            n_iterations = iteration + 1

            logger.debug(
                "Level %d iteration %d: RMSE=%.6f m, inliers=%.3f, |Δt|=%.3e m, Δθ=%.3e deg",
                level,
                n_iterations,
                current_rmse,
                corr.inlier_fraction,
                float(np.linalg.norm(delta[:3, 3])),
                rotation_angle_deg(delta),
            )

            if abs(previous_rmse - current_rmse) < params.convergence_rmse_delta:
                stop_reason = STOP_CONVERGED
                break
            previous_rmse = current_rmse

        rmse, inlier_fraction, n_corr = self.evaluate(model_level, scan_level, index, pose, params)
        logger.debug(
            "Level %d finished in %.4f s: %d iterations (%s), RMSE=%.6f m, inliers=%.3f",
            level,
            time.time() - level_start,
            n_iterations,
            stop_reason,
            rmse,
            inlier_fraction,
        )
        report = LevelReport(
            level=level,
            voxel_size=params.voxel_size,
            iterations=n_iterations,
            rmse=rmse,
            inlier_fraction=inlier_fraction,
            n_correspondences=n_corr,
            stop_reason=stop_reason,
        )
        return pose, report

    def refine_seed(
        self,
        seed: CandidateSeed,
        model_pyramid: Sequence[PointSet],
        scan_pyramid: Sequence[PointSet],
        indexes: Sequence[VoxelIndex],
        progress_callback: Optional[Callable[[str, dict], None]] = None,
    ) -> SeedRefinement:
        """
        Refine one seed from the coarsest to the finest level.

        A numerical failure stops the current level only; the next level
        starts from the last good pose.
        """
        pose = seed.pose
        reports = []
        for level, (model_level, scan_level, index) in enumerate(zip(model_pyramid, scan_pyramid, indexes)):
            params = self.level_params(level, scan_level.voxel_size)
            pose, report = self.refine_level(model_level, scan_level, index, pose, params, level=level)
            reports.append(report)
            if progress_callback:
                progress_callback(
                    "icp_refinement",
                    {"seed": seed.rank, "level": level, "iterations": report.iterations},
                )

        final = reports[-1] if reports else None
        logger.info(
            "Seed %d (yaw %.1f deg) refined: RMSE=%.6f m, inliers=%.3f, %d iterations",
            seed.rank,
            seed.yaw_deg,
            final.rmse if final else float("inf"),
            final.inlier_fraction if final else 0.0,
            sum(r.iterations for r in reports),
        )
        return SeedRefinement(seed=seed, pose=pose, levels=reports)

    def refine(
        self,
        seeds: Sequence[CandidateSeed],
        model_pyramid: Sequence[PointSet],
        scan_pyramid: Sequence[PointSet],
        indexes: Optional[Sequence[VoxelIndex]] = None,
        executor: Optional[TaskParallelExecutor] = None,
        progress_callback: Optional[Callable[[str, dict], None]] = None,
    ) -> List[SeedRefinement]:
        """
        Refine every seed; seeds run on ``executor`` threads when one is given.

        The progress callback may then be invoked from worker threads.
        """
        if len(model_pyramid) != len(scan_pyramid):
            raise ValueError(
                f"Pyramid depth mismatch: model={len(model_pyramid)}, scan={len(scan_pyramid)}"
            )
        if indexes is None:
            indexes = self.prepare_targets(scan_pyramid)

        kwargs = {
            "model_pyramid": model_pyramid,
            "scan_pyramid": scan_pyramid,
            "indexes": indexes,
            "progress_callback": progress_callback,
        }
        if executor is not None:
            return executor.map_tasks(items=list(seeds), worker_fn=self.refine_seed, worker_kwargs=kwargs)
        return [self.refine_seed(seed, **kwargs) for seed in seeds]

    @staticmethod
    def select_best(refinements: Sequence[SeedRefinement], finest_voxel: float) -> SeedRefinement:
        """
        Lowest final RMSE wins; near-ties go to the higher inlier fraction,
        then to the better-ranked seed.
        """
        if not refinements:
            raise ValueError("No refined seeds to select from")
        best_rmse = min(r.rmse for r in refinements)
        if not np.isfinite(best_rmse):
            return min(refinements, key=lambda r: r.seed.rank)
        tol = RMSE_TIE_FACTOR * finest_voxel
        tied = [r for r in refinements if r.rmse <= best_rmse + tol]
        return min(tied, key=lambda r: (-r.inlier_fraction, r.seed.rank))
