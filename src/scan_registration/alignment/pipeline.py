"""
Registration Pipeline

Single entry point wiring preprocessing, coarse pose estimation and ICP
refinement together. Every call owns its pyramids and indexes; nothing is
shared between calls, and caller-owned point sets are never modified.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from ..acceleration.parallel_executor import TaskParallelExecutor
from ..preprocessing.point_set import PointSet
from ..preprocessing.pyramid import Preprocessor
from ..preprocessing.voxel_index import extent_fits
from ..utils.config import RegistrationConfig
from ..utils.logging import setup_logger
from .coarse_registration import CoarsePoseEstimator
from .fine_registration import MIN_CORRESPONDENCES, ICPRefiner
from .results import RegistrationMetrics, RegistrationResult, RegistrationStatus

logger = setup_logger(__name__)

ProgressCallback = Callable[[str, dict], None]


class RegistrationPipeline:
    """
    Scan-to-model rigid registration.

    Example:
        pipeline = RegistrationPipeline(RegistrationConfig(up=[0, 0, 1]))
        result = pipeline.register(scan, model)
        if result.has_pose:
            placed = result.apply_to(model_points)
    """

    def __init__(self, config: Optional[RegistrationConfig] = None):
        self.config = config or RegistrationConfig()

    def _executor(self) -> Optional[TaskParallelExecutor]:
        if self.config.parallel_seeds or self.config.parallel_levels:
            return TaskParallelExecutor(n_workers=self.config.n_workers)
        return None

    @staticmethod
    def _invalid(message: str, model_id: Optional[str], notify) -> RegistrationResult:
        logger.warning("Registration aborted: %s", message)
        result = RegistrationResult(
            status=RegistrationStatus.INVALID_INPUT,
            model_id=model_id,
            message=message,
        )
        notify("completed", status=result.status.value)
        return result

    def register(
        self,
        scan: PointSet,
        model: PointSet,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RegistrationResult:
        """
        Estimate the model-in-world pose aligning ``model`` with ``scan``.

        Args:
            scan: Raw scan points (optional confidences are filtered on)
            model: Model surface samples; ``model.name`` is echoed as model_id
            progress_callback: Optional callable receiving (stage, info) for the
                stages preprocessing, coarse_alignment, icp_refinement, completed

        Returns:
            RegistrationResult; ``invalid_input`` when either set is empty after
            filtering or spans more cells than the voxel index can address
        """
        cfg = self.config
        start = time.time()

        def notify(stage: str, **info) -> None:
            if progress_callback:
                progress_callback(stage, info)

        # 1) Preprocessing
        notify("preprocessing")
        executor = self._executor()
        preprocessor = Preprocessor(cfg, executor=executor if cfg.parallel_levels else None)
        scan_clean = preprocessor.filter_scan(scan)
        model_clean = preprocessor.prepare_model(model)

        if scan_clean.is_empty or model_clean.is_empty:
            message = (
                f"Empty input after filtering (scan={len(scan_clean)}/{len(scan)}, "
                f"model={len(model_clean)}/{len(model)})"
            )
            return self._invalid(message, model.name, notify)

        voxel_sizes = cfg.sorted_voxel_sizes()
        smallest_cell = voxel_sizes[-1] * min(1.0, cfg.normal_radius_factor)
        oversized = [
            name
            for name, pts in (("scan", scan_clean), ("model", model_clean))
            if not extent_fits(pts.positions, smallest_cell)
        ]
        if oversized:
            message = (
                f"Extent of {' and '.join(oversized)} too large to index at "
                f"cell size {smallest_cell:g} m"
            )
            return self._invalid(message, model.name, notify)

        scan_pyramid = preprocessor.build_pyramid(scan_clean, cfg.up_vector(), voxel_sizes)
        model_pyramid = preprocessor.build_pyramid(model_clean, cfg.model_up_vector(), voxel_sizes)

        # 2) Coarse alignment
        notify("coarse_alignment")
        refiner = ICPRefiner(cfg)
        indexes = refiner.prepare_targets(scan_pyramid)
        coarse_params = refiner.level_params(0, voxel_sizes[0])
        estimator = CoarsePoseEstimator(
            up=cfg.up_vector(),
            model_up=cfg.model_up_vector(),
            yaw_offsets_deg=cfg.yaw_offsets_deg,
            top_k=cfg.top_k_seeds,
            use_pca=cfg.use_pca,
            score_distance=coarse_params.max_correspondence_distance,
        )
        seeds = estimator.estimate(model_pyramid[0], scan_pyramid[0], scan_index=indexes[0])

        # 3) ICP refinement
        refinements = refiner.refine(
            seeds,
            model_pyramid,
            scan_pyramid,
            indexes=indexes,
            executor=executor if cfg.parallel_seeds else None,
            progress_callback=progress_callback,
        )
        finest_voxel = voxel_sizes[-1]
        best = refiner.select_best(refinements, finest_voxel)

        # 4) Quality gate (advisory)
        metrics = RegistrationMetrics(
            inlier_fraction=best.inlier_fraction,
            rmse=best.rmse,
            iterations=best.iterations,
            voxel_size=finest_voxel,
            timestamp=time.time(),
            elapsed_s=time.time() - start,
        )
        reasons = []
        n_min = min(len(scan_clean), len(model_clean))
        if n_min < MIN_CORRESPONDENCES:
            reasons.append(
                f"too few points for refinement (scan={len(scan_clean)}, model={len(model_clean)}, "
                f"need {MIN_CORRESPONDENCES})"
            )
        if not metrics.rmse <= cfg.max_rmse_factor * finest_voxel:
            reasons.append(f"RMSE {metrics.rmse:.4f} m > {cfg.max_rmse_factor:g} x {finest_voxel:g} m")
        if metrics.inlier_fraction < cfg.min_inlier_fraction:
            reasons.append(f"inlier fraction {metrics.inlier_fraction:.3f} < {cfg.min_inlier_fraction:g}")

        status = RegistrationStatus.LOW_CONFIDENCE if reasons else RegistrationStatus.SUCCESS
        result = RegistrationResult(
            status=status,
            pose=best.pose.copy(),
            metrics=metrics,
            model_id=model.name,
            message="; ".join(reasons),
            level_history=list(best.levels),
            seed_yaw_deg=best.seed.yaw_deg,
            n_seeds=len(refinements),
        )

        log = logger.warning if reasons else logger.info
        log(
            "Registration %s in %.3fs: RMSE=%.6f m, inliers=%.3f, seed yaw %.1f deg%s",
            status.value,
            metrics.elapsed_s,
            metrics.rmse,
            metrics.inlier_fraction,
            best.seed.yaw_deg,
            f" ({result.message})" if reasons else "",
        )
        notify("completed", status=status.value)
        return result


def register(
    scan: PointSet,
    model: PointSet,
    config: Optional[RegistrationConfig] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> RegistrationResult:
    """Convenience wrapper around :meth:`RegistrationPipeline.register`."""
    return RegistrationPipeline(config).register(scan, model, progress_callback=progress_callback)
