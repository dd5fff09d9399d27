"""
Register a model point set against a scan from the command line.

Inputs are .npy arrays:
- scan: (N, 3) positions or (N, 4) positions + confidence
- model: (M, 3) positions or (M, 6) positions + normals

The result (status, 4x4 model-in-world pose, metrics, per-level history) is
printed and optionally written as JSON.
"""

import sys
import argparse
import json
from pathlib import Path

import numpy as np

# Add the src to the path to import modules
sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.alignment import RegistrationPipeline
from scan_registration.preprocessing import PointSet
from scan_registration.utils.config import load_config
from scan_registration.utils.logging import set_package_level, setup_logger
from scan_registration.utils.rigid_transform import rotation_angle_deg


def _load_scan(path: Path) -> PointSet:
    arr = np.load(path)
    if arr.ndim != 2 or arr.shape[1] not in (3, 4):
        raise ValueError(f"Scan array must be Nx3 or Nx4, got {arr.shape}")
    confidences = arr[:, 3] if arr.shape[1] == 4 else None
    return PointSet.from_arrays(arr[:, :3], confidences=confidences, name=path.stem)


def _load_model(path: Path, model_id: str) -> PointSet:
    arr = np.load(path)
    if arr.ndim != 2 or arr.shape[1] not in (3, 6):
        raise ValueError(f"Model array must be Mx3 or Mx6, got {arr.shape}")
    normals = arr[:, 3:6] if arr.shape[1] == 6 else None
    return PointSet.from_arrays(arr[:, :3], normals=normals, name=model_id)


def main():
    parser = argparse.ArgumentParser(description="Scan-to-model rigid registration")
    parser.add_argument("--scan", type=str, required=True, help="Scan .npy (Nx3 or Nx4 with confidence)")
    parser.add_argument("--model", type=str, required=True, help="Model .npy (Mx3 or Mx6 with normals)")
    parser.add_argument("--model-id", type=str, default=None, help="Model identity echoed in the result")
    parser.add_argument("--config", type=str, default=None, help="YAML config (default: config/default.yaml)")
    parser.add_argument("--output", type=str, default=None, help="Write the result as JSON to this path")
    parser.add_argument(
        "--ground-truth",
        type=str,
        default=None,
        help="Optional 4x4 ground-truth pose .npy to report the pose error",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    logger = setup_logger("scan_registration.scripts.run_registration", log_file=cfg.logging.file)
    set_package_level(cfg.logging.level)

    scan_path = Path(args.scan)
    model_path = Path(args.model)
    scan = _load_scan(scan_path)
    model = _load_model(model_path, args.model_id or model_path.stem)
    logger.info("Loaded scan (%d points) and model '%s' (%d points)", len(scan), model.name, len(model))

    def on_progress(stage: str, info: dict) -> None:
        logger.debug("Stage %s %s", stage, info)

    result = RegistrationPipeline(cfg.registration).register(scan, model, progress_callback=on_progress)

    logger.info("Status: %s%s", result.status.value, f" ({result.message})" if result.message else "")
    if result.has_pose:
        print(np.array2string(result.pose, precision=5, suppress_small=True))
        for report in result.level_history:
            logger.info(
                "Level %d (voxel %.3f m): %d iterations, RMSE=%.5f m, inliers=%.3f, %s",
                report.level,
                report.voxel_size,
                report.iterations,
                report.rmse,
                report.inlier_fraction,
                report.stop_reason,
            )

    if args.ground_truth and result.has_pose:
        T_gt = np.load(args.ground_truth)
        err = np.linalg.inv(T_gt) @ result.pose
        logger.info(
            "Pose error vs ground truth: |Δt|=%.4f m, Δθ=%.3f deg",
            float(np.linalg.norm(err[:3, 3])),
            rotation_angle_deg(err),
        )

    if args.output:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with out_path.open("w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2)
        logger.info("Result written to %s", out_path)

    return 0 if result.has_pose else 1


if __name__ == "__main__":
    sys.exit(main())
