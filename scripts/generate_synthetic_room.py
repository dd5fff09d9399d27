"""
Generate a synthetic scan/model pair of a rectangular room for registration demos.

- The model is a floor plus four walls, sampled on a regular grid.
- The scan is the same room seen from a sensor at the origin, with:
    * Gaussian range noise and per-point confidences.
    * Furniture-like clutter that the model does not contain.
    * A known rigid transform (yaw about up + translation) applied to the model frame.
- Writes scan.npy (x, y, z, confidence), model.npy (x, y, z) and
  ground_truth_pose.npy (4x4 model-in-world) into the output directory.

Gravity-up is +Y, matching the default configuration.
"""
from __future__ import annotations

import argparse
import math
from pathlib import Path

import numpy as np


def _grid(a_range, b_range, spacing):
    a = np.arange(a_range[0], a_range[1] + 1e-9, spacing)
    b = np.arange(b_range[0], b_range[1] + 1e-9, spacing)
    A, B = np.meshgrid(a, b)
    return A.ravel(), B.ravel()


def make_room(width=3.0, depth=2.4, height=2.2, floor_y=-1.3, spacing=0.02):
    """Floor and four walls of a room centered on the origin (Y up)."""
    hx, hz = width / 2, depth / 2
    top = floor_y + height
    parts = []

    x, z = _grid((-hx, hx), (-hz, hz), spacing)
    parts.append(np.column_stack([x, np.full_like(x, floor_y), z]))

    x, y = _grid((-hx, hx), (floor_y, top), spacing)
    parts.append(np.column_stack([x, y, np.full_like(x, -hz)]))
    parts.append(np.column_stack([x, y, np.full_like(x, hz)]))

    z, y = _grid((-hz, hz), (floor_y, top), spacing)
    parts.append(np.column_stack([np.full_like(z, -hx), y, z]))
    parts.append(np.column_stack([np.full_like(z, hx), y, z]))
    return np.vstack(parts)


def make_clutter(n, seed=7):
    """A table-sized block of random points standing on the floor."""
    rng = np.random.default_rng(seed)
    lo = np.array([0.4, -1.3, -0.8])
    hi = np.array([1.2, -0.55, -0.2])
    return lo + rng.random((n, 3)) * (hi - lo)


def yaw_transform(yaw_deg, translation):
    th = math.radians(yaw_deg)
    # Rotation about +Y
    R = np.array(
        [
            [math.cos(th), 0.0, math.sin(th)],
            [0.0, 1.0, 0.0],
            [-math.sin(th), 0.0, math.cos(th)],
        ]
    )
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = translation
    return T


def main():
    parser = argparse.ArgumentParser(description="Generate a synthetic room scan/model pair")
    parser.add_argument("--out-dir", type=str, default="data/synthetic/room", help="Output directory")
    parser.add_argument("--yaw", type=float, default=12.0, help="Ground-truth yaw about up (degrees)")
    parser.add_argument(
        "--translation",
        type=float,
        nargs=3,
        default=(0.15, 0.02, -0.1),
        help="Ground-truth translation (meters)",
    )
    parser.add_argument("--noise", type=float, default=0.003, help="Scan noise sigma (meters)")
    parser.add_argument("--clutter", type=float, default=0.1, help="Clutter points as fraction of the scan")
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    rng = np.random.default_rng(args.seed)
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    room = make_room()
    T = yaw_transform(args.yaw, np.asarray(args.translation, dtype=float))

    # Model lives in its own frame: invert the ground-truth pose
    R, t = T[:3, :3], T[:3, 3]
    model = (room - t) @ R

    scan = room + rng.normal(scale=args.noise, size=room.shape)
    clutter = make_clutter(int(args.clutter * len(scan)), seed=args.seed + 1)
    scan = np.vstack([scan, clutter])
    confidence = np.clip(rng.normal(0.8, 0.15, size=len(scan)), 0.0, 1.0)

    np.save(out_dir / "scan.npy", np.column_stack([scan, confidence]))
    np.save(out_dir / "model.npy", model)
    np.save(out_dir / "ground_truth_pose.npy", T)

    print(f"Wrote {len(scan)} scan points and {len(model)} model points to {out_dir}")
    print("Ground-truth model-in-world pose:")
    print(np.array2string(T, precision=4, suppress_small=True))


if __name__ == "__main__":
    main()
