"""
Rigid Pose Utilities

Helpers for 4x4 homogeneous rigid transforms used throughout the pipeline.

Convention: poses are column-vector transforms stored as row-major numpy
arrays, so a point ``p`` maps to ``R @ p + t``. The registration output is
always the model-in-world pose: applying it directly to the model points
places them in the scan frame. Updates are composed on the left
(``new = delta @ current``) because increments are estimated on points that
are already expressed in the scan frame.
"""

from __future__ import annotations

import numpy as np


def make_transform(rotation: np.ndarray, translation: np.ndarray) -> np.ndarray:
    """Build a 4x4 transform from a 3x3 rotation and a 3-vector translation."""
    T = np.eye(4)
    T[:3, :3] = np.asarray(rotation, dtype=float)
    T[:3, 3] = np.asarray(translation, dtype=float).reshape(3)
    return T


def apply_transformation(points: np.ndarray, transform: np.ndarray) -> np.ndarray:
    """
    Apply a transformation matrix to a set of points.

    Args:
        points: Point cloud (N x 3).
        transform: Transformation matrix (4 x 4).

    Returns:
        Transformed point cloud (N x 3).
    """
    if points.size == 0:
        return points.reshape(0, 3).copy()

    # Direct affine transform (faster and less memory than homogeneous coords).
    R = transform[:3, :3]
    t = transform[:3, 3]
    return points @ R.T + t


def rotate_vectors(vectors: np.ndarray, transform: np.ndarray) -> np.ndarray:
    """Rotate direction vectors (normals) by the rotation part of a transform."""
    if vectors.size == 0:
        return vectors.reshape(0, 3).copy()
    return vectors @ transform[:3, :3].T


def normalize_vector(v) -> np.ndarray:
    """Return ``v`` scaled to unit length; raises on zero or non-finite input."""
    v = np.asarray(v, dtype=float).reshape(3)
    norm = float(np.linalg.norm(v))
    if not np.isfinite(norm) or norm < 1e-12:
        raise ValueError(f"Cannot normalize vector {v.tolist()}")
    return v / norm


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix so that ``skew(a) @ b == np.cross(a, b)``."""
    x, y, z = v
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def rotation_about_axis(axis: np.ndarray, angle_rad: float) -> np.ndarray:
    """Rodrigues rotation of ``angle_rad`` about ``axis`` (normalized internally)."""
    a = normalize_vector(axis)
    K = skew(a)
    return np.eye(3) + np.sin(angle_rad) * K + (1.0 - np.cos(angle_rad)) * (K @ K)


def rotation_between(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Smallest rotation taking direction ``a`` onto direction ``b``.

    Antiparallel inputs rotate by 180 degrees about any axis orthogonal to ``a``.
    """
    a = normalize_vector(a)
    b = normalize_vector(b)
    c = float(np.clip(np.dot(a, b), -1.0, 1.0))
    axis = np.cross(a, b)
    s = float(np.linalg.norm(axis))
    if s < 1e-12:
        if c > 0:
            return np.eye(3)
        # Pick the world axis least aligned with a to build an orthogonal axis
        helper = np.eye(3)[int(np.argmin(np.abs(a)))]
        return rotation_about_axis(np.cross(a, helper), np.pi)
    return rotation_about_axis(axis, float(np.arctan2(s, c)))


def orthonormalize(rotation: np.ndarray) -> np.ndarray:
    """
    Project a 3x3 matrix onto the nearest proper rotation (det = +1) via SVD.
    """
    U, _, Vt = np.linalg.svd(rotation)
    R = U @ Vt
    # Ensure proper rotation (det(R) should be 1)
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt
    return R


def orthonormalize_transform(transform: np.ndarray) -> np.ndarray:
    """Return a copy of ``transform`` with its rotation block re-orthonormalized."""
    out = np.array(transform, dtype=float, copy=True)
    out[:3, :3] = orthonormalize(out[:3, :3])
    out[3, :] = (0.0, 0.0, 0.0, 1.0)
    return out


def se3_increment(xi: np.ndarray) -> np.ndarray:
    """
    Turn a 6-vector (omega, v) from the linearized solve into a rigid transform.

    The rotation part uses the exact exponential of ``omega``; translation is
    applied as is.
    """
    omega = np.asarray(xi[:3], dtype=float)
    v = np.asarray(xi[3:], dtype=float)
    theta = float(np.linalg.norm(omega))
    if theta < 1e-12:
        R = np.eye(3) + skew(omega)
    else:
        R = rotation_about_axis(omega / theta, theta)
    return make_transform(R, v)


def rotation_angle_deg(transform: np.ndarray) -> float:
    """Magnitude of the rotation encoded in ``transform``, in degrees."""
    R = transform[:3, :3]
    # Clamp argument to arccos to valid range to avoid NaNs
    cos_theta = max(min((float(np.trace(R)) - 1.0) * 0.5, 1.0), -1.0)
    return float(np.degrees(np.arccos(cos_theta)))


def yaw_about_axis_deg(transform: np.ndarray, axis: np.ndarray) -> float:
    """
    Signed rotation angle about ``axis`` in degrees.

    Measured by rotating a vector orthogonal to ``axis`` and reading its
    angle in the plane orthogonal to ``axis``.
    """
    a = normalize_vector(axis)
    helper = np.eye(3)[int(np.argmin(np.abs(a)))]
    u = normalize_vector(np.cross(a, helper))
    w = transform[:3, :3] @ u
    w = w - np.dot(w, a) * a
    return float(np.degrees(np.arctan2(np.dot(a, np.cross(u, w)), np.dot(u, w))))


def is_rotation(rotation: np.ndarray, atol: float = 1e-5) -> bool:
    """True when ``rotation`` is orthonormal with determinant +1 within ``atol``."""
    R = np.asarray(rotation, dtype=float)
    return bool(
        np.allclose(R.T @ R, np.eye(3), atol=atol)
        and abs(float(np.linalg.det(R)) - 1.0) <= atol
    )
