"""Shared synthetic geometry for registration tests (Z is up)."""

from pathlib import Path
import sys

import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))


def _grid(a_lo, a_hi, b_lo, b_hi, spacing):
    a = np.arange(a_lo, a_hi + 1e-9, spacing)
    b = np.arange(b_lo, b_hi + 1e-9, spacing)
    A, B = np.meshgrid(a, b)
    return A.ravel(), B.ravel()


def _make_room(spacing=0.03, half_x=1.0, half_y=0.6, floor_z=-1.0, top_z=0.3):
    """Floor plus four walls around a sensor at the origin."""
    parts = []
    x, y = _grid(-half_x, half_x, -half_y, half_y, spacing)
    parts.append(np.column_stack([x, y, np.full_like(x, floor_z)]))

    x, z = _grid(-half_x, half_x, floor_z, top_z, spacing)
    parts.append(np.column_stack([x, np.full_like(x, -half_y), z]))
    parts.append(np.column_stack([x, np.full_like(x, half_y), z]))

    y, z = _grid(-half_y, half_y, floor_z, top_z, spacing)
    parts.append(np.column_stack([np.full_like(y, -half_x), y, z]))
    parts.append(np.column_stack([np.full_like(y, half_x), y, z]))
    return np.vstack(parts)


def _rot_z(deg):
    th = np.deg2rad(deg)
    return np.array(
        [
            [np.cos(th), -np.sin(th), 0.0],
            [np.sin(th), np.cos(th), 0.0],
            [0.0, 0.0, 1.0],
        ]
    )


def _to_model_frame(points, R, t):
    """Inverse of p -> R p + t, i.e. where the model must start so the pose (R, t) places it."""
    return (points - t) @ R


@pytest.fixture
def make_room():
    return _make_room


@pytest.fixture
def rot_z():
    return _rot_z


@pytest.fixture
def to_model_frame():
    return _to_model_frame


@pytest.fixture
def room_points():
    return _make_room()
