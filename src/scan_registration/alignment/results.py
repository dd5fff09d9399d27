"""
Registration result types.

The reported pose is always model-in-world: a 4x4 column-vector transform
that maps model coordinates directly into the scan frame. It is applied to
the object being placed, never to an intermediate parent frame;
:meth:`RegistrationResult.apply_to` is the one place where that happens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from ..utils.rigid_transform import apply_transformation


class RegistrationStatus(str, Enum):
    SUCCESS = "success"
    LOW_CONFIDENCE = "low_confidence"
    INVALID_INPUT = "invalid_input"


# Per-level stop reasons
STOP_CONVERGED = "converged"
STOP_MAX_ITERATIONS = "max_iterations"
STOP_NUMERICAL_FAILURE = "numerical_failure"


@dataclass
class LevelReport:
    """Outcome of refining one seed on one pyramid level."""

    level: int
    voxel_size: float
    iterations: int
    rmse: float
    inlier_fraction: float
    n_correspondences: int
    stop_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "voxel_size": self.voxel_size,
            "iterations": self.iterations,
            "rmse": self.rmse,
            "inlier_fraction": self.inlier_fraction,
            "n_correspondences": self.n_correspondences,
            "stop_reason": self.stop_reason,
        }


@dataclass
class RegistrationMetrics:
    """Descriptive quality metrics of the winning pose; never fed back into the solver."""

    inlier_fraction: float
    rmse: float
    iterations: int
    voxel_size: float
    timestamp: float
    elapsed_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inlier_fraction": self.inlier_fraction,
            "rmse": self.rmse,
            "iterations": self.iterations,
            "voxel_size": self.voxel_size,
            "timestamp": self.timestamp,
            "elapsed_s": self.elapsed_s,
        }


@dataclass
class RegistrationResult:
    """
    Final output of one registration request.

    Attributes:
        status: success, low_confidence or invalid_input
        pose: 4x4 model-in-world transform (None for invalid input)
        metrics: Metrics of the winning seed at the finest level
        model_id: Echo of the model identity (``PointSet.name``)
        message: Human-readable explanation for non-success outcomes
        level_history: Per-level reports of the winning seed, coarsest first
        seed_yaw_deg: Total yaw (PCA + offset) of the winning seed
        n_seeds: Number of seeds refined
    """

    status: RegistrationStatus
    pose: Optional[np.ndarray] = None
    metrics: Optional[RegistrationMetrics] = None
    model_id: Optional[str] = None
    message: str = ""
    level_history: List[LevelReport] = field(default_factory=list)
    seed_yaw_deg: Optional[float] = None
    n_seeds: int = 0

    @property
    def low_confidence(self) -> bool:
        return self.status == RegistrationStatus.LOW_CONFIDENCE

    @property
    def has_pose(self) -> bool:
        return self.pose is not None

    def apply_to(self, points: np.ndarray) -> np.ndarray:
        """
        Place model points in the scan frame.

        Args:
            points: (N, 3) model-frame positions

        Returns:
            (N, 3) positions in the scan frame
        """
        if self.pose is None:
            raise ValueError(f"Registration produced no pose (status={self.status.value})")
        return apply_transformation(np.asarray(points, dtype=float).reshape(-1, 3), self.pose)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "pose": None if self.pose is None else self.pose.tolist(),
            "metrics": None if self.metrics is None else self.metrics.to_dict(),
            "model_id": self.model_id,
            "message": self.message,
            "seed_yaw_deg": self.seed_yaw_deg,
            "n_seeds": self.n_seeds,
            "level_history": [r.to_dict() for r in self.level_history],
        }
