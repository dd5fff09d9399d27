"""
Configuration management for scan-registration.

Provides a typed pydantic model and YAML loader with sensible defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Literal, List, Any, Dict

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
import yaml


# -----------------------
# Typed config structures
# -----------------------


def _check_vector(v: Optional[List[float]], name: str, allow_zero: bool = False) -> Optional[List[float]]:
    if v is None:
        return v
    if len(v) != 3:
        raise ValueError(f"{name} must have exactly 3 components, got {len(v)}")
    arr = np.asarray(v, dtype=float)
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} must be finite")
    if not allow_zero and float(np.linalg.norm(arr)) < 1e-9:
        raise ValueError(f"{name} must be a non-zero direction")
    return [float(x) for x in v]


@dataclass(frozen=True)
class ICPLevelParams:
    """Resolved ICP parameters for one pyramid level."""

    voxel_size: float
    max_iterations: int
    max_correspondence_distance: float
    normal_cos_min: float
    trim_fraction: float
    huber_delta: float
    convergence_rmse_delta: float


class RegistrationConfig(BaseModel):
    """
    Flat configuration for one registration request.

    Every field has a documented default; per-level lists are indexed
    coarsest level first (after voxel sizes are sorted descending).
    """

    model_config = ConfigDict(protected_namespaces=())

    # Frames
    up: List[float] = Field(
        default_factory=lambda: [0.0, 1.0, 0.0],
        description="Gravity-up direction in the scan frame",
    )
    model_up: Optional[List[float]] = Field(
        default=None,
        description="Up axis of the model in its own frame (None = same as 'up')",
    )
    sensor_origin: List[float] = Field(
        default_factory=lambda: [0.0, 0.0, 0.0],
        description="Sensor position used by the range filter",
    )

    # Preprocessing
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0, description="Drop scan points below this confidence")
    min_range: float = Field(default=0.25, ge=0.0, description="Minimum radial distance from the sensor (m)")
    max_range: float = Field(default=5.0, gt=0.0, description="Maximum radial distance from the sensor (m)")
    voxel_sizes: List[float] = Field(
        default_factory=lambda: [0.02, 0.01, 0.007],
        description="Pyramid voxel sizes in meters (sorted descending before use)",
    )
    normal_radius_factor: float = Field(default=3.0, gt=0.0, description="Normal neighborhood radius as multiple of voxel size")
    min_normal_neighbors: int = Field(default=3, ge=3, description="Below this neighbor count the normal falls back to 'up'")
    max_points_per_level: Optional[int] = Field(
        default=None,
        description="Optional cap on points per pyramid level (deterministic stride thinning)",
    )

    # Coarse pose estimation
    yaw_offsets_deg: List[float] = Field(
        default_factory=lambda: [0.0, 45.0, -45.0, 90.0, -90.0],
        description="Yaw offsets (degrees) about 'up' used to generate seeds",
    )
    top_k_seeds: int = Field(default=2, ge=1, description="Number of best-scoring seeds passed to ICP")
    use_pca: bool = Field(default=True, description="Align dominant horizontal axes before the yaw sweep")

    # ICP refinement
    max_correspondence_distances: List[float] = Field(
        default_factory=lambda: [0.08, 0.04, 0.025],
        description="Per-level correspondence gate in meters, coarsest first",
    )
    correspondence_distance_factor: float = Field(
        default=4.0,
        gt=0.0,
        description="Gate as multiple of voxel size for levels beyond max_correspondence_distances",
    )
    max_iterations_per_level: List[int] = Field(
        default_factory=lambda: [20, 15, 12],
        description="Per-level iteration cap, coarsest first; later levels reuse the last value",
    )
    normal_cos_min: float = Field(default=0.75, ge=-1.0, le=1.0, description="Minimum |cos| between model and scan normals")
    trim_fraction: float = Field(default=0.7, ge=0.0, le=1.0, description="Fraction of best residuals kept each iteration")
    huber_delta_factor: float = Field(default=1.0, gt=0.0, description="Huber delta as multiple of voxel size")
    convergence_rmse_factor: float = Field(
        default=0.01,
        gt=0.0,
        description="Stop a level when |delta RMSE| < factor * voxel size",
    )

    # Quality gate
    max_rmse_factor: float = Field(default=3.0, gt=0.0, description="Low confidence when RMSE > factor * finest voxel")
    min_inlier_fraction: float = Field(default=0.45, ge=0.0, le=1.0, description="Low confidence below this inlier fraction")

    # Concurrency
    parallel_seeds: bool = Field(default=False, description="Refine seeds on worker threads")
    parallel_levels: bool = Field(default=False, description="Build pyramid levels on worker threads")
    n_workers: Optional[int] = Field(default=None, description="Worker threads (None = auto-detect)")

    @field_validator("up")
    @classmethod
    def _validate_up(cls, v: List[float]) -> List[float]:
        return _check_vector(v, "up")

    @field_validator("model_up")
    @classmethod
    def _validate_model_up(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        return _check_vector(v, "model_up")

    @field_validator("sensor_origin")
    @classmethod
    def _validate_origin(cls, v: List[float]) -> List[float]:
        return _check_vector(v, "sensor_origin", allow_zero=True)

    @field_validator("voxel_sizes")
    @classmethod
    def _validate_voxel_sizes(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("voxel_sizes must not be empty")
        if any((not np.isfinite(x)) or x <= 0 for x in v):
            raise ValueError("voxel_sizes must be positive and finite")
        if len(set(v)) != len(v):
            raise ValueError("voxel_sizes must be distinct")
        return [float(x) for x in v]

    @field_validator("max_correspondence_distances")
    @classmethod
    def _validate_distances(cls, v: List[float]) -> List[float]:
        if any(x <= 0 for x in v):
            raise ValueError("max_correspondence_distances must be positive")
        return v

    @field_validator("max_iterations_per_level")
    @classmethod
    def _validate_iterations(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("max_iterations_per_level must not be empty")
        if any(x < 1 for x in v):
            raise ValueError("max_iterations_per_level entries must be >= 1")
        return v

    @field_validator("yaw_offsets_deg")
    @classmethod
    def _validate_yaws(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("yaw_offsets_deg must contain at least one offset")
        return v

    @model_validator(mode="after")
    def _validate_ranges(self) -> "RegistrationConfig":
        if self.min_range >= self.max_range:
            raise ValueError(f"min_range ({self.min_range}) must be < max_range ({self.max_range})")
        return self

    # -----------------------
    # Derived values
    # -----------------------

    def sorted_voxel_sizes(self) -> List[float]:
        """Voxel sizes ordered coarsest first."""
        return sorted(self.voxel_sizes, reverse=True)

    def up_vector(self) -> np.ndarray:
        v = np.asarray(self.up, dtype=float)
        return v / np.linalg.norm(v)

    def model_up_vector(self) -> np.ndarray:
        if self.model_up is None:
            return self.up_vector()
        v = np.asarray(self.model_up, dtype=float)
        return v / np.linalg.norm(v)

    def level_params(self, level: int, voxel_size: float) -> ICPLevelParams:
        """Resolve the ICP parameters of pyramid level ``level`` (0 = coarsest)."""
        if level < len(self.max_correspondence_distances):
            max_corr = self.max_correspondence_distances[level]
        else:
            max_corr = self.correspondence_distance_factor * voxel_size
        iters = self.max_iterations_per_level[min(level, len(self.max_iterations_per_level) - 1)]
        return ICPLevelParams(
            voxel_size=voxel_size,
            max_iterations=int(iters),
            max_correspondence_distance=float(max_corr),
            normal_cos_min=self.normal_cos_min,
            trim_fraction=self.trim_fraction,
            huber_delta=self.huber_delta_factor * voxel_size,
            convergence_rmse_delta=self.convergence_rmse_factor * voxel_size,
        )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    file: Optional[str] = Field(default=None)


class AppConfig(BaseModel):
    registration: RegistrationConfig = Field(default_factory=RegistrationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# -----------------------
# Loader
# -----------------------


def _project_root() -> Path:
    """
    Resolve the repository root directory.

    File is at: repo_root/src/scan_registration/utils/config.py
    parents sequence:
      0 -> .../src/scan_registration/utils
      1 -> .../src/scan_registration
      2 -> .../src
      3 -> repo_root   <-- correct root
    """
    return Path(__file__).resolve().parents[3]


def load_config(path: Optional[str | Path] = None, *, allow_missing: bool = True) -> AppConfig:
    """
    Load configuration from YAML into a typed AppConfig.

    Search order when path is None:
    1) repo_root/config/default.yaml
    2) if missing and allow_missing=True: return default AppConfig()

    Args:
        path: Explicit YAML file path.
        allow_missing: If True, returns defaults when file missing; otherwise raises.

    Returns:
        AppConfig instance
    """
    cfg_path: Path
    if path is None:
        cfg_path = _project_root() / "config" / "default.yaml"
    else:
        cfg_path = Path(path)

    if not cfg_path.exists():
        if allow_missing:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        # Re-raise with context to help users fix the YAML
        raise ValueError(f"Invalid configuration in {cfg_path}: {e}") from e
