"""
Utility Functions Module

Common utilities used across the registration pipeline:
- Logging setup
- Configuration loading
- Point set filtering masks
- Rigid pose helpers
"""

from .logging import setup_logger, set_package_level
from .config import AppConfig, ICPLevelParams, LoggingConfig, RegistrationConfig, load_config
from .point_cloud_filters import (
    create_finite_mask,
    create_confidence_mask,
    create_range_mask,
    get_filter_statistics,
)
from .rigid_transform import (
    apply_transformation,
    make_transform,
    orthonormalize_transform,
    rotation_about_axis,
)

__all__ = [
    "setup_logger",
    "set_package_level",
    "AppConfig",
    "ICPLevelParams",
    "LoggingConfig",
    "RegistrationConfig",
    "load_config",
    "create_finite_mask",
    "create_confidence_mask",
    "create_range_mask",
    "get_filter_statistics",
    "apply_transformation",
    "make_transform",
    "orthonormalize_transform",
    "rotation_about_axis",
]
