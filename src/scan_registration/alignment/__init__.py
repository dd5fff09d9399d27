"""
Spatial Alignment Module

Coarse pose estimation and robust point-to-plane ICP refinement of a model
against a scan, orchestrated by the registration pipeline.
"""

from .coarse_registration import CandidateSeed, CoarsePoseEstimator
from .fine_registration import ICPRefiner, SeedRefinement
from .results import LevelReport, RegistrationMetrics, RegistrationResult, RegistrationStatus
from .pipeline import RegistrationPipeline, register

__all__ = [
    "CandidateSeed",
    "CoarsePoseEstimator",
    "ICPRefiner",
    "SeedRefinement",
    "LevelReport",
    "RegistrationMetrics",
    "RegistrationResult",
    "RegistrationStatus",
    "RegistrationPipeline",
    "register",
]
