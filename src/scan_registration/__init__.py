"""
Scan Registration Package

A Python package for aligning a known 3D surface model with a live depth scan
of the environment it represents. It provides tools for scan preprocessing
(filtering, voxel pyramids, normal estimation), coarse pose estimation and
robust point-to-plane ICP refinement. The output is a rigid model-in-world
pose together with quality metrics.
"""

__version__ = "0.1.0"

from .utils import *
from .preprocessing import *
from .acceleration import *
from .alignment import *

__all__ = [
    "preprocessing",
    "alignment",
    "acceleration",
    "utils",
]
