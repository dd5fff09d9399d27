"""
Preprocessing Module

Turns raw scan and model points into filtered multi-resolution pyramids
with per-point normals, backed by a uniform-grid voxel index.
"""

from .point_set import PointSet
from .voxel_index import VoxelIndex, Neighbor, VoxelRangeError, extent_fits
from .normals import estimate_normals
from .pyramid import Preprocessor, voxel_downsample

__all__ = [
    "PointSet",
    "VoxelIndex",
    "Neighbor",
    "VoxelRangeError",
    "extent_fits",
    "estimate_normals",
    "Preprocessor",
    "voxel_downsample",
]
