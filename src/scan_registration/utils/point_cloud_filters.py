"""
Point Cloud Filtering Utilities

Shared utilities for filtering raw point sets before they enter the
registration pipeline. Masks are computed independently so callers can
combine them and report what each criterion removed.
"""

from typing import Optional, Sequence

import numpy as np


def create_finite_mask(positions: np.ndarray) -> np.ndarray:
    """Create a boolean mask of rows whose three coordinates are all finite.

    Examples:
        >>> pts = np.array([[0.0, 1.0, 2.0], [np.nan, 0.0, 0.0], [1.0, np.inf, 0.0]])
        >>> create_finite_mask(pts)
        array([ True, False, False])
    """
    if positions.size == 0:
        return np.zeros(len(positions), dtype=bool)
    return np.all(np.isfinite(positions), axis=1)


def create_confidence_mask(
    confidences: Optional[np.ndarray],
    n_points: int,
    min_confidence: float = 0.5,
) -> np.ndarray:
    """Create a boolean mask for per-point confidence filtering.

    Points without a confidence channel are accepted unconditionally.

    Args:
        confidences: Array of N confidence weights in [0, 1], or None
        n_points: Number of points N (used when confidences is None)
        min_confidence: Minimum confidence to accept (inclusive)

    Returns:
        Boolean array indicating which points pass the filter (True = accept)
    """
    if confidences is None:
        return np.ones(n_points, dtype=bool)
    conf = np.asarray(confidences, dtype=float)
    # NaN confidence compares False and is dropped
    return conf >= min_confidence


def create_range_mask(
    positions: np.ndarray,
    min_range: float = 0.25,
    max_range: float = 5.0,
    origin: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Create a boolean mask keeping points within a radial distance band.

    Args:
        positions: Nx3 array of point coordinates
        min_range: Minimum distance from the sensor origin (inclusive)
        max_range: Maximum distance from the sensor origin (inclusive)
        origin: Sensor origin; defaults to (0, 0, 0)

    Returns:
        Boolean array indicating which points pass the filter (True = accept)

    Examples:
        >>> pts = np.array([[0.1, 0.0, 0.0], [1.0, 0.0, 0.0], [6.0, 0.0, 0.0]])
        >>> create_range_mask(pts)
        array([False,  True, False])
    """
    if positions.size == 0:
        return np.zeros(len(positions), dtype=bool)
    o = np.zeros(3) if origin is None else np.asarray(origin, dtype=float).reshape(3)
    dist = np.linalg.norm(positions - o, axis=1)
    return (dist >= min_range) & (dist <= max_range)


def get_filter_statistics(
    total_points: int,
    finite_points: int,
    filtered_points: int,
    min_confidence: Optional[float] = None,
    min_range: Optional[float] = None,
    max_range: Optional[float] = None,
) -> dict:
    """Generate statistics about point filtering results.

    Useful for logging and validation of filtering operations.

    Args:
        total_points: Total number of points before filtering
        finite_points: Number of points with finite coordinates
        filtered_points: Number of points after all filters
        min_confidence: Confidence threshold that was used, if any
        min_range: Minimum range that was used, if any
        max_range: Maximum range that was used, if any

    Returns:
        Dictionary with statistics including counts, percentage, and filter description
    """
    percentage = (filtered_points / total_points * 100.0) if total_points > 0 else 0.0

    parts = ["finite"]
    if min_confidence is not None:
        parts.append(f"confidence >= {min_confidence:g}")
    if min_range is not None and max_range is not None:
        parts.append(f"range [{min_range:g}, {max_range:g}] m")
    filter_desc = ", ".join(parts)

    return {
        "total_points": total_points,
        "non_finite_points": total_points - finite_points,
        "filtered_points": filtered_points,
        "percentage": percentage,
        "filter_description": filter_desc,
    }
