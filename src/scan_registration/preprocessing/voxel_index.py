"""
Spatial Voxel Index

Hashes points into uniform cubic cells keyed by ``floor(position / cell_size)``
and answers nearest-neighbor queries by scanning only the query's cell and its
26 neighbors. Per-query cost is therefore bounded by the occupancy of a 3x3x3
cell block, never by the size of the whole set.

Two storage modes are supported:
- ``raw``: every point is kept (registration correspondences)
- ``centroid``: each cell keeps the average of its points, together with the
  averaged confidence and normal (fusion / voxel downsampling)

An index is built per call and is read-only afterwards, so it can be shared by
worker threads refining different seeds.
"""

from __future__ import annotations

from typing import Iterator, NamedTuple, Optional, Tuple

import numpy as np

from .point_set import PointSet

MODE_RAW = "raw"
MODE_CENTROID = "centroid"

# Cell keys are packed into one int64 relative to the set's lowest cell
_CODE_BITS = 63
# Cell keys beyond this magnitude would overflow once shifted by the origin
_MAX_KEY = float(1 << 60)

_NEIGHBOR_OFFSETS = np.array(
    [(dx, dy, dz) for dx in (-1, 0, 1) for dy in (-1, 0, 1) for dz in (-1, 0, 1)],
    dtype=np.int64,
)


class Neighbor(NamedTuple):
    """Result of a single nearest-neighbor query."""

    index: int
    position: np.ndarray
    normal: Optional[np.ndarray]
    distance: float


class VoxelRangeError(ValueError):
    """The extent of a point set spans more cells than one int64 code can address."""


def _cell_keys(positions: np.ndarray, cell_size: float) -> np.ndarray:
    scaled = np.floor(positions / cell_size)
    if np.any(np.abs(scaled) >= _MAX_KEY):
        raise VoxelRangeError(f"Coordinates too large for cell size {cell_size} m")
    return scaled.astype(np.int64)


class _KeyPacking(NamedTuple):
    """Origin cell and per-axis bit widths of the int64 cell codes."""

    origin: np.ndarray
    bits: Tuple[int, int, int]

    @classmethod
    def for_keys(cls, keys: np.ndarray) -> "_KeyPacking":
        # One spare cell on each side keeps the 26 neighbors of stored cells addressable
        origin = keys.min(axis=0) - 1
        top = keys.max(axis=0) + 1 - origin
        bits = tuple(max(1, int(t).bit_length()) for t in top)
        if sum(bits) > _CODE_BITS:
            raise VoxelRangeError(
                f"Point set spans {top.tolist()} cells; too large to index in one int64 code"
            )
        return cls(origin=origin, bits=bits)

    def pack(self, keys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Pack (N, 3) integer keys into int64 codes; returns (codes, valid_mask)."""
        shifted = keys - self.origin
        limits = np.array([1 << b for b in self.bits], dtype=np.int64)
        valid = np.all((shifted >= 0) & (shifted < limits), axis=1)
        shifted = np.where(valid[:, None], shifted, 0)
        _, by, bz = self.bits
        codes = (shifted[:, 0] << (by + bz)) | (shifted[:, 1] << bz) | shifted[:, 2]
        return codes, valid


def extent_fits(positions: np.ndarray, cell_size: float) -> bool:
    """Whether finite ``positions`` can be indexed with cells of edge ``cell_size``."""
    positions = np.asarray(positions, dtype=float).reshape(-1, 3)
    if len(positions) == 0:
        return True
    try:
        _KeyPacking.for_keys(_cell_keys(positions, cell_size))
    except VoxelRangeError:
        return False
    return True


class VoxelIndex:
    """
    Uniform-grid hash over a point set.

    Build with :meth:`build`; query with :meth:`nearest` (single point) or
    :meth:`nearest_many` (vectorized over a batch of queries).
    """

    def __init__(
        self,
        points: PointSet,
        cell_size: float,
        mode: str,
        codes: np.ndarray,
        order: np.ndarray,
        starts: np.ndarray,
        counts: np.ndarray,
        packing: Optional[_KeyPacking] = None,
    ):
        self.points = points
        self.cell_size = float(cell_size)
        self.mode = mode
        self._codes = codes
        self._order = order
        self._starts = starts
        self._counts = counts
        self._packing = packing

    # ------------------------ Construction ------------------------
    @classmethod
    def build(cls, points: PointSet, cell_size: float, mode: str = MODE_RAW) -> "VoxelIndex":
        """
        Group points into cells of edge ``cell_size``.

        Args:
            points: Point set to index (positions must be finite)
            cell_size: Cell edge length in meters
            mode: ``raw`` keeps all points, ``centroid`` keeps one averaged point per cell

        Returns:
            VoxelIndex over the stored points
        """
        if not np.isfinite(cell_size) or cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        if mode not in (MODE_RAW, MODE_CENTROID):
            raise ValueError(f"Unknown voxel index mode '{mode}'")

        n = len(points)
        if n == 0:
            empty = np.empty(0, dtype=np.int64)
            return cls(points, cell_size, mode, empty, empty, empty, empty)

        if not np.all(np.isfinite(points.positions)):
            raise ValueError("VoxelIndex requires finite positions; drop NaN/Inf points first")

        keys = _cell_keys(points.positions, cell_size)
        packing = _KeyPacking.for_keys(keys)
        codes, _ = packing.pack(keys)

        order = np.argsort(codes, kind="stable")
        sorted_codes = codes[order]
        unique_codes, starts, counts = np.unique(sorted_codes, return_index=True, return_counts=True)

        if mode == MODE_RAW:
            return cls(points, cell_size, mode, unique_codes, order, starts, counts, packing)

        stored = cls._cell_centroids(points, order, starts, counts)
        n_cells = len(unique_codes)
        ident = np.arange(n_cells, dtype=np.int64)
        return cls(stored, cell_size, mode, unique_codes, ident, ident.copy(), np.ones(n_cells, dtype=np.int64), packing)

    @staticmethod
    def _cell_centroids(points: PointSet, order: np.ndarray, starts: np.ndarray, counts: np.ndarray) -> PointSet:
        """Average positions (and confidences / normals) of the points in each cell."""
        n_cells = len(starts)
        cell_of_sorted = np.repeat(np.arange(n_cells), counts)
        denom = counts.astype(float)

        sums = np.zeros((n_cells, 3))
        np.add.at(sums, cell_of_sorted, points.positions[order])
        positions = sums / denom[:, None]

        confidences = None
        if points.confidences is not None:
            conf_sums = np.zeros(n_cells)
            np.add.at(conf_sums, cell_of_sorted, points.confidences[order])
            confidences = conf_sums / denom

        normals = None
        if points.normals is not None:
            nrm_sums = np.zeros((n_cells, 3))
            np.add.at(nrm_sums, cell_of_sorted, points.normals[order])
            norms = np.linalg.norm(nrm_sums, axis=1)
            # Opposing normals can cancel; keep the first member's normal then
            first = points.normals[order[starts]]
            safe = norms > 1e-9
            normals = np.where(safe[:, None], nrm_sums / np.where(safe, norms, 1.0)[:, None], first)

        return PointSet(
            positions=positions,
            normals=normals,
            confidences=confidences,
            voxel_size=points.voxel_size,
            up=points.up,
            name=points.name,
        )

    # ------------------------ Introspection ------------------------
    def __len__(self) -> int:
        return len(self.points)

    @property
    def n_cells(self) -> int:
        return len(self._codes)

    @property
    def max_cell_occupancy(self) -> int:
        return int(self._counts.max()) if len(self._counts) else 0

    def to_point_set(self) -> PointSet:
        """The stored points (all points in raw mode, cell centroids in centroid mode)."""
        return self.points

    # ------------------------ Queries ------------------------
    def _lookup(self, keys: np.ndarray) -> np.ndarray:
        """Cell slot for each key, -1 where the cell is empty or out of range."""
        if self.n_cells == 0:
            return np.full(len(keys), -1, dtype=np.int64)
        codes, valid = self._packing.pack(keys)
        pos = np.searchsorted(self._codes, codes)
        pos = np.minimum(pos, self.n_cells - 1)
        found = valid & (self._codes[pos] == codes)
        return np.where(found, pos, -1)

    def candidate_pairs(self, queries: np.ndarray) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
        """
        Enumerate (query_index, point_index) pairs over each query's 3x3x3 cell block.

        Each yielded batch contains every query at most once, so callers can
        scatter into per-query accumulators with plain fancy indexing.
        """
        queries = np.asarray(queries, dtype=float).reshape(-1, 3)
        if self.n_cells == 0 or len(queries) == 0:
            return
        finite = np.all(np.isfinite(queries), axis=1)
        safe_queries = np.where(finite[:, None], queries, 0.0)
        # Queries far outside any addressable cell cannot match
        finite &= np.all(np.abs(safe_queries) < 0.5 * _MAX_KEY * self.cell_size, axis=1)
        safe_queries[~finite] = 0.0
        qkeys = _cell_keys(safe_queries, self.cell_size)

        for offset in _NEIGHBOR_OFFSETS:
            slots = self._lookup(qkeys + offset)
            hit = np.flatnonzero((slots >= 0) & finite)
            if hit.size == 0:
                continue
            starts = self._starts[slots[hit]]
            counts = self._counts[slots[hit]]
            for k in range(int(counts.max())):
                live = counts > k
                yield hit[live], self._order[starts[live] + k]

    def nearest_many(self, queries: np.ndarray, max_radius: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Nearest stored point for each query within ``max_radius``.

        Only the 3x3x3 cell block around each query is searched, so matches
        are exact when ``max_radius <= cell_size``.

        Args:
            queries: (M, 3) query positions
            max_radius: Maximum accepted distance in meters

        Returns:
            Tuple of (indices, distances); index -1 and distance inf mean "no match".
        """
        queries = np.asarray(queries, dtype=float).reshape(-1, 3)
        m = len(queries)
        best_d2 = np.full(m, np.inf)
        best_idx = np.full(m, -1, dtype=np.int64)

        positions = self.points.positions
        for q_idx, p_idx in self.candidate_pairs(queries):
            diff = positions[p_idx] - queries[q_idx]
            d2 = np.einsum("ij,ij->i", diff, diff)
            better = d2 < best_d2[q_idx]
            if not better.any():
                continue
            best_d2[q_idx[better]] = d2[better]
            best_idx[q_idx[better]] = p_idx[better]

        outside = best_d2 > max_radius * max_radius
        best_idx[outside] = -1
        best_d2[outside] = np.inf
        return best_idx, np.sqrt(best_d2)

    def nearest(self, query: np.ndarray, max_radius: float) -> Optional[Neighbor]:
        """Nearest stored point to a single query, or None when nothing lies within ``max_radius``."""
        idx, dist = self.nearest_many(np.asarray(query, dtype=float).reshape(1, 3), max_radius)
        i = int(idx[0])
        if i < 0:
            return None
        normal = None if self.points.normals is None else self.points.normals[i].copy()
        return Neighbor(
            index=i,
            position=self.points.positions[i].copy(),
            normal=normal,
            distance=float(dist[0]),
        )
