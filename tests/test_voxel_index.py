"""
Tests for the spatial voxel index.

Nearest-neighbor answers are checked against scikit-learn's brute-force
search, which is exact for any radius up to the cell size.
"""

from pathlib import Path
import sys

import numpy as np
import pytest
from sklearn.neighbors import NearestNeighbors

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.preprocessing.point_set import PointSet
from scan_registration.preprocessing.voxel_index import VoxelIndex, VoxelRangeError, extent_fits


def _make_random_cloud(n: int = 2000, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.random((n, 3)) * np.array([1.0, 0.8, 0.6]) - 0.3


class TestNearestQueries:
    def test_nearest_many_matches_brute_force(self):
        pts = _make_random_cloud()
        index = VoxelIndex.build(PointSet(pts), cell_size=0.1)

        rng = np.random.default_rng(1)
        queries = rng.random((300, 3)) * np.array([1.0, 0.8, 0.6]) - 0.3
        idx, dist = index.nearest_many(queries, max_radius=0.1)

        ref = NearestNeighbors(n_neighbors=1, algorithm="brute").fit(pts)
        ref_dist, _ = ref.kneighbors(queries)
        ref_dist = ref_dist[:, 0]

        within = ref_dist <= 0.1
        assert np.array_equal(idx >= 0, within)
        assert np.allclose(dist[within], ref_dist[within])
        # Returned index really is at the reported distance
        assert np.allclose(np.linalg.norm(pts[idx[within]] - queries[within], axis=1), dist[within])
        assert np.all(np.isinf(dist[~within]))

    def test_nearest_single_query_returns_normal(self):
        pts = np.array([[0.0, 0.0, 0.0], [0.05, 0.0, 0.0]])
        normals = np.array([[0.0, 0.0, 1.0], [1.0, 0.0, 0.0]])
        index = VoxelIndex.build(PointSet(pts, normals=normals), cell_size=0.1)

        hit = index.nearest(np.array([0.04, 0.0, 0.0]), max_radius=0.1)
        assert hit is not None
        assert hit.index == 1
        assert hit.distance == pytest.approx(0.01)
        assert np.allclose(hit.normal, [1.0, 0.0, 0.0])

    def test_no_match_beyond_radius(self):
        index = VoxelIndex.build(PointSet(np.zeros((1, 3))), cell_size=0.1)
        assert index.nearest(np.array([0.08, 0.0, 0.0]), max_radius=0.05) is None

    def test_search_is_bounded_to_neighbor_cells(self):
        # The only point lies three cells away; a huge radius must not widen the search
        index = VoxelIndex.build(PointSet(np.array([[0.05, 0.05, 0.05]])), cell_size=0.1)
        assert index.nearest(np.array([0.35, 0.05, 0.05]), max_radius=10.0) is None

    def test_empty_cells_return_no_match(self):
        index = VoxelIndex.build(PointSet(np.array([[0.0, 0.0, 0.0]])), cell_size=0.1)
        assert index.nearest(np.array([5.0, 5.0, 5.0]), max_radius=1.0) is None

    def test_empty_index(self):
        index = VoxelIndex.build(PointSet(np.empty((0, 3))), cell_size=0.1)
        assert index.n_cells == 0
        idx, dist = index.nearest_many(np.zeros((4, 3)), max_radius=1.0)
        assert np.all(idx == -1)
        assert np.all(np.isinf(dist))

    def test_non_finite_queries_get_no_match(self):
        index = VoxelIndex.build(PointSet(np.zeros((1, 3))), cell_size=0.1)
        idx, _ = index.nearest_many(np.array([[np.nan, 0.0, 0.0], [0.0, 0.0, 0.0]]), max_radius=0.1)
        assert idx.tolist() == [-1, 0]


class TestBuild:
    def test_raw_mode_keeps_every_point(self):
        pts = _make_random_cloud(500)
        index = VoxelIndex.build(PointSet(pts), cell_size=0.2)
        assert len(index) == 500
        assert index.n_cells < 500
        assert index.max_cell_occupancy >= 1

    def test_centroid_mode_averages_cells(self):
        pts = np.array(
            [
                [0.01, 0.01, 0.01],
                [0.03, 0.05, 0.07],
                [0.51, 0.0, 0.0],
            ]
        )
        conf = np.array([0.2, 0.6, 1.0])
        normals = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [1.0, 0.0, 0.0]])
        index = VoxelIndex.build(PointSet(pts, normals=normals, confidences=conf), cell_size=0.1, mode="centroid")
        stored = index.to_point_set()

        assert index.n_cells == 2
        assert len(stored) == 2
        order = np.argsort(stored.positions[:, 0])
        assert np.allclose(stored.positions[order[0]], [0.02, 0.03, 0.04])
        assert stored.confidences[order[0]] == pytest.approx(0.4)
        assert np.allclose(stored.normals[order[1]], [1.0, 0.0, 0.0])

    def test_centroid_mode_opposing_normals_fall_back(self):
        pts = np.array([[0.01, 0.0, 0.0], [0.02, 0.0, 0.0]])
        normals = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, -1.0]])
        stored = VoxelIndex.build(PointSet(pts, normals=normals), cell_size=0.1, mode="centroid").to_point_set()
        assert np.allclose(np.linalg.norm(stored.normals, axis=1), 1.0)

    def test_negative_coordinates_use_floor(self):
        index = VoxelIndex.build(PointSet(np.array([[-0.01, 0.0, 0.0], [0.01, 0.0, 0.0]])), cell_size=0.1)
        assert index.n_cells == 2

    @pytest.mark.parametrize("cell", [0.0, -1.0, np.nan])
    def test_invalid_cell_size(self, cell):
        with pytest.raises(ValueError):
            VoxelIndex.build(PointSet(np.zeros((1, 3))), cell_size=cell)

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            VoxelIndex.build(PointSet(np.zeros((1, 3))), cell_size=0.1, mode="median")

    def test_non_finite_positions_rejected(self):
        with pytest.raises(ValueError):
            VoxelIndex.build(PointSet(np.array([[np.inf, 0.0, 0.0]])), cell_size=0.1)

    def test_build_does_not_modify_input(self):
        pts = _make_random_cloud(100)
        before = pts.copy()
        VoxelIndex.build(PointSet(pts), cell_size=0.1, mode="centroid")
        assert np.array_equal(pts, before)

    def test_large_coordinates_are_indexed(self):
        # Georeferenced coordinates: tens of km away from the origin at mm cells
        pts = _make_random_cloud(2000) + np.array([1.0e5, -2.0e4, 3.0e3])
        index = VoxelIndex.build(PointSet(pts), cell_size=0.007)

        idx, dist = index.nearest_many(pts[:50], max_radius=0.007)
        assert idx.tolist() == list(range(50))
        assert np.all(dist == 0.0)

        far_idx, _ = index.nearest_many(np.zeros((1, 3)), max_radius=0.007)
        assert far_idx.tolist() == [-1]

    def test_extent_beyond_code_range(self):
        pts = np.array([[0.0, 0.0, 0.0], [1.0e5, 1.0e5, 1.0e5]])
        assert extent_fits(pts[:1], 0.04)
        assert not extent_fits(pts, 0.04)
        with pytest.raises(VoxelRangeError):
            VoxelIndex.build(PointSet(pts), cell_size=0.04)
