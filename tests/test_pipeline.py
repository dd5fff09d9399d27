"""
End-to-end tests for the registration pipeline on synthetic scenes.
"""

from pathlib import Path
import sys

import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.alignment import pipeline as pipeline_module
from scan_registration.alignment import RegistrationPipeline, RegistrationStatus, register
from scan_registration.preprocessing.point_set import PointSet
from scan_registration.utils.config import RegistrationConfig
from scan_registration.utils.rigid_transform import is_rotation, rotation_angle_deg, yaw_about_axis_deg

UP = np.array([0.0, 0.0, 1.0])


def _config(**overrides) -> RegistrationConfig:
    params = dict(
        up=[0, 0, 1],
        min_range=0.0,
        voxel_sizes=[0.1, 0.06, 0.04],
        max_correspondence_distances=[0.15, 0.1, 0.06],
    )
    params.update(overrides)
    return RegistrationConfig(**params)


def _pose_errors(pose, R, t):
    T_true = np.eye(4)
    T_true[:3, :3] = R
    T_true[:3, 3] = t
    return float(np.linalg.norm(pose[:3, 3] - t)), rotation_angle_deg(np.linalg.inv(T_true) @ pose)


@pytest.fixture
def room(make_room):
    return make_room(spacing=0.03)


class TestScenarios:
    def test_self_registration_is_identity(self, room):
        result = register(PointSet(room), PointSet(room, name="room-model"), config=_config())

        assert result.status == RegistrationStatus.SUCCESS
        assert result.model_id == "room-model"
        assert np.allclose(result.pose, np.eye(4), atol=1e-6)
        assert result.metrics.rmse < 1e-6
        assert result.metrics.voxel_size == 0.04

    def test_known_pose_is_recovered(self, room, rot_z, to_model_frame):
        R, t = rot_z(8.0), np.array([0.05, -0.03, 0.02])
        model = to_model_frame(room, R, t)

        result = RegistrationPipeline(_config()).register(PointSet(room), PointSet(model))

        assert result.status == RegistrationStatus.SUCCESS
        t_err, r_err = _pose_errors(result.pose, R, t)
        assert t_err < 0.01
        assert r_err < 1.0
        assert is_rotation(result.pose[:3, :3])
        # Placement through the result lands the model on the scan
        assert np.allclose(result.apply_to(model), room, atol=0.03)

    def test_outliers_are_trimmed(self, room, rot_z, to_model_frame):
        rng = np.random.default_rng(3)
        n_out = int(round(0.3 / 0.7 * len(room)))
        lo, hi = np.array([-0.6, -0.25, -0.65]), np.array([0.6, 0.25, 0.0])
        outliers = lo + rng.random((n_out, 3)) * (hi - lo)
        scan = np.vstack([room, outliers])

        R, t = rot_z(-6.0), np.array([-0.04, 0.02, 0.0])
        model = to_model_frame(room, R, t)

        result = register(PointSet(scan), PointSet(model), config=_config(trim_fraction=0.7))

        assert result.has_pose
        t_err, r_err = _pose_errors(result.pose, R, t)
        assert t_err < 0.01
        assert r_err < 1.0
        assert result.metrics.inlier_fraction == pytest.approx(0.7, abs=0.1)

    def test_flat_square(self, rot_z, to_model_frame):
        scan = np.array(
            [
                [0.25, 0.25, -1.0],
                [0.75, 0.25, -1.0],
                [0.75, 0.75, -1.0],
                [0.25, 0.75, -1.0],
            ]
        )
        normals = np.tile(UP, (4, 1))
        R, t = rot_z(5.0), np.array([0.1, 0.0, 0.0])
        model = to_model_frame(scan, R, t)

        cfg = _config(
            voxel_sizes=[0.02, 0.01],
            max_correspondence_distances=[0.08, 0.04],
            trim_fraction=1.0,
        )
        result = register(
            PointSet.from_arrays(scan, normals=normals),
            PointSet.from_arrays(model, normals=normals),
            config=cfg,
        )

        assert result.status == RegistrationStatus.SUCCESS
        assert np.allclose(result.pose[:3, 3], t, atol=0.01)
        assert yaw_about_axis_deg(result.pose, UP) == pytest.approx(5.0, abs=1.0)
        assert result.metrics.inlier_fraction == 1.0

    def test_empty_inputs_are_invalid(self, monkeypatch):
        def _must_not_run(*args, **kwargs):
            raise AssertionError("expensive stage reached with empty input")

        monkeypatch.setattr(pipeline_module.CoarsePoseEstimator, "estimate", _must_not_run)
        monkeypatch.setattr(pipeline_module.ICPRefiner, "refine", _must_not_run)

        empty = PointSet(np.empty((0, 3)))
        result = register(empty, empty, config=_config())

        assert result.status == RegistrationStatus.INVALID_INPUT
        assert result.pose is None
        assert result.metrics is None
        assert "Empty input" in result.message
        with pytest.raises(ValueError):
            result.apply_to(np.zeros((1, 3)))

    def test_scan_empty_after_filtering_is_invalid(self, room):
        scan = PointSet.from_arrays(room, confidences=np.full(len(room), 0.1))
        result = register(scan, PointSet(room), config=_config())
        assert result.status == RegistrationStatus.INVALID_INPUT

    def test_model_in_far_local_coordinates(self, room, rot_z, to_model_frame):
        R, t = rot_z(4.0), np.array([-60000.0, 0.02, 0.0])
        model = to_model_frame(room, R, t)

        result = register(PointSet(room), PointSet(model), config=_config())

        assert result.status == RegistrationStatus.SUCCESS
        _, r_err = _pose_errors(result.pose, R, t)
        assert r_err < 1.0
        assert np.allclose(result.apply_to(model), room, atol=0.03)

    def test_unindexable_extent_is_invalid(self, room):
        model = np.vstack([room, [[1.0e5, 1.0e5, 1.0e5]]])
        result = register(PointSet(room), PointSet(model), config=_config())

        assert result.status == RegistrationStatus.INVALID_INPUT
        assert result.pose is None
        assert "too large to index" in result.message

    def test_too_few_scan_points_degrade(self, room):
        scan = np.array([[0.0, 0.0, -1.0], [0.1, 0.0, -1.0]])
        result = register(PointSet(scan), PointSet(room), config=_config())

        assert result.status == RegistrationStatus.LOW_CONFIDENCE
        assert result.has_pose
        assert "too few points for refinement" in result.message

    def test_default_configuration(self, make_room):
        # Default settings expect a Y-up frame
        z_to_y_up = np.array([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0], [0.0, -1.0, 0.0]])
        scan = make_room(spacing=0.02) @ z_to_y_up.T
        th = np.deg2rad(5.0)
        R = np.array([[np.cos(th), 0.0, np.sin(th)], [0.0, 1.0, 0.0], [-np.sin(th), 0.0, np.cos(th)]])
        t = np.array([0.03, 0.0, -0.02])
        model = (scan - t) @ R

        result = RegistrationPipeline().register(PointSet(scan), PointSet(model))

        assert result.status == RegistrationStatus.SUCCESS
        assert result.metrics.voxel_size == pytest.approx(0.007)
        assert [r.voxel_size for r in result.level_history] == pytest.approx([0.02, 0.01, 0.007])
        t_err, r_err = _pose_errors(result.pose, R, t)
        assert t_err < 0.01
        assert r_err < 1.0


class TestResultContract:
    def test_level_history_and_metrics(self, room, rot_z, to_model_frame):
        model = to_model_frame(room, rot_z(3.0), np.array([0.02, 0.0, 0.0]))
        result = register(PointSet(room), PointSet(model), config=_config())

        history = result.level_history
        assert [r.voxel_size for r in history] == [0.1, 0.06, 0.04]
        fractions = [r.inlier_fraction for r in history]
        for coarse, fine in zip(fractions, fractions[1:]):
            assert fine >= coarse - 1e-6
        assert result.metrics.iterations == sum(r.iterations for r in history)
        assert result.metrics.rmse == history[-1].rmse
        assert result.n_seeds == 2

        payload = result.to_dict()
        assert payload["status"] == "success"
        assert len(payload["pose"]) == 4
        assert len(payload["level_history"]) == 3

    def test_low_confidence_is_flagged_not_fatal(self, room):
        result = register(PointSet(room), PointSet(room), config=_config(min_inlier_fraction=0.95))
        assert result.status == RegistrationStatus.LOW_CONFIDENCE
        assert result.low_confidence
        assert result.has_pose
        assert "inlier fraction" in result.message

    def test_inputs_are_not_mutated(self, room, rot_z, to_model_frame):
        model = to_model_frame(room, rot_z(4.0), np.zeros(3))
        scan_arr, model_arr = room.copy(), model.copy()
        scan, model_set = PointSet(scan_arr), PointSet(model_arr)

        register(scan, model_set, config=_config())

        assert np.array_equal(scan.positions, room)
        assert np.array_equal(model_set.positions, model)
        assert scan.normals is None and model_set.normals is None

    def test_progress_stages(self, room):
        stages = []
        register(PointSet(room), PointSet(room), config=_config(), progress_callback=lambda s, info: stages.append((s, info)))

        names = [s for s, _ in stages]
        assert names[0] == "preprocessing"
        assert names[-1] == "completed"
        assert names.index("coarse_alignment") < names.index("icp_refinement")
        icp = [info for s, info in stages if s == "icp_refinement"]
        assert {info["level"] for info in icp} == {0, 1, 2}
        assert stages[-1][1]["status"] == "success"

    def test_parallel_seeds_and_levels_match_sequential(self, room, rot_z, to_model_frame):
        model = to_model_frame(room, rot_z(3.0), np.array([0.0, 0.02, 0.0]))
        sequential = register(PointSet(room), PointSet(model), config=_config())
        parallel = register(
            PointSet(room),
            PointSet(model),
            config=_config(parallel_seeds=True, parallel_levels=True, n_workers=2),
        )
        assert parallel.status == sequential.status
        assert np.allclose(parallel.pose, sequential.pose)
