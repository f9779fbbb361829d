from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest

from movement_screen.biomechanics.config import STEREO_SETTINGS
from movement_screen.biomechanics.geometry import distance, project_point
from movement_screen.biomechanics.pose_estimation.calibration import (
    CalibrationError,
    FileCalibrationProvider,
    StaticCalibrationProvider,
    StereoCalibration,
    build_projection_matrix,
    default_stereo_calibration,
    load_calibration,
    save_calibration,
)
from movement_screen.biomechanics.pose_estimation.stereo_processor import Pose3DProcessor, apply_knee_constraint
from movement_screen.models import Landmark, LandmarkFrame


def _stereo_pair(points_3d, calibration: StereoCalibration, visibility: float = 0.95):
    """Project 3D points (mm) into normalized image coordinates for both cameras."""
    width, height = calibration.image_size
    views = []
    for camera in (calibration.camera1, calibration.camera2):
        landmarks = []
        for point in points_3d:
            u, v = project_point(camera.projection_array(), point)
            landmarks.append(Landmark(u / width, v / height, 0.0, visibility))
        views.append(LandmarkFrame(tuple(landmarks), timestamp=40.0, frame_index=3))
    return views[0], views[1]


def test_processing_requires_calibration() -> None:
    frame = LandmarkFrame((Landmark(0.5, 0.5),))
    with pytest.raises(CalibrationError):
        Pose3DProcessor(None).process_3d_pose(frame, frame, 0.0)

    uncalibrated = replace(default_stereo_calibration(), is_calibrated=False)
    with pytest.raises(CalibrationError):
        Pose3DProcessor(uncalibrated).process_3d_pose(frame, frame, 0.0)


def test_triangulates_visible_landmarks() -> None:
    calibration = default_stereo_calibration()
    nose = np.array([100.0, 50.0, 2000.0])
    frame1, frame2 = _stereo_pair([nose], calibration)

    result = Pose3DProcessor(calibration).process_3d_pose(frame1, frame2, 40.0)
    point = result.frame[0]
    assert np.array([point.x, point.y, point.z]) == pytest.approx(nose, abs=1e-2)
    assert point.visibility == pytest.approx(0.95)
    assert result.frame.frame_index == 3
    assert result.timestamp == 40.0
    assert 0.0 < result.confidence <= 1.0


def test_low_visibility_landmarks_become_placeholders() -> None:
    calibration = default_stereo_calibration()
    frame1, frame2 = _stereo_pair([(100.0, 50.0, 2000.0), (-80.0, 20.0, 2100.0)], calibration)
    faded = list(frame2.landmarks)
    faded[1] = replace(faded[1], visibility=0.3)
    frame2 = replace(frame2, landmarks=tuple(faded))

    result = Pose3DProcessor(calibration).process_3d_pose(frame1, frame2, 0.0)
    assert result.frame[0].visibility > 0.0
    placeholder = result.frame[1]
    assert (placeholder.x, placeholder.y, placeholder.z, placeholder.visibility) == (0.0, 0.0, 0.0, 0.0)
    assert len(result.frame.landmarks) == 33


def test_processing_stats_are_per_instance() -> None:
    calibration = default_stereo_calibration()
    frame1, frame2 = _stereo_pair([(0.0, 0.0, 1500.0)], calibration)
    first = Pose3DProcessor(calibration)
    second = Pose3DProcessor(calibration)

    first.process_3d_pose(frame1, frame2, 0.0)
    result = first.process_3d_pose(frame1, frame2, 33.0)
    assert result.stats.samples == 2
    assert result.stats.max_ms >= result.stats.average_ms >= 0.0
    assert second.stats().samples == 0

    first.reset_stats()
    assert first.stats().samples == 0


def test_knee_constraint_repositions_implausible_knee() -> None:
    points = [Landmark(0.0, 0.0, 0.0, 0.0)] * 33
    points[23] = Landmark(0.0, 0.0, 0.0, 1.0)
    points[25] = Landmark(0.0, 100.0, 0.0, 1.0)  # thigh 100, shank 400
    points[27] = Landmark(0.0, 500.0, 0.0, 1.0)

    corrected = apply_knee_constraint(points, STEREO_SETTINGS)
    assert corrected == [25]
    ratio = distance(points[23], points[25]) / distance(points[25], points[27])
    assert ratio == pytest.approx(STEREO_SETTINGS.expected_thigh_shank_ratio)
    assert points[25].visibility == 1.0


def test_calibration_file_round_trip(tmp_path) -> None:
    path = save_calibration(default_stereo_calibration(), tmp_path / "rig" / "stereo.json")
    loaded = load_calibration(path)
    assert loaded == default_stereo_calibration()
    assert FileCalibrationProvider(path).get_calibration() == loaded
    assert FileCalibrationProvider(tmp_path / "missing.json").get_calibration() is None
    assert StaticCalibrationProvider().get_calibration().is_calibrated is True


def test_default_rig_pose_matches_its_projections() -> None:
    calibration = default_stereo_calibration()
    for camera in (calibration.camera1, calibration.camera2):
        rebuilt = build_projection_matrix(camera.intrinsic, camera.rotation, camera.translation)
        assert rebuilt == pytest.approx(camera.projection_array())
    assert calibration.camera2.translation == (-200.0, 0.0, 0.0)

    point = (150.0, -80.0, 2400.0)
    x1 = np.append(project_point(calibration.camera1.projection_array(), point), 1.0)
    x2 = np.append(project_point(calibration.camera2.projection_array(), point), 1.0)
    assert float(x2 @ np.asarray(calibration.fundamental) @ x1) == pytest.approx(0.0, abs=1e-9)
