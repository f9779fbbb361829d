from __future__ import annotations

import pytest

from movement_screen.biomechanics.metrics.angles import (
    JOINT_CATALOG,
    classify_band,
    compute_joint_angles,
    compute_trajectory_angles,
    find_angle,
)


def test_standing_pose_produces_every_catalog_angle(standing_frame) -> None:
    angles = compute_joint_angles(standing_frame)
    assert [angle.name for angle in angles] == [joint.name for joint in JOINT_CATALOG]

    assert find_angle(angles, "Left Knee").angle == pytest.approx(180.0, abs=0.5)
    assert find_angle(angles, "Right Knee").angle == pytest.approx(180.0, abs=0.5)
    assert find_angle(angles, "Left Elbow").angle == pytest.approx(180.0, abs=0.5)
    assert find_angle(angles, "Left Shoulder").angle == pytest.approx(90.0)
    assert find_angle(angles, "Left Ankle").angle == pytest.approx(90.0)


def test_straight_knee_is_outside_target_band(standing_frame) -> None:
    knee = find_angle(compute_joint_angles(standing_frame), "Left Knee")
    assert knee.target_min == 90.0
    assert knee.target_max == 130.0
    assert knee.normal is False
    assert knee.warning is False
    assert knee.status == "fail"
    assert knee.deviation == pytest.approx(50.0, abs=0.5)
    assert knee.deviation_direction == "+"
    assert knee.confidence == pytest.approx(100.0)


def test_hidden_landmark_omits_dependent_joints(make_frame) -> None:
    angles = compute_joint_angles(make_frame(hidden=(25,)))
    names = [angle.name for angle in angles]
    assert "Left Knee" not in names
    assert "Left Hip" not in names
    assert "Left Ankle" not in names
    expected = [joint.name for joint in JOINT_CATALOG if 25 not in joint.indices]
    assert names == expected


def test_visibility_at_threshold_is_not_visible(make_frame) -> None:
    assert compute_joint_angles(make_frame(visibility=0.5)) == []
    angles = compute_joint_angles(make_frame(visibility=0.9))
    assert all(angle.confidence == pytest.approx(90.0) for angle in angles)


def test_classify_band_boundaries() -> None:
    assert classify_band(90.0, 90.0, 130.0, 5.0) == (True, False, 0.0, "+")
    assert classify_band(130.0, 90.0, 130.0, 5.0) == (True, False, 0.0, "+")
    normal, warning, deviation, direction = classify_band(133.0, 90.0, 130.0, 5.0)
    assert (normal, warning, direction) == (False, True, "+")
    assert deviation == pytest.approx(3.0)
    normal, warning, deviation, direction = classify_band(80.0, 90.0, 130.0, 5.0)
    assert (normal, warning, direction) == (False, False, "-")
    assert deviation == pytest.approx(10.0)


def test_angle_plane_can_be_switched_to_3d(make_frame) -> None:
    frame = make_frame({25: (0.46, 0.72, 0.1)})
    frontal = find_angle(compute_joint_angles(frame), "Left Knee")
    full = find_angle(compute_joint_angles(frame, config={"JOINT_ANGLE_PLANE": "3d"}), "Left Knee")
    assert frontal.angle == pytest.approx(180.0)
    assert full.angle < 170.0


def test_trajectory_angles_dataframe(make_frame) -> None:
    frames = [make_frame(frame_index=0, timestamp=0.0), make_frame(frame_index=1, timestamp=33.3)]
    df = compute_trajectory_angles(frames)
    assert list(df.columns) == ["frame", "timestamp_ms", "angle_name", "value_degrees", "status", "confidence"]
    assert len(df) == 2 * len(JOINT_CATALOG)
    assert sorted(df["frame"].unique().tolist()) == [0, 1]
    knees = df[df["angle_name"] == "Left Knee"]
    assert knees["status"].tolist() == ["fail", "fail"]
