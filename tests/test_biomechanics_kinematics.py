from __future__ import annotations

import numpy as np
import pytest

from movement_screen.biomechanics.metrics.kinematics import (
    VELOCITY_COLUMNS,
    MotionRecording,
    analyze_movement,
    build_recording,
    center_of_mass_trajectory,
    compute_velocity,
    frame_consistency,
    get_velocity_peaks,
    joint_velocities,
    movement_deviations,
    movement_quality,
    tracking_quality,
)


def _sliding(make_frame, count: int, *, step_ms: float = 10.0, dx: float = 0.01, **kwargs):
    return [
        make_frame(shift=(dx * index, 0.0, 0.0), timestamp=index * step_ms, frame_index=index, **kwargs)
        for index in range(count)
    ]


def test_compute_velocity_central_differences() -> None:
    trajectory = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [4.0, 0.0, 0.0]])
    speed, velocity = compute_velocity(trajectory, [0.0, 1.0, 2.0, 3.0])
    assert speed == pytest.approx(np.array([1.0, 1.0, 1.5, 2.0]))
    assert velocity.shape == (4, 3)
    with pytest.raises(ValueError):
        compute_velocity(trajectory, [0.0, 1.0])


def test_build_recording_metadata(make_frame) -> None:
    recording = build_recording(_sliding(make_frame, 3), frame_rate=100.0, recording_id="rec-1")
    assert recording.id == "rec-1"
    assert recording.name.startswith("Motion_")
    assert recording.duration == pytest.approx(0.02)
    assert recording.metadata.total_frames == 3
    assert recording.metadata.average_confidence == pytest.approx(1.0)
    assert recording.metadata.tracking_quality == "excellent"
    assert MotionRecording.from_dict(recording.to_dict()) == recording


def test_frame_consistency_and_quality_levels(make_frame) -> None:
    varying = [make_frame(), make_frame(hidden=(0,)), make_frame()]
    assert frame_consistency(varying) == pytest.approx(0.0)
    assert frame_consistency(varying[:1]) == 1.0
    assert tracking_quality([make_frame(visibility=0.7)] * 3) == "good"
    assert tracking_quality([make_frame(visibility=0.2)] * 3) == "poor"


def test_joint_velocities_table(make_frame) -> None:
    recording = build_recording(_sliding(make_frame, 4), frame_rate=100.0)
    df = joint_velocities(recording)
    assert list(df.columns) == VELOCITY_COLUMNS
    assert len(df) == 13 * 4
    knee = df[df["joint"] == "left_knee"]
    assert knee["vx"].to_numpy() == pytest.approx(np.ones(4))
    assert knee["vy"].to_numpy() == pytest.approx(np.zeros(4))
    assert knee["valid"].all()


def test_joint_velocities_fall_back_to_frame_rate(make_frame) -> None:
    frames = _sliding(make_frame, 3, step_ms=0.0, hidden=(0,))
    df = joint_velocities(build_recording(frames, frame_rate=100.0))
    assert df[df["joint"] == "left_hip"]["vx"].to_numpy() == pytest.approx(np.ones(3))
    assert not df[df["joint"] == "nose"]["valid"].any()
    assert joint_velocities(build_recording(frames[:1])).empty


def test_velocity_peaks_rank_fastest_joint(make_frame) -> None:
    frames = [
        make_frame({15: (0.45 + 0.05 * index, 0.60)}, timestamp=index * 10.0, frame_index=index)
        for index in range(5)
    ]
    peaks = get_velocity_peaks(joint_velocities(build_recording(frames)))
    joint, speed, _frame = peaks[0]
    assert joint == "left_wrist"
    assert speed == pytest.approx(5.0)
    with pytest.raises(ValueError):
        get_velocity_peaks(joint_velocities(build_recording(frames)).drop(columns=["speed"]))


def test_center_of_mass_is_hip_midpoint(make_frame) -> None:
    trajectory = center_of_mass_trajectory(build_recording(_sliding(make_frame, 2)))
    assert trajectory.shape == (2, 3)
    assert trajectory[0] == pytest.approx(np.array([0.50, 0.55, 0.0]))
    assert trajectory[1] == pytest.approx(np.array([0.51, 0.55, 0.0]))


def test_deviations_flag_low_confidence_and_missing_points(make_frame) -> None:
    recording = build_recording([make_frame(), make_frame(hidden=(0,)), make_frame(visibility=0.6)])
    deviations = movement_deviations(recording)
    assert [(item.frame_index, item.severity) for item in deviations] == [(1, "major"), (2, "moderate")]
    assert deviations[0].description == "Missing body landmarks"


def test_movement_quality_penalties(make_frame) -> None:
    clean = build_recording(_sliding(make_frame, 4), frame_rate=100.0)
    assert movement_quality(clean) == 100.0

    mixed = [
        make_frame(timestamp=0.0),
        make_frame(timestamp=10.0),
        make_frame(timestamp=20.0, visibility=0.6),
        make_frame(timestamp=30.0, visibility=0.6),
    ]
    assert movement_quality(build_recording(mixed, frame_rate=100.0)) == pytest.approx(85.0)

    sparse = [make_frame(timestamp=0.0), make_frame(timestamp=100.0)]
    assert movement_quality(build_recording(sparse, frame_rate=100.0)) == pytest.approx(84.0)

    assert movement_quality(build_recording([], frame_rate=100.0)) == 0.0


def test_analyze_movement_bundles_results(make_frame) -> None:
    analysis = analyze_movement(build_recording(_sliding(make_frame, 3), frame_rate=100.0))
    assert not analysis.velocities.empty
    assert analysis.center_of_mass.shape == (3, 3)
    assert analysis.movement_quality == 100.0
    assert analysis.deviations == ()
