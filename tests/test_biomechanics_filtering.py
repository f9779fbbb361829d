from __future__ import annotations

import numpy as np
import pytest

from movement_screen.biomechanics.utils.filtering import (
    fill_low_visibility,
    smooth_frames,
    smooth_landmarks,
    smooth_trajectory,
)


def test_smooth_frames_keeps_linear_motion_and_visibility(make_frame) -> None:
    frames = [
        make_frame(shift=(0.01 * index, 0.0, 0.0), visibility=0.8, frame_index=index, timestamp=index * 10.0)
        for index in range(7)
    ]
    smoothed = smooth_frames(frames, window_length=5, polyorder=2)
    assert len(smoothed) == 7
    for original, result in zip(frames, smoothed):
        assert result.frame_index == original.frame_index
        assert result.timestamp == original.timestamp
        assert [point.visibility for point in result.landmarks] == [point.visibility for point in original.landmarks]
        assert result[25].x == pytest.approx(original[25].x)


def test_smooth_frames_damps_a_single_spike(make_frame) -> None:
    frames = [make_frame() for _ in range(9)]
    frames[4] = make_frame({25: (0.56, 0.72)})
    smoothed = smooth_frames(frames, window_length=5, polyorder=2)
    spike = abs(frames[4][25].x - 0.46)
    assert abs(smoothed[4][25].x - 0.46) < spike


def test_short_sequences_are_returned_unchanged(make_frame) -> None:
    frames = [make_frame(), make_frame(shift=(0.1, 0.0, 0.0))]
    assert smooth_frames(frames) == frames
    assert smooth_frames([]) == []


def test_invalid_window_is_rejected(make_frame) -> None:
    frames = [make_frame() for _ in range(6)]
    with pytest.raises(ValueError):
        smooth_frames(frames, window_length=4, polyorder=2)
    with pytest.raises(ValueError):
        smooth_frames(frames, window_length=3, polyorder=3)


def test_fill_low_visibility_interpolates_dropouts() -> None:
    coords = np.zeros((5, 33, 3))
    coords[:, 0, 0] = [0.0, 1.0, 99.0, 3.0, 4.0]
    visibility = np.ones((5, 33))
    visibility[2, 0] = 0.1
    filled = fill_low_visibility(coords, visibility, 0.5)
    assert filled[2, 0, 0] == pytest.approx(2.0)
    assert coords[2, 0, 0] == 99.0


def test_array_smoothing_checks_shapes() -> None:
    with pytest.raises(ValueError):
        smooth_landmarks(np.zeros((5, 10, 3)))
    with pytest.raises(ValueError):
        smooth_trajectory(np.zeros((5, 4)))
    short = smooth_landmarks(np.ones((3, 33, 3)))
    assert short.shape == (3, 33, 3)
    assert smooth_trajectory(np.ones((2, 2))).shape == (2, 2)
