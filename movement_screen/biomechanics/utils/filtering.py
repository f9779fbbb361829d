"""Savitzky–Golay smoothing for recorded landmark sequences.

Only coordinates are filtered. Visibility is carried over untouched so that
confidence downstream still reflects what the detector reported.
"""

from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Sequence

import numpy as np
from scipy.signal import savgol_filter

from movement_screen.biomechanics import config as biomech_config
from movement_screen.models import BODY_LANDMARK_COUNT, Landmark, LandmarkFrame


def _ensure_valid_window(window_length: int, polyorder: int, n_frames: int) -> int:
    if window_length <= polyorder:
        raise ValueError("window_length must be greater than polyorder.")
    if window_length % 2 == 0:
        raise ValueError("window_length must be odd.")
    if n_frames <= 0:
        raise ValueError("Trajectory length must be positive.")
    if n_frames < window_length:
        window_length = n_frames if n_frames % 2 == 1 else n_frames + 1
    return window_length


def _pad_for_window(data: np.ndarray, target_len: int) -> np.ndarray:
    pad_total = max(0, target_len - data.shape[0])
    if pad_total == 0:
        return data
    pad_width = [(0, pad_total)] + [(0, 0) for _ in range(data.ndim - 1)]
    return np.pad(data, pad_width=pad_width, mode="edge")


def _filter(data: np.ndarray, window_length: int, polyorder: int) -> np.ndarray:
    n_frames = int(data.shape[0])
    window_length = _ensure_valid_window(window_length, polyorder, n_frames)
    order = min(polyorder, window_length - 1)
    padded = _pad_for_window(data, window_length)
    smoothed = savgol_filter(padded, window_length=window_length, polyorder=order, axis=0, mode="interp")
    return smoothed[:n_frames]


def fill_low_visibility(coords: np.ndarray, visibility: np.ndarray, threshold: float) -> np.ndarray:
    """Interpolate coordinates of joints whose visibility is at or below ``threshold``.

    Joints never seen above the threshold are left as-is.
    """
    if coords.ndim != 3 or coords.shape[1:] != (BODY_LANDMARK_COUNT, 3):
        raise ValueError(f"coords must have shape (n_frames, {BODY_LANDMARK_COUNT}, 3).")
    out = coords.astype(float, copy=True)
    n_frames = out.shape[0]
    x = np.arange(n_frames, dtype=float)
    for joint in range(BODY_LANDMARK_COUNT):
        good = visibility[:, joint] > threshold
        if not np.any(good) or np.all(good):
            continue
        for axis in range(3):
            out[:, joint, axis] = np.interp(x, x[good], out[good, joint, axis])
    return out


def smooth_landmarks(
    landmarks_array: np.ndarray,
    window_length: int = 5,
    polyorder: int = 2,
) -> np.ndarray:
    """Smooth a ``(n_frames, 33, 3)`` coordinate array along the time axis.

    Sequences shorter than the window are edge-padded rather than shrinking
    the window below ``polyorder + 1``.
    """
    if landmarks_array.ndim != 3 or landmarks_array.shape[1:] != (BODY_LANDMARK_COUNT, 3):
        raise ValueError(f"landmarks_array must have shape (n_frames, {BODY_LANDMARK_COUNT}, 3).")
    return _filter(landmarks_array.astype(float), window_length, polyorder)


def smooth_trajectory(trajectory: np.ndarray, window_length: int = 5, polyorder: int = 2) -> np.ndarray:
    """Smooth a single ``(n_frames, 2|3)`` point trajectory."""
    if trajectory.ndim != 2 or trajectory.shape[1] not in (2, 3):
        raise ValueError("trajectory must have shape (n_frames, 2) or (n_frames, 3).")
    return _filter(trajectory.astype(float), window_length, polyorder)


def smooth_frames(
    frames: Sequence[LandmarkFrame],
    window_length: Optional[int] = None,
    polyorder: Optional[int] = None,
    *,
    fill_threshold: Optional[float] = None,
) -> List[LandmarkFrame]:
    """Return new frames with smoothed body coordinates.

    With ``fill_threshold`` set, low-visibility joints are interpolated from
    neighbouring frames before filtering so dropouts do not drag the curve.
    """
    if not frames:
        return []
    window = int(window_length or biomech_config.SMOOTHING_WINDOW)
    order = int(polyorder if polyorder is not None else biomech_config.SMOOTHING_POLYORDER)
    if len(frames) < 3:
        biomech_config.BIOMECHANICS_LOGGER.debug("Skipping smoothing for %d frame(s).", len(frames))
        return list(frames)

    stacked = np.stack([frame.to_array() for frame in frames])
    coords = stacked[:, :, :3]
    visibility = stacked[:, :, 3]
    if fill_threshold is not None:
        coords = fill_low_visibility(coords, visibility, fill_threshold)
    smoothed = smooth_landmarks(coords, window, order)

    out = []
    for index, frame in enumerate(frames):
        points = tuple(
            Landmark(float(x), float(y), float(z), point.visibility)
            for (x, y, z), point in zip(smoothed[index], frame.landmarks)
        )
        out.append(replace(frame, landmarks=points))
    return out


__all__ = [
    "fill_low_visibility",
    "smooth_landmarks",
    "smooth_trajectory",
    "smooth_frames",
]
