"""Body-segment measurements shared by the metric evaluator and landing analyzer.

Measurements take absolute values of axis components where the sign depends
on camera orientation (image y grows downward, camera-space y may not), so
they read the same for 2D image frames and triangulated 3D frames.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from movement_screen.biomechanics.geometry import angle_between, as_vector, midpoint, project_to_plane, vector_angle
from movement_screen.models import Landmark, LandmarkFrame

LEFT_SHOULDER, RIGHT_SHOULDER = 11, 12
LEFT_ELBOW, RIGHT_ELBOW = 13, 14
LEFT_WRIST, RIGHT_WRIST = 15, 16
LEFT_HIP, RIGHT_HIP = 23, 24
LEFT_KNEE, RIGHT_KNEE = 25, 26
LEFT_ANKLE, RIGHT_ANKLE = 27, 28

SIDES = {
    "left": {
        "shoulder": LEFT_SHOULDER,
        "elbow": LEFT_ELBOW,
        "wrist": LEFT_WRIST,
        "hip": LEFT_HIP,
        "knee": LEFT_KNEE,
        "ankle": LEFT_ANKLE,
    },
    "right": {
        "shoulder": RIGHT_SHOULDER,
        "elbow": RIGHT_ELBOW,
        "wrist": RIGHT_WRIST,
        "hip": RIGHT_HIP,
        "knee": RIGHT_KNEE,
        "ankle": RIGHT_ANKLE,
    },
}


def visible_points(frame: LandmarkFrame, indices: Sequence[int], threshold: float) -> Optional[list[Landmark]]:
    """Return the requested landmarks, or ``None`` if any is at or below ``threshold``."""
    points = [frame[index] for index in indices]
    if all(point.is_visible(threshold) for point in points):
        return points
    return None


def landmark_confidence(points: Sequence[Landmark]) -> float:
    """Confidence (0-100) of a derived value: the weakest contributing landmark."""
    if not points:
        return 0.0
    return min(point.visibility for point in points) * 100.0


def center_of_mass(frame: LandmarkFrame) -> np.ndarray:
    """Hip-midpoint approximation of the body's center of mass."""
    return midpoint(frame[LEFT_HIP], frame[RIGHT_HIP])


def trunk_vector(frame: LandmarkFrame) -> np.ndarray:
    """Hip midpoint to shoulder midpoint."""
    shoulders = midpoint(frame[LEFT_SHOULDER], frame[RIGHT_SHOULDER])
    return shoulders - center_of_mass(frame)


def trunk_lean(frame: LandmarkFrame) -> tuple[float, float]:
    """Return ``(sagittal, frontal)`` trunk lean from vertical in degrees."""
    dx, dy, dz = (abs(float(value)) for value in trunk_vector(frame))
    if dx == 0.0 and dy == 0.0 and dz == 0.0:
        return 0.0, 0.0
    sagittal = math.degrees(math.atan2(dz, dy))
    frontal = math.degrees(math.atan2(dx, dy))
    return sagittal, frontal


def tilt_from_vertical(vector: np.ndarray) -> float:
    """Smallest angle between ``vector`` and the vertical axis, in [0, 90]."""
    angle = vector_angle(vector, (0.0, 1.0, 0.0))
    return min(angle, 180.0 - angle)


def tilt_from_horizontal(vector: np.ndarray, plane: str) -> float:
    """Smallest angle between ``vector`` and the mediolateral (x) axis within ``plane``."""
    projected = project_to_plane(vector, plane)
    if not np.any(projected):
        return 0.0
    angle = vector_angle(projected, (1.0, 0.0, 0.0))
    return min(angle, 180.0 - angle)


def knee_valgus(frame: LandmarkFrame, side: str) -> float:
    """Frontal-plane deviation of the hip-knee-ankle angle from a straight leg."""
    ids = SIDES[side]
    knee_angle = angle_between(frame[ids["hip"]], frame[ids["knee"]], frame[ids["ankle"]], plane="frontal")
    if knee_angle == 0.0:
        return 0.0
    return abs(180.0 - knee_angle)


def shoulder_abduction(frame: LandmarkFrame, side: str) -> float:
    """Angle between the upper arm and the downward trunk direction."""
    ids = SIDES[side]
    shoulder = as_vector(frame[ids["shoulder"]])
    upper_arm = as_vector(frame[ids["elbow"]]) - shoulder
    downward = -trunk_vector(frame)
    return vector_angle(upper_arm, downward)


def elbow_flexion(frame: LandmarkFrame, side: str) -> float:
    ids = SIDES[side]
    angle = angle_between(frame[ids["shoulder"]], frame[ids["elbow"]], frame[ids["wrist"]])
    return 180.0 - angle if angle else 0.0


__all__ = [
    "SIDES",
    "visible_points",
    "landmark_confidence",
    "center_of_mass",
    "trunk_vector",
    "trunk_lean",
    "tilt_from_vertical",
    "tilt_from_horizontal",
    "knee_valgus",
    "shoulder_abduction",
    "elbow_flexion",
]
