"""Joint angle engine for clinical movement screening."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from movement_screen.biomechanics import config as biomech_config
from movement_screen.biomechanics.config import config_value
from movement_screen.biomechanics.geometry import angle_between
from movement_screen.models import JointAngle, LandmarkFrame

logger = biomech_config.BIOMECHANICS_LOGGER


@dataclass(frozen=True)
class JointDefinition:
    name: str
    indices: Tuple[int, int, int]
    target_min: float
    target_max: float

    @property
    def target_description(self) -> str:
        return f"{self.target_min:g}-{self.target_max:g}°"


# Ordered catalog; output order of compute_joint_angles follows this tuple.
JOINT_CATALOG: Tuple[JointDefinition, ...] = (
    JointDefinition("Left Shoulder", (12, 11, 13), 90.0, 180.0),
    JointDefinition("Right Shoulder", (11, 12, 14), 90.0, 180.0),
    JointDefinition("Left Elbow", (11, 13, 15), 90.0, 180.0),
    JointDefinition("Right Elbow", (12, 14, 16), 90.0, 180.0),
    JointDefinition("Left Hip", (11, 23, 25), 90.0, 120.0),
    JointDefinition("Right Hip", (12, 24, 26), 90.0, 120.0),
    JointDefinition("Left Knee", (23, 25, 27), 90.0, 130.0),
    JointDefinition("Right Knee", (24, 26, 28), 90.0, 130.0),
    JointDefinition("Left Ankle", (25, 27, 31), 85.0, 95.0),
    JointDefinition("Right Ankle", (26, 28, 32), 85.0, 95.0),
    JointDefinition("Torso Alignment", (11, 23, 24), 85.0, 95.0),
)


def classify_band(
    value: float,
    target_min: float,
    target_max: float,
    margin: float,
) -> tuple[bool, bool, float, str]:
    """Classify ``value`` against an inclusive band.

    Returns ``(normal, warning, deviation, direction)``; ``deviation`` is the
    distance outside the nearest band edge (0 inside) and ``direction`` is
    ``'-'`` below the band, ``'+'`` otherwise.
    """
    normal = target_min <= value <= target_max
    warning = (not normal) and (target_min - margin) <= value <= (target_max + margin)
    if value < target_min:
        return normal, warning, target_min - value, "-"
    if value > target_max:
        return normal, warning, value - target_max, "+"
    return normal, warning, 0.0, "+"


def _resolve_plane(config: Any) -> Optional[str]:
    plane = str(config_value(config, "JOINT_ANGLE_PLANE", biomech_config.JOINT_ANGLE_PLANE)).lower()
    if plane in ("frontal", "sagittal", "transverse"):
        return plane
    return None


def compute_joint_angle(frame: LandmarkFrame, joint: JointDefinition, config: Any = None) -> Optional[JointAngle]:
    """Compute one catalog joint, or ``None`` when a source landmark is not visible."""
    threshold = float(config_value(config, "VISIBILITY_THRESHOLD", biomech_config.VISIBILITY_THRESHOLD))
    margin = float(config_value(config, "WARNING_MARGIN_DEG", biomech_config.WARNING_MARGIN_DEG))
    a_idx, vertex_idx, b_idx = joint.indices
    points = (frame[a_idx], frame[vertex_idx], frame[b_idx])
    if not all(point.is_visible(threshold) for point in points):
        return None

    angle = angle_between(points[0], points[1], points[2], plane=_resolve_plane(config))
    normal, warning, deviation, direction = classify_band(angle, joint.target_min, joint.target_max, margin)
    mean_visibility = float(np.mean([point.visibility for point in points]))
    confidence = min(mean_visibility * 100.0, 100.0)
    return JointAngle(
        name=joint.name,
        angle=angle,
        points=points,
        target_min=joint.target_min,
        target_max=joint.target_max,
        target_description=joint.target_description,
        normal=normal,
        warning=warning,
        confidence=confidence,
        deviation=deviation,
        deviation_direction=direction,
    )


def compute_joint_angles(frame: LandmarkFrame, config: Any = None) -> List[JointAngle]:
    """Compute all catalog joint angles for a frame.

    Joints with any source landmark at or below the visibility threshold are
    omitted; the remaining angles keep catalog order.
    """
    angles: List[JointAngle] = []
    for joint in JOINT_CATALOG:
        result = compute_joint_angle(frame, joint, config=config)
        if result is None:
            logger.debug("Skipping %s: landmark visibility below threshold.", joint.name)
            continue
        angles.append(result)
    return angles


def find_angle(angles: Iterable[JointAngle], name: str) -> Optional[JointAngle]:
    for angle in angles:
        if angle.name == name:
            return angle
    return None


def compute_trajectory_angles(frames: Sequence[LandmarkFrame], config: Any = None) -> pd.DataFrame:
    """Compute joint angles across frames as a long-form DataFrame.

    Columns: frame, timestamp_ms, angle_name, value_degrees, status, confidence.
    """
    rows = []
    for position, frame in enumerate(frames):
        for angle in compute_joint_angles(frame, config=config):
            rows.append(
                {
                    "frame": frame.frame_index if frame.frame_index else position,
                    "timestamp_ms": frame.timestamp,
                    "angle_name": angle.name,
                    "value_degrees": angle.angle,
                    "status": angle.status,
                    "confidence": angle.confidence,
                }
            )
    columns = ["frame", "timestamp_ms", "angle_name", "value_degrees", "status", "confidence"]
    return pd.DataFrame(rows, columns=columns)


__all__ = [
    "JointDefinition",
    "JOINT_CATALOG",
    "classify_band",
    "compute_joint_angle",
    "compute_joint_angles",
    "find_angle",
    "compute_trajectory_angles",
]
