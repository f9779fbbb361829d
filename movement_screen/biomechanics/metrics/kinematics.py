"""Motion recordings and the velocity/quality measures computed over them."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from movement_screen.biomechanics import config as biomech_config
from movement_screen.biomechanics.metrics import segments
from movement_screen.models import LandmarkFrame, ValidationError, utc_timestamp

TRACKING_QUALITY_LEVELS = ((0.9, "excellent"), (0.8, "good"), (0.7, "fair"))
LOW_CONFIDENCE_FRAME = 0.7
QUALITY_CONFIDENCE_FLOOR = 0.8

# Body landmarks reported in velocity tables.
TRACKED_JOINTS: Tuple[Tuple[str, int], ...] = (
    ("nose", 0),
    ("left_shoulder", segments.LEFT_SHOULDER),
    ("right_shoulder", segments.RIGHT_SHOULDER),
    ("left_elbow", segments.LEFT_ELBOW),
    ("right_elbow", segments.RIGHT_ELBOW),
    ("left_wrist", segments.LEFT_WRIST),
    ("right_wrist", segments.RIGHT_WRIST),
    ("left_hip", segments.LEFT_HIP),
    ("right_hip", segments.RIGHT_HIP),
    ("left_knee", segments.LEFT_KNEE),
    ("right_knee", segments.RIGHT_KNEE),
    ("left_ankle", segments.LEFT_ANKLE),
    ("right_ankle", segments.RIGHT_ANKLE),
)

VELOCITY_COLUMNS = [
    "frame",
    "timestamp_ms",
    "joint",
    "vx",
    "vy",
    "vz",
    "speed",
    "ax",
    "ay",
    "az",
    "acceleration",
    "valid",
]


@dataclass(frozen=True)
class RecordingMetadata:
    total_frames: int
    average_confidence: float
    tracking_quality: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_frames": self.total_frames,
            "average_confidence": self.average_confidence,
            "tracking_quality": self.tracking_quality,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecordingMetadata":
        return cls(
            total_frames=int(payload.get("total_frames", 0)),
            average_confidence=float(payload.get("average_confidence", 0.0)),
            tracking_quality=str(payload.get("tracking_quality", "poor")),
        )


@dataclass(frozen=True)
class MotionRecording:
    id: str
    name: str
    frames: Tuple[LandmarkFrame, ...]
    frame_rate: float
    duration: float
    test_type: str
    timestamp: str
    metadata: RecordingMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "frames": [frame.to_dict() for frame in self.frames],
            "frame_rate": self.frame_rate,
            "duration": self.duration,
            "test_type": self.test_type,
            "timestamp": self.timestamp,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MotionRecording":
        try:
            return cls(
                id=str(payload["id"]),
                name=str(payload.get("name", "")),
                frames=tuple(LandmarkFrame.from_dict(item) for item in payload.get("frames", [])),
                frame_rate=float(payload["frame_rate"]),
                duration=float(payload.get("duration", 0.0)),
                test_type=str(payload.get("test_type", "motion-capture")),
                timestamp=str(payload.get("timestamp", "")),
                metadata=RecordingMetadata.from_dict(payload.get("metadata", {})),
            )
        except KeyError as exc:
            raise ValidationError(f"Recording is missing {exc.args[0]!r}.") from exc


@dataclass(frozen=True)
class MovementDeviation:
    joint_name: str
    deviation_type: str
    severity: str
    description: str
    frame_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "joint_name": self.joint_name,
            "deviation_type": self.deviation_type,
            "severity": self.severity,
            "description": self.description,
            "frame_index": self.frame_index,
        }


@dataclass(frozen=True)
class MovementAnalysis:
    velocities: pd.DataFrame
    center_of_mass: np.ndarray
    movement_quality: float
    deviations: Tuple[MovementDeviation, ...] = field(default_factory=tuple)


def _visible_count(frame: LandmarkFrame, threshold: float) -> int:
    return sum(1 for point in frame.landmarks if point.is_visible(threshold))


def average_confidence(frames: Sequence[LandmarkFrame]) -> float:
    if not frames:
        return 0.0
    return float(np.mean([frame.confidence or 0.0 for frame in frames]))


def frame_consistency(frames: Sequence[LandmarkFrame], threshold: Optional[float] = None) -> float:
    """Fraction of consecutive frame pairs that see the same number of visible landmarks."""
    if len(frames) < 2:
        return 1.0
    limit = biomech_config.VISIBILITY_THRESHOLD if threshold is None else threshold
    counts = [_visible_count(frame, limit) for frame in frames]
    matches = sum(1 for prev, curr in zip(counts, counts[1:]) if prev == curr)
    return matches / (len(frames) - 1)


def tracking_quality(frames: Sequence[LandmarkFrame]) -> str:
    score = (average_confidence(frames) + frame_consistency(frames)) / 2.0
    for floor, label in TRACKING_QUALITY_LEVELS:
        if score >= floor:
            return label
    return "poor"


def _duration_seconds(frames: Sequence[LandmarkFrame], frame_rate: float) -> float:
    if not frames:
        return 0.0
    span = (frames[-1].timestamp - frames[0].timestamp) / 1000.0
    if span > 0:
        return span
    return len(frames) / frame_rate


def build_recording(
    frames: Sequence[LandmarkFrame],
    *,
    frame_rate: Optional[float] = None,
    test_type: str = "motion-capture",
    name: Optional[str] = None,
    recording_id: Optional[str] = None,
) -> MotionRecording:
    """Wrap captured frames into a recording with summary metadata."""
    rate = float(frame_rate or biomech_config.LANDING_THRESHOLDS.capture_fps)
    if rate <= 0:
        raise ValidationError("frame_rate must be positive.")
    frames = tuple(frames)
    today = datetime.now(timezone.utc).date().isoformat()
    return MotionRecording(
        id=recording_id or uuid.uuid4().hex,
        name=name or f"Motion_{today}",
        frames=frames,
        frame_rate=rate,
        duration=_duration_seconds(frames, rate),
        test_type=test_type,
        timestamp=utc_timestamp(),
        metadata=RecordingMetadata(
            total_frames=len(frames),
            average_confidence=round(average_confidence(frames), 4),
            tracking_quality=tracking_quality(frames),
        ),
    )


def _safe_divide(numer: np.ndarray, denom: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        out = numer / denom
    return np.where(np.isfinite(out), out, np.nan)


def compute_velocity(trajectory: Any, timestamps_s: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    """Central-difference velocity over the first axis; endpoints use one-sided differences.

    Returns ``(speed, velocity)`` with shapes ``(n, ...)`` and ``(n, ..., 3)``.
    """
    coords = np.asarray(trajectory, dtype=float)
    t = np.asarray(timestamps_s, dtype=float).reshape(-1)
    if coords.shape[0] != t.size:
        raise ValueError("trajectory and timestamps must have the same length")
    n = int(coords.shape[0])
    vel = np.full_like(coords, np.nan, dtype=float)
    if n >= 2:
        vel[0] = _safe_divide(coords[1] - coords[0], t[1] - t[0])
        vel[-1] = _safe_divide(coords[-1] - coords[-2], t[-1] - t[-2])
    if n > 2:
        denom = (t[2:] - t[:-2]).reshape((n - 2,) + (1,) * (coords.ndim - 1))
        vel[1:-1] = _safe_divide(coords[2:] - coords[:-2], denom)
    return np.linalg.norm(vel, axis=-1), vel


def _tracked_coordinates(frames: Sequence[LandmarkFrame], threshold: float) -> np.ndarray:
    indices = [index for _, index in TRACKED_JOINTS]
    stacked = np.stack([frame.to_array()[indices] for frame in frames])
    coords = stacked[:, :, :3].copy()
    coords[stacked[:, :, 3] <= threshold] = np.nan
    return coords


def joint_velocities(recording: MotionRecording, *, threshold: Optional[float] = None) -> pd.DataFrame:
    """Long-form per-joint velocity and acceleration table (units per second).

    Joints at or below the visibility threshold contribute NaN rows.
    """
    frames = recording.frames
    if len(frames) < 2:
        return pd.DataFrame(columns=VELOCITY_COLUMNS)
    limit = biomech_config.VISIBILITY_THRESHOLD if threshold is None else threshold
    coords = _tracked_coordinates(frames, limit)
    timestamps_ms = np.array([frame.timestamp for frame in frames], dtype=float)
    if not np.all(np.diff(timestamps_ms) > 0):
        timestamps_ms = np.arange(len(frames), dtype=float) * (1000.0 / recording.frame_rate)
    timestamps_s = timestamps_ms / 1000.0
    speeds, vectors = compute_velocity(coords, timestamps_s)
    accel_mag, accel = compute_velocity(vectors, timestamps_s)

    records: List[Dict[str, Any]] = []
    for j, (joint, _) in enumerate(TRACKED_JOINTS):
        for i, frame in enumerate(frames):
            vx, vy, vz = vectors[i, j, :].tolist()
            ax, ay, az = accel[i, j, :].tolist()
            speed = float(speeds[i, j])
            records.append(
                {
                    "frame": int(frame.frame_index),
                    "timestamp_ms": float(timestamps_ms[i]),
                    "joint": joint,
                    "vx": vx,
                    "vy": vy,
                    "vz": vz,
                    "speed": speed,
                    "ax": ax,
                    "ay": ay,
                    "az": az,
                    "acceleration": float(accel_mag[i, j]),
                    "valid": bool(math.isfinite(speed)),
                }
            )
    return pd.DataFrame.from_records(records, columns=VELOCITY_COLUMNS)


def get_velocity_peaks(velocities: pd.DataFrame) -> List[Tuple[str, float, int]]:
    """Return ``(joint, peak_speed, frame)`` sorted by peak speed, fastest first."""
    required = {"joint", "speed", "frame"}
    if not required.issubset(velocities.columns):
        raise ValueError(f"velocities must include columns: {sorted(required)}")
    peaks = []
    for joint, group in velocities.groupby("joint"):
        speeds = group["speed"].astype(float)
        if speeds.notna().any():
            idx = speeds.idxmax()
            peaks.append((str(joint), float(velocities.loc[idx, "speed"]), int(velocities.loc[idx, "frame"])))
    peaks.sort(key=lambda item: item[1], reverse=True)
    return peaks


def center_of_mass_trajectory(recording: MotionRecording) -> np.ndarray:
    if not recording.frames:
        return np.zeros((0, 3), dtype=float)
    return np.stack([segments.center_of_mass(frame) for frame in recording.frames])


def movement_deviations(recording: MotionRecording) -> List[MovementDeviation]:
    deviations = []
    for index, frame in enumerate(recording.frames):
        if (frame.confidence or 0.0) < LOW_CONFIDENCE_FRAME:
            deviations.append(
                MovementDeviation("Overall", "position", "moderate", "Low tracking confidence detected", index)
            )
        if any(point.visibility <= 0.0 for point in frame.landmarks):
            deviations.append(MovementDeviation("Overall", "position", "major", "Missing body landmarks", index))
    return deviations


def movement_quality(recording: MotionRecording) -> float:
    """0-100 score penalising low-confidence frames, incomplete frames and dropped frames."""
    frames = recording.frames
    if not frames:
        return 0.0
    total = len(frames)
    quality = 100.0
    low_confidence = sum(1 for frame in frames if (frame.confidence or 0.0) < QUALITY_CONFIDENCE_FLOOR)
    quality -= low_confidence / total * 30.0
    incomplete = sum(1 for frame in frames if any(point.visibility <= 0.0 for point in frame.landmarks))
    quality -= incomplete / total * 40.0
    expected = recording.duration * recording.frame_rate
    if expected > 0:
        ratio = total / expected
        if ratio < 0.9:
            quality -= (1.0 - ratio) * 20.0
    return round(max(0.0, min(100.0, quality)), 1)


def analyze_movement(recording: MotionRecording) -> MovementAnalysis:
    return MovementAnalysis(
        velocities=joint_velocities(recording),
        center_of_mass=center_of_mass_trajectory(recording),
        movement_quality=movement_quality(recording),
        deviations=tuple(movement_deviations(recording)),
    )


__all__ = [
    "TRACKED_JOINTS",
    "RecordingMetadata",
    "MotionRecording",
    "MovementDeviation",
    "MovementAnalysis",
    "average_confidence",
    "frame_consistency",
    "tracking_quality",
    "build_recording",
    "compute_velocity",
    "joint_velocities",
    "get_velocity_peaks",
    "center_of_mass_trajectory",
    "movement_deviations",
    "movement_quality",
    "analyze_movement",
]
