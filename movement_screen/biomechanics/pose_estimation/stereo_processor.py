"""Triangulate synchronized 2D landmark frames from two cameras into 3D.

Input frames carry normalized image coordinates (0-1); they are scaled to
pixels using the calibration image size before triangulation.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional

import numpy as np

from movement_screen.biomechanics import config as biomech_config
from movement_screen.biomechanics.config import StereoSettings, config_value
from movement_screen.biomechanics.geometry import DegenerateGeometryError, distance, triangulate_point
from movement_screen.biomechanics.pose_estimation.calibration import CalibrationError, StereoCalibration
from movement_screen.models import Landmark, LandmarkFrame, MISSING_LANDMARK

logger = biomech_config.BIOMECHANICS_LOGGER

# (hip, knee, ankle) per leg.
LEG_CHAINS = ((23, 25, 27), (24, 26, 28))


@dataclass(frozen=True)
class ProcessingStats:
    last_ms: float
    average_ms: float
    max_ms: float
    samples: int

    @property
    def fps(self) -> float:
        return 1000.0 / self.average_ms if self.average_ms > 0 else 0.0


@dataclass(frozen=True)
class Pose3DResult:
    frame: LandmarkFrame
    confidence: float
    timestamp: float
    processing_time_ms: float
    stats: ProcessingStats
    corrected_knees: tuple[int, ...] = ()
    degenerate_points: tuple[int, ...] = ()


def triangulation_angle(x1: float, x2: float, calibration: StereoCalibration, settings: StereoSettings) -> float:
    """Approximate triangulation angle (degrees) from horizontal disparity of normalized x."""
    disparity = abs(x1 - x2) * calibration.image_size[0]
    if disparity < settings.min_disparity_px:
        return 0.0
    depth = calibration.baseline_mm * calibration.camera1.focal_length_px / disparity
    return math.degrees(math.atan(calibration.baseline_mm / depth))


def apply_knee_constraint(points: List[Landmark], settings: StereoSettings) -> List[int]:
    """Reposition knees whose thigh:shank ratio is implausible. Returns corrected knee indices."""
    corrected = []
    for hip_idx, knee_idx, ankle_idx in LEG_CHAINS:
        hip, knee, ankle = points[hip_idx], points[knee_idx], points[ankle_idx]
        if min(hip.visibility, knee.visibility, ankle.visibility) <= 0.0:
            continue
        thigh = distance(hip, knee)
        shank = distance(knee, ankle)
        if shank == 0.0:
            continue
        ratio = thigh / shank
        expected = settings.expected_thigh_shank_ratio
        if abs(ratio - expected) <= settings.ratio_tolerance:
            continue
        hip_vec = hip.as_array()
        leg = ankle.as_array() - hip_vec
        total = float(np.linalg.norm(leg))
        if total == 0.0:
            continue
        thigh_length = total * expected / (1.0 + expected)
        new_knee = hip_vec + leg / total * thigh_length
        points[knee_idx] = Landmark(float(new_knee[0]), float(new_knee[1]), float(new_knee[2]), knee.visibility)
        corrected.append(knee_idx)
        logger.debug(
            "Knee %d repositioned: thigh/shank ratio %.2f outside %.2f±%.2f",
            knee_idx,
            ratio,
            expected,
            settings.ratio_tolerance,
        )
    return corrected


class Pose3DProcessor:
    """Stateful wrapper holding one calibration and a rolling processing-time window."""

    def __init__(self, calibration: Optional[StereoCalibration], config: Any = None) -> None:
        self.calibration = calibration
        self.settings: StereoSettings = config_value(config, "STEREO_SETTINGS", biomech_config.STEREO_SETTINGS)
        self._timings: Deque[float] = deque(maxlen=max(1, int(self.settings.timing_window)))

    def _require_calibration(self) -> StereoCalibration:
        if self.calibration is None or not self.calibration.is_calibrated:
            raise CalibrationError("Stereo cameras are not calibrated; calibrate before 3D processing.")
        return self.calibration

    def stats(self) -> ProcessingStats:
        if not self._timings:
            return ProcessingStats(0.0, 0.0, 0.0, 0)
        values = list(self._timings)
        return ProcessingStats(values[-1], float(np.mean(values)), max(values), len(values))

    def reset_stats(self) -> None:
        self._timings.clear()

    def process_3d_pose(self, frame1: LandmarkFrame, frame2: LandmarkFrame, timestamp: float) -> Pose3DResult:
        """Triangulate every landmark present in both frames into a 3D frame."""
        calibration = self._require_calibration()
        started = time.perf_counter()
        settings = self.settings
        width, height = calibration.image_size
        projection1 = calibration.camera1.projection_array()
        projection2 = calibration.camera2.projection_array()

        threshold = settings.visibility_threshold
        points: List[Landmark] = []
        degenerate: List[int] = []
        weighted: List[float] = []
        for index, (p1, p2) in enumerate(zip(frame1.landmarks, frame2.landmarks)):
            if p1.visibility < threshold or p2.visibility < threshold:
                points.append(MISSING_LANDMARK)
                continue
            try:
                xyz = triangulate_point(
                    (p1.x * width, p1.y * height),
                    (p2.x * width, p2.y * height),
                    projection1,
                    projection2,
                )
            except DegenerateGeometryError:
                logger.debug("Degenerate triangulation for landmark %d; using placeholder.", index)
                points.append(MISSING_LANDMARK)
                degenerate.append(index)
                continue
            visibility = (p1.visibility + p2.visibility) / 2.0
            points.append(Landmark(float(xyz[0]), float(xyz[1]), float(xyz[2]), visibility))
            if p1.visibility > threshold and p2.visibility > threshold:
                angle = triangulation_angle(p1.x, p2.x, calibration, settings)
                geometric = min(angle / settings.optimal_triangulation_deg, 1.0)
                weighted.append(visibility * geometric)

        corrected = apply_knee_constraint(points, settings)
        decimals = settings.coordinate_decimals
        smoothed = tuple(
            Landmark(round(p.x, decimals), round(p.y, decimals), round(p.z, decimals), p.visibility) for p in points
        )
        confidence = float(np.mean(weighted)) if weighted else 0.0

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._timings.append(elapsed_ms)
        frame = LandmarkFrame(
            smoothed,
            timestamp=timestamp,
            frame_index=frame1.frame_index,
            confidence=confidence,
        )
        return Pose3DResult(
            frame=frame,
            confidence=confidence,
            timestamp=timestamp,
            processing_time_ms=elapsed_ms,
            stats=self.stats(),
            corrected_knees=tuple(corrected),
            degenerate_points=tuple(degenerate),
        )


__all__ = [
    "ProcessingStats",
    "Pose3DResult",
    "Pose3DProcessor",
    "apply_knee_constraint",
    "triangulation_angle",
]
