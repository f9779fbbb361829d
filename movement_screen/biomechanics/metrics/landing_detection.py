"""Detect drop-jump landing phases and score each landing for injury risk.

A landing is tracked from the vertical velocity of the hip-midpoint center of
mass:
- Idle -> InLanding when velocity drops below ``entry_velocity``.
- InLanding -> Idle when velocity rises above ``exit_velocity``. If at least
  ``min_frames`` have elapsed since the start, a `LandingPhase` is emitted;
  otherwise the dip is treated as noise and dropped.
A phase becomes a trial when its duration and peak velocity are plausible.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from movement_screen.biomechanics import config as biomech_config
from movement_screen.biomechanics.config import LandingThresholds, RiskThresholds, config_value
from movement_screen.biomechanics.geometry import distance
from movement_screen.biomechanics.metrics import segments
from movement_screen.models import LandmarkFrame, utc_timestamp

logger = biomech_config.BIOMECHANICS_LOGGER

RISK_LEVELS = ("low", "moderate", "high")

HIP_INDICES = (segments.LEFT_HIP, segments.RIGHT_HIP)
LEG_INDICES = (
    segments.LEFT_HIP,
    segments.LEFT_KNEE,
    segments.LEFT_ANKLE,
    segments.RIGHT_HIP,
    segments.RIGHT_KNEE,
    segments.RIGHT_ANKLE,
)
UPPER_BODY_INDICES = (
    segments.LEFT_SHOULDER,
    segments.RIGHT_SHOULDER,
    segments.LEFT_ELBOW,
    segments.RIGHT_ELBOW,
    segments.LEFT_WRIST,
    segments.RIGHT_WRIST,
    segments.LEFT_HIP,
    segments.RIGHT_HIP,
)
ANKLE_INDICES = (segments.LEFT_ANKLE, segments.RIGHT_ANKLE)


@dataclass(frozen=True)
class LandingPhase:
    start_frame: int
    end_frame: int
    impact_frame: int
    duration_ms: float
    max_velocity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
            "impact_frame": self.impact_frame,
            "duration_ms": self.duration_ms,
            "max_velocity": self.max_velocity,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "LandingPhase":
        return cls(
            start_frame=int(payload["start_frame"]),
            end_frame=int(payload["end_frame"]),
            impact_frame=int(payload["impact_frame"]),
            duration_ms=float(payload["duration_ms"]),
            max_velocity=float(payload["max_velocity"]),
        )


@dataclass(frozen=True)
class DropJumpMetrics:
    knee_valgus_left: float
    knee_valgus_right: float
    valgus_asymmetry: float
    trunk_lean_sagittal: float
    trunk_lean_frontal: float
    force_distribution: float
    time_to_stabilization_ms: float
    shoulder_abduction: float
    elbow_flexion: float
    arm_position_valid: bool
    instability_index: float
    risk_score: int
    overall_risk: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "knee_valgus_left": self.knee_valgus_left,
            "knee_valgus_right": self.knee_valgus_right,
            "valgus_asymmetry": self.valgus_asymmetry,
            "trunk_lean_sagittal": self.trunk_lean_sagittal,
            "trunk_lean_frontal": self.trunk_lean_frontal,
            "force_distribution": self.force_distribution,
            "time_to_stabilization_ms": self.time_to_stabilization_ms,
            "shoulder_abduction": self.shoulder_abduction,
            "elbow_flexion": self.elbow_flexion,
            "arm_position_valid": self.arm_position_valid,
            "instability_index": self.instability_index,
            "risk_score": self.risk_score,
            "overall_risk": self.overall_risk,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DropJumpMetrics":
        return cls(
            knee_valgus_left=float(payload["knee_valgus_left"]),
            knee_valgus_right=float(payload["knee_valgus_right"]),
            valgus_asymmetry=float(payload["valgus_asymmetry"]),
            trunk_lean_sagittal=float(payload["trunk_lean_sagittal"]),
            trunk_lean_frontal=float(payload["trunk_lean_frontal"]),
            force_distribution=float(payload["force_distribution"]),
            time_to_stabilization_ms=float(payload["time_to_stabilization_ms"]),
            shoulder_abduction=float(payload["shoulder_abduction"]),
            elbow_flexion=float(payload["elbow_flexion"]),
            arm_position_valid=bool(payload["arm_position_valid"]),
            instability_index=float(payload["instability_index"]),
            risk_score=int(payload["risk_score"]),
            overall_risk=str(payload["overall_risk"]),
        )


@dataclass(frozen=True)
class DropJumpTrial:
    trial_id: int
    landing_phase: LandingPhase
    metrics: DropJumpMetrics
    confidence: float
    timestamp: float
    recorded_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trial_id": self.trial_id,
            "landing_phase": self.landing_phase.to_dict(),
            "metrics": self.metrics.to_dict(),
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DropJumpTrial":
        return cls(
            trial_id=int(payload["trial_id"]),
            landing_phase=LandingPhase.from_dict(payload["landing_phase"]),
            metrics=DropJumpMetrics.from_dict(payload["metrics"]),
            confidence=float(payload["confidence"]),
            timestamp=float(payload["timestamp"]),
            recorded_at=str(payload.get("recorded_at", "")),
        )


@dataclass(frozen=True)
class DropJumpAssessment:
    trials: Tuple[DropJumpTrial, ...]
    overall_risk: str
    risk_distribution: Dict[str, int]
    average_metrics: Dict[str, float]
    recommendations: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trials": [trial.to_dict() for trial in self.trials],
            "overall_risk": self.overall_risk,
            "risk_distribution": dict(self.risk_distribution),
            "average_metrics": dict(self.average_metrics),
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DropJumpAssessment":
        return cls(
            trials=tuple(DropJumpTrial.from_dict(item) for item in payload.get("trials", [])),
            overall_risk=str(payload["overall_risk"]),
            risk_distribution={str(k): int(v) for k, v in payload.get("risk_distribution", {}).items()},
            average_metrics={str(k): float(v) for k, v in payload.get("average_metrics", {}).items()},
            recommendations=tuple(str(item) for item in payload.get("recommendations", [])),
        )


def _landing_thresholds(config: Any) -> LandingThresholds:
    return config_value(config, "LANDING_THRESHOLDS", biomech_config.LANDING_THRESHOLDS)


def _risk_thresholds(config: Any) -> RiskThresholds:
    return config_value(config, "RISK_THRESHOLDS", biomech_config.RISK_THRESHOLDS)


def _visibility_threshold(config: Any) -> float:
    return float(config_value(config, "VISIBILITY_THRESHOLD", biomech_config.VISIBILITY_THRESHOLD))


def _hips_visible(frame: LandmarkFrame, threshold: float) -> bool:
    return segments.visible_points(frame, HIP_INDICES, threshold) is not None


class LandingDetector:
    """Incremental Idle/InLanding state machine over (frame index, velocity) samples."""

    def __init__(self, thresholds: Optional[LandingThresholds] = None, fps: Optional[float] = None) -> None:
        self.thresholds = thresholds or biomech_config.LANDING_THRESHOLDS
        self.fps = float(fps or self.thresholds.capture_fps)
        self.reset()

    def reset(self) -> None:
        self._start: Optional[int] = None
        self._impact: Optional[int] = None
        self._peak = 0.0

    @property
    def in_landing(self) -> bool:
        return self._start is not None

    def update(self, index: int, velocity: float) -> Optional[LandingPhase]:
        thresholds = self.thresholds
        if self._start is None:
            if velocity < thresholds.entry_velocity:
                self._start = index
                self._impact = index
                self._peak = velocity
            return None

        if velocity < self._peak:
            self._peak = velocity
            self._impact = index
        if velocity <= thresholds.exit_velocity:
            return None

        start = self._start
        impact = self._impact if self._impact is not None else start
        peak = self._peak
        self.reset()
        if index - start < thresholds.min_frames:
            logger.debug("Discarding %d-frame velocity dip starting at frame %d.", index - start, start)
            return None
        return LandingPhase(
            start_frame=start,
            end_frame=index,
            impact_frame=impact,
            duration_ms=(index - start) / self.fps * 1000.0,
            max_velocity=peak,
        )


def identify_landing_phases(
    velocities: Iterable[float],
    fps: Optional[float] = None,
    thresholds: Optional[LandingThresholds] = None,
) -> List[LandingPhase]:
    """Run the landing state machine over a full velocity sequence."""
    detector = LandingDetector(thresholds, fps)
    phases = []
    for index, velocity in enumerate(velocities):
        phase = detector.update(index, float(velocity))
        if phase is not None:
            phases.append(phase)
    return phases


def is_valid_landing(phase: LandingPhase, thresholds: Optional[LandingThresholds] = None) -> bool:
    thresholds = thresholds or biomech_config.LANDING_THRESHOLDS
    return (
        thresholds.min_duration_ms <= phase.duration_ms <= thresholds.max_duration_ms
        and abs(phase.max_velocity) > thresholds.min_peak_velocity
    )


def _vertical_velocity(
    previous: LandmarkFrame,
    current: LandmarkFrame,
    fps: float,
    frames_elapsed: int = 1,
) -> float:
    dt = (current.timestamp - previous.timestamp) / 1000.0
    if dt <= 0:
        dt = frames_elapsed / fps
    dy = float(segments.center_of_mass(current)[1] - segments.center_of_mass(previous)[1])
    return dy / dt


def vertical_velocities(
    frames: Sequence[LandmarkFrame],
    fps: Optional[float] = None,
    visibility_threshold: Optional[float] = None,
) -> np.ndarray:
    """Center-of-mass vertical velocity per frame (units/s); the first frame is 0.

    A frame whose hips are not visible repeats the previous velocity, and the
    next visible frame is differenced against the last visible one.
    """
    rate = float(fps or biomech_config.LANDING_THRESHOLDS.capture_fps)
    threshold = biomech_config.VISIBILITY_THRESHOLD if visibility_threshold is None else visibility_threshold
    velocities = np.zeros(len(frames), dtype=float)
    anchor: Optional[int] = None
    for index, frame in enumerate(frames):
        if not _hips_visible(frame, threshold):
            if index:
                velocities[index] = velocities[index - 1]
            continue
        if anchor is not None:
            velocities[index] = _vertical_velocity(frames[anchor], frame, rate, index - anchor)
        anchor = index
    return velocities


def classify_risk(
    knee_valgus_left: float,
    knee_valgus_right: float,
    trunk_lean_sagittal: float,
    trunk_lean_frontal: float,
    arm_position_valid: bool,
    instability_index: float,
    thresholds: Optional[RiskThresholds] = None,
) -> Tuple[int, str]:
    """Return ``(risk_score, level)`` where level is low/moderate/high."""
    thresholds = thresholds or biomech_config.RISK_THRESHOLDS
    score = 0
    if max(knee_valgus_left, knee_valgus_right) > thresholds.knee_valgus_deg:
        score += 2
    if abs(knee_valgus_left - knee_valgus_right) > thresholds.asymmetry_deg:
        score += 1
    if (
        trunk_lean_sagittal > thresholds.trunk_lean_sagittal_deg
        or trunk_lean_frontal > thresholds.trunk_lean_frontal_deg
    ):
        score += 1
    if not arm_position_valid:
        score += 1
    if instability_index > thresholds.instability_index:
        score += 1
    if score >= 3:
        return score, "high"
    if score >= 1:
        return score, "moderate"
    return score, "low"


def _force_distribution(frames: Sequence[LandmarkFrame], threshold: float) -> float:
    ankles = [
        (frame[segments.LEFT_ANKLE].y, frame[segments.RIGHT_ANKLE].y)
        for frame in frames
        if segments.visible_points(frame, ANKLE_INDICES, threshold) is not None
    ]
    if not ankles:
        return 0.0
    left, right = np.mean(ankles, axis=0)
    return float(abs(left - right) * 100.0)


def _instability_index(frames: Sequence[LandmarkFrame], threshold: float) -> float:
    centers = [segments.center_of_mass(frame) for frame in frames if _hips_visible(frame, threshold)]
    if len(centers) < 2:
        return 0.0
    steps = [distance(a, b) for a, b in zip(centers, centers[1:])]
    return float(np.mean(steps))


def _nearest_visible(
    frames: Sequence[LandmarkFrame],
    index: int,
    indices: Sequence[int],
    threshold: float,
) -> LandmarkFrame:
    """Frame closest to ``index`` with every landmark in ``indices`` visible; ``frames[index]`` if none."""
    for position in sorted(range(len(frames)), key=lambda item: (abs(item - index), item)):
        if segments.visible_points(frames[position], indices, threshold) is not None:
            return frames[position]
    return frames[index]


def compute_trial_metrics(
    frames: Sequence[LandmarkFrame],
    impact_index: int,
    fps: float,
    thresholds: Optional[RiskThresholds] = None,
    *,
    coordinate_scale: float = 1.0,
    visibility_threshold: Optional[float] = None,
) -> DropJumpMetrics:
    """Landing metrics at the impact frame plus whole-phase symmetry and stability.

    When the impact frame is missing the legs or upper body, the nearest frame
    in the phase where they are visible is measured instead.
    """
    if not frames:
        raise ValueError("compute_trial_metrics requires at least one frame.")
    thresholds = thresholds or biomech_config.RISK_THRESHOLDS
    threshold = biomech_config.VISIBILITY_THRESHOLD if visibility_threshold is None else visibility_threshold
    impact_index = max(0, min(impact_index, len(frames) - 1))
    legs = _nearest_visible(frames, impact_index, LEG_INDICES, threshold)
    upper = _nearest_visible(frames, impact_index, UPPER_BODY_INDICES, threshold)

    left = segments.knee_valgus(legs, "left")
    right = segments.knee_valgus(legs, "right")
    sagittal, frontal = segments.trunk_lean(upper)
    abduction = {side: segments.shoulder_abduction(upper, side) for side in ("left", "right")}
    low, high = thresholds.arm_abduction_range
    arm_valid = all(low <= value <= high for value in abduction.values())
    elbow = float(np.mean([segments.elbow_flexion(upper, side) for side in ("left", "right")]))
    instability = _instability_index(frames, threshold) * coordinate_scale
    risk_score, risk = classify_risk(left, right, sagittal, frontal, arm_valid, instability, thresholds)

    return DropJumpMetrics(
        knee_valgus_left=round(left, 1),
        knee_valgus_right=round(right, 1),
        valgus_asymmetry=round(abs(left - right), 1),
        trunk_lean_sagittal=round(sagittal, 1),
        trunk_lean_frontal=round(frontal, 1),
        force_distribution=round(_force_distribution(frames, threshold), 1),
        time_to_stabilization_ms=round(len(frames) / fps * 1000.0, 1),
        shoulder_abduction=round(float(np.mean(list(abduction.values()))), 1),
        elbow_flexion=round(elbow, 1),
        arm_position_valid=arm_valid,
        instability_index=round(instability, 3),
        risk_score=risk_score,
        overall_risk=risk,
    )


def trial_confidence(frames: Sequence[LandmarkFrame]) -> float:
    if not frames:
        return 0.0
    return round(float(np.mean([frame.confidence or 0.0 for frame in frames])) * 100.0, 1)


def overall_assessment(trials: Sequence[DropJumpTrial]) -> str:
    """Session risk: high if >=50% high-risk trials; moderate if >=30% high or >=50% moderate."""
    if not trials:
        return "low"
    distribution = risk_distribution(trials)
    total = len(trials)
    high = distribution["high"] / total
    moderate = distribution["moderate"] / total
    if high >= 0.5:
        return "high"
    if high >= 0.3 or moderate >= 0.5:
        return "moderate"
    return "low"


def risk_distribution(trials: Sequence[DropJumpTrial]) -> Dict[str, int]:
    counts = {level: 0 for level in RISK_LEVELS}
    for trial in trials:
        counts[trial.metrics.overall_risk] += 1
    return counts


def average_metrics(trials: Sequence[DropJumpTrial]) -> Dict[str, float]:
    if not trials:
        return {}
    fields = (
        "knee_valgus_left",
        "knee_valgus_right",
        "valgus_asymmetry",
        "trunk_lean_sagittal",
        "trunk_lean_frontal",
        "instability_index",
    )
    averages = {name: float(np.mean([getattr(trial.metrics, name) for trial in trials])) for name in fields}
    averages["confidence"] = float(np.mean([trial.confidence for trial in trials]))
    return {name: round(value, 2) for name, value in averages.items()}


def clinical_recommendations(
    overall_risk: str,
    averages: Dict[str, float],
    thresholds: Optional[RiskThresholds] = None,
) -> List[str]:
    thresholds = thresholds or biomech_config.RISK_THRESHOLDS
    recommendations = []
    if overall_risk == "high":
        recommendations.append("High ACL injury risk detected - comprehensive intervention program recommended")
        recommendations.append("Focus on neuromuscular training and landing mechanics")
    mean_valgus = (averages.get("knee_valgus_left", 0.0) + averages.get("knee_valgus_right", 0.0)) / 2.0
    if mean_valgus > thresholds.knee_valgus_deg:
        recommendations.append("Knee valgus control exercises recommended")
    if averages.get("valgus_asymmetry", 0.0) > thresholds.asymmetry_deg:
        recommendations.append("Bilateral symmetry training needed")
    return recommendations


def summarize_trials(
    trials: Sequence[DropJumpTrial],
    thresholds: Optional[RiskThresholds] = None,
) -> DropJumpAssessment:
    """Session-level assessment for already-recorded trials."""
    averages = average_metrics(trials)
    overall = overall_assessment(trials)
    return DropJumpAssessment(
        trials=tuple(trials),
        overall_risk=overall,
        risk_distribution=risk_distribution(trials),
        average_metrics=averages,
        recommendations=tuple(clinical_recommendations(overall, averages, thresholds)),
    )


class DropJumpAnalyzer:
    """Streaming drop-jump analysis over a rolling frame buffer.

    Frames are fed one at a time with `process_frame`; a `DropJumpTrial` is
    returned on the frame that closes a valid landing. Phase indices are
    stream positions since `start_analysis`.
    ``velocity_scale`` converts coordinate units to the units the landing
    thresholds are expressed in (e.g. 0.001 for millimetre frames).
    """

    def __init__(self, fps: Optional[float] = None, config: Any = None, *, velocity_scale: float = 1.0) -> None:
        self.landing_thresholds = _landing_thresholds(config)
        self.risk_thresholds = _risk_thresholds(config)
        self.fps = float(fps or self.landing_thresholds.capture_fps)
        self.velocity_scale = float(velocity_scale)
        self.visibility_threshold = _visibility_threshold(config)
        capacity = max(1, int(round(self.landing_thresholds.buffer_seconds * self.fps)))
        self._buffer: Deque[Tuple[int, LandmarkFrame]] = deque(maxlen=capacity)
        self._detector = LandingDetector(self.landing_thresholds, self.fps)
        self._trials: List[DropJumpTrial] = []
        self._anchor: Optional[Tuple[int, LandmarkFrame]] = None
        self._last_velocity = 0.0
        self._frame_count = 0
        self._analyzing = False

    @property
    def buffer_capacity(self) -> int:
        return self._buffer.maxlen or 0

    @property
    def is_analyzing(self) -> bool:
        return self._analyzing

    @property
    def trials(self) -> Tuple[DropJumpTrial, ...]:
        return tuple(self._trials)

    def start_analysis(self) -> None:
        self._buffer.clear()
        self._detector.reset()
        self._trials = []
        self._anchor = None
        self._last_velocity = 0.0
        self._frame_count = 0
        self._analyzing = True

    def stop_analysis(self) -> List[DropJumpTrial]:
        self._analyzing = False
        return list(self._trials)

    def process_frame(self, frame: LandmarkFrame) -> Optional[DropJumpTrial]:
        if not self._analyzing:
            return None
        index = self._frame_count
        velocity = self._frame_velocity(index, frame)
        self._buffer.append((index, frame))
        self._frame_count += 1

        phase = self._detector.update(index, velocity)
        if phase is None:
            return None
        if not is_valid_landing(phase, self.landing_thresholds):
            logger.debug(
                "Landing candidate %d-%d rejected (%.0f ms, peak %.2f).",
                phase.start_frame,
                phase.end_frame,
                phase.duration_ms,
                phase.max_velocity,
            )
            return None
        return self._record_trial(phase)

    def _frame_velocity(self, index: int, frame: LandmarkFrame) -> float:
        if not _hips_visible(frame, self.visibility_threshold):
            logger.debug("Hips not visible at frame %d; carrying velocity %.2f.", index, self._last_velocity)
            return self._last_velocity
        velocity = 0.0
        if self._anchor is not None:
            anchor_index, anchor_frame = self._anchor
            velocity = _vertical_velocity(anchor_frame, frame, self.fps, index - anchor_index) * self.velocity_scale
        self._anchor = (index, frame)
        self._last_velocity = velocity
        return velocity

    def _record_trial(self, phase: LandingPhase) -> Optional[DropJumpTrial]:
        oldest = self._buffer[0][0]
        if phase.start_frame < oldest:
            logger.warning(
                "Landing starting at frame %d is older than the buffer (oldest %d); trial dropped.",
                phase.start_frame,
                oldest,
            )
            return None
        frames = [frame for idx, frame in self._buffer if phase.start_frame <= idx < phase.end_frame]
        metrics = compute_trial_metrics(
            frames,
            phase.impact_frame - phase.start_frame,
            self.fps,
            self.risk_thresholds,
            coordinate_scale=self.velocity_scale,
            visibility_threshold=self.visibility_threshold,
        )
        trial = DropJumpTrial(
            trial_id=len(self._trials) + 1,
            landing_phase=phase,
            metrics=metrics,
            confidence=trial_confidence(frames),
            timestamp=frames[0].timestamp,
            recorded_at=utc_timestamp(),
        )
        self._trials.append(trial)
        logger.info(
            "Drop-jump trial %d validated: %.0f ms landing, risk %s.",
            trial.trial_id,
            phase.duration_ms,
            metrics.overall_risk,
        )
        return trial

    def analyze_sequence(self, frames: Iterable[LandmarkFrame]) -> List[DropJumpTrial]:
        """Convenience: restart, feed every frame, and return the trials found."""
        self.start_analysis()
        for frame in frames:
            self.process_frame(frame)
        return self.stop_analysis()

    def risk_distribution(self) -> Dict[str, int]:
        return risk_distribution(self._trials)

    def overall_assessment(self) -> str:
        return overall_assessment(self._trials)

    def summarize(self) -> DropJumpAssessment:
        return summarize_trials(self._trials, self.risk_thresholds)


__all__ = [
    "LandingPhase",
    "DropJumpMetrics",
    "DropJumpTrial",
    "DropJumpAssessment",
    "LandingDetector",
    "DropJumpAnalyzer",
    "identify_landing_phases",
    "is_valid_landing",
    "vertical_velocities",
    "classify_risk",
    "compute_trial_metrics",
    "trial_confidence",
    "overall_assessment",
    "risk_distribution",
    "average_metrics",
    "clinical_recommendations",
    "summarize_trials",
]
