from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

BODY_LANDMARK_COUNT = 33
HAND_LANDMARK_COUNT = 21
MIN_SCORE = 0
MAX_SCORE = 3
METRIC_CATEGORIES = ("angle", "distance", "symmetry", "alignment", "stability")

__all__ = [
    "BODY_LANDMARK_COUNT",
    "HAND_LANDMARK_COUNT",
    "METRIC_CATEGORIES",
    "ValidationError",
    "coerce_number",
    "validate_score",
    "utc_timestamp",
    "Landmark",
    "HandLandmarks",
    "FaceLandmarks",
    "LandmarkFrame",
    "JointAngle",
    "ValidationCriteria",
    "MetricDefinition",
    "MovementTest",
    "MetricResult",
    "AuditEntry",
    "AssessmentScore",
    "PerformanceMetrics",
    "frames_from_payload",
]


class ValidationError(ValueError):
    """Raised when user-supplied data cannot be normalised safely."""


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def coerce_number(
    value: Any,
    *,
    field: str,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    """
    Convert user input to a finite float and validate optional bounds.

    Raises `ValidationError` for malformed, non-finite or out-of-range values.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric; received {value!r}.")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be numeric; received {value!r}.") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a finite number; received {value!r}.")
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}; received {number}.")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be <= {maximum}; received {number}.")
    return number


def validate_score(value: Any, *, field: str = "score") -> int:
    """Return ``value`` as an FMS score in 0..3 or raise `ValidationError`."""
    number = coerce_number(value, field=field, minimum=MIN_SCORE, maximum=MAX_SCORE)
    if not float(number).is_integer():
        raise ValidationError(f"{field} must be a whole number between 0 and 3; received {value!r}.")
    return int(number)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class Landmark:
    x: float
    y: float
    z: float = 0.0
    visibility: float = 1.0

    def is_visible(self, threshold: float) -> bool:
        return self.visibility > threshold

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z, "visibility": self.visibility}

    @classmethod
    def from_dict(cls, payload: Any) -> "Landmark":
        """Accept ``{"x", "y", "z", "visibility"}`` mappings or ``[x, y, z?, visibility?]`` lists."""
        if isinstance(payload, Landmark):
            return payload
        if isinstance(payload, Mapping):
            if "x" not in payload or "y" not in payload:
                raise ValidationError(f"Landmark requires x and y; received {dict(payload)!r}.")
            return cls(
                x=coerce_number(payload["x"], field="landmark.x"),
                y=coerce_number(payload["y"], field="landmark.y"),
                z=coerce_number(payload.get("z", 0.0), field="landmark.z"),
                visibility=coerce_number(payload.get("visibility", 1.0), field="landmark.visibility"),
            )
        if isinstance(payload, (list, tuple)) or isinstance(payload, np.ndarray):
            values = [coerce_number(item, field="landmark") for item in payload]
            if len(values) < 2 or len(values) > 4:
                raise ValidationError(f"Landmark lists need 2-4 values; received {len(values)}.")
            x, y = values[0], values[1]
            z = values[2] if len(values) > 2 else 0.0
            visibility = values[3] if len(values) > 3 else 1.0
            return cls(x=x, y=y, z=z, visibility=visibility)
        raise ValidationError(f"Unsupported landmark payload: {payload!r}.")


MISSING_LANDMARK = Landmark(0.0, 0.0, 0.0, 0.0)


@dataclass(frozen=True)
class HandLandmarks:
    landmarks: Tuple[Landmark, ...]
    handedness: str = "Unknown"
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "landmarks": [point.to_dict() for point in self.landmarks],
            "handedness": self.handedness,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "HandLandmarks":
        return cls(
            landmarks=tuple(Landmark.from_dict(item) for item in payload.get("landmarks", [])),
            handedness=str(payload.get("handedness", "Unknown")),
            confidence=float(payload.get("confidence", 0.0)),
        )


@dataclass(frozen=True)
class FaceLandmarks:
    landmarks: Tuple[Landmark, ...]
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"landmarks": [point.to_dict() for point in self.landmarks], "confidence": self.confidence}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FaceLandmarks":
        return cls(
            landmarks=tuple(Landmark.from_dict(item) for item in payload.get("landmarks", [])),
            confidence=float(payload.get("confidence", 0.0)),
        )


@dataclass(frozen=True)
class LandmarkFrame:
    """One detector observation: 33 body landmarks plus optional hands and face.

    Frames shorter than 33 points are padded with zero-visibility landmarks so
    index meaning is preserved. ``confidence`` defaults to the mean body
    visibility when not supplied.
    """

    landmarks: Tuple[Landmark, ...]
    timestamp: float = 0.0
    frame_index: int = 0
    confidence: Optional[float] = None
    left_hand: Optional[HandLandmarks] = None
    right_hand: Optional[HandLandmarks] = None
    face: Optional[FaceLandmarks] = None

    def __post_init__(self) -> None:
        points = tuple(self.landmarks)
        if len(points) > BODY_LANDMARK_COUNT:
            raise ValidationError(
                f"A frame holds at most {BODY_LANDMARK_COUNT} body landmarks; received {len(points)}."
            )
        if len(points) < BODY_LANDMARK_COUNT:
            points = points + (MISSING_LANDMARK,) * (BODY_LANDMARK_COUNT - len(points))
        object.__setattr__(self, "landmarks", points)
        if self.confidence is None:
            mean_visibility = float(np.mean([point.visibility for point in points]))
            object.__setattr__(self, "confidence", mean_visibility)

    def __getitem__(self, index: int) -> Landmark:
        return self.landmarks[index]

    def to_array(self) -> np.ndarray:
        """Return a ``(33, 4)`` array of x, y, z, visibility."""
        return np.array([[p.x, p.y, p.z, p.visibility] for p in self.landmarks], dtype=float)

    @classmethod
    def from_array(
        cls,
        array: Any,
        *,
        timestamp: float = 0.0,
        frame_index: int = 0,
        confidence: Optional[float] = None,
    ) -> "LandmarkFrame":
        """Build a frame from a ``(n, 3)`` or ``(n, 4)`` array; missing visibility defaults to 1."""
        arr = np.asarray(array, dtype=float)
        if arr.ndim != 2 or arr.shape[1] not in (3, 4):
            raise ValidationError(f"Landmark arrays must be shaped (n, 3) or (n, 4); received {arr.shape}.")
        points = []
        for row in arr:
            visibility = float(row[3]) if arr.shape[1] == 4 else 1.0
            points.append(Landmark(float(row[0]), float(row[1]), float(row[2]), visibility))
        return cls(tuple(points), timestamp=timestamp, frame_index=frame_index, confidence=confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "landmarks": [point.to_dict() for point in self.landmarks],
            "timestamp": self.timestamp,
            "frame_index": self.frame_index,
            "confidence": self.confidence,
            "left_hand": self.left_hand.to_dict() if self.left_hand else None,
            "right_hand": self.right_hand.to_dict() if self.right_hand else None,
            "face": self.face.to_dict() if self.face else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LandmarkFrame":
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Frame payload must be an object; received {type(payload).__name__}.")
        raw_points = payload.get("landmarks")
        if not isinstance(raw_points, (list, tuple)):
            raise ValidationError("Frame payload requires a 'landmarks' list.")
        left = payload.get("left_hand")
        right = payload.get("right_hand")
        face = payload.get("face")
        confidence = payload.get("confidence")
        return cls(
            landmarks=tuple(Landmark.from_dict(item) for item in raw_points),
            timestamp=coerce_number(payload.get("timestamp", 0.0), field="timestamp"),
            frame_index=int(payload.get("frame_index", 0)),
            confidence=None if confidence is None else float(confidence),
            left_hand=HandLandmarks.from_dict(left) if left else None,
            right_hand=HandLandmarks.from_dict(right) if right else None,
            face=FaceLandmarks.from_dict(face) if face else None,
        )


@dataclass(frozen=True)
class JointAngle:
    name: str
    angle: float
    points: Tuple[Landmark, Landmark, Landmark]
    target_min: float
    target_max: float
    target_description: str
    normal: bool
    warning: bool
    confidence: float
    deviation: float = 0.0
    deviation_direction: str = "+"

    @property
    def status(self) -> str:
        if self.normal:
            return "normal"
        return "warning" if self.warning else "fail"

    @property
    def signed_deviation(self) -> float:
        return -self.deviation if self.deviation_direction == "-" else self.deviation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "angle": self.angle,
            "points": [point.to_dict() for point in self.points],
            "target_min": self.target_min,
            "target_max": self.target_max,
            "target_description": self.target_description,
            "normal": self.normal,
            "warning": self.warning,
            "confidence": self.confidence,
            "deviation": self.deviation,
            "deviation_direction": self.deviation_direction,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "JointAngle":
        points = tuple(Landmark.from_dict(item) for item in payload["points"])
        if len(points) != 3:
            raise ValidationError("JointAngle requires exactly three source landmarks.")
        return cls(
            name=str(payload["name"]),
            angle=float(payload["angle"]),
            points=points,  # type: ignore[arg-type]
            target_min=float(payload["target_min"]),
            target_max=float(payload["target_max"]),
            target_description=str(payload.get("target_description", "")),
            normal=bool(payload["normal"]),
            warning=bool(payload["warning"]),
            confidence=float(payload["confidence"]),
            deviation=float(payload.get("deviation", 0.0)),
            deviation_direction=str(payload.get("deviation_direction", "+")),
        )


@dataclass(frozen=True)
class ValidationCriteria:
    pass_threshold: float
    tolerance: float = 0.0
    warning_threshold: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass_threshold": self.pass_threshold,
            "warning_threshold": self.warning_threshold,
            "tolerance": self.tolerance,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ValidationCriteria":
        return cls(
            pass_threshold=float(payload.get("pass_threshold", 0.0)),
            tolerance=float(payload.get("tolerance", 0.0)),
            warning_threshold=_optional_float(payload.get("warning_threshold")),
        )


@dataclass(frozen=True)
class MetricDefinition:
    id: str
    name: str
    description: str
    target_description: str
    unit: str
    is_critical: bool
    category: str
    validation: ValidationCriteria
    target_min: Optional[float] = None
    target_max: Optional[float] = None
    target_exact: Optional[float] = None

    def __post_init__(self) -> None:
        if self.category not in METRIC_CATEGORIES:
            raise ValidationError(f"Unknown metric category {self.category!r} for {self.id}.")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "target_description": self.target_description,
            "target_min": self.target_min,
            "target_max": self.target_max,
            "target_exact": self.target_exact,
            "unit": self.unit,
            "is_critical": self.is_critical,
            "category": self.category,
            "validation": self.validation.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MetricDefinition":
        try:
            return cls(
                id=str(payload["id"]),
                name=str(payload["name"]),
                description=str(payload.get("description", "")),
                target_description=str(payload.get("target_description", "")),
                unit=str(payload.get("unit", "")),
                is_critical=bool(payload.get("is_critical", False)),
                category=str(payload.get("category", "angle")),
                validation=ValidationCriteria.from_dict(payload.get("validation", {})),
                target_min=_optional_float(payload.get("target_min")),
                target_max=_optional_float(payload.get("target_max")),
                target_exact=_optional_float(payload.get("target_exact")),
            )
        except KeyError as exc:
            raise ValidationError(f"Metric definition is missing {exc.args[0]!r}.") from exc


@dataclass(frozen=True)
class MovementTest:
    id: str
    name: str
    description: str
    metrics: Tuple[MetricDefinition, ...]
    scoring_criteria: Mapping[int, str] = field(default_factory=dict)
    instructions: Tuple[str, ...] = ()

    def metric(self, metric_id: str) -> MetricDefinition:
        for definition in self.metrics:
            if definition.id == metric_id:
                return definition
        raise KeyError(metric_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "metrics": [definition.to_dict() for definition in self.metrics],
            "scoring_criteria": {str(score): text for score, text in self.scoring_criteria.items()},
            "instructions": list(self.instructions),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MovementTest":
        try:
            criteria = payload.get("scoring_criteria", {}) or {}
            return cls(
                id=str(payload["id"]),
                name=str(payload["name"]),
                description=str(payload.get("description", "")),
                metrics=tuple(MetricDefinition.from_dict(item) for item in payload.get("metrics", [])),
                scoring_criteria={int(score): str(text) for score, text in criteria.items()},
                instructions=tuple(str(item) for item in payload.get("instructions", [])),
            )
        except KeyError as exc:
            raise ValidationError(f"Movement test is missing {exc.args[0]!r}.") from exc


@dataclass(frozen=True)
class MetricResult:
    metric_id: str
    name: str
    target_description: str
    actual_value: float
    unit: str
    passed: bool
    warning: bool
    is_critical: bool
    category: str
    deviation: float
    deviation_direction: str
    confidence: float
    timestamp: float = 0.0

    @property
    def status(self) -> str:
        if self.passed:
            return "pass"
        return "warning" if self.warning else "fail"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_id": self.metric_id,
            "name": self.name,
            "target_description": self.target_description,
            "actual_value": self.actual_value,
            "unit": self.unit,
            "passed": self.passed,
            "warning": self.warning,
            "is_critical": self.is_critical,
            "category": self.category,
            "deviation": self.deviation,
            "deviation_direction": self.deviation_direction,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MetricResult":
        return cls(
            metric_id=str(payload["metric_id"]),
            name=str(payload["name"]),
            target_description=str(payload.get("target_description", "")),
            actual_value=float(payload["actual_value"]),
            unit=str(payload.get("unit", "")),
            passed=bool(payload["passed"]),
            warning=bool(payload["warning"]),
            is_critical=bool(payload.get("is_critical", False)),
            category=str(payload.get("category", "angle")),
            deviation=float(payload.get("deviation", 0.0)),
            deviation_direction=str(payload.get("deviation_direction", "+")),
            confidence=float(payload.get("confidence", 0.0)),
            timestamp=float(payload.get("timestamp", 0.0)),
        )


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    from_score: int
    to_score: int
    reason: str
    clinician_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "from_score": self.from_score,
            "to_score": self.to_score,
            "reason": self.reason,
            "clinician_id": self.clinician_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AuditEntry":
        return cls(
            timestamp=str(payload["timestamp"]),
            from_score=int(payload["from_score"]),
            to_score=int(payload["to_score"]),
            reason=str(payload.get("reason", "")),
            clinician_id=payload.get("clinician_id"),
        )


@dataclass(frozen=True)
class AssessmentScore:
    """Clinical score for one test within one session.

    ``automatic_score`` is what the scoring rule produced and is never
    discarded; ``score`` is the effective value after pain and manual overrides.
    """

    session_id: str
    test_id: str
    score: int
    automatic_score: int
    manual_override: bool = False
    override_reason: Optional[str] = None
    pain_reported: bool = False
    notes: str = ""
    clinician_id: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)
    metric_results: Tuple[MetricResult, ...] = ()
    audit_trail: Tuple[AuditEntry, ...] = ()

    @property
    def original_score(self) -> int:
        return self.automatic_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "test_id": self.test_id,
            "score": self.score,
            "automatic_score": self.automatic_score,
            "manual_override": self.manual_override,
            "override_reason": self.override_reason,
            "pain_reported": self.pain_reported,
            "notes": self.notes,
            "clinician_id": self.clinician_id,
            "timestamp": self.timestamp,
            "metric_results": [result.to_dict() for result in self.metric_results],
            "audit_trail": {
                "original_score": self.automatic_score,
                "changes": [entry.to_dict() for entry in self.audit_trail],
            },
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AssessmentScore":
        audit = payload.get("audit_trail") or {}
        changes: Sequence[Any] = audit.get("changes", []) if isinstance(audit, Mapping) else audit
        return cls(
            session_id=str(payload["session_id"]),
            test_id=str(payload["test_id"]),
            score=validate_score(payload["score"]),
            automatic_score=validate_score(payload["automatic_score"], field="automatic_score"),
            manual_override=bool(payload.get("manual_override", False)),
            override_reason=payload.get("override_reason"),
            pain_reported=bool(payload.get("pain_reported", False)),
            notes=str(payload.get("notes", "")),
            clinician_id=payload.get("clinician_id"),
            timestamp=str(payload.get("timestamp") or utc_timestamp()),
            metric_results=tuple(MetricResult.from_dict(item) for item in payload.get("metric_results", [])),
            audit_trail=tuple(AuditEntry.from_dict(item) for item in changes),
        )


@dataclass(frozen=True)
class PerformanceMetrics:
    fps: float
    latency_ms: float
    processing_time_ms: float
    pose_detection_accuracy: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "fps": self.fps,
            "latency_ms": self.latency_ms,
            "processing_time_ms": self.processing_time_ms,
            "pose_detection_accuracy": self.pose_detection_accuracy,
        }


def frames_from_payload(payload: Any) -> List[LandmarkFrame]:
    """Parse a JSON payload (list of frames or ``{"frames": [...]}``) into frames."""
    if isinstance(payload, Mapping):
        payload = payload.get("frames", [])
    if not isinstance(payload, list):
        raise ValidationError("Expected a list of frames or an object with a 'frames' list.")
    frames: List[LandmarkFrame] = []
    for index, item in enumerate(payload):
        frame = LandmarkFrame.from_dict(item)
        if "frame_index" not in item:
            frame = replace(frame, frame_index=index)
        frames.append(frame)
    return frames
