"""Evaluate catalog metrics for one frame of a movement test.

Each metric id maps to exactly one formula in ``METRIC_FORMULAS``. Formulas
return a value and the confidence of the landmarks/angles it was derived
from; missing inputs yield a zero-value, zero-confidence result that is still
reported.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from movement_screen.biomechanics import config as biomech_config
from movement_screen.biomechanics.config import config_value
from movement_screen.biomechanics.database.fms_tests import get_test
from movement_screen.biomechanics.geometry import (
    angle_between,
    as_vector,
    distance,
    midpoint,
    project_to_plane,
    symmetry_index,
    vector_angle,
)
from movement_screen.biomechanics.metrics import segments
from movement_screen.biomechanics.metrics.angles import compute_joint_angles
from movement_screen.models import JointAngle, LandmarkFrame, MetricDefinition, MetricResult

logger = biomech_config.BIOMECHANICS_LOGGER

HIPS = (segments.LEFT_HIP, segments.RIGHT_HIP)
SHOULDERS = (segments.LEFT_SHOULDER, segments.RIGHT_SHOULDER)
KNEES = (segments.LEFT_KNEE, segments.RIGHT_KNEE)
ANKLES = (segments.LEFT_ANKLE, segments.RIGHT_ANKLE)


@dataclass(frozen=True)
class MetricValue:
    value: float
    confidence: float


MISSING = MetricValue(0.0, 0.0)


@dataclass(frozen=True)
class MetricContext:
    frame: LandmarkFrame
    angles: Dict[str, JointAngle]
    threshold: float
    reference_frame: Optional[LandmarkFrame] = None
    scale_mm: float = 1.0

    def angle(self, name: str) -> Optional[JointAngle]:
        return self.angles.get(name)

    def points(self, *indices: int):
        return segments.visible_points(self.frame, indices, self.threshold)


MetricFormula = Callable[[MetricContext], MetricValue]
METRIC_FORMULAS: Dict[str, MetricFormula] = {}


def metric_formula(*metric_ids: str) -> Callable[[MetricFormula], MetricFormula]:
    def register(func: MetricFormula) -> MetricFormula:
        for metric_id in metric_ids:
            if metric_id in METRIC_FORMULAS:
                raise ValueError(f"Duplicate formula registered for {metric_id!r}.")
            METRIC_FORMULAS[metric_id] = func
        return func

    return register


def _from_landmarks(value: float, points: Sequence[Any]) -> MetricValue:
    return MetricValue(float(value), segments.landmark_confidence(points))


def _knee_valgus_from_angle(ctx: MetricContext, name: str) -> MetricValue:
    knee = ctx.angle(name)
    if knee is None:
        return MISSING
    return MetricValue(abs(knee.angle - 90.0), knee.confidence)


@metric_formula("knee-valgus-left")
def _knee_valgus_left(ctx: MetricContext) -> MetricValue:
    return _knee_valgus_from_angle(ctx, "Left Knee")


@metric_formula("knee-valgus-right")
def _knee_valgus_right(ctx: MetricContext) -> MetricValue:
    return _knee_valgus_from_angle(ctx, "Right Knee")


@metric_formula("knee-flexion-depth")
def _knee_flexion_depth(ctx: MetricContext) -> MetricValue:
    left, right = ctx.angle("Left Knee"), ctx.angle("Right Knee")
    if left is None or right is None:
        return MISSING
    return MetricValue(min(left.angle, right.angle), min(left.confidence, right.confidence))


@metric_formula("pelvic-rotation")
def _pelvic_rotation(ctx: MetricContext) -> MetricValue:
    # Hip line against the mediolateral axis, viewed from above.
    points = ctx.points(*HIPS)
    if points is None:
        return MISSING
    hip_line = as_vector(points[1]) - as_vector(points[0])
    return _from_landmarks(segments.tilt_from_horizontal(hip_line, "transverse"), points)


@metric_formula("front-knee-flexion")
def _front_knee_flexion(ctx: MetricContext) -> MetricValue:
    # The stepping leg is the more flexed knee.
    knees = [angle for angle in (ctx.angle("Left Knee"), ctx.angle("Right Knee")) if angle is not None]
    if not knees:
        return MISSING
    front = min(knees, key=lambda item: item.angle)
    return MetricValue(180.0 - front.angle, front.confidence)


@metric_formula("pelvic-tilt")
def _pelvic_tilt(ctx: MetricContext) -> MetricValue:
    points = ctx.points(*SHOULDERS, *HIPS)
    if points is None:
        return MISSING
    return _from_landmarks(segments.tilt_from_vertical(segments.trunk_vector(ctx.frame)), points)


@metric_formula("trail-leg-hip-flexion")
def _trail_leg_hip_flexion(ctx: MetricContext) -> MetricValue:
    # The trail leg is the more extended hip; report its departure from a straight line.
    hips = [angle for angle in (ctx.angle("Left Hip"), ctx.angle("Right Hip")) if angle is not None]
    if not hips:
        return MISSING
    trail = max(hips, key=lambda item: item.angle)
    return MetricValue(180.0 - trail.angle, trail.confidence)


@metric_formula("hip-flexion-angle")
def _hip_flexion(ctx: MetricContext) -> MetricValue:
    hips = [angle for angle in (ctx.angle("Left Hip"), ctx.angle("Right Hip")) if angle is not None]
    if not hips:
        return MISSING
    raised = min(hips, key=lambda item: item.angle)
    return MetricValue(180.0 - raised.angle, raised.confidence)


@metric_formula("pelvic-stability")
def _pelvic_stability(ctx: MetricContext) -> MetricValue:
    points = ctx.points(*HIPS)
    if points is None:
        return MISSING
    hip_line = as_vector(points[1]) - as_vector(points[0])
    return _from_landmarks(segments.tilt_from_horizontal(hip_line, "frontal"), points)


@metric_formula("trunk-stability")
def _trunk_stability(ctx: MetricContext) -> MetricValue:
    points = ctx.points(*SHOULDERS, *HIPS, *ANKLES)
    if points is None:
        return MISSING
    shoulders = midpoint(points[0], points[1])
    hips = midpoint(points[2], points[3])
    ankles = midpoint(points[4], points[5])
    angle = angle_between(shoulders, hips, ankles)
    return _from_landmarks(abs(180.0 - angle) if angle else 0.0, points)


@metric_formula("body-alignment")
def _body_alignment(ctx: MetricContext) -> MetricValue:
    points = ctx.points(*HIPS, *KNEES, *ANKLES)
    if points is None:
        return MISSING
    hips = midpoint(points[0], points[1])
    knees = midpoint(points[2], points[3])
    ankles = midpoint(points[4], points[5])
    angle = angle_between(hips, knees, ankles)
    return _from_landmarks(abs(180.0 - angle) if angle else 0.0, points)


@metric_formula("spinal-rotation")
def _spinal_rotation(ctx: MetricContext) -> MetricValue:
    # Shoulder line relative to hip line in the transverse plane.
    points = ctx.points(*SHOULDERS, *HIPS)
    if points is None:
        return MISSING
    shoulder_line = project_to_plane(as_vector(points[1]) - as_vector(points[0]), "transverse")
    hip_line = project_to_plane(as_vector(points[3]) - as_vector(points[2]), "transverse")
    return _from_landmarks(vector_angle(shoulder_line, hip_line), points)


def _shoulder_pair(ctx: MetricContext) -> Optional[tuple[JointAngle, JointAngle]]:
    left, right = ctx.angle("Left Shoulder"), ctx.angle("Right Shoulder")
    if left is None or right is None:
        return None
    return left, right


@metric_formula("shoulder-internal-rotation")
def _shoulder_internal_rotation(ctx: MetricContext) -> MetricValue:
    # Arm reaching up the back has the smaller shoulder angle.
    pair = _shoulder_pair(ctx)
    if pair is None:
        return MISSING
    lower = min(pair, key=lambda item: item.angle)
    return MetricValue(lower.angle, lower.confidence)


@metric_formula("shoulder-external-rotation")
def _shoulder_external_rotation(ctx: MetricContext) -> MetricValue:
    pair = _shoulder_pair(ctx)
    if pair is None:
        return MISSING
    upper = max(pair, key=lambda item: item.angle)
    return MetricValue(upper.angle, upper.confidence)


@metric_formula("shoulder-symmetry")
def _shoulder_symmetry(ctx: MetricContext) -> MetricValue:
    pair = _shoulder_pair(ctx)
    if pair is None:
        return MISSING
    left, right = pair
    return MetricValue(abs(left.angle - right.angle), min(left.confidence, right.confidence))


def _leg_points(ctx: MetricContext, side: str):
    ids = segments.SIDES[side]
    return ctx.points(ids["hip"], ids["knee"], ids["ankle"])


@metric_formula("knee-valgus-3d-left")
def _knee_valgus_3d_left(ctx: MetricContext) -> MetricValue:
    points = _leg_points(ctx, "left")
    if points is None:
        return MISSING
    return _from_landmarks(segments.knee_valgus(ctx.frame, "left"), points)


@metric_formula("knee-valgus-3d-right")
def _knee_valgus_3d_right(ctx: MetricContext) -> MetricValue:
    points = _leg_points(ctx, "right")
    if points is None:
        return MISSING
    return _from_landmarks(segments.knee_valgus(ctx.frame, "right"), points)


@metric_formula("trunk-lean-sagittal")
def _trunk_lean_sagittal(ctx: MetricContext) -> MetricValue:
    points = ctx.points(*SHOULDERS, *HIPS)
    if points is None:
        return MISSING
    sagittal, _frontal = segments.trunk_lean(ctx.frame)
    return _from_landmarks(sagittal, points)


@metric_formula("trunk-lean-frontal")
def _trunk_lean_frontal(ctx: MetricContext) -> MetricValue:
    points = ctx.points(*SHOULDERS, *HIPS)
    if points is None:
        return MISSING
    _sagittal, frontal = segments.trunk_lean(ctx.frame)
    return _from_landmarks(frontal, points)


@metric_formula("bilateral-symmetry")
def _bilateral_symmetry(ctx: MetricContext) -> MetricValue:
    left = _leg_points(ctx, "left")
    right = _leg_points(ctx, "right")
    if left is None or right is None:
        return MISSING
    left_angle = angle_between(*left, plane="frontal")
    right_angle = angle_between(*right, plane="frontal")
    return _from_landmarks(symmetry_index(left_angle, right_angle), [*left, *right])


@metric_formula("landing-stability")
def _landing_stability(ctx: MetricContext) -> MetricValue:
    if ctx.reference_frame is None:
        return MISSING
    points = ctx.points(*HIPS)
    reference = segments.visible_points(ctx.reference_frame, HIPS, ctx.threshold)
    if points is None or reference is None:
        return MISSING
    displacement = distance(
        segments.center_of_mass(ctx.frame),
        segments.center_of_mass(ctx.reference_frame),
    )
    return _from_landmarks(displacement * ctx.scale_mm, [*points, *reference])


@metric_formula("arm-position-compliance")
def _arm_position(ctx: MetricContext) -> MetricValue:
    values = []
    used = []
    for side in ("left", "right"):
        ids = segments.SIDES[side]
        points = ctx.points(*SHOULDERS, *HIPS, ids["elbow"])
        if points is None:
            continue
        values.append(segments.shoulder_abduction(ctx.frame, side))
        used.extend(points)
    if not values:
        return MISSING
    return _from_landmarks(float(np.mean(values)), used)


def evaluate_against_definition(definition: MetricDefinition, actual: float) -> tuple[bool, bool, float, str]:
    """Apply pass/warning rules for ``definition`` with inclusive bounds.

    Returns ``(passed, warning, deviation, direction)``.
    """
    tolerance = definition.validation.tolerance
    if definition.target_exact is not None:
        offset = actual - definition.target_exact
        direction = "+" if offset > 0 else "-"
        if abs(offset) <= tolerance:
            return True, False, 0.0, "+"
        return False, abs(offset) <= 2 * tolerance, abs(offset) - tolerance, direction

    low, high = definition.target_min, definition.target_max
    if low is not None and actual < low:
        deviation = low - actual
        return False, deviation <= tolerance, deviation, "-"
    if high is not None and actual > high:
        deviation = actual - high
        return False, deviation <= tolerance, deviation, "+"
    return True, False, 0.0, "+"


def evaluate_metric(
    definition: MetricDefinition,
    context: MetricContext,
    timestamp: float,
) -> MetricResult:
    formula = METRIC_FORMULAS.get(definition.id)
    if formula is None:
        logger.warning("No formula registered for metric %s; reporting zero confidence.", definition.id)
        measured = MISSING
    else:
        measured = formula(context)
    if measured.confidence == 0.0:
        logger.debug("Metric %s has insufficient landmark data.", definition.id)
    passed, warning, deviation, direction = evaluate_against_definition(definition, measured.value)
    return MetricResult(
        metric_id=definition.id,
        name=definition.name,
        target_description=definition.target_description,
        actual_value=round(measured.value, 1),
        unit=definition.unit,
        passed=passed,
        warning=warning,
        is_critical=definition.is_critical,
        category=definition.category,
        deviation=round(deviation, 1),
        deviation_direction=direction,
        confidence=round(measured.confidence, 1),
        timestamp=timestamp,
    )


def evaluate_test(
    test_id: str,
    frame: LandmarkFrame,
    angles: Optional[Sequence[JointAngle]] = None,
    *,
    reference_frame: Optional[LandmarkFrame] = None,
    timestamp: Optional[float] = None,
    config: Any = None,
) -> List[MetricResult]:
    """Evaluate every metric of ``test_id`` against one frame, in catalog order.

    ``angles`` are computed from ``frame`` when not supplied. ``reference_frame``
    (e.g. the first frame of a trial) enables displacement metrics.
    """
    test = get_test(test_id)
    if angles is None:
        angles = compute_joint_angles(frame, config=config)
    context = MetricContext(
        frame=frame,
        angles={angle.name: angle for angle in angles},
        threshold=float(config_value(config, "VISIBILITY_THRESHOLD", biomech_config.VISIBILITY_THRESHOLD)),
        reference_frame=reference_frame,
        scale_mm=float(config_value(config, "COORDINATE_SCALE_MM", biomech_config.COORDINATE_SCALE_MM)),
    )
    stamp = frame.timestamp if timestamp is None else timestamp
    return [evaluate_metric(definition, context, stamp) for definition in test.metrics]


def validate_clinical_standards(
    test_id: str,
    results: Sequence[MetricResult],
    *,
    min_confidence: Optional[float] = None,
) -> bool:
    """True when every result is confident enough and within its metric tolerance."""
    test = get_test(test_id)
    required = biomech_config.CLINICAL_MIN_CONFIDENCE if min_confidence is None else min_confidence
    definitions = {definition.id: definition for definition in test.metrics}
    for result in results:
        definition = definitions.get(result.metric_id)
        if definition is None:
            return False
        if result.confidence < required:
            return False
        if result.deviation > definition.validation.tolerance:
            return False
    return True


__all__ = [
    "METRIC_FORMULAS",
    "MetricContext",
    "MetricValue",
    "metric_formula",
    "evaluate_against_definition",
    "evaluate_metric",
    "evaluate_test",
    "validate_clinical_standards",
]
