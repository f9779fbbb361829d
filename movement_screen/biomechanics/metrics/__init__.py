"""Per-frame and per-sequence metrics for movement assessment.

Lazy-imported: the angle engine and evaluator only need numpy, while the
trajectory tables pull in pandas.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "JOINT_CATALOG",
    "compute_joint_angle",
    "compute_joint_angles",
    "compute_trajectory_angles",
    "find_angle",
    "METRIC_FORMULAS",
    "evaluate_test",
    "evaluate_against_definition",
    "validate_clinical_standards",
    "LandingPhase",
    "LandingDetector",
    "DropJumpAnalyzer",
    "identify_landing_phases",
    "is_valid_landing",
    "MotionRecording",
    "build_recording",
    "joint_velocities",
    "analyze_movement",
]

_ANGLE_EXPORTS = {
    "JOINT_CATALOG",
    "compute_joint_angle",
    "compute_joint_angles",
    "compute_trajectory_angles",
    "find_angle",
}
_EVALUATOR_EXPORTS = {
    "METRIC_FORMULAS",
    "evaluate_test",
    "evaluate_against_definition",
    "validate_clinical_standards",
}
_LANDING_EXPORTS = {
    "LandingPhase",
    "LandingDetector",
    "DropJumpAnalyzer",
    "identify_landing_phases",
    "is_valid_landing",
}
_KINEMATICS_EXPORTS = {"MotionRecording", "build_recording", "joint_velocities", "analyze_movement"}


def __getattr__(name: str) -> Any:  # pragma: no cover - exercised indirectly
    if name in _ANGLE_EXPORTS:
        from . import angles as _angles

        return getattr(_angles, name)
    if name in _EVALUATOR_EXPORTS:
        from . import evaluator as _evaluator

        return getattr(_evaluator, name)
    if name in _LANDING_EXPORTS:
        from . import landing_detection as _landing_detection

        return getattr(_landing_detection, name)
    if name in _KINEMATICS_EXPORTS:
        from . import kinematics as _kinematics

        return getattr(_kinematics, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:  # pragma: no cover - trivial
    return sorted(set(list(globals()) + __all__))
