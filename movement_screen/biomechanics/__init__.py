"""Clinical movement analysis: angles, FMS metrics, scoring, stereo 3D and landings.

Submodules are imported lazily so config and the catalog can be used without
pulling in pandas/scipy.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AssessmentPipeline",
    "DropJumpSession",
    "DropJumpAnalyzer",
    "Pose3DProcessor",
    "compute_joint_angles",
    "evaluate_test",
    "generate_automatic_score",
    "create_assessment_score",
    "apply_manual_override",
    "get_test",
    "list_tests",
    "smooth_frames",
    "BIOMECHANICS_LOGGER",
    "VISIBILITY_THRESHOLD",
    "WARNING_MARGIN_DEG",
    "JOINT_ANGLE_PLANE",
    "LANDING_THRESHOLDS",
    "RISK_THRESHOLDS",
    "STEREO_SETTINGS",
    "load_config_from_file",
    "validate_config_values",
    "print_config",
]

_CONFIG_EXPORTS = {
    "BIOMECHANICS_LOGGER",
    "VISIBILITY_THRESHOLD",
    "WARNING_MARGIN_DEG",
    "JOINT_ANGLE_PLANE",
    "LANDING_THRESHOLDS",
    "RISK_THRESHOLDS",
    "STEREO_SETTINGS",
    "load_config_from_file",
    "validate_config_values",
    "print_config",
}

_METRICS_EXPORTS = {"compute_joint_angles", "evaluate_test", "DropJumpAnalyzer"}
_SCORING_EXPORTS = {"generate_automatic_score", "create_assessment_score", "apply_manual_override"}
_CATALOG_EXPORTS = {"get_test", "list_tests"}
_POSE_EXPORTS = {"AssessmentPipeline", "DropJumpSession", "Pose3DProcessor"}


def __getattr__(name: str) -> Any:  # pragma: no cover - exercised indirectly
    if name in _CONFIG_EXPORTS:
        from . import config as _config

        return getattr(_config, name)
    if name in _METRICS_EXPORTS:
        from . import metrics as _metrics

        return getattr(_metrics, name)
    if name in _SCORING_EXPORTS:
        from .comparison import scoring as _scoring

        return getattr(_scoring, name)
    if name in _CATALOG_EXPORTS:
        from .database import fms_tests as _fms_tests

        return getattr(_fms_tests, name)
    if name in _POSE_EXPORTS:
        from . import pose_estimation as _pose_estimation

        return getattr(_pose_estimation, name)
    if name == "smooth_frames":
        from .utils.filtering import smooth_frames

        return smooth_frames
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:  # pragma: no cover - trivial
    return sorted(set(list(globals()) + __all__))
