"""Configuration for clinical movement-screen analysis.

Settings include:
- VISIBILITY_THRESHOLD: Minimum landmark visibility (0-1) to accept a point.
- WARNING_MARGIN_DEG: Width of the warning band around joint target ranges.
- JOINT_ANGLE_PLANE: Plane used by the joint angle engine ("frontal" = image
  plane, "sagittal", "transverse" or "3d").
- CLINICAL_MIN_CONFIDENCE: Confidence (0-100) required by the clinical
  standards check.
- COORDINATE_SCALE_MM: Frame units to millimetres for displacement metrics.
- SMOOTHING_WINDOW / SMOOTHING_POLYORDER: Savitzky-Golay settings for
  recorded landmark sequences.
- LANDING_THRESHOLDS: Velocity/duration gates for drop-jump landing detection.
- RISK_THRESHOLDS: Cutoffs feeding the drop-jump risk score.
- STEREO_SETTINGS: Triangulation, anatomical constraint and timing settings.

All values can be overridden via environment variables to ease calibration
in new clinics.
"""

from __future__ import annotations

import json
import logging
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

from movement_screen.env import get_env

try:  # Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - fallback when tomllib missing
    try:
        import tomli as tomllib  # type: ignore
    except ModuleNotFoundError:
        tomllib = None  # type: ignore[assignment]


def _configure_logger() -> logging.Logger:
    logger = logging.getLogger("movement_screen.biomechanics")
    level_name = get_env("LOG_LEVEL") or os.getenv("LOG_LEVEL")
    if level_name:
        level = getattr(logging, level_name.upper(), logging.INFO)
        logger.setLevel(level)
    return logger


BIOMECHANICS_LOGGER = _configure_logger()
logger = BIOMECHANICS_LOGGER

SUPPORTED_PLANES = ("frontal", "sagittal", "transverse", "3d")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_env_str(key: str, default: str) -> str:
    raw = os.getenv(key)
    return raw.strip().lower() if raw else default


def _get_env_range(key: str, default: Tuple[float, float]) -> Tuple[float, float]:
    raw = os.getenv(key)
    if not raw:
        return default
    return _coerce_range_tuple(raw, default)


def _coerce_range_tuple(value: Any, default: Tuple[float, float]) -> Tuple[float, float]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            return float(value[0]), float(value[1])
        except (TypeError, ValueError):
            return default
    if isinstance(value, str):
        for sep in (",", ":"):
            if sep in value:
                try:
                    start_str, end_str = value.split(sep)
                    return float(start_str), float(end_str)
                except ValueError:
                    continue
    return default


def _load_toml_file(path: Path) -> Dict[str, Any]:
    if tomllib is None:
        raise ImportError("tomllib is unavailable; install the 'tomli' package to load TOML configs.")
    with path.open("rb") as handle:
        return tomllib.load(handle)


def config_value(config: Any, name: str, default: Any) -> Any:
    """Read ``name`` from an override object or mapping, falling back to ``default``."""
    if config is None:
        return default
    if isinstance(config, Mapping):
        if name in config:
            return config[name]
        lowered = name.lower()
        if lowered in config:
            return config[lowered]
        return default
    return getattr(config, name, default)


@dataclass(frozen=True)
class LandingThresholds:
    """Gates for the drop-jump landing state machine and landing validity."""

    entry_velocity: float
    exit_velocity: float
    min_frames: int
    min_duration_ms: float
    max_duration_ms: float
    min_peak_velocity: float
    capture_fps: float
    buffer_seconds: float


@dataclass(frozen=True)
class RiskThresholds:
    """Cutoffs that contribute points to the drop-jump risk score."""

    knee_valgus_deg: float
    asymmetry_deg: float
    trunk_lean_sagittal_deg: float
    trunk_lean_frontal_deg: float
    arm_abduction_range: Tuple[float, float]
    instability_index: float


@dataclass(frozen=True)
class StereoSettings:
    """Triangulation and anatomical-constraint settings for the stereo processor."""

    visibility_threshold: float
    expected_thigh_shank_ratio: float
    ratio_tolerance: float
    optimal_triangulation_deg: float
    min_disparity_px: float
    timing_window: int
    coordinate_decimals: int


# Landmark acceptance and angle classification.
VISIBILITY_THRESHOLD: float = _get_env_float("MOVEMENT_SCREEN_VISIBILITY_THRESHOLD", 0.5)
WARNING_MARGIN_DEG: float = _get_env_float("MOVEMENT_SCREEN_WARNING_MARGIN_DEG", 5.0)
JOINT_ANGLE_PLANE: str = _get_env_str("MOVEMENT_SCREEN_JOINT_ANGLE_PLANE", "frontal")
CLINICAL_MIN_CONFIDENCE: float = _get_env_float("MOVEMENT_SCREEN_CLINICAL_MIN_CONFIDENCE", 70.0)
# Multiplier from frame coordinate units to millimetres (1.0 for calibrated mm space).
COORDINATE_SCALE_MM: float = _get_env_float("MOVEMENT_SCREEN_COORDINATE_SCALE_MM", 1.0)

# Trajectory smoothing for recorded sequences.
SMOOTHING_WINDOW: int = _get_env_int("MOVEMENT_SCREEN_SMOOTHING_WINDOW", 5)
SMOOTHING_POLYORDER: int = _get_env_int("MOVEMENT_SCREEN_SMOOTHING_POLYORDER", 2)

LANDING_THRESHOLDS = LandingThresholds(
    entry_velocity=_get_env_float("MOVEMENT_SCREEN_LANDING_ENTRY_VELOCITY", -0.8),
    exit_velocity=_get_env_float("MOVEMENT_SCREEN_LANDING_EXIT_VELOCITY", -0.2),
    min_frames=_get_env_int("MOVEMENT_SCREEN_LANDING_MIN_FRAMES", 15),
    min_duration_ms=_get_env_float("MOVEMENT_SCREEN_LANDING_MIN_DURATION_MS", 100.0),
    max_duration_ms=_get_env_float("MOVEMENT_SCREEN_LANDING_MAX_DURATION_MS", 500.0),
    min_peak_velocity=_get_env_float("MOVEMENT_SCREEN_LANDING_MIN_PEAK_VELOCITY", 0.5),
    capture_fps=_get_env_float("MOVEMENT_SCREEN_CAPTURE_FPS", 90.0),
    buffer_seconds=_get_env_float("MOVEMENT_SCREEN_LANDING_BUFFER_SECONDS", 5.0),
)

RISK_THRESHOLDS = RiskThresholds(
    knee_valgus_deg=_get_env_float("MOVEMENT_SCREEN_RISK_KNEE_VALGUS_DEG", 15.0),
    asymmetry_deg=_get_env_float("MOVEMENT_SCREEN_RISK_ASYMMETRY_DEG", 10.0),
    trunk_lean_sagittal_deg=_get_env_float("MOVEMENT_SCREEN_RISK_TRUNK_SAGITTAL_DEG", 15.0),
    trunk_lean_frontal_deg=_get_env_float("MOVEMENT_SCREEN_RISK_TRUNK_FRONTAL_DEG", 10.0),
    arm_abduction_range=_get_env_range("MOVEMENT_SCREEN_RISK_ARM_ABDUCTION", (35.0, 55.0)),
    instability_index=_get_env_float("MOVEMENT_SCREEN_RISK_INSTABILITY", 0.5),
)

STEREO_SETTINGS = StereoSettings(
    visibility_threshold=_get_env_float("MOVEMENT_SCREEN_STEREO_VISIBILITY_THRESHOLD", 0.5),
    expected_thigh_shank_ratio=_get_env_float("MOVEMENT_SCREEN_THIGH_SHANK_RATIO", 1.1),
    ratio_tolerance=_get_env_float("MOVEMENT_SCREEN_THIGH_SHANK_TOLERANCE", 0.3),
    optimal_triangulation_deg=_get_env_float("MOVEMENT_SCREEN_OPTIMAL_TRIANGULATION_DEG", 30.0),
    min_disparity_px=_get_env_float("MOVEMENT_SCREEN_MIN_DISPARITY_PX", 1.0),
    timing_window=_get_env_int("MOVEMENT_SCREEN_TIMING_WINDOW", 30),
    coordinate_decimals=_get_env_int("MOVEMENT_SCREEN_COORDINATE_DECIMALS", 3),
)

__all__ = [
    "BIOMECHANICS_LOGGER",
    "VISIBILITY_THRESHOLD",
    "WARNING_MARGIN_DEG",
    "JOINT_ANGLE_PLANE",
    "CLINICAL_MIN_CONFIDENCE",
    "COORDINATE_SCALE_MM",
    "SMOOTHING_WINDOW",
    "SMOOTHING_POLYORDER",
    "LANDING_THRESHOLDS",
    "RISK_THRESHOLDS",
    "STEREO_SETTINGS",
    "LandingThresholds",
    "RiskThresholds",
    "StereoSettings",
    "config_value",
    "load_config_from_file",
    "validate_config_values",
    "print_config",
]


def _section(body: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = body.get(name, {})
    return value if isinstance(value, Mapping) else {}


def load_config_from_file(config_path: Path) -> Dict[str, Any]:
    """Load analysis config from TOML or JSON and apply env var overrides.

    Env vars take precedence over file values. Supports either a root-level
    mapping or a [biomechanics] table/object in the config file. The returned
    mapping can be passed as ``config=`` to the analysis functions.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    if not path.is_file():
        raise ValueError(f"Expected a config file, but got a directory: {path}")

    suffix = path.suffix.lower()
    if suffix == ".toml":
        raw_config = _load_toml_file(path)
    elif suffix == ".json":
        with path.open("r", encoding="utf-8") as handle:
            raw_config = json.load(handle)
    else:
        raise ValueError(f"Unsupported config format for {path}; expected .toml or .json.")

    config_body = raw_config.get("biomechanics", raw_config) if isinstance(raw_config, dict) else raw_config
    if not isinstance(config_body, dict):
        raise ValueError("Invalid config structure; expected a dict or a [biomechanics] section.")

    landing_cfg = _section(config_body, "landing_thresholds")
    risk_cfg = _section(config_body, "risk_thresholds")
    stereo_cfg = _section(config_body, "stereo")
    base_landing = LANDING_THRESHOLDS
    base_risk = RISK_THRESHOLDS
    base_stereo = STEREO_SETTINGS

    return {
        "VISIBILITY_THRESHOLD": _get_env_float(
            "MOVEMENT_SCREEN_VISIBILITY_THRESHOLD", float(config_body.get("visibility_threshold", 0.5))
        ),
        "WARNING_MARGIN_DEG": _get_env_float(
            "MOVEMENT_SCREEN_WARNING_MARGIN_DEG", float(config_body.get("warning_margin_deg", 5.0))
        ),
        "JOINT_ANGLE_PLANE": _get_env_str(
            "MOVEMENT_SCREEN_JOINT_ANGLE_PLANE", str(config_body.get("joint_angle_plane", "frontal")).lower()
        ),
        "CLINICAL_MIN_CONFIDENCE": _get_env_float(
            "MOVEMENT_SCREEN_CLINICAL_MIN_CONFIDENCE", float(config_body.get("clinical_min_confidence", 70.0))
        ),
        "COORDINATE_SCALE_MM": _get_env_float(
            "MOVEMENT_SCREEN_COORDINATE_SCALE_MM", float(config_body.get("coordinate_scale_mm", 1.0))
        ),
        "SMOOTHING_WINDOW": _get_env_int(
            "MOVEMENT_SCREEN_SMOOTHING_WINDOW", int(config_body.get("smoothing_window", 5))
        ),
        "SMOOTHING_POLYORDER": _get_env_int(
            "MOVEMENT_SCREEN_SMOOTHING_POLYORDER", int(config_body.get("smoothing_polyorder", 2))
        ),
        "LANDING_THRESHOLDS": LandingThresholds(
            entry_velocity=_get_env_float(
                "MOVEMENT_SCREEN_LANDING_ENTRY_VELOCITY",
                float(landing_cfg.get("entry_velocity", base_landing.entry_velocity)),
            ),
            exit_velocity=_get_env_float(
                "MOVEMENT_SCREEN_LANDING_EXIT_VELOCITY",
                float(landing_cfg.get("exit_velocity", base_landing.exit_velocity)),
            ),
            min_frames=_get_env_int(
                "MOVEMENT_SCREEN_LANDING_MIN_FRAMES", int(landing_cfg.get("min_frames", base_landing.min_frames))
            ),
            min_duration_ms=_get_env_float(
                "MOVEMENT_SCREEN_LANDING_MIN_DURATION_MS",
                float(landing_cfg.get("min_duration_ms", base_landing.min_duration_ms)),
            ),
            max_duration_ms=_get_env_float(
                "MOVEMENT_SCREEN_LANDING_MAX_DURATION_MS",
                float(landing_cfg.get("max_duration_ms", base_landing.max_duration_ms)),
            ),
            min_peak_velocity=_get_env_float(
                "MOVEMENT_SCREEN_LANDING_MIN_PEAK_VELOCITY",
                float(landing_cfg.get("min_peak_velocity", base_landing.min_peak_velocity)),
            ),
            capture_fps=_get_env_float(
                "MOVEMENT_SCREEN_CAPTURE_FPS", float(landing_cfg.get("capture_fps", base_landing.capture_fps))
            ),
            buffer_seconds=_get_env_float(
                "MOVEMENT_SCREEN_LANDING_BUFFER_SECONDS",
                float(landing_cfg.get("buffer_seconds", base_landing.buffer_seconds)),
            ),
        ),
        "RISK_THRESHOLDS": RiskThresholds(
            knee_valgus_deg=_get_env_float(
                "MOVEMENT_SCREEN_RISK_KNEE_VALGUS_DEG",
                float(risk_cfg.get("knee_valgus_deg", base_risk.knee_valgus_deg)),
            ),
            asymmetry_deg=_get_env_float(
                "MOVEMENT_SCREEN_RISK_ASYMMETRY_DEG", float(risk_cfg.get("asymmetry_deg", base_risk.asymmetry_deg))
            ),
            trunk_lean_sagittal_deg=_get_env_float(
                "MOVEMENT_SCREEN_RISK_TRUNK_SAGITTAL_DEG",
                float(risk_cfg.get("trunk_lean_sagittal_deg", base_risk.trunk_lean_sagittal_deg)),
            ),
            trunk_lean_frontal_deg=_get_env_float(
                "MOVEMENT_SCREEN_RISK_TRUNK_FRONTAL_DEG",
                float(risk_cfg.get("trunk_lean_frontal_deg", base_risk.trunk_lean_frontal_deg)),
            ),
            arm_abduction_range=_get_env_range(
                "MOVEMENT_SCREEN_RISK_ARM_ABDUCTION",
                _coerce_range_tuple(risk_cfg.get("arm_abduction_range"), base_risk.arm_abduction_range),
            ),
            instability_index=_get_env_float(
                "MOVEMENT_SCREEN_RISK_INSTABILITY",
                float(risk_cfg.get("instability_index", base_risk.instability_index)),
            ),
        ),
        "STEREO_SETTINGS": StereoSettings(
            visibility_threshold=_get_env_float(
                "MOVEMENT_SCREEN_STEREO_VISIBILITY_THRESHOLD",
                float(stereo_cfg.get("visibility_threshold", base_stereo.visibility_threshold)),
            ),
            expected_thigh_shank_ratio=_get_env_float(
                "MOVEMENT_SCREEN_THIGH_SHANK_RATIO",
                float(stereo_cfg.get("expected_thigh_shank_ratio", base_stereo.expected_thigh_shank_ratio)),
            ),
            ratio_tolerance=_get_env_float(
                "MOVEMENT_SCREEN_THIGH_SHANK_TOLERANCE",
                float(stereo_cfg.get("ratio_tolerance", base_stereo.ratio_tolerance)),
            ),
            optimal_triangulation_deg=_get_env_float(
                "MOVEMENT_SCREEN_OPTIMAL_TRIANGULATION_DEG",
                float(stereo_cfg.get("optimal_triangulation_deg", base_stereo.optimal_triangulation_deg)),
            ),
            min_disparity_px=_get_env_float(
                "MOVEMENT_SCREEN_MIN_DISPARITY_PX",
                float(stereo_cfg.get("min_disparity_px", base_stereo.min_disparity_px)),
            ),
            timing_window=_get_env_int(
                "MOVEMENT_SCREEN_TIMING_WINDOW", int(stereo_cfg.get("timing_window", base_stereo.timing_window))
            ),
            coordinate_decimals=_get_env_int(
                "MOVEMENT_SCREEN_COORDINATE_DECIMALS",
                int(stereo_cfg.get("coordinate_decimals", base_stereo.coordinate_decimals)),
            ),
        ),
    }


def _check_thresholds() -> None:
    for name, value in (
        ("VISIBILITY_THRESHOLD", VISIBILITY_THRESHOLD),
        ("STEREO_SETTINGS.visibility_threshold", STEREO_SETTINGS.visibility_threshold),
    ):
        if not 0.0 <= value <= 1.0:
            warnings.warn(
                f"{name}={value} is outside [0,1]; please correct the environment or config.",
                RuntimeWarning,
                stacklevel=2,
            )
            logger.warning("%s is outside [0,1]: %s", name, value)
    if not 0.0 <= CLINICAL_MIN_CONFIDENCE <= 100.0:
        warnings.warn(
            f"CLINICAL_MIN_CONFIDENCE={CLINICAL_MIN_CONFIDENCE} is outside [0,100].",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning("CLINICAL_MIN_CONFIDENCE is outside [0,100]: %s", CLINICAL_MIN_CONFIDENCE)
    if WARNING_MARGIN_DEG < 0:
        warnings.warn(
            f"WARNING_MARGIN_DEG={WARNING_MARGIN_DEG} is negative; the warning band would be empty.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning("WARNING_MARGIN_DEG is negative: %s", WARNING_MARGIN_DEG)
    if JOINT_ANGLE_PLANE not in SUPPORTED_PLANES:
        warnings.warn(
            f"JOINT_ANGLE_PLANE={JOINT_ANGLE_PLANE!r} is not one of {SUPPORTED_PLANES}; "
            "full 3D angles will be used.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning("Unknown JOINT_ANGLE_PLANE: %s", JOINT_ANGLE_PLANE)


def _check_landing_thresholds() -> None:
    thresholds = LANDING_THRESHOLDS
    if not thresholds.entry_velocity < thresholds.exit_velocity:
        warnings.warn(
            f"Landing entry velocity {thresholds.entry_velocity} should be below exit velocity "
            f"{thresholds.exit_velocity}.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning(
            "Landing entry/exit velocities inverted: %s >= %s",
            thresholds.entry_velocity,
            thresholds.exit_velocity,
        )
    if not 0 < thresholds.min_duration_ms <= thresholds.max_duration_ms:
        warnings.warn(
            f"Landing duration window {thresholds.min_duration_ms}-{thresholds.max_duration_ms} ms is invalid.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning(
            "Landing duration window invalid: %s-%s ms",
            thresholds.min_duration_ms,
            thresholds.max_duration_ms,
        )
    if thresholds.capture_fps <= 0 or thresholds.buffer_seconds <= 0:
        warnings.warn(
            "Capture fps and landing buffer length must be positive.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning(
            "Non-positive capture fps/buffer: fps=%s buffer=%s",
            thresholds.capture_fps,
            thresholds.buffer_seconds,
        )


def _check_risk_thresholds() -> None:
    low, high = RISK_THRESHOLDS.arm_abduction_range
    if low > high:
        warnings.warn(
            f"Arm abduction range {low}-{high} is inverted.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning("Arm abduction range inverted: %s-%s", low, high)


def _check_smoothing_window() -> None:
    if SMOOTHING_WINDOW <= 0:
        warnings.warn(
            f"SMOOTHING_WINDOW={SMOOTHING_WINDOW} is non-positive; expected positive odd integer.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning("SMOOTHING_WINDOW is non-positive: %s", SMOOTHING_WINDOW)
    if SMOOTHING_WINDOW % 2 == 0:
        warnings.warn(
            f"SMOOTHING_WINDOW={SMOOTHING_WINDOW} is even; Savitzky-Golay requires odd sizes.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning("SMOOTHING_WINDOW is even (prefer odd): %s", SMOOTHING_WINDOW)
    if SMOOTHING_POLYORDER >= SMOOTHING_WINDOW:
        warnings.warn(
            f"SMOOTHING_POLYORDER={SMOOTHING_POLYORDER} must be below SMOOTHING_WINDOW={SMOOTHING_WINDOW}.",
            RuntimeWarning,
            stacklevel=2,
        )
        logger.warning("SMOOTHING_POLYORDER >= SMOOTHING_WINDOW: %s >= %s", SMOOTHING_POLYORDER, SMOOTHING_WINDOW)


def validate_config_values() -> None:
    """Validate current config values and emit warnings for suspicious settings."""
    _check_thresholds()
    _check_landing_thresholds()
    _check_risk_thresholds()
    _check_smoothing_window()


def print_config() -> None:
    """Print configuration values for debugging purposes."""
    print("Movement screen analysis configuration:")
    print(f"  Visibility threshold: {VISIBILITY_THRESHOLD}")
    print(f"  Warning margin (deg): {WARNING_MARGIN_DEG}")
    print(f"  Joint angle plane: {JOINT_ANGLE_PLANE}")
    print(f"  Clinical minimum confidence: {CLINICAL_MIN_CONFIDENCE}")
    print(f"  Coordinate scale (mm per unit): {COORDINATE_SCALE_MM}")
    print(f"  Smoothing window / polyorder: {SMOOTHING_WINDOW} / {SMOOTHING_POLYORDER}")
    print(
        "  Landing (entry v, exit v, min frames, duration ms, fps): "
        f"{LANDING_THRESHOLDS.entry_velocity}, {LANDING_THRESHOLDS.exit_velocity}, "
        f"{LANDING_THRESHOLDS.min_frames}, "
        f"{LANDING_THRESHOLDS.min_duration_ms}-{LANDING_THRESHOLDS.max_duration_ms}, "
        f"{LANDING_THRESHOLDS.capture_fps}"
    )
    print(
        "  Risk (valgus, asymmetry, trunk sagittal/frontal, arm range, instability): "
        f"{RISK_THRESHOLDS.knee_valgus_deg}, {RISK_THRESHOLDS.asymmetry_deg}, "
        f"{RISK_THRESHOLDS.trunk_lean_sagittal_deg}/{RISK_THRESHOLDS.trunk_lean_frontal_deg}, "
        f"{RISK_THRESHOLDS.arm_abduction_range}, {RISK_THRESHOLDS.instability_index}"
    )
    print(
        "  Stereo (thigh:shank ratio, tolerance, optimal angle, timing window): "
        f"{STEREO_SETTINGS.expected_thigh_shank_ratio}, {STEREO_SETTINGS.ratio_tolerance}, "
        f"{STEREO_SETTINGS.optimal_triangulation_deg}, {STEREO_SETTINGS.timing_window}"
    )


# Run validation at import to surface misconfigurations early.
validate_config_values()
