from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from .env import get_env

try:  # pragma: no cover - Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    try:
        import tomli as tomllib  # type: ignore
    except ModuleNotFoundError:
        tomllib = None  # type: ignore

DEFAULT_RECORDING_LIMIT = 20
DEFAULT_CAPTURE_FPS = 90.0
DEFAULT_IMAGE_SIZE: tuple[int, int] = (1920, 1080)


@dataclass(frozen=True)
class CaptureSettings:
    frame_rate: float = DEFAULT_CAPTURE_FPS
    image_width: int = DEFAULT_IMAGE_SIZE[0]
    image_height: int = DEFAULT_IMAGE_SIZE[1]


@dataclass(frozen=True)
class AppConfig:
    recording_limit: int = DEFAULT_RECORDING_LIMIT
    clinician_id: str | None = None
    data_dir: str | None = None
    capture: CaptureSettings = CaptureSettings()


def _config_path() -> Path | None:
    """Resolve the TOML configuration file, if present."""
    env_override = get_env("CONFIG")
    if env_override:
        path = Path(env_override).expanduser()
        return path if path.exists() else None

    default_path = Path("config/movement_screen.toml")
    if default_path.exists():
        return default_path
    return None


def _load_toml(path: Path) -> Mapping[str, Any]:
    if tomllib is None:
        raise RuntimeError("TOML configuration requires Python 3.11+ or the 'tomli' package.")
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _coerce_positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _coerce_capture(raw: Mapping[str, Any] | None) -> CaptureSettings:
    base = CaptureSettings()
    if not raw:
        return base
    try:
        frame_rate = float(raw.get("frame_rate", base.frame_rate))
        width = int(raw.get("image_width", base.image_width))
        height = int(raw.get("image_height", base.image_height))
    except (TypeError, ValueError):
        return base
    if frame_rate <= 0 or width <= 0 or height <= 0:
        return base
    return CaptureSettings(frame_rate=frame_rate, image_width=width, image_height=height)


def _build_config(raw: Mapping[str, Any]) -> AppConfig:
    recording_limit = _coerce_positive_int(raw.get("recording_limit"), DEFAULT_RECORDING_LIMIT)
    clinician = raw.get("clinician_id")
    data_dir = raw.get("data_dir")
    capture_section = raw.get("capture")
    capture = _coerce_capture(capture_section if isinstance(capture_section, Mapping) else None)
    return AppConfig(
        recording_limit=recording_limit,
        clinician_id=str(clinician) if clinician else None,
        data_dir=str(data_dir) if data_dir else None,
        capture=capture,
    )


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load configuration once, falling back to built-in defaults."""
    path = _config_path()
    if not path:
        return AppConfig()
    data = _load_toml(path)
    return _build_config(data)


def as_dict() -> dict[str, Any]:
    """Return the effective configuration for debug/CLI display."""
    config = get_config()
    return {
        "recording_limit": config.recording_limit,
        "clinician_id": config.clinician_id,
        "data_dir": config.data_dir,
        "capture": {
            "frame_rate": config.capture.frame_rate,
            "image_width": config.capture.image_width,
            "image_height": config.capture.image_height,
        },
        "source": str(_config_path() or "defaults"),
    }
