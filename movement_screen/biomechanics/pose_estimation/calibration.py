"""Stereo camera calibration records and providers.

The analysis core never photographs calibration targets; it accepts a
`StereoCalibration` built elsewhere, loaded from JSON, or the nominal default
rig (two 1920x1080 cameras, 200 mm baseline).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np

from movement_screen.biomechanics.config import BIOMECHANICS_LOGGER as logger
from movement_screen.models import ValidationError

Matrix = Tuple[Tuple[float, ...], ...]


class CalibrationError(RuntimeError):
    """Raised when stereo processing is requested without a valid calibration."""


def _as_matrix(value: Any, shape: Tuple[int, int], name: str) -> Matrix:
    arr = np.asarray(value, dtype=float)
    if arr.shape != shape:
        raise ValidationError(f"{name} must have shape {shape}; received {arr.shape}.")
    return tuple(tuple(float(item) for item in row) for row in arr)


def _as_list(matrix: Matrix) -> List[List[float]]:
    return [list(row) for row in matrix]


def build_projection_matrix(intrinsic: Any, rotation: Any, translation: Any) -> np.ndarray:
    """P = K [R | t] for a pinhole camera."""
    k = np.asarray(intrinsic, dtype=float)
    r = np.asarray(rotation, dtype=float)
    t = np.asarray(translation, dtype=float).reshape(3, 1)
    return k @ np.hstack([r, t])


@dataclass(frozen=True)
class CameraCalibration:
    intrinsic: Matrix
    distortion: Tuple[float, ...]
    rotation: Matrix
    translation: Tuple[float, float, float]
    projection: Matrix

    @property
    def focal_length_px(self) -> float:
        return float(self.intrinsic[0][0])

    def projection_array(self) -> np.ndarray:
        return np.asarray(self.projection, dtype=float)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intrinsic": _as_list(self.intrinsic),
            "distortion": list(self.distortion),
            "rotation": _as_list(self.rotation),
            "translation": list(self.translation),
            "projection": _as_list(self.projection),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CameraCalibration":
        try:
            intrinsic = _as_matrix(payload["intrinsic"], (3, 3), "intrinsic")
            rotation = _as_matrix(payload.get("rotation", np.eye(3)), (3, 3), "rotation")
            translation = tuple(float(v) for v in payload.get("translation", (0.0, 0.0, 0.0)))
            if len(translation) != 3:
                raise ValidationError("translation must have three components.")
            raw_projection = payload.get("projection")
            if raw_projection is None:
                raw_projection = build_projection_matrix(intrinsic, rotation, translation)
            projection = _as_matrix(raw_projection, (3, 4), "projection")
        except KeyError as exc:
            raise ValidationError(f"Camera calibration is missing {exc.args[0]!r}.") from exc
        return cls(
            intrinsic=intrinsic,
            distortion=tuple(float(v) for v in payload.get("distortion", ())),
            rotation=rotation,
            translation=translation,  # type: ignore[arg-type]
            projection=projection,
        )


@dataclass(frozen=True)
class StereoCalibration:
    camera1: CameraCalibration
    camera2: CameraCalibration
    baseline_mm: float
    fundamental: Matrix = field(default=((0.0,) * 3,) * 3)
    essential: Matrix = field(default=((0.0,) * 3,) * 3)
    image_size: Tuple[int, int] = (1920, 1080)
    is_calibrated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "camera1": self.camera1.to_dict(),
            "camera2": self.camera2.to_dict(),
            "baseline_mm": self.baseline_mm,
            "fundamental": _as_list(self.fundamental),
            "essential": _as_list(self.essential),
            "image_size": list(self.image_size),
            "is_calibrated": self.is_calibrated,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StereoCalibration":
        try:
            camera1 = CameraCalibration.from_dict(payload["camera1"])
            camera2 = CameraCalibration.from_dict(payload["camera2"])
            baseline = float(payload["baseline_mm"])
        except KeyError as exc:
            raise ValidationError(f"Stereo calibration is missing {exc.args[0]!r}.") from exc
        size = payload.get("image_size", (1920, 1080))
        return cls(
            camera1=camera1,
            camera2=camera2,
            baseline_mm=baseline,
            fundamental=_as_matrix(payload.get("fundamental", np.zeros((3, 3))), (3, 3), "fundamental"),
            essential=_as_matrix(payload.get("essential", np.zeros((3, 3))), (3, 3), "essential"),
            image_size=(int(size[0]), int(size[1])),
            is_calibrated=bool(payload.get("is_calibrated", False)),
        )


def _skew(vector: Sequence[float]) -> np.ndarray:
    x, y, z = (float(value) for value in vector)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def _nominal_camera(
    intrinsic: Any,
    distortion: Tuple[float, ...],
    translation: Tuple[float, float, float],
) -> CameraCalibration:
    rotation = np.eye(3)
    return CameraCalibration(
        intrinsic=_as_matrix(intrinsic, (3, 3), "intrinsic"),
        distortion=distortion,
        rotation=_as_matrix(rotation, (3, 3), "rotation"),
        translation=translation,
        projection=_as_matrix(build_projection_matrix(intrinsic, rotation, translation), (3, 4), "projection"),
    )


def default_stereo_calibration(image_size: Sequence[int] = (1920, 1080)) -> StereoCalibration:
    """Nominal rig: identical 1000 px focal-length cameras, camera 2 offset 200 mm along x.

    Camera 2 maps world points with ``t = (-200, 0, 0)``; the essential and
    fundamental matrices are derived from that pose.
    """
    baseline = 200.0
    intrinsic = ((1000.0, 0.0, 960.0), (0.0, 1000.0, 540.0), (0.0, 0.0, 1.0))
    distortion = (0.1, -0.2, 0.0, 0.0, 0.0)
    camera1 = _nominal_camera(intrinsic, distortion, (0.0, 0.0, 0.0))
    camera2 = _nominal_camera(intrinsic, distortion, (-baseline, 0.0, 0.0))
    essential = _skew(camera2.translation) @ np.asarray(camera2.rotation, dtype=float)
    k_inv = np.linalg.inv(np.asarray(intrinsic, dtype=float))
    fundamental = k_inv.T @ essential @ k_inv
    return StereoCalibration(
        camera1=camera1,
        camera2=camera2,
        baseline_mm=baseline,
        fundamental=_as_matrix(fundamental, (3, 3), "fundamental"),
        essential=_as_matrix(essential, (3, 3), "essential"),
        image_size=(int(image_size[0]), int(image_size[1])),
        is_calibrated=True,
    )


def load_calibration(path: Path) -> StereoCalibration:
    calibration_path = Path(path).expanduser()
    if not calibration_path.exists():
        raise FileNotFoundError(f"Calibration not found: {calibration_path}")
    try:
        payload = json.loads(calibration_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Could not parse {calibration_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError(f"{calibration_path} must contain a JSON object.")
    return StereoCalibration.from_dict(payload)


def save_calibration(calibration: StereoCalibration, path: Path) -> Path:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(calibration.to_dict(), indent=2, sort_keys=True) + "\n"
    with NamedTemporaryFile("w", dir=target.parent, delete=False, encoding="utf-8") as tmp:
        tmp.write(payload)
        temp_path = Path(tmp.name)
    temp_path.replace(target)
    logger.info("Saved stereo calibration to %s", target)
    return target


class CalibrationProvider(Protocol):
    def get_calibration(self) -> Optional[StereoCalibration]:
        ...


class FileCalibrationProvider:
    """Reads a calibration JSON on first use; returns ``None`` when the file is absent."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._calibration: Optional[StereoCalibration] = None

    def get_calibration(self) -> Optional[StereoCalibration]:
        if self._calibration is None and self.path.exists():
            self._calibration = load_calibration(self.path)
        return self._calibration


class StaticCalibrationProvider:
    def __init__(self, calibration: Optional[StereoCalibration] = None) -> None:
        self._calibration = calibration if calibration is not None else default_stereo_calibration()

    def get_calibration(self) -> Optional[StereoCalibration]:
        return self._calibration


__all__ = [
    "CalibrationError",
    "CameraCalibration",
    "StereoCalibration",
    "CalibrationProvider",
    "FileCalibrationProvider",
    "StaticCalibrationProvider",
    "build_projection_matrix",
    "default_stereo_calibration",
    "load_calibration",
    "save_calibration",
]
