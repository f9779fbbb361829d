"""Stereo calibration, triangulation and assessment pipelines."""

from .calibration import CalibrationError, StereoCalibration, default_stereo_calibration
from .pipeline import AssessmentPipeline, DropJumpSession
from .stereo_processor import Pose3DProcessor

__all__ = [
    "CalibrationError",
    "StereoCalibration",
    "default_stereo_calibration",
    "Pose3DProcessor",
    "AssessmentPipeline",
    "DropJumpSession",
]
