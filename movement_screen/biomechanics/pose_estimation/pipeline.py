"""Frame-synchronous assessment pipelines.

`AssessmentPipeline` runs one FMS test over landmark frames (angles, metrics,
automatic score). `DropJumpSession` feeds synchronized stereo pairs through
triangulation into the landing analyzer. Each instance owns its own timing
window; performance numbers are returned with every result.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from rich.progress import Progress

from movement_screen.biomechanics import config as biomech_config
from movement_screen.biomechanics.config import BIOMECHANICS_LOGGER as logger
from movement_screen.biomechanics.config import config_value
from movement_screen.biomechanics.comparison.scoring import create_assessment_score, generate_automatic_score
from movement_screen.biomechanics.database.fms_tests import get_test
from movement_screen.biomechanics.metrics.angles import compute_joint_angles
from movement_screen.biomechanics.metrics.evaluator import evaluate_test
from movement_screen.biomechanics.metrics.landing_detection import DropJumpAnalyzer, DropJumpAssessment, DropJumpTrial
from movement_screen.biomechanics.pose_estimation.calibration import CalibrationProvider, StereoCalibration
from movement_screen.biomechanics.pose_estimation.stereo_processor import Pose3DProcessor, Pose3DResult
from movement_screen.biomechanics.utils.filtering import smooth_frames
from movement_screen.models import AssessmentScore, JointAngle, LandmarkFrame, MetricResult, PerformanceMetrics

TIMING_WINDOW = 30
MM_TO_M = 0.001

DATAFRAME_COLUMNS = [
    "frame",
    "timestamp_ms",
    "metric_id",
    "actual_value",
    "unit",
    "status",
    "is_critical",
    "confidence",
    "automatic_score",
]


@dataclass(frozen=True)
class FrameAnalysis:
    frame_index: int
    timestamp: float
    angles: Tuple[JointAngle, ...]
    metric_results: Tuple[MetricResult, ...]
    automatic_score: int
    performance: PerformanceMetrics

    @property
    def mean_confidence(self) -> float:
        if not self.metric_results:
            return 0.0
        return float(np.mean([result.confidence for result in self.metric_results]))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_index": self.frame_index,
            "timestamp": self.timestamp,
            "angles": [angle.to_dict() for angle in self.angles],
            "metric_results": [result.to_dict() for result in self.metric_results],
            "automatic_score": self.automatic_score,
            "performance": self.performance.to_dict(),
        }


class _TimingWindow:
    """Rolling processing times and frame timestamps for one pipeline instance."""

    def __init__(self, size: int = TIMING_WINDOW) -> None:
        self._durations: Deque[float] = deque(maxlen=size)
        self._stamps: Deque[float] = deque(maxlen=size)

    def clear(self) -> None:
        self._durations.clear()
        self._stamps.clear()

    def record(self, frame: LandmarkFrame, elapsed_ms: float) -> PerformanceMetrics:
        self._durations.append(elapsed_ms)
        self._stamps.append(frame.timestamp)
        fps = 0.0
        if len(self._stamps) >= 2:
            span = self._stamps[-1] - self._stamps[0]
            if span > 0:
                fps = (len(self._stamps) - 1) * 1000.0 / span
        return PerformanceMetrics(
            fps=round(fps, 2),
            latency_ms=round(float(np.mean(self._durations)), 3),
            processing_time_ms=round(elapsed_ms, 3),
            pose_detection_accuracy=round((frame.confidence or 0.0) * 100.0, 1),
        )


class AssessmentPipeline:
    """Landmark frame -> joint angles -> metric results -> automatic score for one test."""

    def __init__(
        self,
        test_id: str,
        *,
        config: Any = None,
        min_confidence: Optional[float] = None,
    ) -> None:
        self.test = get_test(test_id)
        self.config = config
        self.min_confidence = min_confidence
        self._timing = _TimingWindow()

    @property
    def test_id(self) -> str:
        return self.test.id

    def reset(self) -> None:
        self._timing.clear()

    def analyze_frame(
        self,
        frame: LandmarkFrame,
        *,
        reference_frame: Optional[LandmarkFrame] = None,
    ) -> FrameAnalysis:
        started = time.perf_counter()
        angles = compute_joint_angles(frame, config=self.config)
        results = evaluate_test(
            self.test.id,
            frame,
            angles,
            reference_frame=reference_frame,
            config=self.config,
        )
        score = generate_automatic_score(results, min_confidence=self.min_confidence)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return FrameAnalysis(
            frame_index=frame.frame_index,
            timestamp=frame.timestamp,
            angles=tuple(angles),
            metric_results=tuple(results),
            automatic_score=score,
            performance=self._timing.record(frame, elapsed_ms),
        )

    def analyze_frames(
        self,
        frames: Sequence[LandmarkFrame],
        *,
        smooth: bool = False,
        show_progress: bool = False,
    ) -> List[FrameAnalysis]:
        """Analyze a recorded sequence; the first frame is the displacement reference."""
        if not frames:
            return []
        sequence = list(frames)
        if smooth:
            threshold = config_value(self.config, "VISIBILITY_THRESHOLD", biomech_config.VISIBILITY_THRESHOLD)
            sequence = smooth_frames(frames, fill_threshold=float(threshold))
        reference = sequence[0]
        analyses: List[FrameAnalysis] = []
        with Progress(disable=not show_progress) as progress:
            task = progress.add_task(f"Analyzing {self.test.name}", total=len(sequence))
            for frame in sequence:
                analyses.append(self.analyze_frame(frame, reference_frame=reference))
                progress.update(task, advance=1)
        logger.debug("Analyzed %d frame(s) for %s.", len(analyses), self.test.id)
        return analyses

    @staticmethod
    def best_analysis(analyses: Sequence[FrameAnalysis]) -> Optional[FrameAnalysis]:
        """Highest automatic score; ties go to the most confident frame."""
        if not analyses:
            return None
        return max(analyses, key=lambda item: (item.automatic_score, item.mean_confidence))

    def score_session(
        self,
        session_id: str,
        analyses: Sequence[FrameAnalysis],
        *,
        pain_reported: bool = False,
        clinician_id: Optional[str] = None,
        notes: str = "",
    ) -> AssessmentScore:
        best = self.best_analysis(analyses)
        results: Sequence[MetricResult] = best.metric_results if best is not None else ()
        return create_assessment_score(
            session_id,
            self.test.id,
            results,
            pain_reported=pain_reported,
            clinician_id=clinician_id,
            notes=notes,
            min_confidence=self.min_confidence,
        )

    @staticmethod
    def to_dataframe(analyses: Iterable[FrameAnalysis]) -> pd.DataFrame:
        records = []
        for analysis in analyses:
            for result in analysis.metric_results:
                records.append(
                    {
                        "frame": analysis.frame_index,
                        "timestamp_ms": analysis.timestamp,
                        "metric_id": result.metric_id,
                        "actual_value": result.actual_value,
                        "unit": result.unit,
                        "status": result.status,
                        "is_critical": result.is_critical,
                        "confidence": result.confidence,
                        "automatic_score": analysis.automatic_score,
                    }
                )
        return pd.DataFrame.from_records(records, columns=DATAFRAME_COLUMNS)


class DropJumpSession:
    """Stereo pairs -> 3D frames -> landing analyzer, for one athlete session.

    Triangulated coordinates are in millimetres; they are converted to metres
    for the landing thresholds.
    """

    def __init__(
        self,
        calibration: Optional[StereoCalibration] = None,
        *,
        provider: Optional[CalibrationProvider] = None,
        config: Any = None,
        fps: Optional[float] = None,
        velocity_scale: float = MM_TO_M,
    ) -> None:
        if calibration is None and provider is not None:
            calibration = provider.get_calibration()
        self.processor = Pose3DProcessor(calibration, config=config)
        self.analyzer = DropJumpAnalyzer(fps=fps, config=config, velocity_scale=velocity_scale)

    def start(self) -> None:
        self.processor.reset_stats()
        self.analyzer.start_analysis()

    def process_pair(
        self,
        frame1: LandmarkFrame,
        frame2: LandmarkFrame,
        timestamp: Optional[float] = None,
    ) -> Tuple[Pose3DResult, Optional[DropJumpTrial]]:
        stamp = frame1.timestamp if timestamp is None else timestamp
        result = self.processor.process_3d_pose(frame1, frame2, stamp)
        trial = self.analyzer.process_frame(result.frame)
        return result, trial

    def stop(self) -> DropJumpAssessment:
        self.analyzer.stop_analysis()
        return self.analyzer.summarize()


__all__ = [
    "FrameAnalysis",
    "AssessmentPipeline",
    "DropJumpSession",
]
