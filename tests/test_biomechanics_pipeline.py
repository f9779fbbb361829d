from __future__ import annotations

import math
from dataclasses import replace

import pytest

from movement_screen.biomechanics.geometry import project_point
from movement_screen.biomechanics.pose_estimation.calibration import (
    CalibrationError,
    StaticCalibrationProvider,
    default_stereo_calibration,
)
from movement_screen.biomechanics.pose_estimation.pipeline import (
    DATAFRAME_COLUMNS,
    AssessmentPipeline,
    DropJumpSession,
)
from movement_screen.models import MISSING_LANDMARK, Landmark, LandmarkFrame, ValidationError


def _squat_points(knee_angle: float = 104.0):
    """Thighs vertical, shanks rotated so each knee closes to ``knee_angle``."""
    radians = math.radians(knee_angle)
    dx, dy = 0.18 * math.sin(radians), -0.18 * math.cos(radians)
    return {
        23: (0.46, 0.55),
        25: (0.46, 0.72),
        27: (0.46 + dx, 0.72 + dy),
        24: (0.54, 0.55),
        26: (0.54, 0.72),
        28: (0.54 - dx, 0.72 + dy),
    }


def test_analyze_frame_reports_angles_metrics_and_performance(standing_frame) -> None:
    pipeline = AssessmentPipeline("deep-squat")
    analysis = pipeline.analyze_frame(standing_frame)
    assert len(analysis.angles) == 11
    assert [result.metric_id for result in analysis.metric_results] == [
        "knee-valgus-left",
        "knee-valgus-right",
        "knee-flexion-depth",
    ]
    assert analysis.automatic_score == 1
    assert analysis.performance.fps == 0.0
    assert analysis.performance.pose_detection_accuracy == pytest.approx(100.0)
    assert analysis.performance.processing_time_ms >= 0.0
    assert analysis.mean_confidence == pytest.approx(100.0)


def test_timing_window_is_per_pipeline(make_frame) -> None:
    frames = [make_frame(timestamp=index * 1000.0 / 30.0, frame_index=index) for index in range(4)]
    first = AssessmentPipeline("deep-squat")
    analyses = first.analyze_frames(frames)
    assert analyses[-1].performance.fps == pytest.approx(30.0, abs=0.01)

    second = AssessmentPipeline("deep-squat")
    assert second.analyze_frame(frames[-1]).performance.fps == 0.0
    first.reset()
    assert first.analyze_frame(frames[0]).performance.fps == 0.0


def test_session_score_uses_best_frame(make_frame) -> None:
    frames = [
        make_frame(frame_index=0),
        make_frame(_squat_points(), frame_index=1, timestamp=33.0),
        make_frame(frame_index=2, timestamp=66.0),
    ]
    pipeline = AssessmentPipeline("deep-squat")
    analyses = pipeline.analyze_frames(frames, smooth=False)
    assert [analysis.automatic_score for analysis in analyses] == [1, 2, 1]
    assert pipeline.best_analysis(analyses).frame_index == 1

    score = pipeline.score_session("s-42", analyses, clinician_id="pt-3", notes="left heel lifted")
    assert (score.session_id, score.test_id, score.score) == ("s-42", "deep-squat", 2)
    assert score.notes == "left heel lifted"
    assert len(score.metric_results) == 3

    painful = pipeline.score_session("s-42", analyses, pain_reported=True)
    assert (painful.score, painful.automatic_score) == (0, 2)


def test_empty_sequence_scores_zero() -> None:
    pipeline = AssessmentPipeline("hurdle-step")
    assert pipeline.analyze_frames([]) == []
    assert pipeline.best_analysis([]) is None
    assert pipeline.score_session("s-1", []).score == 0


def test_dataframe_has_one_row_per_metric(make_frame) -> None:
    pipeline = AssessmentPipeline("deep-squat")
    analyses = pipeline.analyze_frames([make_frame(frame_index=i) for i in range(3)])
    df = pipeline.to_dataframe(analyses)
    assert list(df.columns) == DATAFRAME_COLUMNS
    assert len(df) == 9
    assert set(df["status"]) <= {"pass", "warning", "fail"}
    assert pipeline.to_dataframe([]).empty


def test_unknown_test_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AssessmentPipeline("handstand")


def _stereo_frames(calibration, point=(0.0, -300.0, 2500.0)):
    width, height = calibration.image_size
    frames = []
    for camera in (calibration.camera1, calibration.camera2):
        u, v = project_point(camera.projection_array(), point)
        frames.append(LandmarkFrame((Landmark(u / width, v / height, 0.0, 0.9),), timestamp=11.0))
    return frames


def test_drop_jump_session_requires_calibration() -> None:
    session = DropJumpSession(None)
    session.start()
    frame = LandmarkFrame((Landmark(0.5, 0.5),))
    with pytest.raises(CalibrationError):
        session.process_pair(frame, frame)


def test_drop_jump_session_streams_stereo_pairs() -> None:
    calibration = default_stereo_calibration()
    session = DropJumpSession(provider=StaticCalibrationProvider(calibration), fps=90.0)
    session.start()
    frame1, frame2 = _stereo_frames(calibration)
    result, trial = session.process_pair(frame1, frame2)
    assert trial is None
    assert result.timestamp == 11.0
    assert result.frame[0].z == pytest.approx(2500.0, abs=1e-2)

    assessment = session.stop()
    assert assessment.trials == ()
    assert assessment.overall_risk == "low"


def test_smoothing_does_not_pull_joints_toward_placeholders(make_frame) -> None:
    frames = [make_frame(frame_index=index, timestamp=index * 11.0) for index in range(5)]
    landmarks = tuple(MISSING_LANDMARK if index == 25 else point for index, point in enumerate(frames[2].landmarks))
    frames[2] = replace(frames[2], landmarks=landmarks, confidence=None)

    analyses = AssessmentPipeline("deep-squat").analyze_frames(frames, smooth=True)
    knees = {angle.name: angle.angle for angle in analyses[1].angles}
    assert knees["Left Knee"] == pytest.approx(180.0, abs=0.5)
    assert "Left Knee" not in {angle.name for angle in analyses[2].angles}
