from __future__ import annotations

import json
import logging
from functools import lru_cache
from importlib import metadata
from pathlib import Path
from typing import Any, List, Optional

import typer

from . import biomechanics
from .biomechanics.comparison.reporter import generate_session_report
from .biomechanics.comparison.scoring import apply_manual_override, apply_pain_flag
from .biomechanics.database.fms_tests import get_test, list_tests
from .biomechanics.metrics.angles import compute_joint_angles, compute_trajectory_angles
from .biomechanics.metrics.landing_detection import DropJumpAnalyzer, DropJumpAssessment, summarize_trials
from .biomechanics.pose_estimation.calibration import (
    CalibrationError,
    default_stereo_calibration,
    load_calibration,
    save_calibration,
)
from .biomechanics.pose_estimation.pipeline import AssessmentPipeline, DropJumpSession
from .config import as_dict as config_as_dict, get_config
from .models import LandmarkFrame, ValidationError
from .storage import JsonFileStore, list_scores, load_frames_file, load_score, load_trials, save_score, save_trials

app = typer.Typer(help="Score Functional Movement Screen tests from pose landmark frames.")
log = logging.getLogger(__name__)


def _fail(message: str, *, code: int = 1) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


@lru_cache(maxsize=1)
def _app_version() -> str:
    try:
        return metadata.version("movement-screen")
    except metadata.PackageNotFoundError:  # pragma: no cover - local dev fallback
        return "0.0.0"


def _load_frames(path: Path) -> List[LandmarkFrame]:
    try:
        frames = load_frames_file(path)
    except (FileNotFoundError, ValidationError) as exc:
        _fail(str(exc))
    if not frames:
        _fail(f"No frames found in {path}")
    return frames


def _pick_frame(frames: List[LandmarkFrame], index: Optional[int]) -> LandmarkFrame:
    if index is None:
        return frames[-1]
    if not 0 <= index < len(frames):
        _fail(f"Frame {index} out of range (0-{len(frames) - 1}).")
    return frames[index]


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _echo_assessment(assessment: DropJumpAssessment) -> None:
    for trial in assessment.trials:
        phase = trial.landing_phase
        metrics = trial.metrics
        typer.echo(
            f"Trial {trial.trial_id}: frames {phase.start_frame}-{phase.end_frame} "
            f"({phase.duration_ms:.0f} ms), valgus L/R {metrics.knee_valgus_left:.1f}/"
            f"{metrics.knee_valgus_right:.1f}°, risk {metrics.overall_risk}"
        )
    distribution = ", ".join(f"{level}={count}" for level, count in assessment.risk_distribution.items())
    typer.echo(f"Overall risk: {assessment.overall_risk} ({distribution})")
    for line in assessment.recommendations:
        typer.echo(f" • {line}")


@app.command("tests")
def tests_list(
    test_id: Optional[str] = typer.Option(None, "--test", "-t", help="Show the metrics of one test."),
) -> None:
    """
    List the movement tests in the active catalog.
    """
    if test_id is None:
        for test in list_tests():
            typer.echo(f"{test.id:<28} {test.name} ({len(test.metrics)} metrics)")
        return
    try:
        test = get_test(test_id)
    except ValidationError as exc:
        _fail(str(exc))
    typer.echo(f"{test.name}: {test.description}")
    for definition in test.metrics:
        marker = "*" if definition.is_critical else " "
        typer.echo(f" {marker} {definition.id:<30} {definition.target_description} [{definition.unit}]")
    for score, text in sorted(test.scoring_criteria.items(), reverse=True):
        typer.echo(f"   {score}: {text}")


@app.command("angles")
def angles(
    frames_file: Path = typer.Argument(..., help="Landmark frames JSON."),
    frame: Optional[int] = typer.Option(None, "--frame", "-f", help="Frame position (defaults to the last)."),
    csv_path: Optional[Path] = typer.Option(None, "--csv", help="Write the per-frame angle table to CSV."),
) -> None:
    """
    Print joint angles for one frame, or export the angle table for all frames.
    """
    frames = _load_frames(frames_file)
    if csv_path is not None:
        table = compute_trajectory_angles(frames)
        csv_path.parent.mkdir(parents=True, exist_ok=True)
        table.to_csv(csv_path, index=False)
        typer.echo(f"Wrote {len(table)} rows to {csv_path}")
        return
    selected = _pick_frame(frames, frame)
    computed = compute_joint_angles(selected)
    if not computed:
        typer.echo("No joint angles: landmarks below the visibility threshold.")
        return
    for angle in computed:
        status = "normal" if angle.normal else "warning" if angle.warning else "fail"
        typer.echo(
            f"{angle.name:<16} {angle.angle:6.1f}°  {angle.target_description:<10} "
            f"{status:<8} conf {angle.confidence:.0f}"
        )


@app.command("evaluate")
def evaluate(
    test_id: str = typer.Argument(..., help="Movement test id (see `tests`)."),
    frames_file: Path = typer.Argument(..., help="Landmark frames JSON."),
    smooth: bool = typer.Option(False, "--smooth", help="Savitzky-Golay smooth the sequence first."),
    as_json: bool = typer.Option(False, "--json", help="Emit the best frame analysis as JSON."),
) -> None:
    """
    Evaluate every frame and report the metric results of the best-scoring frame.
    """
    frames = _load_frames(frames_file)
    try:
        pipeline = AssessmentPipeline(test_id)
    except ValidationError as exc:
        _fail(str(exc))
    analyses = pipeline.analyze_frames(frames, smooth=smooth, show_progress=not as_json)
    best = pipeline.best_analysis(analyses)
    if best is None:
        _fail("No frames analyzed.")
    if as_json:
        _echo_json(best.to_dict())
        return
    typer.echo(f"{pipeline.test.name}: best frame {best.frame_index}, automatic score {best.automatic_score}")
    for result in best.metric_results:
        typer.echo(
            f"  {result.status:<7} {result.name:<32} {result.actual_value:8.1f} {result.unit:<3} "
            f"(target {result.target_description}, conf {result.confidence:.0f})"
        )


@app.command("score")
def score(
    test_id: str = typer.Argument(..., help="Movement test id."),
    frames_file: Path = typer.Argument(..., help="Landmark frames JSON."),
    session_id: str = typer.Option(..., "--session", "-s", help="Assessment session id."),
    pain: bool = typer.Option(False, "--pain", help="Pain reported during the test (forces score 0)."),
    clinician: Optional[str] = typer.Option(None, "--clinician", help="Clinician id (defaults to config)."),
    notes: str = typer.Option("", "--notes", help="Free-form clinical notes."),
    smooth: bool = typer.Option(False, "--smooth", help="Savitzky-Golay smooth the sequence first."),
    min_confidence: Optional[float] = typer.Option(
        None,
        "--min-confidence",
        help="Exclude metrics below this confidence (0-100) from scoring.",
    ),
    save: bool = typer.Option(True, "--save/--no-save", help="Persist the score to the data directory."),
) -> None:
    """
    Score a test for a session and store the result.
    """
    frames = _load_frames(frames_file)
    clinician_id = clinician or get_config().clinician_id
    try:
        pipeline = AssessmentPipeline(test_id, min_confidence=min_confidence)
    except ValidationError as exc:
        _fail(str(exc))
    analyses = pipeline.analyze_frames(frames, smooth=smooth)
    result = pipeline.score_session(
        session_id,
        analyses,
        pain_reported=pain,
        clinician_id=clinician_id,
        notes=notes,
    )
    if save:
        save_score(JsonFileStore(), result)
        log.info("CLI score stored session=%s test=%s score=%s", session_id, result.test_id, result.score)
    typer.echo(f"{session_id}/{result.test_id}: score {result.score} (automatic {result.automatic_score})")
    if result.pain_reported:
        typer.echo(" • Pain reported: score forced to 0")


@app.command("override")
def override(
    session_id: str = typer.Argument(..., help="Assessment session id."),
    test_id: str = typer.Argument(..., help="Movement test id."),
    new_score: Optional[int] = typer.Argument(None, help="New score 0-3."),
    reason: str = typer.Option("", "--reason", "-r", help="Reason for the override (required for a score)."),
    clinician: Optional[str] = typer.Option(None, "--clinician", help="Clinician id (defaults to config)."),
    pain: Optional[bool] = typer.Option(None, "--pain/--no-pain", help="Set or clear the pain flag."),
) -> None:
    """
    Apply a clinician override or pain flag to a stored score.
    """
    store = JsonFileStore()
    existing = load_score(store, session_id, test_id)
    if existing is None:
        _fail(f"No stored score for {session_id}/{test_id}")
    clinician_id = clinician or get_config().clinician_id
    updated = existing
    try:
        if pain is not None:
            updated = apply_pain_flag(updated, pain, clinician_id=clinician_id)
        if new_score is not None:
            updated = apply_manual_override(updated, new_score, reason, clinician_id=clinician_id)
    except ValidationError as exc:
        _fail(str(exc))
    if updated is existing:
        _fail("Nothing to change: pass a score or --pain/--no-pain.")
    save_score(store, updated)
    typer.echo(
        f"{session_id}/{test_id}: score {updated.score} "
        f"(automatic {updated.automatic_score}, {len(updated.audit_trail)} audit entries)"
    )


@app.command("drop-jump")
def drop_jump(
    frames_file: Path = typer.Argument(..., help="3D frames JSON, or camera-1 frames with --second."),
    second: Optional[Path] = typer.Option(None, "--second", help="Camera-2 frames for stereo triangulation."),
    calibration_file: Optional[Path] = typer.Option(
        None,
        "--calibration",
        help="Stereo calibration JSON (defaults to the nominal rig).",
    ),
    fps: Optional[float] = typer.Option(None, "--fps", help="Capture frame rate (defaults to config)."),
    scale: float = typer.Option(1.0, "--scale", help="Coordinate units to metres for 3D input frames."),
    session_id: Optional[str] = typer.Option(None, "--session", "-s", help="Store trials under this session."),
    as_json: bool = typer.Option(False, "--json", help="Emit the assessment as JSON."),
) -> None:
    """
    Detect drop-jump landings and classify injury risk.
    """
    frames = _load_frames(frames_file)
    rate = fps or get_config().capture.frame_rate
    if second is None:
        analyzer = DropJumpAnalyzer(fps=rate, velocity_scale=scale)
        analyzer.analyze_sequence(frames)
        assessment = analyzer.summarize()
    else:
        partner = _load_frames(second)
        if len(partner) != len(frames):
            _fail(f"Camera frame counts differ ({len(frames)} vs {len(partner)}).")
        try:
            calibration = load_calibration(calibration_file) if calibration_file else default_stereo_calibration()
        except (FileNotFoundError, ValidationError) as exc:
            _fail(str(exc))
        stereo = DropJumpSession(calibration, fps=rate)
        stereo.start()
        try:
            for frame1, frame2 in zip(frames, partner):
                stereo.process_pair(frame1, frame2)
        except CalibrationError as exc:
            _fail(str(exc))
        assessment = stereo.stop()
    if session_id:
        save_trials(JsonFileStore(), session_id, assessment.trials)
    if as_json:
        _echo_json(assessment.to_dict())
        return
    if not assessment.trials:
        typer.echo("No valid landings detected.")
        return
    _echo_assessment(assessment)


@app.command("report")
def report(
    session_id: str = typer.Argument(..., help="Assessment session id."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the report JSON here."),
) -> None:
    """
    Build the clinician report for a stored session.
    """
    store = JsonFileStore()
    scores = list_scores(store, session_id)
    trials = load_trials(store, session_id)
    if not scores and not trials:
        _fail(f"No stored results for session {session_id}")
    drop_jump_summary = summarize_trials(trials) if trials else None
    payload = generate_session_report(
        session_id,
        scores,
        drop_jump=drop_jump_summary,
        clinician_id=get_config().clinician_id,
    )
    if output is None:
        _echo_json(payload)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    typer.echo(f"Wrote report to {output}")


@app.command("calibration")
def calibration(
    write: Optional[Path] = typer.Option(None, "--write", help="Write the nominal stereo calibration here."),
    show: Optional[Path] = typer.Option(None, "--show", help="Print a stored calibration."),
) -> None:
    """
    Create or inspect stereo calibration files.
    """
    if write is None and show is None:
        _fail("Pass --write PATH or --show PATH.")
    if write is not None:
        config = get_config()
        size = (config.capture.image_width, config.capture.image_height)
        path = save_calibration(default_stereo_calibration(size), write)
        typer.echo(f"Wrote nominal calibration to {path}")
    if show is not None:
        try:
            loaded = load_calibration(show)
        except (FileNotFoundError, ValidationError) as exc:
            _fail(str(exc))
        state = "calibrated" if loaded.is_calibrated else "NOT calibrated"
        typer.echo(f"Baseline {loaded.baseline_mm:.1f} mm, image {loaded.image_size[0]}x{loaded.image_size[1]}, {state}")


@app.command("config")
def config_show(
    analysis: bool = typer.Option(False, "--analysis", help="Also print analysis thresholds."),
) -> None:
    """
    Show the effective configuration.
    """
    config = config_as_dict()
    typer.echo(f"movement-screen {_app_version()}")
    typer.echo(f"Config source: {config.get('source')}")
    typer.echo(f"Recording limit: {config.get('recording_limit')}")
    typer.echo(f"Clinician: {config.get('clinician_id') or 'n/a'}")
    typer.echo(f"Data dir: {config.get('data_dir') or 'default'}")
    capture = config.get("capture", {})
    typer.echo(
        f"Capture: {capture.get('frame_rate')} fps, {capture.get('image_width')}x{capture.get('image_height')}"
    )
    if analysis:
        biomechanics.print_config()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
