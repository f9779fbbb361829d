from __future__ import annotations

import json

from typer.testing import CliRunner

from movement_screen import config as app_config
from movement_screen.cli import app
from movement_screen.storage import dump_frames_file


def test_cli_smoke(tmp_path, monkeypatch, make_frame):
    runner = CliRunner()
    monkeypatch.setenv("MOVEMENT_SCREEN_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("MOVEMENT_SCREEN_CONFIG", str(tmp_path / "absent.toml"))
    app_config.get_config.cache_clear()

    frames_path = dump_frames_file(
        [make_frame(frame_index=index, timestamp=index * 11.0) for index in range(3)],
        tmp_path / "frames.json",
    )

    tests_result = runner.invoke(app, ["tests"])
    assert tests_result.exit_code == 0, tests_result.stdout
    assert "deep-squat" in tests_result.stdout
    assert "drop-jump" in tests_result.stdout

    detail = runner.invoke(app, ["tests", "--test", "deep-squat"])
    assert detail.exit_code == 0, detail.stdout
    assert "knee-flexion-depth" in detail.stdout

    angles_result = runner.invoke(app, ["angles", str(frames_path)])
    assert angles_result.exit_code == 0, angles_result.stdout
    assert "Left Knee" in angles_result.stdout

    csv_path = tmp_path / "exports" / "angles.csv"
    export = runner.invoke(app, ["angles", str(frames_path), "--csv", str(csv_path)])
    assert export.exit_code == 0, export.stdout
    assert csv_path.exists()

    score_result = runner.invoke(app, ["score", "deep-squat", str(frames_path), "--session", "s1"])
    assert score_result.exit_code == 0, score_result.stdout
    assert "s1/deep-squat: score 1 (automatic 1)" in score_result.stdout
    assert (tmp_path / "data").is_dir()

    override_result = runner.invoke(
        app,
        ["override", "s1", "deep-squat", "2", "--reason", "heels lifted on camera only", "--clinician", "pt-9"],
    )
    assert override_result.exit_code == 0, override_result.stdout
    assert "score 2 (automatic 1, 1 audit entries)" in override_result.stdout

    missing_reason = runner.invoke(app, ["override", "s1", "deep-squat", "3"])
    assert missing_reason.exit_code == 1

    report_result = runner.invoke(app, ["report", "s1"])
    assert report_result.exit_code == 0, report_result.stdout
    report = json.loads(report_result.stdout)
    assert report["composite"] == {"total": 2, "max": 3, "tests": 1}
    assert report["tests"][0]["manual_override"] is True

    calibration_path = tmp_path / "rig" / "stereo.json"
    write_result = runner.invoke(app, ["calibration", "--write", str(calibration_path)])
    assert write_result.exit_code == 0, write_result.stdout
    show_result = runner.invoke(app, ["calibration", "--show", str(calibration_path)])
    assert show_result.exit_code == 0, show_result.stdout
    assert "Baseline" in show_result.stdout
    assert "1920x1080" in show_result.stdout

    jump_result = runner.invoke(app, ["drop-jump", str(frames_path)])
    assert jump_result.exit_code == 0, jump_result.stdout
    assert "No valid landings detected." in jump_result.stdout

    config_result = runner.invoke(app, ["config"])
    assert config_result.exit_code == 0, config_result.stdout
    assert "movement-screen" in config_result.stdout
    assert "Recording limit" in config_result.stdout

    app_config.get_config.cache_clear()


def test_cli_rejects_unknown_test(tmp_path, monkeypatch, make_frame):
    runner = CliRunner()
    monkeypatch.setenv("MOVEMENT_SCREEN_DATA_DIR", str(tmp_path / "data"))
    frames_path = dump_frames_file([make_frame()], tmp_path / "frames.json")

    result = runner.invoke(app, ["evaluate", "handstand", str(frames_path)])
    assert result.exit_code == 1

    missing = runner.invoke(app, ["report", "nobody"])
    assert missing.exit_code == 1
