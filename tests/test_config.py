from __future__ import annotations

import json

import pytest

from movement_screen import config as app_config
from movement_screen.biomechanics import config as biomech_config
from movement_screen.biomechanics.database import fms_tests
from movement_screen.env import get_env
from movement_screen.models import ValidationError


@pytest.fixture
def fresh_config():
    app_config.get_config.cache_clear()
    yield app_config
    app_config.get_config.cache_clear()


def test_get_env_prefers_full_prefix(monkeypatch) -> None:
    monkeypatch.delenv("MOVEMENT_SCREEN_SAMPLE", raising=False)
    monkeypatch.setenv("FMS_SAMPLE", "short")
    assert get_env("SAMPLE") == "short"
    monkeypatch.setenv("MOVEMENT_SCREEN_SAMPLE", "full")
    assert get_env("SAMPLE") == "full"
    assert get_env("UNSET_SAMPLE", "fallback") == "fallback"


def test_app_config_reads_toml(monkeypatch, tmp_path, fresh_config) -> None:
    path = tmp_path / "clinic.toml"
    path.write_text(
        'recording_limit = 5\nclinician_id = "pt-1"\ndata_dir = "/srv/fms"\n\n'
        "[capture]\nframe_rate = 120.0\nimage_width = 1280\nimage_height = 720\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("MOVEMENT_SCREEN_CONFIG", str(path))
    config = fresh_config.get_config()
    assert config.recording_limit == 5
    assert config.clinician_id == "pt-1"
    assert config.data_dir == "/srv/fms"
    assert config.capture.frame_rate == 120.0
    assert (config.capture.image_width, config.capture.image_height) == (1280, 720)
    assert fresh_config.as_dict()["source"] == str(path)


def test_app_config_falls_back_on_bad_values(monkeypatch, tmp_path, fresh_config) -> None:
    path = tmp_path / "bad.toml"
    path.write_text('recording_limit = "many"\n\n[capture]\nframe_rate = -1\n', encoding="utf-8")
    monkeypatch.setenv("MOVEMENT_SCREEN_CONFIG", str(path))
    config = fresh_config.get_config()
    assert config.recording_limit == app_config.DEFAULT_RECORDING_LIMIT
    assert config.capture == app_config.CaptureSettings()


def test_missing_config_file_uses_defaults(monkeypatch, tmp_path, fresh_config) -> None:
    monkeypatch.setenv("MOVEMENT_SCREEN_CONFIG", str(tmp_path / "nope.toml"))
    assert fresh_config.get_config() == app_config.AppConfig()


def test_analysis_config_file_with_env_override(monkeypatch, tmp_path) -> None:
    path = tmp_path / "analysis.toml"
    path.write_text(
        "[biomechanics]\nvisibility_threshold = 0.6\n\n"
        "[biomechanics.landing_thresholds]\nmin_frames = 10\n\n"
        "[biomechanics.risk_thresholds]\narm_abduction_range = [30.0, 60.0]\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("MOVEMENT_SCREEN_WARNING_MARGIN_DEG", "2.5")
    loaded = biomech_config.load_config_from_file(path)
    assert loaded["VISIBILITY_THRESHOLD"] == 0.6
    assert loaded["WARNING_MARGIN_DEG"] == 2.5
    assert loaded["LANDING_THRESHOLDS"].min_frames == 10
    assert loaded["LANDING_THRESHOLDS"].entry_velocity == biomech_config.LANDING_THRESHOLDS.entry_velocity
    assert loaded["RISK_THRESHOLDS"].arm_abduction_range == (30.0, 60.0)


def test_analysis_config_rejects_unknown_format(tmp_path) -> None:
    path = tmp_path / "analysis.yaml"
    path.write_text("visibility_threshold: 0.6\n", encoding="utf-8")
    with pytest.raises(ValueError):
        biomech_config.load_config_from_file(path)
    with pytest.raises(FileNotFoundError):
        biomech_config.load_config_from_file(tmp_path / "missing.toml")


def test_config_value_reads_mappings_and_objects() -> None:
    assert biomech_config.config_value(None, "VISIBILITY_THRESHOLD", 0.5) == 0.5
    assert biomech_config.config_value({"visibility_threshold": 0.7}, "VISIBILITY_THRESHOLD", 0.5) == 0.7
    assert biomech_config.config_value(biomech_config, "WARNING_MARGIN_DEG", 0.0) == biomech_config.WARNING_MARGIN_DEG


def test_test_catalog_can_be_replaced(monkeypatch, tmp_path) -> None:
    custom = fms_tests.get_test("deep-squat").to_dict()
    custom["id"] = "clinic-squat"
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"tests": [custom]}), encoding="utf-8")
    monkeypatch.setenv("MOVEMENT_SCREEN_TEST_CATALOG", str(path))
    fms_tests.get_catalog.cache_clear()
    try:
        assert [test.id for test in fms_tests.list_tests()] == ["clinic-squat"]
        with pytest.raises(ValidationError):
            fms_tests.get_test("deep-squat")
    finally:
        monkeypatch.delenv("MOVEMENT_SCREEN_TEST_CATALOG")
        fms_tests.get_catalog.cache_clear()
    assert len(fms_tests.list_tests()) == 8
