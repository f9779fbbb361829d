from __future__ import annotations

import json

import pytest

from movement_screen.biomechanics.comparison.scoring import create_assessment_score
from movement_screen.biomechanics.metrics.kinematics import build_recording
from movement_screen.biomechanics.pose_estimation.calibration import default_stereo_calibration
from movement_screen.models import ValidationError
from movement_screen.storage import (
    JsonFileStore,
    MemoryStore,
    data_dir,
    dump_frames_file,
    list_recording_ids,
    list_scores,
    load_calibration_record,
    load_frames_file,
    load_recording,
    load_score,
    load_trials,
    save_calibration_record,
    save_recording,
    save_score,
)


def test_json_store_writes_one_file_per_record(tmp_path) -> None:
    store = JsonFileStore(tmp_path)
    store.save("notes", "visit 1", {"text": "ok"})

    path = tmp_path / "notes" / "visit_1.json"
    assert path.exists()
    assert json.loads(path.read_text(encoding="utf-8")) == {"text": "ok"}
    assert store.load("notes", "visit 1") == {"text": "ok"}
    assert store.keys("notes") == ["visit_1"]
    assert store.load("notes", "missing") is None

    assert store.delete("notes", "visit 1") is True
    assert store.delete("notes", "visit 1") is False
    assert store.keys("empty") == []


def test_json_store_rejects_bad_content_and_keys(tmp_path) -> None:
    store = JsonFileStore(tmp_path)
    (tmp_path / "notes").mkdir()
    (tmp_path / "notes" / "broken.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ValidationError):
        store.load("notes", "broken")
    with pytest.raises(ValidationError):
        store.save("notes", "../", {})


def test_memory_store_returns_copies() -> None:
    store = MemoryStore()
    payload = {"values": [1, 2]}
    store.save("c", "k", payload)
    payload["values"].append(3)
    loaded = store.load("c", "k")
    assert loaded == {"values": [1, 2]}
    loaded["values"].append(4)
    assert store.load("c", "k") == {"values": [1, 2]}


@pytest.mark.parametrize("store_factory", [MemoryStore, JsonFileStore])
def test_scores_are_listed_per_session(store_factory, tmp_path) -> None:
    store = store_factory() if store_factory is MemoryStore else store_factory(tmp_path)
    save_score(store, create_assessment_score("s1", "deep-squat", []))
    save_score(store, create_assessment_score("s1", "hurdle-step", []))
    save_score(store, create_assessment_score("s10", "deep-squat", []))

    assert sorted(score.test_id for score in list_scores(store, "s1")) == ["deep-squat", "hurdle-step"]
    assert load_score(store, "s10", "deep-squat").session_id == "s10"
    assert load_score(store, "s2", "deep-squat") is None
    assert load_trials(store, "s1") == []


def test_recordings_evict_oldest_beyond_limit(standing_frame) -> None:
    store = MemoryStore()
    for name in ("a", "b", "c"):
        evicted = save_recording(store, build_recording([standing_frame], recording_id=name), limit=2)
    assert evicted == ["a"]
    assert list_recording_ids(store) == ["c", "b"]
    assert load_recording(store, "a") is None
    assert load_recording(store, "c").frames == (standing_frame,)

    with pytest.raises(ValidationError):
        save_recording(store, build_recording([standing_frame], recording_id="d"), limit=0)


def test_calibration_record_round_trip() -> None:
    store = MemoryStore()
    assert load_calibration_record(store) is None
    save_calibration_record(store, default_stereo_calibration())
    assert load_calibration_record(store) == default_stereo_calibration()


def test_frames_file_round_trip(tmp_path, standing_frame) -> None:
    path = dump_frames_file([standing_frame], tmp_path / "frames.json")
    assert load_frames_file(path) == [standing_frame]
    with pytest.raises(FileNotFoundError):
        load_frames_file(tmp_path / "absent.json")


def test_data_dir_honours_environment(monkeypatch, tmp_path) -> None:
    target = tmp_path / "clinic-data"
    monkeypatch.setenv("MOVEMENT_SCREEN_DATA_DIR", str(target))
    assert data_dir() == target
    assert target.is_dir()
    assert JsonFileStore().root == target
