from __future__ import annotations

import json
import logging
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .biomechanics.metrics.kinematics import MotionRecording
from .biomechanics.metrics.landing_detection import DropJumpTrial
from .biomechanics.pose_estimation.calibration import StereoCalibration
from .config import get_config
from .env import get_env
from .models import AssessmentScore, LandmarkFrame, ValidationError, frames_from_payload

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
LOGGER = logging.getLogger(__name__)

SCORES = "scores"
TRIALS = "trials"
RECORDINGS = "recordings"
CALIBRATION = "calibration"
RECORDING_INDEX = "recording_index"


class RecordStore(Protocol):
    """Persistence port: opaque JSON objects addressed by (collection, key)."""

    def save(self, collection: str, key: str, payload: Mapping[str, Any]) -> None:
        ...

    def load(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    def delete(self, collection: str, key: str) -> bool:
        ...

    def keys(self, collection: str) -> List[str]:
        ...


def _slug(value: str) -> str:
    text = (value or "").strip().replace(" ", "_")
    cleaned = "".join(ch if ch.isalnum() or ch in {"_", "-", "."} else "_" for ch in text).strip("_.")
    if not cleaned:
        raise ValidationError(f"Invalid record key: {value!r}")
    return cleaned


def _write_json(target: Path, payload: Any) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, indent=2, sort_keys=True) + "\n"
    with NamedTemporaryFile("w", dir=target.parent, delete=False, encoding="utf-8") as tmp:
        tmp.write(text)
        temp_path = Path(tmp.name)
    temp_path.replace(target)


def _read_json(path: Path) -> Any:
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ValidationError(f"{path} is empty")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Could not parse {path}: {exc}") from exc


def data_dir() -> Path:
    override = get_env("DATA_DIR") or get_config().data_dir
    base = Path(override).expanduser() if override else DEFAULT_DATA_DIR
    base.mkdir(parents=True, exist_ok=True)
    return base


class JsonFileStore:
    """One JSON file per record under ``<root>/<collection>/<key>.json``."""

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root).expanduser() if root is not None else data_dir()

    def _path(self, collection: str, key: str) -> Path:
        return self.root / _slug(collection) / f"{_slug(key)}.json"

    def save(self, collection: str, key: str, payload: Mapping[str, Any]) -> None:
        _write_json(self._path(collection, key), dict(payload))

    def load(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(collection, key)
        if not path.exists():
            return None
        payload = _read_json(path)
        if not isinstance(payload, dict):
            raise ValidationError(f"{path} must contain a JSON object")
        return payload

    def delete(self, collection: str, key: str) -> bool:
        path = self._path(collection, key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def keys(self, collection: str) -> List[str]:
        folder = self.root / _slug(collection)
        if not folder.exists():
            return []
        return sorted(path.stem for path in folder.glob("*.json"))


class MemoryStore:
    """In-process store with the same contract as `JsonFileStore`."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def save(self, collection: str, key: str, payload: Mapping[str, Any]) -> None:
        # Stored as JSON-decoded copies.
        self._data.setdefault(collection, {})[_slug(key)] = json.loads(json.dumps(dict(payload)))

    def load(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        record = self._data.get(collection, {}).get(_slug(key))
        return json.loads(json.dumps(record)) if record is not None else None

    def delete(self, collection: str, key: str) -> bool:
        return self._data.get(collection, {}).pop(_slug(key), None) is not None

    def keys(self, collection: str) -> List[str]:
        return sorted(self._data.get(collection, {}))


def _score_key(session_id: str, test_id: str) -> str:
    return f"{_slug(session_id)}__{_slug(test_id)}"


def save_score(store: RecordStore, score: AssessmentScore) -> None:
    store.save(SCORES, _score_key(score.session_id, score.test_id), score.to_dict())
    LOGGER.debug("Stored score %s/%s", score.session_id, score.test_id)


def load_score(store: RecordStore, session_id: str, test_id: str) -> Optional[AssessmentScore]:
    payload = store.load(SCORES, _score_key(session_id, test_id))
    return AssessmentScore.from_dict(payload) if payload is not None else None


def list_scores(store: RecordStore, session_id: str) -> List[AssessmentScore]:
    prefix = f"{_slug(session_id)}__"
    scores = []
    for key in store.keys(SCORES):
        if not key.startswith(prefix):
            continue
        payload = store.load(SCORES, key)
        if payload is not None:
            scores.append(AssessmentScore.from_dict(payload))
    return scores


def save_trials(store: RecordStore, session_id: str, trials: Iterable[DropJumpTrial]) -> None:
    store.save(TRIALS, session_id, {"session_id": session_id, "trials": [trial.to_dict() for trial in trials]})


def load_trials(store: RecordStore, session_id: str) -> List[DropJumpTrial]:
    payload = store.load(TRIALS, session_id)
    if payload is None:
        return []
    return [DropJumpTrial.from_dict(item) for item in payload.get("trials", [])]


def list_recording_ids(store: RecordStore) -> List[str]:
    """Stored recording ids, newest first."""
    index = store.load(RECORDING_INDEX, "order") or {}
    return [str(item) for item in index.get("ids", [])]


def save_recording(store: RecordStore, recording: MotionRecording, *, limit: Optional[int] = None) -> List[str]:
    """Store a recording and drop the oldest beyond ``limit``; returns evicted ids."""
    keep = int(limit if limit is not None else get_config().recording_limit)
    if keep <= 0:
        raise ValidationError("Recording limit must be positive.")
    store.save(RECORDINGS, recording.id, recording.to_dict())
    ids = [recording.id] + [item for item in list_recording_ids(store) if item != recording.id]
    evicted = ids[keep:]
    for item in evicted:
        store.delete(RECORDINGS, item)
    store.save(RECORDING_INDEX, "order", {"ids": ids[:keep]})
    if evicted:
        LOGGER.info("Evicted %d old recording(s)", len(evicted))
    return evicted


def load_recording(store: RecordStore, recording_id: str) -> Optional[MotionRecording]:
    payload = store.load(RECORDINGS, recording_id)
    return MotionRecording.from_dict(payload) if payload is not None else None


def save_calibration_record(store: RecordStore, calibration: StereoCalibration, name: str = "default") -> None:
    store.save(CALIBRATION, name, calibration.to_dict())


def load_calibration_record(store: RecordStore, name: str = "default") -> Optional[StereoCalibration]:
    payload = store.load(CALIBRATION, name)
    return StereoCalibration.from_dict(payload) if payload is not None else None


def load_frames_file(path: Path | str) -> List[LandmarkFrame]:
    """Read landmark frames from a JSON list or an object with a ``frames`` list."""
    source = Path(path).expanduser()
    if not source.exists():
        raise FileNotFoundError(f"Frames file not found: {source}")
    return frames_from_payload(_read_json(source))


def dump_frames_file(frames: Sequence[LandmarkFrame], path: Path | str) -> Path:
    target = Path(path).expanduser()
    _write_json(target, {"frames": [frame.to_dict() for frame in frames]})
    return target


__all__ = [
    "RecordStore",
    "JsonFileStore",
    "MemoryStore",
    "data_dir",
    "save_score",
    "load_score",
    "list_scores",
    "save_trials",
    "load_trials",
    "save_recording",
    "load_recording",
    "list_recording_ids",
    "save_calibration_record",
    "load_calibration_record",
    "load_frames_file",
    "dump_frames_file",
]
