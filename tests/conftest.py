from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Sequence

import pytest

from movement_screen.models import BODY_LANDMARK_COUNT, Landmark, LandmarkFrame

# Normalized image coordinates (y grows downward) for an upright subject facing the camera.
STANDING_POSE: Dict[int, Sequence[float]] = {
    0: (0.50, 0.15),
    11: (0.45, 0.30),
    12: (0.55, 0.30),
    13: (0.45, 0.45),
    14: (0.55, 0.45),
    15: (0.45, 0.60),
    16: (0.55, 0.60),
    23: (0.46, 0.55),
    24: (0.54, 0.55),
    25: (0.46, 0.72),
    26: (0.54, 0.72),
    27: (0.46, 0.90),
    28: (0.54, 0.90),
    31: (0.42, 0.90),
    32: (0.58, 0.90),
}
FILLER = (0.50, 0.20)


def build_frame(
    points: Optional[Mapping[int, Sequence[float]]] = None,
    *,
    visibility: float = 1.0,
    hidden: Iterable[int] = (),
    shift: Sequence[float] = (0.0, 0.0, 0.0),
    timestamp: float = 0.0,
    frame_index: int = 0,
) -> LandmarkFrame:
    layout = dict(STANDING_POSE)
    layout.update(points or {})
    hidden_set = set(hidden)
    landmarks = []
    for index in range(BODY_LANDMARK_COUNT):
        coords = tuple(layout.get(index, FILLER))
        x, y = coords[0], coords[1]
        z = coords[2] if len(coords) > 2 else 0.0
        vis = 0.0 if index in hidden_set else visibility
        landmarks.append(Landmark(x + shift[0], y + shift[1], z + shift[2], vis))
    return LandmarkFrame(tuple(landmarks), timestamp=timestamp, frame_index=frame_index)


@pytest.fixture
def make_frame():
    return build_frame


@pytest.fixture
def standing_frame() -> LandmarkFrame:
    return build_frame()
