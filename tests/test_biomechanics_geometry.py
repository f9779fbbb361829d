from __future__ import annotations

import math

import numpy as np
import pytest

from movement_screen.biomechanics.geometry import (
    DegenerateGeometryError,
    angle_between,
    distance,
    invert_3x3,
    project_point,
    project_to_plane,
    symmetry_index,
    triangulate_point,
)
from movement_screen.biomechanics.pose_estimation.calibration import default_stereo_calibration
from movement_screen.models import Landmark


def test_angle_between_right_angle_in_2d_and_3d() -> None:
    assert angle_between((1.0, 0.0), (0.0, 0.0), (0.0, 1.0)) == pytest.approx(90.0)
    assert angle_between((1.0, 0.0, 0.0), (0.0, 0.0, 0.0), (0.0, 0.0, 1.0)) == pytest.approx(90.0)


def test_angle_between_accepts_landmarks_and_stays_in_range() -> None:
    a = Landmark(0.0, -1.0, 0.0)
    vertex = Landmark(0.0, 0.0, 0.0)
    b = Landmark(0.0, 1.0, 0.0)
    assert angle_between(a, vertex, b) == pytest.approx(180.0)

    rng = np.random.default_rng(7)
    for _ in range(50):
        points = rng.normal(size=(3, 3))
        value = angle_between(points[0], points[1], points[2])
        assert 0.0 <= value <= 180.0


def test_angle_between_zero_length_vector_returns_zero() -> None:
    value = angle_between((1.0, 2.0, 3.0), (1.0, 2.0, 3.0), (4.0, 5.0, 6.0))
    assert value == 0.0
    assert not math.isnan(value)


def test_plane_projection_drops_the_orthogonal_axis() -> None:
    assert project_to_plane((1.0, 2.0, 3.0), "frontal").tolist() == [1.0, 2.0, 0.0]
    assert project_to_plane((1.0, 2.0, 3.0), "sagittal").tolist() == [0.0, 2.0, 3.0]
    assert project_to_plane((1.0, 2.0, 3.0), "transverse").tolist() == [1.0, 0.0, 3.0]
    with pytest.raises(ValueError):
        project_to_plane((1.0, 2.0, 3.0), "oblique")

    # Depth differences vanish in the frontal plane.
    assert angle_between((1.0, 0.0, 5.0), (0.0, 0.0, 0.0), (0.0, 1.0, -2.0), plane="frontal") == pytest.approx(90.0)


def test_distance_between_points() -> None:
    assert distance((0.0, 0.0, 0.0), (3.0, 4.0, 0.0)) == pytest.approx(5.0)
    assert distance({"x": 1.0, "y": 1.0}, (1.0, 1.0)) == pytest.approx(0.0)


def test_symmetry_index_values() -> None:
    assert symmetry_index(12.0, 12.0) == pytest.approx(0.0)
    assert symmetry_index(20.0, 10.0) == pytest.approx(50.0)
    assert symmetry_index(10.0, 20.0) == pytest.approx(50.0)
    assert symmetry_index(0.0, 0.0) == 0.0


def test_invert_3x3_matches_identity() -> None:
    matrix = np.array([[4.0, 7.0, 2.0], [3.0, 6.0, 1.0], [2.0, 5.0, 3.0]])
    inverse = invert_3x3(matrix)
    assert np.allclose(inverse @ matrix, np.eye(3))
    assert np.allclose(inverse, np.linalg.inv(matrix))


def test_invert_3x3_rejects_singular_matrix() -> None:
    singular = [[1.0, 2.0, 3.0], [2.0, 4.0, 6.0], [1.0, 0.0, 1.0]]
    with pytest.raises(DegenerateGeometryError):
        invert_3x3(singular)


def test_triangulation_recovers_projected_point() -> None:
    calibration = default_stereo_calibration()
    p1 = calibration.camera1.projection_array()
    p2 = calibration.camera2.projection_array()
    original = np.array([100.0, 50.0, 2000.0])

    pixel1 = project_point(p1, original)
    pixel2 = project_point(p2, original)
    assert pixel1 == pytest.approx(np.array([1010.0, 565.0]))
    assert pixel2 == pytest.approx(np.array([910.0, 565.0]))

    recovered = triangulate_point(pixel1, pixel2, p1, p2)
    assert recovered == pytest.approx(original, abs=1e-3)


def test_triangulation_with_generic_cameras() -> None:
    p1 = np.array([[800.0, 0.0, 320.0, 0.0], [0.0, 800.0, 240.0, 0.0], [0.0, 0.0, 1.0, 0.0]])
    p2 = np.array([[800.0, 0.0, 320.0, -80.0], [0.0, 800.0, 240.0, 10.0], [0.0, 0.0, 1.0, 0.1]])
    original = np.array([-0.3, 0.2, 4.0])
    recovered = triangulate_point(project_point(p1, original), project_point(p2, original), p1, p2)
    assert recovered == pytest.approx(original, abs=1e-3)
