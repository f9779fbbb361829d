"""Pure vector geometry used by every analysis stage.

Points may be `Landmark` instances, mappings with x/y/z keys, or 2D/3D
sequences. Nothing here logs or consults configuration.
"""

from __future__ import annotations

import math
from typing import Any, Mapping, Optional, Sequence

import numpy as np

SINGULAR_TOLERANCE = 1e-10

# Axis dropped for each anatomical plane (x=0, y=1, z=2).
PLANE_DROPPED_AXIS = {"sagittal": 0, "frontal": 2, "transverse": 1}


class DegenerateGeometryError(ValueError):
    """Raised when a linear system has no stable solution."""


def as_vector(point: Any) -> np.ndarray:
    """Return ``point`` as a float array of length 3 (2D inputs get z=0)."""
    if hasattr(point, "x") and hasattr(point, "y"):
        return np.array([point.x, point.y, getattr(point, "z", 0.0)], dtype=float)
    if isinstance(point, Mapping):
        return np.array([point["x"], point["y"], point.get("z", 0.0)], dtype=float)
    arr = np.asarray(point, dtype=float).reshape(-1)
    if arr.size == 2:
        return np.array([arr[0], arr[1], 0.0], dtype=float)
    if arr.size < 2:
        raise ValueError(f"Expected a 2D or 3D point, received {point!r}.")
    return arr[:3].astype(float)


def project_to_plane(vector: Any, plane: Optional[str]) -> np.ndarray:
    """Zero the axis orthogonal to ``plane``; ``None`` or ``"3d"`` returns the vector unchanged."""
    vec = as_vector(vector)
    if plane is None or plane == "3d":
        return vec
    try:
        axis = PLANE_DROPPED_AXIS[plane]
    except KeyError as exc:
        raise ValueError(f"Unknown anatomical plane {plane!r}; expected one of {sorted(PLANE_DROPPED_AXIS)}.") from exc
    projected = vec.copy()
    projected[axis] = 0.0
    return projected


def vector_angle(v1: Any, v2: Any) -> float:
    """Angle between two vectors in degrees, 0.0 when either has zero length."""
    a = as_vector(v1)
    b = as_vector(v2)
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        return 0.0
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    cosine = float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))
    return float(np.degrees(np.arccos(cosine)))


def angle_between(a: Any, vertex: Any, b: Any, plane: Optional[str] = None) -> float:
    """Angle at ``vertex`` formed by ``a``-``vertex``-``b`` in degrees [0, 180].

    With ``plane`` set, both vectors are projected first (sagittal drops x,
    frontal drops z, transverse drops y). Degenerate input returns 0.0.
    """
    center = as_vector(vertex)
    v1 = project_to_plane(as_vector(a) - center, plane)
    v2 = project_to_plane(as_vector(b) - center, plane)
    return vector_angle(v1, v2)


def distance(a: Any, b: Any) -> float:
    """Euclidean distance; 2D inputs are compared in the plane."""
    return float(np.linalg.norm(as_vector(a) - as_vector(b)))


def midpoint(a: Any, b: Any) -> np.ndarray:
    return (as_vector(a) + as_vector(b)) / 2.0


def symmetry_index(left: float, right: float) -> float:
    """Bilateral symmetry index ``|L - R| / max(|L|, |R|) * 100``; 0 when both sides are 0."""
    reference = max(abs(left), abs(right))
    if reference == 0.0:
        return 0.0
    return abs(left - right) / reference * 100.0


def determinant_3x3(matrix: Sequence[Sequence[float]]) -> float:
    m = np.asarray(matrix, dtype=float)
    return float(
        m[0, 0] * (m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1])
        - m[0, 1] * (m[1, 0] * m[2, 2] - m[1, 2] * m[2, 0])
        + m[0, 2] * (m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0])
    )


def invert_3x3(matrix: Sequence[Sequence[float]]) -> np.ndarray:
    """Closed-form cofactor inverse of a 3x3 matrix.

    Raises `DegenerateGeometryError` when ``|det| < 1e-10``.
    """
    m = np.asarray(matrix, dtype=float)
    if m.shape != (3, 3):
        raise ValueError(f"invert_3x3 expects a 3x3 matrix, received shape {m.shape}.")
    det = determinant_3x3(m)
    if not math.isfinite(det) or abs(det) < SINGULAR_TOLERANCE:
        raise DegenerateGeometryError(f"Matrix is singular (det={det:.3e}).")

    cofactors = np.array(
        [
            [
                m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1],
                -(m[1, 0] * m[2, 2] - m[1, 2] * m[2, 0]),
                m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0],
            ],
            [
                -(m[0, 1] * m[2, 2] - m[0, 2] * m[2, 1]),
                m[0, 0] * m[2, 2] - m[0, 2] * m[2, 0],
                -(m[0, 0] * m[2, 1] - m[0, 1] * m[2, 0]),
            ],
            [
                m[0, 1] * m[1, 2] - m[0, 2] * m[1, 1],
                -(m[0, 0] * m[1, 2] - m[0, 2] * m[1, 0]),
                m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0],
            ],
        ],
        dtype=float,
    )
    # Adjugate is the transposed cofactor matrix.
    return cofactors.T / det


def triangulate_point(
    pixel1: Sequence[float],
    pixel2: Sequence[float],
    projection1: Sequence[Sequence[float]],
    projection2: Sequence[Sequence[float]],
) -> np.ndarray:
    """Direct linear triangulation of one point seen by two calibrated cameras.

    For each view (u, v) and 3x4 projection P, two rows ``u*P[2] - P[0]`` and
    ``v*P[2] - P[1]`` are stacked into ``A X = b`` (A is 4x3). The least-squares
    solution is obtained from the normal equations ``A^T A X = A^T b`` using the
    closed-form 3x3 inverse.
    """
    p1 = np.asarray(projection1, dtype=float)
    p2 = np.asarray(projection2, dtype=float)
    if p1.shape != (3, 4) or p2.shape != (3, 4):
        raise ValueError("Projection matrices must be 3x4.")
    u1, v1 = float(pixel1[0]), float(pixel1[1])
    u2, v2 = float(pixel2[0]), float(pixel2[1])

    rows = [
        u1 * p1[2] - p1[0],
        v1 * p1[2] - p1[1],
        u2 * p2[2] - p2[0],
        v2 * p2[2] - p2[1],
    ]
    a_matrix = np.array([row[:3] for row in rows], dtype=float)
    b_vector = np.array([-row[3] for row in rows], dtype=float)

    normal = a_matrix.T @ a_matrix
    rhs = a_matrix.T @ b_vector
    return invert_3x3(normal) @ rhs


def project_point(projection: Sequence[Sequence[float]], point: Any) -> np.ndarray:
    """Project a 3D point through a 3x4 camera matrix to pixel (u, v)."""
    p = np.asarray(projection, dtype=float)
    homogeneous = p @ np.append(as_vector(point), 1.0)
    if abs(homogeneous[2]) < SINGULAR_TOLERANCE:
        raise DegenerateGeometryError("Point lies on the camera plane; projection undefined.")
    return homogeneous[:2] / homogeneous[2]


__all__ = [
    "DegenerateGeometryError",
    "SINGULAR_TOLERANCE",
    "as_vector",
    "project_to_plane",
    "vector_angle",
    "angle_between",
    "distance",
    "midpoint",
    "symmetry_index",
    "determinant_3x3",
    "invert_3x3",
    "triangulate_point",
    "project_point",
]
