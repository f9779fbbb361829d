"""Utility helpers for landmark sequence filtering."""

from .filtering import fill_low_visibility, smooth_frames, smooth_landmarks, smooth_trajectory

__all__ = [
    "fill_low_visibility",
    "smooth_frames",
    "smooth_landmarks",
    "smooth_trajectory",
]
