#!/usr/bin/env python3

from __future__ import annotations

import math
from typing import Any, Optional, Sequence

import numpy as np

LEFT_EYE_EAR_INDEXES = (33, 160, 158, 133, 153, 144)
RIGHT_EYE_EAR_INDEXES = (362, 385, 387, 263, 373, 380)

LEFT_EYE_CORNERS = (33, 133)
RIGHT_EYE_CORNERS = (362, 263)
LEFT_IRIS_INDEX = 468
RIGHT_IRIS_INDEX = 473

# First valid candidate wins; 1 is the MediaPipe nose tip.
NOSE_TIP_CANDIDATES = (1, 4, 5, 6, 45, 275)

MOUTH_INNER_VERT = (13, 14)
MOUTH_CORNERS = (78, 308)

HEAD_REQUIRED_POINTS = len(LEFT_EYE_CORNERS) + len(RIGHT_EYE_CORNERS) + 1


def point(face_landmarks: Any, index: int) -> Optional[np.ndarray]:
    """Return landmark ``index`` as a 2-vector, or None if it is missing or not finite."""
    if face_landmarks is None:
        return None
    try:
        pt = face_landmarks[index]
    except (IndexError, KeyError, TypeError):
        return None
    try:
        if hasattr(pt, "x") and hasattr(pt, "y"):
            x, y = float(pt.x), float(pt.y)
        else:
            x, y = float(pt[0]), float(pt[1])
    except (AttributeError, IndexError, TypeError, ValueError):
        return None
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    return np.array([x, y], dtype=float)


def mean_point(face_landmarks: Any, indexes: Sequence[int]) -> Optional[np.ndarray]:
    pts = [point(face_landmarks, idx) for idx in indexes]
    if any(p is None for p in pts):
        return None
    return np.mean(np.stack(pts), axis=0)


def first_point(face_landmarks: Any, indexes: Sequence[int]) -> Optional[np.ndarray]:
    for idx in indexes:
        pt = point(face_landmarks, idx)
        if pt is not None:
            return pt
    return None


def count_valid(face_landmarks: Any, indexes: Sequence[int]) -> int:
    return sum(1 for idx in indexes if point(face_landmarks, idx) is not None)


def eye_aspect_ratio(face_landmarks: Any, indices: tuple[int, int, int, int, int, int]) -> Optional[float]:
    pts = [point(face_landmarks, idx) for idx in indices]
    if any(p is None for p in pts):
        return None
    p1, p2, p3, p4, p5, p6 = pts
    h = float(np.linalg.norm(p1 - p4))
    if h <= 1e-8:
        return None
    return (float(np.linalg.norm(p2 - p6)) + float(np.linalg.norm(p3 - p5))) / (2.0 * h)


def eyes_closed(face_landmarks: Any, ear_threshold: float) -> Optional[bool]:
    """Both eyes below the EAR threshold; None when either eye cannot be measured."""
    left = eye_aspect_ratio(face_landmarks, LEFT_EYE_EAR_INDEXES)
    right = eye_aspect_ratio(face_landmarks, RIGHT_EYE_EAR_INDEXES)
    if left is None or right is None:
        return None
    return left < ear_threshold and right < ear_threshold


def mouth_open_ratio(face_landmarks: Any) -> Optional[float]:
    """Inner-lip gap divided by mouth width."""
    top = point(face_landmarks, MOUTH_INNER_VERT[0])
    bottom = point(face_landmarks, MOUTH_INNER_VERT[1])
    left = point(face_landmarks, MOUTH_CORNERS[0])
    right = point(face_landmarks, MOUTH_CORNERS[1])
    if top is None or bottom is None or left is None or right is None:
        return None
    width = float(np.linalg.norm(left - right))
    if width <= 1e-8:
        return None
    return float(np.linalg.norm(top - bottom)) / width


def iris_offset(face_landmarks: Any) -> Optional[np.ndarray]:
    """Mean iris displacement from the eye centre, each eye normalised by its width."""
    offsets = []
    for corners, iris_index in ((LEFT_EYE_CORNERS, LEFT_IRIS_INDEX), (RIGHT_EYE_CORNERS, RIGHT_IRIS_INDEX)):
        a = point(face_landmarks, corners[0])
        b = point(face_landmarks, corners[1])
        iris = point(face_landmarks, iris_index)
        if a is None or b is None or iris is None:
            return None
        width = float(np.linalg.norm(a - b))
        if width <= 1e-6:
            return None
        offsets.append((iris - (a + b) * 0.5) / width)
    return (offsets[0] + offsets[1]) * 0.5
