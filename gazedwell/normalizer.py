#!/usr/bin/env python3

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from .config import NormalizerConfig
from .landmarks import (
    LEFT_EYE_CORNERS,
    NOSE_TIP_CANDIDATES,
    RIGHT_EYE_CORNERS,
    count_valid,
    first_point,
    mean_point,
)

logger = logging.getLogger(__name__)

POSE_LIMIT = 0.7
# Nose tip sits roughly this many inter-eye distances below the eye line on a frontal face.
NEUTRAL_NOSE_DROP = 0.55
NOSE_POINTER_CONFIDENCE = 0.35

_POSE_CONFIDENCE_POINTS = LEFT_EYE_CORNERS + RIGHT_EYE_CORNERS + NOSE_TIP_CANDIDATES


def _clamp(v: float, lo: float, hi: float) -> float:
    return float(max(lo, min(hi, v)))


@dataclass(frozen=True)
class GazePrediction:
    x: float
    y: float
    score: Optional[float] = None
    normalized: bool = False


@dataclass(frozen=True)
class FrameInput:
    """One completed detection result handed over by the acquisition layer."""

    timestamp_ms: float
    viewport: tuple[int, int]
    landmarks: Any = None
    face_score: Optional[float] = None
    gaze: Optional[GazePrediction] = None


@dataclass(frozen=True)
class PoseMeasurement:
    yaw: float
    pitch: float
    roll: float
    confidence: float


@dataclass(frozen=True)
class NormalizedSignal:
    signal: tuple[float, float]
    confidence: float
    kind: str
    pose: Optional[PoseMeasurement] = None


def _head_frame(face_landmarks: Any) -> Optional[tuple[float, float, float]]:
    left = mean_point(face_landmarks, LEFT_EYE_CORNERS)
    right = mean_point(face_landmarks, RIGHT_EYE_CORNERS)
    nose = first_point(face_landmarks, NOSE_TIP_CANDIDATES)
    if left is None or right is None or nose is None:
        return None

    axis = right - left
    iod = float(np.linalg.norm(axis))
    if iod <= 1e-6:
        return None
    u = axis / iod
    v = np.array([-u[1], u[0]], dtype=float)
    rel = nose - (left + right) * 0.5
    nx = float(np.dot(rel, u)) / iod
    ny = float(np.dot(rel, v)) / iod
    roll = math.atan2(float(axis[1]), float(axis[0]))
    return nx, ny, roll


def head_vector(face_landmarks: Any, mirror: bool = True) -> Optional[tuple[float, float]]:
    """Nose tip position in the eye-line frame, in inter-eye distances.

    ``nx`` runs along the eye line and ``ny`` along its perpendicular (down
    is positive). Front-camera feeds are mirrored, so ``mirror`` flips ``nx``
    to make looking right move the pointer right.
    """
    frame = _head_frame(face_landmarks)
    if frame is None:
        return None
    nx, ny, _ = frame
    if mirror:
        nx = -nx
    return nx, ny


def measure_pose(face_landmarks: Any, mirror: bool = True) -> Optional[PoseMeasurement]:
    frame = _head_frame(face_landmarks)
    if frame is None:
        return None
    nx, ny, roll = frame
    if mirror:
        nx = -nx
    confidence = count_valid(face_landmarks, _POSE_CONFIDENCE_POINTS) / float(len(_POSE_CONFIDENCE_POINTS))
    return PoseMeasurement(
        yaw=_clamp(nx, -POSE_LIMIT, POSE_LIMIT),
        pitch=_clamp(ny - NEUTRAL_NOSE_DROP, -POSE_LIMIT, POSE_LIMIT),
        roll=_clamp(roll, -POSE_LIMIT, POSE_LIMIT),
        confidence=confidence,
    )


def gaze_point(
    prediction: Optional[GazePrediction], viewport: tuple[int, int]
) -> Optional[tuple[tuple[float, float], float]]:
    if prediction is None:
        return None
    try:
        x, y = float(prediction.x), float(prediction.y)
        score = 1.0 if prediction.score is None else float(prediction.score)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(x) and math.isfinite(y) and math.isfinite(score)):
        return None
    if prediction.normalized:
        x *= float(viewport[0])
        y *= float(viewport[1])
    return (x, y), _clamp(score, 0.0, 1.0)


def nose_pointer(
    face_landmarks: Any, viewport: tuple[int, int], mirror: bool = True
) -> Optional[tuple[tuple[float, float], float]]:
    """Coarse pointer straight from the nose tip's image position."""
    nose = first_point(face_landmarks, NOSE_TIP_CANDIDATES)
    if nose is None:
        return None
    x_norm = 1.0 - float(nose[0]) if mirror else float(nose[0])
    return (x_norm * viewport[0], float(nose[1]) * viewport[1]), NOSE_POINTER_CONFIDENCE


def normalize_frame(frame: FrameInput, mode: str, mirror: bool = True) -> Optional[NormalizedSignal]:
    """Canonical signal for one frame, or None when required inputs are missing."""
    pose = measure_pose(frame.landmarks, mirror) if frame.landmarks is not None else None
    face_score = 1.0
    if frame.face_score is not None:
        try:
            face_score = _clamp(float(frame.face_score), 0.0, 1.0)
        except (TypeError, ValueError):
            face_score = 0.0

    if mode == "head":
        vec = head_vector(frame.landmarks, mirror)
        if vec is None or pose is None:
            return None
        return NormalizedSignal(signal=vec, confidence=pose.confidence * face_score, kind="head", pose=pose)

    predicted = gaze_point(frame.gaze, frame.viewport)
    if predicted is not None:
        pt, score = predicted
        return NormalizedSignal(signal=pt, confidence=score, kind="gaze", pose=pose)

    fallback = nose_pointer(frame.landmarks, frame.viewport, mirror)
    if fallback is None:
        return None
    pt, score = fallback
    return NormalizedSignal(signal=pt, confidence=score * face_score, kind="nose", pose=pose)


@dataclass(frozen=True)
class PoseBaseline:
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    sample_count: int = 0
    ready: bool = False


class PoseBaselineTracker:
    """Running mean of the user's neutral pose, frozen once ready."""

    def __init__(self, config: NormalizerConfig) -> None:
        self.config = config
        self.baseline = PoseBaseline()
        self._started_ms: Optional[float] = None

    def invalidate(self) -> None:
        self.baseline = PoseBaseline()
        self._started_ms = None

    def _near_neutral(self, pose: PoseMeasurement) -> bool:
        tol = self.config.neutral_tolerance
        b = self.baseline
        if b.sample_count == 0:
            return abs(pose.yaw) <= tol and abs(pose.roll) <= tol
        return abs(pose.yaw - b.yaw) <= tol and abs(pose.pitch - b.pitch) <= tol and abs(pose.roll - b.roll) <= tol

    def update(self, pose: Optional[PoseMeasurement], t_ms: float, capturing: bool = False) -> PoseBaseline:
        if self.baseline.ready:
            return self.baseline
        if self._started_ms is None:
            self._started_ms = t_ms
        elapsed = t_ms - self._started_ms
        cfg = self.config

        if (
            pose is not None
            and pose.confidence >= cfg.min_pose_confidence
            and elapsed <= cfg.baseline_warmup_ms
            and self._near_neutral(pose)
        ):
            b = self.baseline
            n = b.sample_count + 1
            self.baseline = PoseBaseline(
                yaw=b.yaw + (pose.yaw - b.yaw) / n,
                pitch=b.pitch + (pose.pitch - b.pitch) / n,
                roll=b.roll + (pose.roll - b.roll) / n,
                sample_count=n,
            )

        needed = cfg.baseline_early_samples if capturing else cfg.baseline_min_samples
        if self.baseline.sample_count >= needed:
            b = self.baseline
            self.baseline = PoseBaseline(b.yaw, b.pitch, b.roll, b.sample_count, ready=True)
            logger.debug("pose baseline ready after %d samples", b.sample_count)
        elif elapsed >= cfg.baseline_fallback_ms:
            logger.warning(
                "pose baseline did not settle within %d ms (%d samples), using zero baseline",
                cfg.baseline_fallback_ms,
                self.baseline.sample_count,
            )
            self.baseline = PoseBaseline(ready=True)
        return self.baseline

    def delta(self, pose: Optional[PoseMeasurement]) -> tuple[float, float]:
        if pose is None or not self.baseline.ready:
            return 0.0, 0.0
        return pose.yaw - self.baseline.yaw, pose.pitch - self.baseline.pitch
