#!/usr/bin/env python3

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from .config import GestureConfig
from .events import SyntheticPointerEvent
from .landmarks import eyes_closed, mouth_open_ratio

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HoldRelease:
    started_ms: float
    ended_ms: float

    @property
    def duration_ms(self) -> float:
        return self.ended_ms - self.started_ms


class HoldGestureDetector:
    """Measures how long a binary gesture was held, reported on release."""

    def __init__(self, config: GestureConfig) -> None:
        self.config = config
        self._active_since: Optional[float] = None

    @property
    def holding(self) -> bool:
        return self._active_since is not None

    def reset(self) -> None:
        self._active_since = None

    def update(self, active: Optional[bool], t_ms: float) -> Optional[HoldRelease]:
        # Frames where the gesture cannot be measured leave the hold untouched.
        if active is None:
            return None
        if active:
            if self._active_since is None:
                self._active_since = t_ms
            return None
        if self._active_since is None:
            return None
        release = HoldRelease(started_ms=self._active_since, ended_ms=t_ms)
        self._active_since = None
        return release

    def classify(self, duration_ms: float) -> Optional[tuple[str, str]]:
        """``(kind, button)`` for a hold, None when it is too short to count."""
        cfg = self.config
        if duration_ms >= cfg.long_hold_ms:
            return "long", cfg.long_button
        if duration_ms >= cfg.short_hold_ms:
            return "short", cfg.short_button
        return None


def synthesize_click(point: tuple[float, float], button: str) -> tuple[SyntheticPointerEvent, ...]:
    x, y = float(point[0]), float(point[1])
    final = "contextmenu" if button == "right" else "click"
    return tuple(
        SyntheticPointerEvent(type=name, x=x, y=y, button=button)
        for name in ("pointermove", "pointerdown", "pointerup", final)
    )


class MouthCalibration:
    """Closed-then-open mouth ratio capture; threshold sits part way between the two."""

    def __init__(self, samples_needed: int = 20, open_ratio: float = 0.7) -> None:
        self.samples_needed = int(samples_needed)
        self.open_ratio = float(open_ratio)
        self.closed: list[float] = []
        self.opened: list[float] = []

    @property
    def stage(self) -> str:
        if len(self.closed) < self.samples_needed:
            return "closed"
        if len(self.opened) < self.samples_needed:
            return "open"
        return "done"

    def add(self, ratio: Optional[float]) -> str:
        if ratio is None:
            return self.stage
        stage = self.stage
        if stage == "closed":
            self.closed.append(float(ratio))
        elif stage == "open":
            self.opened.append(float(ratio))
        return self.stage

    @property
    def threshold(self) -> Optional[float]:
        if self.stage != "done":
            return None
        closed = float(np.mean(self.closed))
        opened = float(np.mean(self.opened))
        if opened <= closed:
            logger.warning("mouth calibration rejected: open %.3f <= closed %.3f", opened, closed)
            return None
        return closed + (opened - closed) * self.open_ratio


def gesture_active(face_landmarks: Any, config: GestureConfig, mouth_threshold: Optional[float] = None) -> Optional[bool]:
    """Whether the configured gesture is currently held; None when unmeasurable."""
    if face_landmarks is None or config.source == "none":
        return None
    if config.source == "blink":
        return eyes_closed(face_landmarks, config.blink_ear_threshold)
    ratio = mouth_open_ratio(face_landmarks)
    if ratio is None:
        return None
    threshold = config.mouth_threshold if mouth_threshold is None else mouth_threshold
    return ratio > threshold
