#!/usr/bin/env python3

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from .calibration import clamp_to_viewport

logger = logging.getLogger(__name__)

MIN_RANGE_H = 0.24
MIN_RANGE_V = 0.22
MIN_SAMPLES_PER_STEP = 4
MAX_SAMPLES_PER_STEP = 120
STEP_CAPTURE_TIMEOUT_MS = 1500
DUPLICATE_EPS = 1e-4
TRIM_FRACTION = 0.35


@dataclass(frozen=True)
class RangeCalibration:
    """Per-direction head ranges around a measured centre.

    Half of the screen on each side of centre corresponds to one range in
    head-vector units, so ``cx - left`` lands on the left edge.
    """

    cx: float = 0.0
    cy: float = 0.0
    left: float = MIN_RANGE_H
    right: float = MIN_RANGE_H
    up: float = MIN_RANGE_V
    down: float = MIN_RANGE_V

    def __post_init__(self) -> None:
        for name in ("left", "right", "up", "down"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0.0:
                raise ValueError(f"range {name} must be positive, got {value}")

    def normalized(self, signal: tuple[float, float]) -> tuple[float, float]:
        dx = float(signal[0]) - self.cx
        dy = float(signal[1]) - self.cy
        x = 0.5 + 0.5 * dx / (self.right if dx >= 0.0 else self.left)
        y = 0.5 + 0.5 * dy / (self.down if dy >= 0.0 else self.up)
        return float(max(0.0, min(1.0, x))), float(max(0.0, min(1.0, y)))

    def apply(self, signal: tuple[float, float], viewport: tuple[int, int]) -> tuple[float, float]:
        x, y = self.normalized(signal)
        return clamp_to_viewport(x * viewport[0], y * viewport[1], viewport)


class RangeStep(str, Enum):
    CENTER = "center"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"
    CENTER_AGAIN = "center_again"


STEP_ORDER = (
    RangeStep.CENTER,
    RangeStep.LEFT,
    RangeStep.RIGHT,
    RangeStep.UP,
    RangeStep.DOWN,
    RangeStep.CENTER_AGAIN,
)


def robust_average(samples: list[tuple[float, float]]) -> Optional[tuple[float, float]]:
    """Mean of the middle samples after sorting by x then y."""
    if not samples:
        return None
    cut = int(len(samples) * TRIM_FRACTION)
    ordered = sorted(samples)
    trimmed = ordered[cut : len(ordered) - cut]
    usable = trimmed if len(trimmed) >= MIN_SAMPLES_PER_STEP else samples
    avg = np.mean(np.array(usable, dtype=float), axis=0)
    return float(avg[0]), float(avg[1])


class RangeCalibrationSession:
    """Directed-look steps: centre, left, right, up, down, centre again."""

    def __init__(self) -> None:
        self.step_index = 0
        self.averages: dict[RangeStep, tuple[float, float]] = {}
        self._samples: list[tuple[float, float]] = []
        self._step_started_ms: Optional[float] = None

    @property
    def current_step(self) -> Optional[RangeStep]:
        if self.step_index >= len(STEP_ORDER):
            return None
        return STEP_ORDER[self.step_index]

    @property
    def complete(self) -> bool:
        return self.step_index >= len(STEP_ORDER)

    @property
    def capturing(self) -> bool:
        return self._step_started_ms is not None

    def begin_step(self, now_ms: float) -> None:
        if self.complete:
            return
        self._samples = []
        self._step_started_ms = now_ms

    def add_frame(self, signal: Optional[tuple[float, float]], now_ms: float) -> bool:
        """Collect one head vector; False once the step capture window is closed."""
        if self._step_started_ms is None:
            return False
        if now_ms - self._step_started_ms >= STEP_CAPTURE_TIMEOUT_MS or len(self._samples) >= MAX_SAMPLES_PER_STEP:
            return False
        if signal is None:
            return True
        nx, ny = float(signal[0]), float(signal[1])
        if not (math.isfinite(nx) and math.isfinite(ny)):
            return True
        if self._samples:
            lx, ly = self._samples[-1]
            if abs(lx - nx) < DUPLICATE_EPS and abs(ly - ny) < DUPLICATE_EPS:
                return True
        self._samples.append((nx, ny))
        return True

    def confirm_step(self) -> bool:
        """Close the current step; False (step kept) when too few frames were captured."""
        step = self.current_step
        self._step_started_ms = None
        if step is None:
            return False
        if len(self._samples) < MIN_SAMPLES_PER_STEP:
            logger.info("range step %s captured only %d frames, retry", step.value, len(self._samples))
            return False
        self.averages[step] = robust_average(self._samples)
        self._samples = []
        self.step_index += 1
        return True

    def finalize(self) -> RangeCalibration:
        primary = self.averages.get(RangeStep.CENTER, (0.0, 0.0))
        cx, cy = self.averages.get(RangeStep.CENTER_AGAIN, primary)
        left = self.averages.get(RangeStep.LEFT, primary)
        right = self.averages.get(RangeStep.RIGHT, primary)
        up = self.averages.get(RangeStep.UP, primary)
        down = self.averages.get(RangeStep.DOWN, primary)
        calibration = RangeCalibration(
            cx=cx,
            cy=cy,
            left=max(MIN_RANGE_H, abs(cx - left[0])),
            right=max(MIN_RANGE_H, abs(right[0] - cx)),
            up=max(MIN_RANGE_V, abs(cy - up[1])),
            down=max(MIN_RANGE_V, abs(down[1] - cy)),
        )
        logger.info("range calibration %s", calibration)
        return calibration
