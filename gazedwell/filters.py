#!/usr/bin/env python3

from __future__ import annotations

import math
import time
from collections import deque
from typing import Optional

import numpy as np

from .config import FilterConfig

MIN_DT_S = 1e-3


def now_ms() -> int:
    return int(time.perf_counter_ns() // 1_000_000)


class LowPassFilter:
    """Simple exponential smoother."""

    def __init__(self, alpha: float = 1.0) -> None:
        self.alpha = float(max(1e-5, min(1.0, alpha)))
        self.initialized = False
        self._last: Optional[float] = None

    def update_alpha(self, alpha: float) -> None:
        self.alpha = float(max(1e-5, min(1.0, alpha)))

    def seed(self, value: float) -> None:
        self._last = float(value)
        self.initialized = True

    @property
    def last(self) -> Optional[float]:
        return self._last

    def __call__(self, value: float) -> float:
        if not self.initialized:
            self.seed(value)
            return self._last
        # Incremental form: a constant input leaves the state exactly unchanged.
        self._last = self._last + self.alpha * (float(value) - self._last)
        return self._last


class OneEuroFilter:
    """Adaptive low-pass filter for one scalar axis."""

    def __init__(
        self,
        min_cutoff: float = 1.0,
        beta: float = 0.007,
        d_cutoff: float = 1.0,
    ) -> None:
        self.min_cutoff = float(min_cutoff)
        self.beta = float(beta)
        self.d_cutoff = float(max(1e-5, d_cutoff))

        self._initialized = False
        self._last_time: Optional[float] = None
        self._last_x: Optional[float] = None
        self._dx = LowPassFilter(alpha=1.0)
        self._x = LowPassFilter(alpha=1.0)

    @staticmethod
    def _alpha(cutoff: float, dt: float) -> float:
        dt = max(MIN_DT_S, float(dt))
        cutoff = max(1e-5, float(cutoff))
        tau = 1.0 / (2 * math.pi * cutoff)
        return 1.0 / (1.0 + tau / dt)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def reset(self, value: Optional[float] = None, timestamp: Optional[float] = None) -> None:
        self._initialized = False
        self._last_time = None
        self._last_x = None
        self._dx = LowPassFilter(alpha=1.0)
        self._x = LowPassFilter(alpha=1.0)
        if value is not None and timestamp is not None:
            self(value, timestamp)

    def __call__(self, value: float, timestamp: float) -> float:
        x = float(value)
        if not self._initialized:
            self._initialized = True
            self._last_time = timestamp
            self._last_x = x
            self._dx.seed(0.0)
            self._x.seed(x)
            return x

        dt = max(MIN_DT_S, timestamp - self._last_time)
        self._last_time = max(self._last_time, timestamp)

        dx = (x - self._last_x) / dt
        self._last_x = x

        self._dx.update_alpha(self._alpha(self.d_cutoff, dt))
        dx_hat = self._dx(dx)

        cutoff = self.min_cutoff + self.beta * abs(dx_hat)
        self._x.update_alpha(self._alpha(cutoff, dt))
        return self._x(x)


class MedianWindow:
    """Per-axis median of the last ``size`` points; size 1 is a passthrough."""

    def __init__(self, size: int = 5) -> None:
        self.size = max(1, int(size))
        self._points: deque[np.ndarray] = deque(maxlen=self.size)

    def reset(self, seed: Optional[np.ndarray] = None) -> None:
        self._points.clear()
        if seed is not None:
            self._points.append(np.asarray(seed, dtype=float))

    def __call__(self, value: np.ndarray) -> np.ndarray:
        self._points.append(np.asarray(value, dtype=float))
        if self.size == 1:
            return self._points[-1].copy()
        return np.median(np.stack(self._points), axis=0)


class JumpGuard:
    """Holds back a far-away point until the next frame confirms it."""

    PASS = "pass"
    HOLD = "hold"
    CONFIRMED = "confirmed"

    def __init__(self, jump_px: float) -> None:
        self.jump_px = float(jump_px)
        self.pending: Optional[np.ndarray] = None

    def reset(self) -> None:
        self.pending = None

    def check(self, value: np.ndarray, reference: Optional[np.ndarray]) -> str:
        if reference is None:
            self.pending = None
            return self.PASS
        if self.pending is not None and float(np.linalg.norm(value - self.pending)) <= self.jump_px:
            self.pending = None
            return self.CONFIRMED
        if float(np.linalg.norm(value - reference)) > self.jump_px:
            self.pending = np.array(value, dtype=float)
            return self.HOLD
        self.pending = None
        return self.PASS


class PointSmoother:
    """Jump guard, median window and per-axis one-euro filtering of 2D points.

    Timestamps are in milliseconds. The output of a held frame is the
    previous output, unchanged.
    """

    def __init__(self, config: FilterConfig) -> None:
        self.config = config
        self._guard = JumpGuard(config.jump_px)
        self._median = MedianWindow(config.median_window)
        self._x = self._make_axis()
        self._y = self._make_axis()
        self._last_output: Optional[np.ndarray] = None

    def _make_axis(self) -> OneEuroFilter:
        cfg = self.config
        return OneEuroFilter(min_cutoff=cfg.min_cutoff, beta=cfg.beta, d_cutoff=cfg.d_cutoff)

    @property
    def last_output(self) -> Optional[tuple[float, float]]:
        if self._last_output is None:
            return None
        return float(self._last_output[0]), float(self._last_output[1])

    @property
    def pending_jump(self) -> bool:
        return self._guard.pending is not None

    def reset(self) -> None:
        self._guard.reset()
        self._median.reset()
        self._x = self._make_axis()
        self._y = self._make_axis()
        self._last_output = None

    def __call__(self, point: tuple[float, float], t_ms: float) -> tuple[float, float]:
        value = np.asarray(point, dtype=float)
        t_s = float(t_ms) / 1000.0

        verdict = self._guard.check(value, self._last_output)
        if verdict == JumpGuard.HOLD:
            return self.last_output
        if verdict == JumpGuard.CONFIRMED:
            self._median.reset(seed=value)
            self._x.reset(float(value[0]), t_s)
            self._y.reset(float(value[1]), t_s)
            self._last_output = value.copy()
            return self.last_output

        med = self._median(value)
        self._last_output = np.array([self._x(med[0], t_s), self._y(med[1], t_s)], dtype=float)
        return self.last_output
