#!/usr/bin/env python3

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy import stats

from .config import StabilityConfig

SPEED_TRIM = 0.1


@dataclass(frozen=True)
class PointSample:
    x: float
    y: float
    t: float


class PointWindow:
    """Recent points bounded by count and by age."""

    def __init__(self, max_count: int, max_age_ms: float) -> None:
        self.max_count = int(max_count)
        self.max_age_ms = float(max_age_ms)
        self._points: deque[PointSample] = deque(maxlen=self.max_count)

    def __len__(self) -> int:
        return len(self._points)

    def clear(self) -> None:
        self._points.clear()

    def add(self, x: float, y: float, t_ms: float) -> None:
        self._points.append(PointSample(float(x), float(y), float(t_ms)))
        self.evict(t_ms)

    def evict(self, now_ms: float) -> None:
        while self._points and now_ms - self._points[0].t > self.max_age_ms:
            self._points.popleft()

    def points(self) -> list[PointSample]:
        return list(self._points)


def robust_dispersion(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(stats.median_abs_deviation(np.asarray(values, dtype=float), scale="normal"))


def trimmed_speed(points: Sequence[PointSample]) -> float:
    """Mean frame-to-frame speed in px/s with the fastest and slowest 10% dropped."""
    speeds = []
    for prev, cur in zip(points, points[1:]):
        dt = max(1.0, cur.t - prev.t) / 1000.0
        speeds.append(math.hypot(cur.x - prev.x, cur.y - prev.y) / dt)
    if not speeds:
        return 0.0
    return float(stats.trim_mean(np.array(speeds, dtype=float), SPEED_TRIM))


@dataclass(frozen=True)
class StabilityMetrics:
    dispersion_x: float
    dispersion_y: float
    speed: float
    dispersion_limit: float
    speed_limit: float
    stable_now: bool

    @property
    def dispersion_ratio(self) -> float:
        if self.dispersion_limit <= 0.0:
            return 0.0
        return max(self.dispersion_x, self.dispersion_y) / self.dispersion_limit


@dataclass(frozen=True)
class StabilityState:
    stable_since: Optional[float] = None
    unstable_since: Optional[float] = None
    is_stable: bool = False


class StabilityGate:
    """Robust point-cloud test plus time-gated hysteresis on the result."""

    def __init__(self, config: StabilityConfig) -> None:
        self.config = config
        self.state = StabilityState()
        self.last_metrics: Optional[StabilityMetrics] = None

    def reset(self) -> None:
        self.state = StabilityState()
        self.last_metrics = None

    def limits(self, viewport: tuple[int, int], calibration_samples: int = 0) -> tuple[float, float]:
        cfg = self.config
        diag = math.hypot(float(viewport[0]), float(viewport[1]))
        tighten = max(cfg.min_tighten, 1.0 - cfg.tighten_per_sample * max(0, int(calibration_samples)))
        return cfg.dispersion_ratio * diag * tighten, cfg.speed_ratio * diag * tighten

    def evaluate(
        self,
        points: Sequence[PointSample],
        viewport: tuple[int, int],
        calibration_samples: int = 0,
    ) -> Optional[StabilityMetrics]:
        """Metrics for the window, or None when it holds too few points."""
        if len(points) < self.config.min_samples:
            return None
        dispersion_limit, speed_limit = self.limits(viewport, calibration_samples)
        disp_x = robust_dispersion([p.x for p in points])
        disp_y = robust_dispersion([p.y for p in points])
        speed = trimmed_speed(points)
        return StabilityMetrics(
            dispersion_x=disp_x,
            dispersion_y=disp_y,
            speed=speed,
            dispersion_limit=dispersion_limit,
            speed_limit=speed_limit,
            stable_now=disp_x <= dispersion_limit and disp_y <= dispersion_limit and speed <= speed_limit,
        )

    def classify(self, stable_now: bool, t_ms: float) -> StabilityState:
        """Advance the hysteresis with one stable-now sample."""
        cfg = self.config
        s = self.state
        if stable_now:
            stable_since = s.stable_since if s.stable_since is not None else t_ms
            is_stable = s.is_stable or (t_ms - stable_since >= cfg.enter_ms)
            self.state = StabilityState(stable_since=stable_since, unstable_since=None, is_stable=is_stable)
        else:
            unstable_since = s.unstable_since if s.unstable_since is not None else t_ms
            is_stable = s.is_stable and (t_ms - unstable_since < cfg.exit_ms)
            self.state = StabilityState(stable_since=None, unstable_since=unstable_since, is_stable=is_stable)
        return self.state

    def update(
        self,
        points: Sequence[PointSample],
        viewport: tuple[int, int],
        t_ms: float,
        calibration_samples: int = 0,
    ) -> StabilityState:
        metrics = self.evaluate(points, viewport, calibration_samples)
        self.last_metrics = metrics
        return self.classify(metrics is not None and metrics.stable_now, t_ms)
