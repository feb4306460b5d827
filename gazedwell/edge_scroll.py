#!/usr/bin/env python3

from __future__ import annotations

from typing import Optional

from .config import EdgeScrollConfig
from .events import ScrollStep


class EdgeScroller:
    """Scroll steps while the pointer is held inside the top or bottom band."""

    def __init__(self, config: EdgeScrollConfig) -> None:
        self.config = config
        self._direction: Optional[str] = None
        self._hold_started: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._direction is not None

    def reset(self) -> None:
        self._direction = None
        self._hold_started = None

    def intensity(self, point: tuple[float, float], viewport: tuple[int, int]) -> tuple[Optional[str], float]:
        """Band the point is in and how deep, 0 at the inner edge and 1 at the screen edge."""
        height = float(viewport[1])
        band = self.config.band_ratio * height
        y = float(point[1])
        if y < band:
            return "up", min(1.0, (band - y) / band)
        if y > height - band:
            return "down", min(1.0, (y - (height - band)) / band)
        return None, 0.0

    def update(self, point: tuple[float, float], viewport: tuple[int, int], t_ms: float) -> Optional[ScrollStep]:
        if not self.config.enabled:
            return None
        direction, intensity = self.intensity(point, viewport)
        if direction is None or intensity < self.config.min_intensity:
            self.reset()
            return None
        if direction != self._direction or self._hold_started is None:
            self._direction = direction
            self._hold_started = t_ms
            return None
        if t_ms - self._hold_started < self.config.hold_ms:
            return None
        self._hold_started = t_ms
        return ScrollStep(
            direction=direction,
            magnitude=self.config.step_px * intensity,
            timestamp=t_ms,
            intensity=intensity,
        )
