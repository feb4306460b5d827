#!/usr/bin/env python3

from __future__ import annotations

import logging
from typing import Any, List, Optional

from .calibration import CaptureKind, calibration_grid

logger = logging.getLogger(__name__)

PREPARE_MS = 350
SAMPLE_MS = 700
BETWEEN_MS = 180


class CalibrationSequencer:
    """Walks a calibration grid: show the dot, let the eyes settle, sample, move on.

    Each grid point is visited once per wanted capture. ``tick`` is called
    from the host loop and opens and closes the pipeline's capture sessions.
    """

    def __init__(
        self,
        pipeline: Any,
        viewport: tuple[int, int],
        stage: str = "primary",
        prepare_ms: float = PREPARE_MS,
        sample_ms: float = SAMPLE_MS,
        between_ms: float = BETWEEN_MS,
    ) -> None:
        points, captures = calibration_grid(stage, viewport)
        self.pipeline = pipeline
        self.stage = stage
        self.prepare_ms = float(prepare_ms)
        self.sample_ms = float(sample_ms)
        self.between_ms = float(between_ms)
        self.targets = [p for p in points for _ in range(captures)]
        self.index = 0
        self.step = "prepare"
        self._step_started: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.index >= len(self.targets)

    @property
    def current_target(self) -> Optional[tuple[float, float]]:
        if self.done:
            return None
        return self.targets[self.index]

    def _advance(self, step: str, now: float) -> None:
        self.step = step
        self._step_started = now

    def tick(self, now: float) -> List[Any]:
        if self.done:
            return []
        if self._step_started is None:
            self._step_started = now
        elapsed = now - self._step_started
        events: List[Any] = []

        if self.step == "prepare" and elapsed >= self.prepare_ms:
            events.extend(
                self.pipeline.begin_capture(self.current_target, CaptureKind.EXPLICIT, window_ms=self.sample_ms, now=now)
            )
            self._advance("sample", now)
        elif self.step == "sample" and elapsed >= self.sample_ms:
            if self.pipeline.state.capture is not None:
                events.extend(self.pipeline.finalize(now=now))
            self._advance("between", now)
        elif self.step == "between" and elapsed >= self.between_ms:
            self.index += 1
            self._advance("prepare", now)
            if self.done:
                logger.info("%s calibration sequence finished", self.stage)
        return events
