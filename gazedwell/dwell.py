#!/usr/bin/env python3

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Dict, Hashable, Optional, Sequence

from .config import DwellConfig
from .events import DwellTrigger
from .stability import PointSample
from .targets import HitCache, Rect, StickySnap, TargetIndex, TargetResolver

logger = logging.getLogger(__name__)

MAX_THRESHOLD_INFLATION = 0.5


class DwellPhase(str, Enum):
    IDLE = "idle"
    TARGETING = "targeting"
    DWELLING = "dwelling"
    TRIGGERED = "triggered"
    COOLDOWN = "cooldown"


class DwellStateMachine:
    """Dwell timing on the resolved target.

    The target is tracked by handle only; its bounds are re-queried on every
    update and a handle whose bounds vanished counts as no target.
    """

    def __init__(self, config: DwellConfig) -> None:
        self.config = config
        self.resolver = TargetResolver(
            min_hits=config.min_hits,
            rect_padding_px=config.rect_padding_px,
            cache=HitCache(ttl_ms=config.hit_cache_ms),
        )
        self.snap = StickySnap(config.sticky_radius_px)
        self.phase = DwellPhase.IDLE
        self.current_target: Optional[Hashable] = None
        self.current_bounds: Optional[Rect] = None
        self.dwell_start: Optional[float] = None
        self.last_trigger_by_target: Dict[Hashable, float] = {}

    def reset(self, clear_cooldowns: bool = False) -> None:
        self._drop_target()
        self.snap.clear()
        self.resolver.cache.clear()
        if clear_cooldowns:
            self.last_trigger_by_target.clear()

    def _drop_target(self) -> None:
        self.phase = DwellPhase.IDLE
        self.current_target = None
        self.current_bounds = None
        self.dwell_start = None

    def effective_threshold(self, dispersion_ratio: float = 0.0) -> float:
        """Dwell threshold inflated in proportion to recent jitter."""
        ratio = max(0.0, min(1.0, float(dispersion_ratio)))
        inflation = min(MAX_THRESHOLD_INFLATION, self.config.jitter_gain * ratio)
        return self.config.threshold_ms * (1.0 + inflation)

    def _prune(self, t_ms: float) -> None:
        cooldown = self.config.cooldown_ms
        expired = [h for h, last in self.last_trigger_by_target.items() if t_ms - last >= cooldown]
        for h in expired:
            del self.last_trigger_by_target[h]

    def update(
        self,
        point: tuple[float, float],
        points: Sequence[PointSample],
        index: TargetIndex,
        stable: bool,
        t_ms: float,
        dispersion_ratio: float = 0.0,
    ) -> Optional[DwellTrigger]:
        self._prune(t_ms)
        if not stable:
            if self.current_target is not None:
                logger.debug("dwell reset: pointer unstable")
            self._drop_target()
            self.snap.clear()
            return None

        held = self.snap.hold(point, index)
        resolution = self.resolver.resolve(points, index, t_ms)
        if held is not None and (resolution is None or resolution.handle != held[0]):
            handle, rect = held
            centroid = point
        elif resolution is not None:
            handle, rect, centroid = resolution.handle, resolution.bounds, resolution.centroid
            self.snap.snap(handle)
        else:
            self._drop_target()
            return None

        self.current_bounds = rect
        if handle != self.current_target:
            self.current_target = handle
            self.dwell_start = t_ms
            self.phase = DwellPhase.TARGETING
            return None

        cx, cy = rect.center
        if math.hypot(centroid[0] - cx, centroid[1] - cy) > self.config.drift_px:
            self.dwell_start = t_ms
            self.phase = DwellPhase.TARGETING
            return None

        elapsed = t_ms - self.dwell_start
        last = self.last_trigger_by_target.get(handle)
        cooling = last is not None and t_ms - last < self.config.cooldown_ms
        if elapsed >= self.effective_threshold(dispersion_ratio) and not cooling:
            self.last_trigger_by_target[handle] = t_ms
            self.dwell_start = t_ms
            self.phase = DwellPhase.TRIGGERED
            logger.debug("dwell trigger on %r after %.0f ms", handle, elapsed)
            return DwellTrigger(target=handle, x=cx, y=cy, timestamp=t_ms, dwell_ms=elapsed)

        self.phase = DwellPhase.COOLDOWN if cooling else DwellPhase.DWELLING
        return None
