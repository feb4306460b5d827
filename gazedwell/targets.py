#!/usr/bin/env python3

from __future__ import annotations

import json
import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, Hashable, Iterable, Optional, Protocol, Sequence

from .stability import PointSample


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    @property
    def center(self) -> tuple[float, float]:
        return self.left + self.width / 2.0, self.top + self.height / 2.0

    def contains(self, x: float, y: float, padding: float = 0.0) -> bool:
        return (
            self.left - padding <= x <= self.right + padding
            and self.top - padding <= y <= self.bottom + padding
        )


class TargetIndex(Protocol):
    """Query-by-point view of the page. Handles are opaque and never owned."""

    def element_at(self, x: float, y: float) -> Optional[Hashable]:
        ...

    def bounds(self, handle: Hashable) -> Optional[Rect]:
        ...


class StaticTargetIndex:
    """In-memory rectangles; later registrations sit on top."""

    def __init__(self, targets: Optional[Iterable[tuple[Hashable, Rect]]] = None) -> None:
        self._rects: dict[Hashable, Rect] = {}
        for handle, rect in targets or ():
            self.add(handle, rect)

    def add(self, handle: Hashable, rect: Rect) -> None:
        self._rects.pop(handle, None)
        self._rects[handle] = rect

    def remove(self, handle: Hashable) -> None:
        self._rects.pop(handle, None)

    def element_at(self, x: float, y: float) -> Optional[Hashable]:
        for handle, rect in reversed(list(self._rects.items())):
            if rect.contains(x, y):
                return handle
        return None

    def bounds(self, handle: Hashable) -> Optional[Rect]:
        return self._rects.get(handle)

    @classmethod
    def from_json(cls, text: str) -> "StaticTargetIndex":
        """Load ``[{"id": ..., "left": .., "top": .., "width": .., "height": ..}, ...]``."""
        data: Any = json.loads(text)
        index = cls()
        for entry in data:
            index.add(
                entry["id"],
                Rect(float(entry["left"]), float(entry["top"]), float(entry["width"]), float(entry["height"])),
            )
        return index


class HitCache:
    """Short-lived memo of element_at results on a coarse pixel grid."""

    def __init__(self, ttl_ms: float = 100.0, grid_px: int = 4) -> None:
        self.ttl_ms = float(ttl_ms)
        self.grid_px = max(1, int(grid_px))
        self._entries: dict[tuple[int, int], tuple[float, Optional[Hashable]]] = {}

    def clear(self) -> None:
        self._entries.clear()

    def lookup(self, index: TargetIndex, x: float, y: float, now_ms: float) -> Optional[Hashable]:
        key = (int(x // self.grid_px), int(y // self.grid_px))
        hit = self._entries.get(key)
        if hit is not None and now_ms - hit[0] <= self.ttl_ms:
            return hit[1]
        handle = index.element_at(x, y)
        self._entries[key] = (now_ms, handle)
        if len(self._entries) > 512:
            self._prune(now_ms)
        return handle

    def _prune(self, now_ms: float) -> None:
        stale = [k for k, (t, _) in self._entries.items() if now_ms - t > self.ttl_ms]
        for k in stale:
            del self._entries[k]


@dataclass(frozen=True)
class Resolution:
    handle: Hashable
    bounds: Rect
    centroid: tuple[float, float]
    hits: int


class TargetResolver:
    """Majority element under the recent points, accepted only if its centroid is on it."""

    def __init__(self, min_hits: int = 4, rect_padding_px: float = 14.0, cache: Optional[HitCache] = None) -> None:
        self.min_hits = int(min_hits)
        self.rect_padding_px = float(rect_padding_px)
        self.cache = cache or HitCache()

    def resolve(self, points: Sequence[PointSample], index: TargetIndex, now_ms: float) -> Optional[Resolution]:
        if not points:
            return None
        counts: Counter = Counter()
        members: dict[Hashable, list[PointSample]] = {}
        for p in points:
            handle = self.cache.lookup(index, p.x, p.y, now_ms)
            if handle is None:
                continue
            counts[handle] += 1
            members.setdefault(handle, []).append(p)
        if not counts:
            return None

        handle, hits = counts.most_common(1)[0]
        if hits < self.min_hits:
            return None
        rect = index.bounds(handle)
        if rect is None:
            return None
        hit_points = members[handle]
        cx = sum(p.x for p in hit_points) / len(hit_points)
        cy = sum(p.y for p in hit_points) / len(hit_points)
        if not rect.contains(cx, cy, self.rect_padding_px):
            return None
        return Resolution(handle=handle, bounds=rect, centroid=(cx, cy), hits=hits)


class StickySnap:
    """Keeps the snapped element while the pointer stays near its centre."""

    def __init__(self, radius_px: float = 60.0) -> None:
        self.radius_px = float(radius_px)
        self.handle: Optional[Hashable] = None

    def clear(self) -> None:
        self.handle = None

    def hold(self, point: tuple[float, float], index: TargetIndex) -> Optional[tuple[Hashable, Rect]]:
        """Current snapped element if it still exists and the point is inside the sticky radius."""
        if self.handle is None:
            return None
        rect = index.bounds(self.handle)
        if rect is None:
            self.handle = None
            return None
        cx, cy = rect.center
        if math.hypot(point[0] - cx, point[1] - cy) > self.radius_px:
            return None
        return self.handle, rect

    def snap(self, handle: Optional[Hashable]) -> None:
        self.handle = handle
