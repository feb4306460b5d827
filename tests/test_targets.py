import json

from gazedwell.stability import PointSample
from gazedwell.targets import HitCache, Rect, StaticTargetIndex, StickySnap, TargetResolver


def _points(x, y, n=6):
    return [PointSample(x, y, i * 10) for i in range(n)]


def test_rect_geometry():
    rect = Rect(100, 100, 80, 40)
    assert rect.center == (140.0, 120.0)
    assert rect.contains(100, 100)
    assert not rect.contains(95, 100)
    assert rect.contains(95, 100, padding=5)


def test_later_targets_sit_on_top():
    index = StaticTargetIndex([("panel", Rect(0, 0, 500, 500)), ("button", Rect(100, 100, 50, 50))])
    assert index.element_at(120, 120) == "button"
    assert index.element_at(300, 300) == "panel"
    assert index.element_at(900, 900) is None
    index.remove("button")
    assert index.element_at(120, 120) == "panel"
    assert index.bounds("button") is None


def test_targets_from_json():
    text = json.dumps([{"id": "ok", "left": 10, "top": 20, "width": 30, "height": 40}])
    index = StaticTargetIndex.from_json(text)
    assert index.bounds("ok") == Rect(10.0, 20.0, 30.0, 40.0)


class CountingIndex(StaticTargetIndex):
    def __init__(self, targets):
        super().__init__(targets)
        self.queries = 0

    def element_at(self, x, y):
        self.queries += 1
        return super().element_at(x, y)


def test_hit_cache_reuses_recent_lookups():
    index = CountingIndex([("a", Rect(0, 0, 100, 100))])
    cache = HitCache(ttl_ms=100)
    assert cache.lookup(index, 10, 10, 0) == "a"
    assert cache.lookup(index, 11, 11, 50) == "a"
    assert index.queries == 1
    cache.lookup(index, 10, 10, 151)
    assert index.queries == 2


def test_resolver_needs_min_hits():
    index = StaticTargetIndex([("a", Rect(0, 0, 100, 100))])
    resolver = TargetResolver(min_hits=4)
    assert resolver.resolve(_points(50, 50, 3), index, 0) is None
    resolution = resolver.resolve(_points(50, 50, 4), index, 0)
    assert resolution.handle == "a"
    assert resolution.hits == 4
    assert resolution.centroid == (50.0, 50.0)


def test_resolver_takes_majority():
    index = StaticTargetIndex([("a", Rect(0, 0, 100, 100)), ("b", Rect(200, 0, 100, 100))])
    points = _points(50, 50, 4) + _points(250, 50, 6)
    assert TargetResolver(min_hits=4).resolve(points, index, 0).handle == "b"


class MovedIndex:
    """Reports a hit but bounds that have since moved away."""

    def element_at(self, x, y):
        return "a"

    def bounds(self, handle):
        return Rect(1000, 1000, 50, 50)


def test_resolver_rejects_centroid_off_target():
    assert TargetResolver(min_hits=4, rect_padding_px=14).resolve(_points(50, 50), MovedIndex(), 0) is None


def test_sticky_snap_holds_near_centre():
    index = StaticTargetIndex([("a", Rect(100, 100, 40, 40))])
    snap = StickySnap(radius_px=60)
    assert snap.hold((120, 120), index) is None
    snap.snap("a")
    assert snap.hold((160, 120), index) == ("a", Rect(100, 100, 40, 40))
    assert snap.hold((200, 120), index) is None
    assert snap.handle == "a"


def test_sticky_snap_drops_vanished_target():
    index = StaticTargetIndex([("a", Rect(100, 100, 40, 40))])
    snap = StickySnap()
    snap.snap("a")
    index.remove("a")
    assert snap.hold((120, 120), index) is None
    assert snap.handle is None
