import pytest

from gazedwell.config import EdgeScrollConfig
from gazedwell.edge_scroll import EdgeScroller

VIEWPORT = (1000, 1000)


def _hold(scroller, point, until_ms, step=50):
    return [s for s in (scroller.update(point, VIEWPORT, t) for t in range(0, until_ms + 1, step)) if s is not None]


def test_intensity_grows_towards_the_edge():
    scroller = EdgeScroller(EdgeScrollConfig(band_ratio=0.08))
    assert scroller.intensity((500, 10), VIEWPORT) == ("up", pytest.approx(0.875))
    assert scroller.intensity((500, 995), VIEWPORT) == ("down", pytest.approx(0.9375))
    assert scroller.intensity((500, 500), VIEWPORT) == (None, 0.0)


def test_steps_repeat_every_hold_period():
    steps = _hold(EdgeScroller(EdgeScrollConfig(hold_ms=400, step_px=120)), (500, 10), 1000)
    assert [s.timestamp for s in steps] == [400, 800]
    assert all(s.direction == "up" for s in steps)
    assert steps[0].magnitude == pytest.approx(105.0)


def test_shallow_band_position_does_not_scroll():
    assert _hold(EdgeScroller(EdgeScrollConfig(min_intensity=0.5)), (500, 70), 2000) == []


def test_leaving_the_band_resets_the_hold():
    scroller = EdgeScroller(EdgeScrollConfig(hold_ms=400))
    assert scroller.update((500, 990), VIEWPORT, 0) is None
    assert scroller.update((500, 500), VIEWPORT, 300) is None
    assert not scroller.active
    assert scroller.update((500, 990), VIEWPORT, 350) is None
    assert scroller.update((500, 990), VIEWPORT, 700) is None
    step = scroller.update((500, 990), VIEWPORT, 750)
    assert step.direction == "down"


def test_disabled_scroller_is_silent():
    assert _hold(EdgeScroller(EdgeScrollConfig(enabled=False)), (500, 5), 2000) == []
