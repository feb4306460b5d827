import math

import pytest

from gazedwell.config import FilterConfig
from gazedwell.filters import MedianWindow, OneEuroFilter, PointSmoother

FRAME_MS = 33


def _settle(smoother, point, frames=10, start=0):
    t = start
    out = None
    for _ in range(frames):
        out = smoother(point, t)
        t += FRAME_MS
    return out, t


def test_one_euro_first_sample_passes_through():
    f = OneEuroFilter()
    assert f(42.0, 0.0) == 42.0


def test_one_euro_constant_input_is_exact():
    f = OneEuroFilter()
    for i in range(50):
        assert f(7.25, i * 0.033) == 7.25


def test_one_euro_duplicate_timestamp_stays_finite():
    f = OneEuroFilter()
    f(0.0, 1.0)
    assert math.isfinite(f(100.0, 1.0))
    assert math.isfinite(f(50.0, 0.5))


def test_median_window_rejects_single_outlier():
    med = MedianWindow(5)
    for value in ((1, 1), (1, 1), (50, 50), (1, 1)):
        out = med(value)
    assert tuple(out) == (1.0, 1.0)


def test_smoother_converges_to_held_point():
    smoother = PointSmoother(FilterConfig())
    _, t = _settle(smoother, (100.0, 100.0))
    out, t = _settle(smoother, (150.0, 120.0), frames=500, start=t)
    assert out == pytest.approx((150.0, 120.0), abs=1e-6)
    for _ in range(5):
        again = smoother((150.0, 120.0), t)
        t += FRAME_MS
        assert again == pytest.approx(out, abs=1e-6)


def test_smoother_lags_behind_a_step():
    smoother = PointSmoother(FilterConfig())
    _, t = _settle(smoother, (100.0, 100.0))
    out = smoother((160.0, 100.0), t)
    assert 100.0 <= out[0] < 160.0


def test_jump_is_held_for_exactly_one_frame_then_confirmed():
    smoother = PointSmoother(FilterConfig(jump_px=180.0))
    settled, t = _settle(smoother, (100.0, 100.0))
    assert settled == (100.0, 100.0)

    held = smoother((600.0, 600.0), t)
    assert held == settled
    assert smoother.pending_jump

    confirmed = smoother((605.0, 598.0), t + FRAME_MS)
    assert confirmed == (605.0, 598.0)
    assert not smoother.pending_jump


def test_single_spike_is_dropped():
    smoother = PointSmoother(FilterConfig(jump_px=180.0))
    _, t = _settle(smoother, (100.0, 100.0))
    assert smoother((600.0, 600.0), t) == (100.0, 100.0)
    assert smoother((100.0, 100.0), t + FRAME_MS) == (100.0, 100.0)
    assert not smoother.pending_jump


def test_reset_forgets_history():
    smoother = PointSmoother(FilterConfig())
    _settle(smoother, (100.0, 100.0))
    smoother.reset()
    assert smoother.last_output is None
    assert smoother((900.0, 50.0), 1000) == (900.0, 50.0)
