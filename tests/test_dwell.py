import pytest

from gazedwell.config import DwellConfig
from gazedwell.dwell import DwellPhase, DwellStateMachine
from gazedwell.stability import PointWindow
from gazedwell.targets import Rect, StaticTargetIndex

BUTTON = Rect(100, 100, 80, 40)


def _index():
    return StaticTargetIndex([("button", BUTTON)])


def _run(machine, index, point, duration_ms, step=10, start=0, window=None):
    """Hold ``point`` until ``duration_ms`` past the dwell start; returns triggers and the end time."""
    window = window or PointWindow(14, 450)
    triggers = []
    dwell_start = None
    t = start
    while True:
        window.add(point[0], point[1], t)
        trigger = machine.update(point, window.points(), index, True, t)
        if trigger is not None:
            triggers.append(trigger)
        if dwell_start is None and machine.dwell_start is not None:
            dwell_start = machine.dwell_start
        t += step
        if dwell_start is not None and t > dwell_start + duration_ms:
            break
        if t - start > 20_000:
            break
    return triggers, t


def test_no_trigger_just_before_threshold():
    triggers, _ = _run(DwellStateMachine(DwellConfig(threshold_ms=600)), _index(), BUTTON.center, 595)
    assert triggers == []


def test_trigger_just_after_threshold():
    machine = DwellStateMachine(DwellConfig(threshold_ms=600))
    triggers, _ = _run(machine, _index(), BUTTON.center, 605)
    assert len(triggers) == 1
    trigger = triggers[0]
    assert trigger.target == "button"
    assert (trigger.x, trigger.y) == BUTTON.center
    assert trigger.dwell_ms >= 600


def test_cooldown_allows_one_trigger():
    machine = DwellStateMachine(DwellConfig(threshold_ms=300, cooldown_ms=1000))
    triggers, _ = _run(machine, _index(), BUTTON.center, 1200)
    assert len(triggers) == 1
    assert machine.phase == DwellPhase.COOLDOWN


def test_retrigger_after_cooldown():
    machine = DwellStateMachine(DwellConfig(threshold_ms=300, cooldown_ms=1000))
    triggers, _ = _run(machine, _index(), BUTTON.center, 1400)
    assert len(triggers) == 2
    assert triggers[1].timestamp - triggers[0].timestamp >= 1000


def test_drift_from_centre_restarts_timer():
    index = StaticTargetIndex([("panel", Rect(0, 0, 400, 400))])
    machine = DwellStateMachine(DwellConfig(threshold_ms=300))
    triggers, _ = _run(machine, index, (350.0, 350.0), 2000)
    assert triggers == []
    assert machine.current_target == "panel"
    assert machine.phase == DwellPhase.TARGETING


def test_instability_resets_dwell():
    machine = DwellStateMachine(DwellConfig(threshold_ms=600))
    window = PointWindow(14, 450)
    _run(machine, _index(), BUTTON.center, 200, window=window)
    assert machine.phase == DwellPhase.DWELLING
    assert machine.update(BUTTON.center, window.points(), _index(), False, 300) is None
    assert machine.phase == DwellPhase.IDLE
    assert machine.dwell_start is None
    assert machine.current_target is None


def test_vanished_target_resets_dwell():
    index = _index()
    machine = DwellStateMachine(DwellConfig(threshold_ms=600))
    window = PointWindow(14, 450)
    _, t = _run(machine, index, BUTTON.center, 200, window=window)
    index.remove("button")
    for _ in range(60):
        window.add(*BUTTON.center, t)
        assert machine.update(BUTTON.center, window.points(), index, True, t) is None
        t += 10
    assert machine.phase == DwellPhase.IDLE
    assert machine.current_target is None


def test_sticky_snap_keeps_target_across_neighbour():
    a = Rect(100, 100, 40, 40)
    b = Rect(140, 100, 40, 40)
    index = StaticTargetIndex([("a", a), ("b", b)])
    machine = DwellStateMachine(DwellConfig(threshold_ms=2000))
    window = PointWindow(14, 450)
    _, t = _run(machine, index, a.center, 100, window=window)
    assert machine.current_target == "a"
    start = machine.dwell_start

    for _ in range(20):
        window.add(150.0, 120.0, t)
        machine.update((150.0, 120.0), window.points(), index, True, t)
        t += 10
    assert machine.current_target == "a"
    assert machine.dwell_start == start


def test_effective_threshold_inflation_is_capped():
    machine = DwellStateMachine(DwellConfig(threshold_ms=600, jitter_gain=0.5))
    assert machine.effective_threshold(0.0) == 600
    assert machine.effective_threshold(0.5) == pytest.approx(750)
    assert machine.effective_threshold(1.0) == pytest.approx(900)
    assert machine.effective_threshold(5.0) == pytest.approx(900)
    greedy = DwellStateMachine(DwellConfig(threshold_ms=600, jitter_gain=2.0))
    assert greedy.effective_threshold(1.0) == pytest.approx(900)


def test_reset_can_clear_cooldowns():
    machine = DwellStateMachine(DwellConfig(threshold_ms=300, cooldown_ms=1000))
    _run(machine, _index(), BUTTON.center, 400)
    assert machine.last_trigger_by_target
    machine.reset()
    assert machine.last_trigger_by_target
    machine.reset(clear_cooldowns=True)
    assert not machine.last_trigger_by_target
    assert machine.phase == DwellPhase.IDLE
