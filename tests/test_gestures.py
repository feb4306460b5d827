import pytest

from gazedwell.config import GestureConfig
from gazedwell.gestures import HoldGestureDetector, MouthCalibration, gesture_active, synthesize_click
from gazedwell.landmarks import LEFT_EYE_EAR_INDEXES, eye_aspect_ratio, mouth_open_ratio


def _hold_for(detector, duration_ms, start=0):
    for t in range(start, start + duration_ms, 10):
        assert detector.update(True, t) is None
    return detector.update(False, start + duration_ms)


def test_eye_aspect_ratio(face):
    assert eye_aspect_ratio(face(), LEFT_EYE_EAR_INDEXES) == pytest.approx(1 / 3)
    assert eye_aspect_ratio(face(closed=True), LEFT_EYE_EAR_INDEXES) == pytest.approx(1 / 15)


def test_short_and_long_holds():
    detector = HoldGestureDetector(GestureConfig(short_hold_ms=400, long_hold_ms=900))
    release = _hold_for(detector, 500)
    assert release.duration_ms == 500
    assert detector.classify(release.duration_ms) == ("short", "left")
    release = _hold_for(detector, 1000, start=2000)
    assert detector.classify(release.duration_ms) == ("long", "right")
    release = _hold_for(detector, 200, start=5000)
    assert detector.classify(release.duration_ms) is None


def test_unmeasurable_frames_do_not_release():
    detector = HoldGestureDetector(GestureConfig())
    detector.update(True, 0)
    assert detector.update(None, 100) is None
    assert detector.holding
    assert detector.update(False, 600).duration_ms == 600
    assert not detector.holding


def test_synthesized_click_sequence():
    left = synthesize_click((10.0, 20.0), "left")
    assert [e.type for e in left] == ["pointermove", "pointerdown", "pointerup", "click"]
    right = synthesize_click((10.0, 20.0), "right")
    assert right[-1].type == "contextmenu"
    assert all(e.button == "right" and (e.x, e.y) == (10.0, 20.0) for e in right)


def test_mouth_calibration_threshold():
    calibration = MouthCalibration(samples_needed=20, open_ratio=0.7)
    for _ in range(20):
        assert calibration.add(0.05) in ("closed", "open")
    assert calibration.stage == "open"
    assert calibration.add(None) == "open"
    for _ in range(20):
        calibration.add(0.6)
    assert calibration.stage == "done"
    assert calibration.threshold == pytest.approx(0.435)


def test_mouth_calibration_rejects_inverted_samples():
    calibration = MouthCalibration(samples_needed=2)
    for value in (0.5, 0.5, 0.1, 0.1):
        calibration.add(value)
    assert calibration.threshold is None


def test_blink_gesture(face):
    config = GestureConfig(source="blink")
    assert gesture_active(face(closed=True), config) is True
    assert gesture_active(face(), config) is False
    assert gesture_active(None, config) is None


def test_mouth_gesture(face):
    config = GestureConfig(source="mouth", mouth_threshold=0.35)
    assert mouth_open_ratio(face(mouth_gap=0.05)) == pytest.approx(0.5)
    assert gesture_active(face(mouth_gap=0.05), config) is True
    assert gesture_active(face(mouth_gap=0.02), config) is False
    assert gesture_active(face(mouth_gap=0.05), config, mouth_threshold=0.6) is False
    assert gesture_active(face(), config) is None


def test_gesture_source_none(face):
    assert gesture_active(face(closed=True), GestureConfig(source="none")) is None
