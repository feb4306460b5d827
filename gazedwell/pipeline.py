#!/usr/bin/env python3

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Hashable, List, Optional, Tuple

from .calibration import CaptureKind, CaptureSession, RegressionCalibrator
from .config import PipelineConfig
from .dwell import DwellStateMachine
from .edge_scroll import EdgeScroller
from .events import (
    PHASE_CALIBRATING,
    PHASE_LIVE,
    PHASE_LOADING,
    PHASE_READY,
    DiscreteAction,
    PointerUpdate,
    StatusUpdate,
)
from .filters import PointSmoother, now_ms
from .gestures import HoldGestureDetector, MouthCalibration, gesture_active, synthesize_click
from .landmarks import mouth_open_ratio
from .normalizer import NEUTRAL_NOSE_DROP, FrameInput, PoseBaselineTracker, normalize_frame
from .range_mapping import RangeCalibration, RangeCalibrationSession
from .stability import PointWindow, StabilityGate
from .targets import TargetIndex

logger = logging.getLogger(__name__)

NOTE_UNSTABLE = "unstable"
NOTE_RECALIBRATE = "recalibration needed"
NOTE_RESTORED = "signal restored"

Event = Any


@dataclass
class PipelineState:
    """Everything one tracking session owns; nothing is shared between sessions."""

    config: PipelineConfig
    smoother: PointSmoother
    baseline: PoseBaselineTracker
    calibrator: RegressionCalibrator
    stability_window: PointWindow
    gate: StabilityGate
    target_window: PointWindow
    dwell: DwellStateMachine
    edge: EdgeScroller
    gestures: HoldGestureDetector
    phase: str = PHASE_LOADING
    capture: Optional[CaptureSession] = None
    range_calibration: Optional[RangeCalibration] = None
    range_session: Optional[RangeCalibrationSession] = None
    mouth_calibration: Optional[MouthCalibration] = None
    mouth_threshold: Optional[float] = None
    last_frame_ms: Optional[float] = None
    last_pointer_ms: Optional[float] = None
    last_point: Optional[Tuple[float, float]] = None
    missing_since: Optional[float] = None
    action_target: Optional[Hashable] = None
    note: str = ""

    @classmethod
    def create(cls, config: PipelineConfig) -> "PipelineState":
        return cls(
            config=config,
            smoother=PointSmoother(config.filter),
            baseline=PoseBaselineTracker(config.normalizer),
            calibrator=RegressionCalibrator(config.calibration),
            stability_window=PointWindow(config.stability.window_size, config.stability.window_ms),
            gate=StabilityGate(config.stability),
            target_window=PointWindow(config.dwell.window_size, config.dwell.window_ms),
            dwell=DwellStateMachine(config.dwell),
            edge=EdgeScroller(config.edge_scroll),
            gestures=HoldGestureDetector(config.gestures),
        )

    def reset_mode_state(self) -> None:
        self.dwell.reset(clear_cooldowns=True)
        self.stability_window.clear()
        self.target_window.clear()
        self.gate.reset()
        self.smoother.reset()
        self.edge.reset()
        self.gestures.reset()
        self.action_target = None
        self.last_pointer_ms = None
        self.last_point = None

    def drop_interaction(self) -> None:
        """Forget dwell progress and stability after the signal is lost; cooldowns survive."""
        self.dwell.reset()
        self.gate.reset()
        self.stability_window.clear()
        self.target_window.clear()
        self.edge.reset()


def _status(state: PipelineState, t_ms: float, note: str = "") -> StatusUpdate:
    state.note = note
    return StatusUpdate(phase=state.phase, note=note, timestamp=t_ms)


def _observed_point(state: PipelineState, signal: Tuple[float, float], kind: str, viewport) -> Tuple[float, float]:
    if kind != "head":
        return float(signal[0]), float(signal[1])
    ranges = state.range_calibration
    if ranges is None:
        b = state.baseline.baseline
        ranges = RangeCalibration(cx=b.yaw, cy=b.pitch + NEUTRAL_NOSE_DROP)
    return ranges.apply(signal, viewport)


def _fit_events(state: PipelineState, installed: bool, kind: Optional[CaptureKind], t_ms: float) -> List[Event]:
    events: List[Event] = []
    calibrator = state.calibrator
    if installed and kind == CaptureKind.EXPLICIT and calibrator.last_report is not None:
        events.append(_status(state, t_ms, calibrator.last_report.note()))
    elif installed and state.note == NOTE_RECALIBRATE:
        events.append(_status(state, t_ms, ""))
    if calibrator.consecutive_rejections >= state.config.max_rejected_fits and state.note != NOTE_RECALIBRATE:
        events.append(_status(state, t_ms, NOTE_RECALIBRATE))
    return events


def begin_capture(
    state: PipelineState,
    target: Tuple[float, float],
    kind: CaptureKind,
    t_ms: float,
    window_ms: Optional[float] = None,
) -> List[Event]:
    """Open a capture session, closing any session that is still open."""
    events: List[Event] = []
    if state.capture is not None:
        short = state.capture.frame_count < state.config.calibration.min_capture_frames
        events.extend(finalize_capture(state, t_ms, discard=short))
    window = state.config.calibration.capture_window_ms if window_ms is None else float(window_ms)
    state.capture = CaptureSession(
        target=(float(target[0]), float(target[1])),
        kind=kind,
        started_ms=t_ms,
        deadline_ms=t_ms + window,
    )
    return events


def finalize_capture(state: PipelineState, t_ms: float, discard: bool = False) -> List[Event]:
    session = state.capture
    state.capture = None
    if session is None:
        return []
    if discard or session.frame_count == 0:
        logger.debug("capture at %s discarded with %d frames", session.target, session.frame_count)
        return []
    sample = session.average(t_ms)
    installed = state.calibrator.add_sample(sample, t_ms)
    return _fit_events(state, installed, session.kind, t_ms)


def _action_point(state: PipelineState, point: Tuple[float, float], targets: Optional[TargetIndex]):
    """Centre of the snapped target, else of the element under the pointer, else the pointer.

    The target snapped when the hold began wins, since closing the eyes
    usually breaks stability before the hold is released.
    """
    if targets is None:
        return point, None
    for handle in (state.action_target, state.dwell.snap.handle, state.dwell.current_target):
        if handle is None:
            continue
        rect = targets.bounds(handle)
        if rect is not None:
            return rect.center, handle
    handle = targets.element_at(point[0], point[1])
    if handle is not None:
        rect = targets.bounds(handle)
        if rect is not None:
            return rect.center, handle
    return point, None


def process_frame(
    state: PipelineState,
    frame: FrameInput,
    targets: Optional[TargetIndex] = None,
) -> Tuple[PipelineState, List[Event]]:
    """Run one frame through the whole pipeline.

    Never raises for missing signal, rejected fits, vanished targets or
    expired captures; those only change state or produce status notes.
    """
    cfg = state.config
    t = float(frame.timestamp_ms)
    viewport = (int(frame.viewport[0]), int(frame.viewport[1]))
    state.last_frame_ms = t
    events: List[Event] = []

    if state.capture is not None and state.capture.expired(t):
        events.extend(finalize_capture(state, t))
    if state.calibrator.dirty:
        installed = state.calibrator.tick(t)
        pending = state.calibrator.samples()
        events.extend(_fit_events(state, installed, pending[-1].kind if pending else None, t))

    signal = normalize_frame(frame, cfg.mode, cfg.normalizer.mirror)
    state.baseline.update(signal.pose if signal is not None else None, t, capturing=state.capture is not None)

    if signal is None:
        if state.missing_since is None:
            state.missing_since = t
            state.drop_interaction()
        if t - state.missing_since >= cfg.missing_signal_note_ms and state.note != NOTE_UNSTABLE:
            logger.info("no usable signal for %.0f ms", t - state.missing_since)
            events.append(_status(state, t, NOTE_UNSTABLE))
        return state, events

    if state.note == NOTE_UNSTABLE:
        events.append(_status(state, t, NOTE_RESTORED))
    state.missing_since = None
    if state.phase == PHASE_LOADING:
        state.phase = PHASE_READY
        events.append(_status(state, t))

    if signal.kind == "head" and state.range_session is not None:
        state.range_session.add_frame(signal.signal, t)
    if state.mouth_calibration is not None and frame.landmarks is not None:
        if state.mouth_calibration.add(mouth_open_ratio(frame.landmarks)) == "done":
            state.mouth_threshold = state.mouth_calibration.threshold
            state.mouth_calibration = None
            logger.info("mouth threshold set to %s", state.mouth_threshold)

    pose_delta = state.baseline.delta(signal.pose)
    raw = _observed_point(state, signal.signal, signal.kind, viewport)
    if state.capture is not None:
        state.capture.add(raw, pose_delta)

    smoothed = state.smoother(raw, t)
    screen = state.calibrator.apply(smoothed, pose_delta, viewport)
    state.last_point = screen
    state.stability_window.add(screen[0], screen[1], t)
    state.target_window.add(screen[0], screen[1], t)

    if state.last_pointer_ms is None or t - state.last_pointer_ms >= cfg.pointer_interval_ms:
        state.last_pointer_ms = t
        events.append(PointerUpdate(x=screen[0], y=screen[1], confidence=signal.confidence, timestamp=t))

    if state.phase != PHASE_LIVE:
        return state, events

    gesture = gesture_active(frame.landmarks, cfg.gestures, state.mouth_threshold)
    if gesture and not state.gestures.holding:
        snapped = state.dwell.snap.handle
        state.action_target = snapped if snapped is not None else state.dwell.current_target

    stability = state.gate.update(
        state.stability_window.points(), viewport, t, state.calibrator.sample_count
    )
    metrics = state.gate.last_metrics
    ratio = metrics.dispersion_ratio if metrics is not None else 0.0

    if targets is not None:
        trigger = state.dwell.update(screen, state.target_window.points(), targets, stability.is_stable, t, ratio)
        if trigger is not None:
            events.append(trigger)
            if cfg.dwell.refine_on_dwell and state.capture is None:
                events.extend(begin_capture(state, (trigger.x, trigger.y), CaptureKind.REFINEMENT, t))

    step = state.edge.update(screen, viewport, t)
    if step is not None:
        events.append(step)

    release = state.gestures.update(gesture, t)
    if release is not None:
        action = state.gestures.classify(release.duration_ms)
        if action is not None:
            kind, button = action
            point, handle = _action_point(state, screen, targets)
            events.append(
                DiscreteAction(
                    kind=kind,
                    button=button,
                    x=point[0],
                    y=point[1],
                    timestamp=t,
                    hold_ms=release.duration_ms,
                    target=handle,
                    sequence=synthesize_click(point, button),
                )
            )
        state.action_target = None
    return state, events


def apply_config(state: PipelineState, config: PipelineConfig) -> None:
    """Swap in a validated config, rebuilding only the parts whose section changed."""
    old = state.config
    state.config = config
    if config.filter != old.filter:
        state.smoother = PointSmoother(config.filter)
    if config.normalizer != old.normalizer or config.mode != old.mode:
        state.baseline = PoseBaselineTracker(config.normalizer)
    if config.calibration != old.calibration:
        state.calibrator.reconfigure(config.calibration)
    if config.stability != old.stability:
        state.stability_window = PointWindow(config.stability.window_size, config.stability.window_ms)
        state.gate = StabilityGate(config.stability)
    if config.dwell != old.dwell:
        state.target_window = PointWindow(config.dwell.window_size, config.dwell.window_ms)
        state.dwell = DwellStateMachine(config.dwell)
    if config.edge_scroll != old.edge_scroll:
        state.edge = EdgeScroller(config.edge_scroll)
    if config.gestures != old.gestures:
        state.gestures = HoldGestureDetector(config.gestures)
    if config.mode != old.mode:
        state.reset_mode_state()


class GazePipeline:
    """Session controller owning one PipelineState."""

    def __init__(self, config: Optional[PipelineConfig] = None, targets: Optional[TargetIndex] = None) -> None:
        self.state = PipelineState.create(config or PipelineConfig())
        self.targets = targets

    @property
    def config(self) -> PipelineConfig:
        return self.state.config

    @property
    def phase(self) -> str:
        return self.state.phase

    def _now(self, now: Optional[float]) -> float:
        if now is not None:
            return float(now)
        if self.state.last_frame_ms is not None:
            return self.state.last_frame_ms
        return float(now_ms())

    def process_frame(self, frame: FrameInput) -> List[Event]:
        self.state, events = process_frame(self.state, frame, self.targets)
        return events

    def begin_capture(
        self,
        target: Tuple[float, float],
        kind: CaptureKind = CaptureKind.EXPLICIT,
        window_ms: Optional[float] = None,
        now: Optional[float] = None,
    ) -> List[Event]:
        return begin_capture(self.state, target, kind, self._now(now), window_ms)

    def finalize(self, discard: bool = False, now: Optional[float] = None) -> List[Event]:
        return finalize_capture(self.state, self._now(now), discard=discard)

    def _transition(self, phase: str, now: Optional[float]) -> List[Event]:
        t = self._now(now)
        events: List[Event] = []
        if self.state.capture is not None:
            events.extend(finalize_capture(self.state, t, discard=True))
        self.state.reset_mode_state()
        self.state.phase = phase
        logger.info("phase -> %s", phase)
        events.append(_status(self.state, t))
        return events

    def enter_calibration(self, now: Optional[float] = None) -> List[Event]:
        return self._transition(PHASE_CALIBRATING, now)

    def start_live(self, now: Optional[float] = None) -> List[Event]:
        return self._transition(PHASE_LIVE, now)

    def stop(self, now: Optional[float] = None) -> List[Event]:
        self.state.range_session = None
        self.state.mouth_calibration = None
        return self._transition(PHASE_READY, now)

    def configure(self, **changes: Any) -> PipelineConfig:
        """Validate and apply config changes; raises ConfigError and applies nothing on failure."""
        config = self.state.config.with_changes(**changes)
        apply_config(self.state, config)
        return config

    def set_range_calibration(self, calibration: Optional[RangeCalibration]) -> None:
        self.state.range_calibration = calibration
        self.state.smoother.reset()

    def begin_range_calibration(self) -> RangeCalibrationSession:
        self.state.range_session = RangeCalibrationSession()
        return self.state.range_session

    def begin_range_step(self, now: Optional[float] = None) -> None:
        if self.state.range_session is not None:
            self.state.range_session.begin_step(self._now(now))

    def confirm_range_step(self) -> bool:
        """Close the current directed-look step; installs the ranges after the last one."""
        session = self.state.range_session
        if session is None:
            return False
        accepted = session.confirm_step()
        if session.complete:
            self.set_range_calibration(session.finalize())
            self.state.range_session = None
        return accepted

    def begin_mouth_calibration(self) -> MouthCalibration:
        cfg = self.state.config.gestures
        self.state.mouth_calibration = MouthCalibration(cfg.mouth_samples, cfg.mouth_open_ratio)
        return self.state.mouth_calibration

    def close(self) -> None:
        self.state.capture = None
        self.state.range_session = None
        self.state.mouth_calibration = None
        self.state.reset_mode_state()
        self.state.calibrator.reset()
