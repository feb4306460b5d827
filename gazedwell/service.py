#!/usr/bin/env python3

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Iterable, Optional

import cv2
import numpy as np

from .acquisition import MediaPipeFaceMeshBackend
from .config import ConfigError, add_config_arguments, config_from_args
from .cursor_backends import CursorBackendManager
from .events import SocketEventBus, StatusUpdate
from .filters import now_ms
from .pipeline import GazePipeline
from .sequencer import CalibrationSequencer
from .targets import StaticTargetIndex

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
WINDOW_NAME = "gazedwell"


class GazeDwellService:
    def __init__(self, args: argparse.Namespace) -> None:
        self.args = args
        self.config = config_from_args(args)
        self.event_bus = SocketEventBus(host=args.host, port=args.port)
        self.monitor_width, self.monitor_height = self._init_screen_size()
        self.viewport = (self.monitor_width, self.monitor_height)
        self.targets = self._load_targets(args.targets_file)
        self.pipeline = GazePipeline(self.config, self.targets)
        self.sequencer: Optional[CalibrationSequencer] = None
        self.cursor: Optional[CursorBackendManager] = None
        if args.cursor_move or args.dwell_click:
            self.cursor = CursorBackendManager(
                self.monitor_width,
                self.monitor_height,
                move_pointer=bool(args.cursor_move),
                click_on_dwell=bool(args.dwell_click),
            )
            logger.info("cursor backends: %s", self.cursor.backend_names or "none")

        self.backend = MediaPipeFaceMeshBackend(args.face_landmarker_task, mirror=self.config.normalizer.mirror)

        self.cap = cv2.VideoCapture(args.camera)
        if not self.cap.isOpened():
            raise RuntimeError(f"Unable to open camera {args.camera}")
        try:
            self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
            self.cap.set(cv2.CAP_PROP_FPS, 30)
        except cv2.error:
            logger.debug("camera ignored buffer/fps hints")

    def _init_screen_size(self) -> tuple[int, int]:
        if self.args.screen_width and self.args.screen_height:
            return int(self.args.screen_width), int(self.args.screen_height)
        try:
            import pyautogui

            size = pyautogui.size()
            return int(size.width), int(size.height)
        except Exception as exc:
            logger.warning("screen size unavailable (%s), assuming 1920x1080", exc)
            return 1920, 1080

    @staticmethod
    def _load_targets(path: str) -> Optional[StaticTargetIndex]:
        if not path:
            return None
        index = StaticTargetIndex.from_json(Path(path).read_text(encoding="utf-8"))
        logger.info("loaded dwell targets from %s", path)
        return index

    def _publish(self, events: Iterable[Any]) -> None:
        for event in events:
            self.event_bus.publish(event)
            if isinstance(event, StatusUpdate):
                logger.info("status %s %s", event.phase, event.note)
            if self.cursor is not None:
                self.cursor.handle(event)

    def start_calibration(self, stage: str, now: float) -> None:
        self._publish(self.pipeline.enter_calibration(now=now))
        self.sequencer = CalibrationSequencer(self.pipeline, self.viewport, stage=stage)

    def _handle_key(self, key: int, now: float) -> bool:
        """Debug-window controls; returns False to quit."""
        if key in (ord("q"), 27):
            return False
        if key == ord("c"):
            self.start_calibration("primary", now)
        elif key == ord("f"):
            self.start_calibration("fine", now)
        elif key == ord("l"):
            self.sequencer = None
            self._publish(self.pipeline.start_live(now=now))
        elif key == ord("s"):
            self.sequencer = None
            self._publish(self.pipeline.stop(now=now))
        elif key == ord("m"):
            self.pipeline.begin_mouth_calibration()
            logger.info("mouth calibration: keep mouth closed, then open wide")
        elif key == ord("h"):
            if self.pipeline.state.range_session is None:
                self.pipeline.begin_range_calibration()
            self.pipeline.begin_range_step(now=now)
            logger.info("range step %s: hold the pose, press space", self.pipeline.state.range_session.current_step.value)
        elif key == ord(" "):
            if not self.pipeline.confirm_range_step():
                logger.info("range step needs more frames, press h to retry")
        return True

    def _to_frame(self, pt: tuple[float, float], w: int, h: int) -> tuple[int, int]:
        return int(pt[0] / max(1, self.monitor_width) * w), int(pt[1] / max(1, self.monitor_height) * h)

    def _draw_debug(self, frame: np.ndarray) -> None:
        h, w = frame.shape[:2]
        state = self.pipeline.state
        if self.sequencer is not None and self.sequencer.current_target is not None:
            cv2.circle(frame, self._to_frame(self.sequencer.current_target, w, h), 10, (0, 140, 255), -1)
        bounds = state.dwell.current_bounds
        if bounds is not None and state.dwell.current_target is not None:
            cv2.rectangle(
                frame,
                self._to_frame((bounds.left, bounds.top), w, h),
                self._to_frame((bounds.right, bounds.bottom), w, h),
                (255, 200, 0),
                2,
            )
        if state.last_point is not None:
            color = (0, 255, 0) if state.gate.state.is_stable else (0, 0, 255)
            cv2.circle(frame, self._to_frame(state.last_point, w, h), 6, color, -1)
        label = f"{state.phase} {state.dwell.phase.value} samples={state.calibrator.sample_count} {state.note}"
        cv2.putText(frame, label, (10, 24), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 2)

    def run(self) -> None:
        self.event_bus.start()
        logger.info(
            "gaze pointer running | mode=%s mirror=%s dwell=%dms",
            self.config.mode,
            "on" if self.config.normalizer.mirror else "off",
            self.config.dwell.threshold_ms,
        )
        start = float(now_ms())
        if self.args.calibrate:
            self.start_calibration("primary", start)
        else:
            self._publish(self.pipeline.start_live(now=start))

        if self.args.debug:
            try:
                cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_AUTOSIZE)
            except cv2.error:
                logger.warning("debug window unavailable")

        running = True
        try:
            while running:
                ret, frame = self.cap.read()
                if not ret:
                    logger.warning("camera frame missing, stopping")
                    break
                now = float(now_ms())
                events = self.pipeline.process_frame(self.backend.detect(frame, self.viewport, now))
                if self.sequencer is not None:
                    events.extend(self.sequencer.tick(now))
                    if self.sequencer.done:
                        self.sequencer = None
                        events.extend(self.pipeline.start_live(now=now))
                self._publish(events)

                if self.args.debug:
                    self._draw_debug(frame)
                    cv2.imshow(WINDOW_NAME, frame)
                    running = self._handle_key(cv2.waitKey(1) & 0xFF, now)
        except KeyboardInterrupt:
            logger.info("interrupted")
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        self.pipeline.close()
        self.cap.release()
        if self.args.debug:
            cv2.destroyAllWindows()
        self.event_bus.stop()
        self.backend.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the dwell-click gaze pointer service")
    parser.add_argument("--camera", type=int, default=0, help="camera index")
    parser.add_argument("--host", type=str, default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--debug", action="store_true", help="Show the camera preview with keyboard controls.")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--calibrate", action="store_true", help="Run the primary calibration grid before going live.")
    parser.add_argument("--targets-file", type=str, default="", help="JSON list of dwell target rectangles.")
    parser.add_argument("--screen-width", type=int, default=0)
    parser.add_argument("--screen-height", type=int, default=0)
    parser.add_argument("--cursor-move", action="store_true", help="Drive OS cursor from pointer updates.")
    parser.add_argument("--dwell-click", action="store_true", help="Click the OS pointer on dwell triggers.")
    parser.add_argument(
        "--face-landmarker-task",
        type=str,
        default="",
        help="Path to mediapipe face_landmarker.task when using task-based mediapipe builds.",
    )
    add_config_arguments(parser)
    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)
    try:
        service = GazeDwellService(args)
    except ConfigError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2
    service.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
