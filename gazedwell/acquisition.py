#!/usr/bin/env python3

from __future__ import annotations

import concurrent.futures
import logging
import os
import sys
import typing as _t
from concurrent.futures import ThreadPoolExecutor

import cv2
import mediapipe as mp
import numpy as np

from .landmarks import iris_offset
from .normalizer import FrameInput, GazePrediction

logger = logging.getLogger(__name__)

IRIS_HALF_RANGE_X = 0.15
IRIS_HALF_RANGE_Y = 0.07


def iris_gaze_prediction(face_landmarks: _t.Any, mirror: bool = True) -> _t.Optional[GazePrediction]:
    """Uncalibrated normalized gaze guess from iris displacement.

    The regression calibration maps this onto real screen positions, so only
    its direction and rough scale matter here.
    """
    offset = iris_offset(face_landmarks)
    if offset is None:
        return None
    vx = float(offset[0]) / IRIS_HALF_RANGE_X
    vy = float(offset[1]) / IRIS_HALF_RANGE_Y
    if mirror:
        vx = -vx
    x = float(np.clip(0.5 + 0.5 * vx, 0.0, 1.0))
    y = float(np.clip(0.5 + 0.5 * vy, 0.0, 1.0))
    return GazePrediction(x=x, y=y, score=None, normalized=True)


class MediaPipeFaceMeshBackend:
    """Small wrapper around the two supported mediapipe runtimes."""

    def __init__(self, face_landmarker_task: str = "", *, mirror: bool = True) -> None:
        self.face_landmarker_task = face_landmarker_task
        self.mirror = mirror
        self._backend = "unknown"
        self.face_mesh = None
        self._face_landmarker = None
        self._tasks_image = None
        self._tasks_image_format = None
        self._tasks_timestamp_ms = 0

        self._init_backend()

    @property
    def backend(self) -> str:
        return self._backend

    def _init_backend(self) -> None:
        if hasattr(mp, "solutions"):
            self._backend = "solutions"
            self.face_mesh = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=False,
                max_num_faces=1,
                refine_landmarks=True,
                min_detection_confidence=0.5,
                min_tracking_confidence=0.5,
            )
            logger.info("face mesh backend: mediapipe solutions")
            return

        if not hasattr(mp, "tasks"):
            raise AttributeError("Mediapipe SDK has neither 'solutions' nor 'tasks'.")

        try:
            from mediapipe.tasks.python.core.base_options import BaseOptions
            from mediapipe.tasks.python.vision import face_landmarker
            from mediapipe.tasks.python.vision.core.image import Image, ImageFormat
            from mediapipe.tasks.python.vision.core.vision_task_running_mode import VisionTaskRunningMode
        except ImportError as exc:
            raise RuntimeError(f"Mediapipe tasks backend is present but required symbols are missing: {exc}") from exc

        model_path = self.face_landmarker_task
        if not model_path:
            raise RuntimeError(
                "Mediapipe 'tasks' package is installed, but no task model file is configured. "
                "Pass --face-landmarker-task /path/to/face_landmarker.task"
            )
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Face landmarker task model not found: {model_path}.")
        if sys.version_info >= (3, 14) and sys.platform == "darwin":
            logger.warning("mediapipe face tasks are known to be unstable on macOS with Python 3.14")

        def _options(**base_kwargs: _t.Any) -> _t.Any:
            return face_landmarker.FaceLandmarkerOptions(
                base_options=BaseOptions(model_asset_path=model_path, **base_kwargs),
                running_mode=VisionTaskRunningMode.VIDEO,
                min_tracking_confidence=0.5,
                min_face_detection_confidence=0.5,
                min_face_presence_confidence=0.5,
                num_faces=1,
            )

        def _create_with_timeout(options: _t.Any) -> _t.Any:
            with ThreadPoolExecutor(max_workers=1) as ex:
                future = ex.submit(face_landmarker.FaceLandmarker.create_from_options, options)
                try:
                    return future.result(timeout=5.5)
                except concurrent.futures.TimeoutError as exc:
                    raise RuntimeError("FaceLandmarker initialization timed out on this runtime.") from exc

        try:
            self._face_landmarker = _create_with_timeout(_options(delegate=BaseOptions.Delegate.CPU))
        except Exception as cpu_error:
            # Some builds reject the CPU delegate enum; retry with the default delegate.
            logger.warning("CPU delegate unavailable (%s), retrying with default delegate", cpu_error)
            try:
                self._face_landmarker = _create_with_timeout(_options())
            except Exception as default_error:
                raise RuntimeError(f"FaceLandmarker initialization failed: {default_error}") from default_error

        self._backend = "tasks"
        self._tasks_image = Image
        self._tasks_image_format = ImageFormat
        logger.info("face mesh backend: mediapipe tasks (%s)", model_path)

    def run_face_mesh(self, frame_rgb: np.ndarray) -> _t.Any:
        if self._backend == "solutions":
            return self.face_mesh.process(frame_rgb)

        self._tasks_timestamp_ms += 16
        if self._face_landmarker is None:
            raise RuntimeError("Tasks backend not initialized")
        mp_image = self._tasks_image(image_format=self._tasks_image_format.SRGB, data=frame_rgb)
        return self._face_landmarker.detect_for_video(mp_image, int(self._tasks_timestamp_ms))

    def get_face_landmarks(self, results: _t.Any) -> _t.Optional[_t.Any]:
        if self._backend == "solutions":
            landmarks = getattr(results, "multi_face_landmarks", None)
            return landmarks[0].landmark if landmarks else None

        landmarks = getattr(results, "face_landmarks", None)
        if not landmarks:
            return None
        return landmarks[0]

    def detect(self, frame_bgr: np.ndarray, viewport: tuple[int, int], timestamp_ms: float) -> FrameInput:
        """One camera frame to a FrameInput; no face yields empty landmarks."""
        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        landmarks = self.get_face_landmarks(self.run_face_mesh(frame_rgb))
        gaze = iris_gaze_prediction(landmarks, self.mirror) if landmarks is not None else None
        return FrameInput(timestamp_ms=timestamp_ms, viewport=viewport, landmarks=landmarks, gaze=gaze)

    def close(self) -> None:
        if self._backend == "solutions" and self.face_mesh is not None:
            self.face_mesh.close()
        elif self._face_landmarker is not None and hasattr(self._face_landmarker, "close"):
            self._face_landmarker.close()
