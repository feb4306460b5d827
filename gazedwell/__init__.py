"""Dwell-driven gaze and head pointer pipeline."""

from .calibration import CalibrationSample, CalibrationTransform, CaptureKind, RegressionCalibrator, fit_transform
from .config import ConfigError, PipelineConfig
from .events import DiscreteAction, DwellTrigger, PointerUpdate, ScrollStep, StatusUpdate
from .normalizer import FrameInput, GazePrediction
from .pipeline import GazePipeline, PipelineState, process_frame
from .range_mapping import RangeCalibration
from .targets import Rect, StaticTargetIndex, TargetIndex

__all__ = [
    "CalibrationSample",
    "CalibrationTransform",
    "CaptureKind",
    "ConfigError",
    "DiscreteAction",
    "DwellTrigger",
    "FrameInput",
    "GazePipeline",
    "GazePrediction",
    "PipelineConfig",
    "PipelineState",
    "PointerUpdate",
    "RangeCalibration",
    "RegressionCalibrator",
    "Rect",
    "ScrollStep",
    "StaticTargetIndex",
    "StatusUpdate",
    "TargetIndex",
    "fit_transform",
    "process_frame",
]
