#!/usr/bin/env python3

from __future__ import annotations

import argparse
import dataclasses
import math
from dataclasses import dataclass, field
from typing import Any

MIN_DWELL_THRESHOLD_MS = 200
MAX_DWELL_THRESHOLD_MS = 10_000
MODES = ("gaze", "head")
GESTURE_SOURCES = ("none", "blink", "mouth")
BUTTONS = ("left", "right")


class ConfigError(ValueError):
    """Raised when a configuration value falls outside its accepted range."""


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


def _finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(float(v)) for v in values)


def _check_types(section: Any) -> None:
    """Reject values whose type does not match the field annotation.

    ``int`` fields take only integers, ``float`` fields take finite ints or
    floats; bools are never accepted as numbers.
    """
    for f in dataclasses.fields(section):
        value = getattr(section, f.name)
        kind = f.type if isinstance(f.type, str) else getattr(f.type, "__name__", "")
        if kind == "bool":
            ok = isinstance(value, bool)
        elif kind == "int":
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif kind == "float":
            ok = not isinstance(value, bool) and _finite(value)
        elif kind == "str":
            ok = isinstance(value, str)
        else:
            ok = dataclasses.is_dataclass(value) and not isinstance(value, type)
        _require(ok, f"{f.name} must be {kind}, got {value!r}")


@dataclass(frozen=True)
class FilterConfig:
    min_cutoff: float = 1.0
    beta: float = 0.007
    d_cutoff: float = 1.0
    median_window: int = 5
    jump_px: float = 180.0

    def __post_init__(self) -> None:
        _check_types(self)
        _require(_finite(self.min_cutoff, self.beta, self.d_cutoff, self.jump_px), "filter values must be finite")
        _require(self.min_cutoff > 0.0, f"min_cutoff must be > 0, got {self.min_cutoff}")
        _require(self.beta >= 0.0, f"beta must be >= 0, got {self.beta}")
        _require(self.d_cutoff > 0.0, f"d_cutoff must be > 0, got {self.d_cutoff}")
        _require(1 <= self.median_window <= 15, f"median_window must be in [1, 15], got {self.median_window}")
        _require(self.jump_px > 0.0, f"jump_px must be > 0, got {self.jump_px}")


@dataclass(frozen=True)
class NormalizerConfig:
    mirror: bool = True
    min_pose_confidence: float = 0.5
    neutral_tolerance: float = 0.12
    baseline_warmup_ms: int = 3000
    baseline_min_samples: int = 30
    baseline_early_samples: int = 12
    baseline_fallback_ms: int = 5000

    def __post_init__(self) -> None:
        _check_types(self)
        _require(0.0 <= self.min_pose_confidence <= 1.0, "min_pose_confidence must be in [0, 1]")
        _require(0.0 < self.neutral_tolerance <= 0.7, "neutral_tolerance must be in (0, 0.7]")
        _require(self.baseline_warmup_ms > 0, "baseline_warmup_ms must be > 0")
        _require(self.baseline_min_samples >= 1, "baseline_min_samples must be >= 1")
        _require(
            1 <= self.baseline_early_samples <= self.baseline_min_samples,
            "baseline_early_samples must be in [1, baseline_min_samples]",
        )
        _require(
            self.baseline_fallback_ms >= self.baseline_warmup_ms,
            "baseline_fallback_ms must not be shorter than the warm-up window",
        )


@dataclass(frozen=True)
class CalibrationConfig:
    sample_cap: int = 48
    min_samples: int = 3
    ridge_lambda: float = 1e-3
    ridge_fade_samples: int = 12
    min_refit_interval_ms: int = 250
    half_life_ms: float = 30_000.0
    explicit_weight: float = 1.0
    refinement_weight: float = 0.45
    density_radius_px: float = 120.0
    density_bonus: float = 0.5
    pose_tolerance: float = 0.25
    pivot_tolerance: float = 1e-10
    capture_window_ms: int = 420
    min_capture_frames: int = 3

    def __post_init__(self) -> None:
        _check_types(self)
        _require(3 <= self.sample_cap <= 4000, f"sample_cap must be in [3, 4000], got {self.sample_cap}")
        _require(1 <= self.min_samples <= self.sample_cap, "min_samples must be in [1, sample_cap]")
        _require(_finite(self.ridge_lambda) and self.ridge_lambda >= 0.0, "ridge_lambda must be >= 0")
        _require(self.ridge_fade_samples >= 1, "ridge_fade_samples must be >= 1")
        _require(self.min_refit_interval_ms >= 0, "min_refit_interval_ms must be >= 0")
        _require(_finite(self.half_life_ms) and self.half_life_ms > 0.0, "half_life_ms must be > 0")
        _require(self.explicit_weight > 0.0, "explicit_weight must be > 0")
        _require(self.refinement_weight > 0.0, "refinement_weight must be > 0")
        _require(self.density_radius_px > 0.0, "density_radius_px must be > 0")
        _require(self.density_bonus >= 0.0, "density_bonus must be >= 0")
        _require(self.pose_tolerance > 0.0, "pose_tolerance must be > 0")
        _require(0.0 < self.pivot_tolerance < 1.0, "pivot_tolerance must be in (0, 1)")
        _require(50 <= self.capture_window_ms <= 10_000, "capture_window_ms must be in [50, 10000]")
        _require(self.min_capture_frames >= 1, "min_capture_frames must be >= 1")


@dataclass(frozen=True)
class StabilityConfig:
    window_size: int = 20
    window_ms: int = 500
    min_samples: int = 6
    dispersion_ratio: float = 0.025
    speed_ratio: float = 0.35
    enter_ms: int = 150
    exit_ms: int = 250
    tighten_per_sample: float = 0.02
    min_tighten: float = 0.6

    def __post_init__(self) -> None:
        _check_types(self)
        _require(3 <= self.window_size <= 240, f"window_size must be in [3, 240], got {self.window_size}")
        _require(self.window_ms >= 50, "window_ms must be >= 50")
        _require(2 <= self.min_samples <= self.window_size, "min_samples must be in [2, window_size]")
        _require(0.0 < self.dispersion_ratio <= 0.5, "dispersion_ratio must be in (0, 0.5]")
        _require(0.0 < self.speed_ratio <= 10.0, "speed_ratio must be in (0, 10]")
        _require(self.enter_ms >= 0 and self.exit_ms >= 0, "hysteresis durations must be >= 0")
        _require(0.0 <= self.tighten_per_sample < 1.0, "tighten_per_sample must be in [0, 1)")
        _require(0.0 < self.min_tighten <= 1.0, "min_tighten must be in (0, 1]")


@dataclass(frozen=True)
class DwellConfig:
    threshold_ms: int = 600
    cooldown_ms: int = 600
    drift_px: float = 68.0
    window_size: int = 14
    window_ms: int = 450
    min_hits: int = 4
    rect_padding_px: float = 14.0
    sticky_radius_px: float = 60.0
    hit_cache_ms: int = 100
    jitter_gain: float = 0.5
    refine_on_dwell: bool = True

    def __post_init__(self) -> None:
        _check_types(self)
        _require(
            MIN_DWELL_THRESHOLD_MS <= self.threshold_ms <= MAX_DWELL_THRESHOLD_MS,
            f"threshold_ms must be in [{MIN_DWELL_THRESHOLD_MS}, {MAX_DWELL_THRESHOLD_MS}], got {self.threshold_ms}",
        )
        _require(self.cooldown_ms >= 0, "cooldown_ms must be >= 0")
        _require(self.drift_px > 0.0, "drift_px must be > 0")
        _require(1 <= self.window_size <= 240, "window_size must be in [1, 240]")
        _require(self.window_ms >= 50, "window_ms must be >= 50")
        _require(1 <= self.min_hits <= self.window_size, "min_hits must be in [1, window_size]")
        _require(self.rect_padding_px >= 0.0, "rect_padding_px must be >= 0")
        _require(self.sticky_radius_px >= 0.0, "sticky_radius_px must be >= 0")
        _require(self.hit_cache_ms >= 0, "hit_cache_ms must be >= 0")
        _require(0.0 <= self.jitter_gain <= 2.0, "jitter_gain must be in [0, 2]")


@dataclass(frozen=True)
class EdgeScrollConfig:
    enabled: bool = True
    band_ratio: float = 0.08
    min_intensity: float = 0.5
    hold_ms: int = 400
    step_px: float = 120.0

    def __post_init__(self) -> None:
        _check_types(self)
        _require(0.0 < self.band_ratio <= 0.5, "band_ratio must be in (0, 0.5]")
        _require(0.0 < self.min_intensity <= 1.0, "min_intensity must be in (0, 1]")
        _require(self.hold_ms >= 50, "hold_ms must be >= 50")
        _require(self.step_px > 0.0, "step_px must be > 0")


@dataclass(frozen=True)
class GestureConfig:
    source: str = "blink"
    blink_ear_threshold: float = 0.21
    short_hold_ms: int = 400
    long_hold_ms: int = 900
    short_button: str = "left"
    long_button: str = "right"
    mouth_threshold: float = 0.35
    mouth_samples: int = 20
    mouth_open_ratio: float = 0.7

    def __post_init__(self) -> None:
        _check_types(self)
        _require(self.source in GESTURE_SOURCES, f"source must be one of {GESTURE_SOURCES}, got {self.source!r}")
        _require(0.05 <= self.blink_ear_threshold <= 0.5, "blink_ear_threshold must be in [0.05, 0.5]")
        _require(self.short_hold_ms >= 100, "short_hold_ms must be >= 100")
        _require(self.long_hold_ms > self.short_hold_ms, "long_hold_ms must be greater than short_hold_ms")
        _require(self.short_button in BUTTONS and self.long_button in BUTTONS, f"buttons must be one of {BUTTONS}")
        _require(0.0 < self.mouth_threshold < 2.0, "mouth_threshold must be in (0, 2)")
        _require(self.mouth_samples >= 1, "mouth_samples must be >= 1")
        _require(0.0 < self.mouth_open_ratio < 1.0, "mouth_open_ratio must be in (0, 1)")


@dataclass(frozen=True)
class PipelineConfig:
    mode: str = "gaze"
    pointer_interval_ms: int = 33
    missing_signal_note_ms: int = 1500
    max_rejected_fits: int = 3
    filter: FilterConfig = field(default_factory=FilterConfig)
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    dwell: DwellConfig = field(default_factory=DwellConfig)
    edge_scroll: EdgeScrollConfig = field(default_factory=EdgeScrollConfig)
    gestures: GestureConfig = field(default_factory=GestureConfig)

    def __post_init__(self) -> None:
        _check_types(self)
        _require(self.mode in MODES, f"mode must be one of {MODES}, got {self.mode!r}")
        _require(0 <= self.pointer_interval_ms <= 1000, "pointer_interval_ms must be in [0, 1000]")
        _require(self.missing_signal_note_ms >= 0, "missing_signal_note_ms must be >= 0")
        _require(self.max_rejected_fits >= 1, "max_rejected_fits must be >= 1")

    def with_changes(self, **changes: Any) -> "PipelineConfig":
        """Return a validated copy.

        Keys are either top-level fields (``mode=...``) or ``section__field``
        pairs (``dwell__threshold_ms=800``). Nothing is applied unless every
        value validates.
        """
        top: dict[str, Any] = {}
        sections: dict[str, dict[str, Any]] = {}
        names = {f.name for f in dataclasses.fields(self)}
        for key, value in changes.items():
            section, sep, name = key.partition("__")
            if sep:
                if section not in names or not dataclasses.is_dataclass(getattr(self, section)):
                    raise ConfigError(f"unknown config section: {section}")
                sections.setdefault(section, {})[name] = value
            elif key in names:
                top[key] = value
            else:
                raise ConfigError(f"unknown config field: {key}")

        for section, values in sections.items():
            current = getattr(self, section)
            allowed = {f.name for f in dataclasses.fields(current)}
            unknown = set(values) - allowed
            if unknown:
                raise ConfigError(f"unknown {section} field(s): {', '.join(sorted(unknown))}")
            top[section] = dataclasses.replace(current, **values)
        return dataclasses.replace(self, **top)


def add_config_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    defaults = PipelineConfig()
    parser.add_argument("--mode", choices=list(MODES), default=defaults.mode, help="Pointer source.")
    parser.add_argument(
        "--mirror",
        action=argparse.BooleanOptionalAction,
        default=defaults.normalizer.mirror,
        help="Mirror head X to correct front-facing camera direction.",
    )
    parser.add_argument("--emit-interval-ms", type=int, default=defaults.pointer_interval_ms)
    parser.add_argument("--one-euro-cutoff", type=float, default=defaults.filter.min_cutoff)
    parser.add_argument("--one-euro-beta", type=float, default=defaults.filter.beta)
    parser.add_argument("--one-euro-d-cutoff", type=float, default=defaults.filter.d_cutoff)
    parser.add_argument("--median-window", type=int, default=defaults.filter.median_window)
    parser.add_argument("--jump-px", type=float, default=defaults.filter.jump_px)
    parser.add_argument("--dwell-ms", type=int, default=defaults.dwell.threshold_ms)
    parser.add_argument("--dwell-cooldown-ms", type=int, default=defaults.dwell.cooldown_ms)
    parser.add_argument("--stability-window", type=int, default=defaults.stability.window_size)
    parser.add_argument("--stability-window-ms", type=int, default=defaults.stability.window_ms)
    parser.add_argument(
        "--stability-dispersion",
        type=float,
        default=defaults.stability.dispersion_ratio,
        help="Allowed dispersion as a fraction of the viewport diagonal.",
    )
    parser.add_argument(
        "--stability-speed",
        type=float,
        default=defaults.stability.speed_ratio,
        help="Allowed speed in viewport diagonals per second.",
    )
    parser.add_argument("--calibration-cap", type=int, default=defaults.calibration.sample_cap)
    parser.add_argument("--ridge-lambda", type=float, default=defaults.calibration.ridge_lambda)
    parser.add_argument(
        "--gesture",
        choices=list(GESTURE_SOURCES),
        default=defaults.gestures.source,
        help="Discrete click gesture source.",
    )
    parser.add_argument("--blink-ear-threshold", type=float, default=defaults.gestures.blink_ear_threshold)
    parser.add_argument("--edge-scroll", action=argparse.BooleanOptionalAction, default=defaults.edge_scroll.enabled)
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    """Build a validated config from parsed CLI flags; raises ConfigError."""
    return PipelineConfig().with_changes(
        mode=args.mode,
        pointer_interval_ms=args.emit_interval_ms,
        normalizer__mirror=bool(args.mirror),
        filter__min_cutoff=args.one_euro_cutoff,
        filter__beta=args.one_euro_beta,
        filter__d_cutoff=args.one_euro_d_cutoff,
        filter__median_window=args.median_window,
        filter__jump_px=args.jump_px,
        dwell__threshold_ms=args.dwell_ms,
        dwell__cooldown_ms=args.dwell_cooldown_ms,
        stability__window_size=args.stability_window,
        stability__window_ms=args.stability_window_ms,
        stability__dispersion_ratio=args.stability_dispersion,
        stability__speed_ratio=args.stability_speed,
        calibration__sample_cap=args.calibration_cap,
        calibration__ridge_lambda=args.ridge_lambda,
        gestures__source=args.gesture,
        gestures__blink_ear_threshold=args.blink_ear_threshold,
        edge_scroll__enabled=bool(args.edge_scroll),
    )
