#!/usr/bin/env python3

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Sequence

import numpy as np

from .config import CalibrationConfig

logger = logging.getLogger(__name__)

FEATURE_COUNT = 5
BIAS_INDEX = FEATURE_COUNT - 1

# Calibration dot layouts as viewport percentages inside a 5% inset.
PRIMARY_GRID = (
    (10, 10), (50, 10), (90, 10),
    (10, 50), (50, 50), (90, 50),
    (10, 90), (50, 90), (90, 90),
)
FINE_GRID = (
    (20, 20), (50, 18), (80, 20),
    (20, 50), (80, 50),
    (20, 80), (50, 82), (80, 80),
    (35, 35), (65, 35), (35, 65), (65, 65),
)
GRID_INSET = 0.05


class CaptureKind(str, Enum):
    EXPLICIT = "explicit"
    REFINEMENT = "refinement"


class SingularFitError(ArithmeticError):
    """Normal equations have no usable pivot."""


def clamp_to_viewport(x: float, y: float, viewport: tuple[int, int]) -> tuple[float, float]:
    w = max(1.0, float(viewport[0]) - 1.0)
    h = max(1.0, float(viewport[1]) - 1.0)
    return float(max(0.0, min(w, x))), float(max(0.0, min(h, y)))


@dataclass(frozen=True)
class CalibrationSample:
    raw: tuple[float, float]
    target: tuple[float, float]
    pose_delta: tuple[float, float] = (0.0, 0.0)
    timestamp_ms: float = 0.0
    kind: CaptureKind = CaptureKind.EXPLICIT
    frames: int = 1

    def features(self) -> np.ndarray:
        return np.array(
            [self.raw[0], self.raw[1], self.pose_delta[0], self.pose_delta[1], 1.0],
            dtype=float,
        )


def time_decay(age_ms: float, half_life_ms: float) -> float:
    return 0.5 ** (max(0.0, float(age_ms)) / float(half_life_ms))


def pose_penalty(pose_delta: tuple[float, float], tolerance: float) -> float:
    deviation = math.hypot(pose_delta[0], pose_delta[1]) / float(tolerance)
    return 1.0 / (1.0 + deviation * deviation)


def sample_weights(samples: Sequence[CalibrationSample], now_ms: float, config: CalibrationConfig) -> np.ndarray:
    """Per-sample fit weights.

    Combines the capture-kind base weight, a bonus for targets in sparsely
    sampled screen regions, a penalty for large head-pose deviation and an
    exponential time decay towards recent samples.
    """
    if not samples:
        return np.zeros(0, dtype=float)
    targets = np.array([s.target for s in samples], dtype=float)
    dists = np.linalg.norm(targets[:, None, :] - targets[None, :, :], axis=2)
    neighbours = (dists <= config.density_radius_px).sum(axis=1) - 1

    weights = np.empty(len(samples), dtype=float)
    for i, sample in enumerate(samples):
        base = config.explicit_weight if sample.kind == CaptureKind.EXPLICIT else config.refinement_weight
        density = 1.0 + config.density_bonus / (1.0 + float(neighbours[i]))
        weights[i] = (
            base
            * density
            * pose_penalty(sample.pose_delta, config.pose_tolerance)
            * time_decay(now_ms - sample.timestamp_ms, config.half_life_ms)
        )
    return weights


def effective_ridge(sample_count: int, config: CalibrationConfig) -> float:
    """Ridge strength, constant for small fits and shrinking as 1/n past the fade point."""
    n = max(1, int(sample_count))
    if n <= config.ridge_fade_samples:
        return float(config.ridge_lambda)
    return float(config.ridge_lambda) * config.ridge_fade_samples / n


def solve_linear_system(a: np.ndarray, b: np.ndarray, tol: float = 1e-10) -> np.ndarray:
    """Gaussian elimination with partial pivoting."""
    m = np.array(a, dtype=float)
    rhs = np.array(b, dtype=float)
    n = m.shape[0]
    for col in range(n):
        pivot = col + int(np.argmax(np.abs(m[col:, col])))
        if abs(m[pivot, col]) < tol:
            raise SingularFitError(f"pivot {m[pivot, col]:.3e} below tolerance in column {col}")
        if pivot != col:
            m[[col, pivot]] = m[[pivot, col]]
            rhs[[col, pivot]] = rhs[[pivot, col]]
        for row in range(col + 1, n):
            factor = m[row, col] / m[col, col]
            if factor != 0.0:
                m[row, col:] -= factor * m[col, col:]
                rhs[row] -= factor * rhs[col]

    x = np.zeros(n, dtype=float)
    for row in range(n - 1, -1, -1):
        x[row] = (rhs[row] - float(np.dot(m[row, row + 1 :], x[row + 1 :]))) / m[row, row]
    return x


@dataclass(frozen=True, eq=False)
class CalibrationTransform:
    coefficients: np.ndarray = field(default_factory=lambda: np.zeros((2, FEATURE_COUNT), dtype=float))
    ready: bool = False
    sample_count: int = 0

    def project(self, raw: tuple[float, float], pose_delta: tuple[float, float] = (0.0, 0.0)) -> tuple[float, float]:
        if not self.ready:
            return float(raw[0]), float(raw[1])
        feats = np.array([raw[0], raw[1], pose_delta[0], pose_delta[1], 1.0], dtype=float)
        sx, sy = self.coefficients @ feats
        return float(sx), float(sy)

    def apply(
        self,
        raw: tuple[float, float],
        pose_delta: tuple[float, float] = (0.0, 0.0),
        viewport: tuple[int, int] = (1920, 1080),
    ) -> tuple[float, float]:
        """Screen point for ``raw``, clamped; identity passthrough until ready."""
        x, y = self.project(raw, pose_delta)
        return clamp_to_viewport(x, y, viewport)


IDENTITY = CalibrationTransform()


def distinct_raw_count(samples: Iterable[CalibrationSample]) -> int:
    return len({(round(s.raw[0], 6), round(s.raw[1], 6)) for s in samples})


def fit_transform(
    samples: Sequence[CalibrationSample], now_ms: float, config: CalibrationConfig
) -> Optional[CalibrationTransform]:
    """Weighted ridge fit of both screen axes; None when the fit must be rejected."""
    n = len(samples)
    if n < config.min_samples or distinct_raw_count(samples) < config.min_samples:
        return None

    x = np.stack([s.features() for s in samples])
    targets = np.array([s.target for s in samples], dtype=float)
    w = sample_weights(samples, now_ms, config)
    if not np.all(np.isfinite(w)) or float(w.sum()) <= 0.0:
        return None

    xtw = x.T * w
    normal = xtw @ x
    ridge = effective_ridge(n, config)
    for i in range(FEATURE_COUNT):
        if i != BIAS_INDEX:
            normal[i, i] += ridge

    coeffs = np.zeros((2, FEATURE_COUNT), dtype=float)
    try:
        for axis in range(2):
            coeffs[axis] = solve_linear_system(normal, xtw @ targets[:, axis], config.pivot_tolerance)
    except SingularFitError as exc:
        logger.debug("calibration fit rejected: %s", exc)
        return None
    if not np.all(np.isfinite(coeffs)):
        logger.debug("calibration fit rejected: non-finite coefficients")
        return None
    return CalibrationTransform(coefficients=coeffs, ready=True, sample_count=n)


@dataclass(frozen=True)
class FitReport:
    median_px: float
    p90_px: float
    count: int

    def note(self) -> str:
        return f"fit med={self.median_px:.0f}px p90={self.p90_px:.0f}px"


def fit_report(transform: CalibrationTransform, samples: Iterable[CalibrationSample]) -> Optional[FitReport]:
    errors = []
    for s in samples:
        px, py = transform.project(s.raw, s.pose_delta)
        errors.append(math.hypot(px - s.target[0], py - s.target[1]))
    if not errors:
        return None
    arr = np.array(errors, dtype=float)
    return FitReport(
        median_px=float(np.median(arr)),
        p90_px=float(np.percentile(arr, 90)),
        count=len(errors),
    )


class RegressionCalibrator:
    """Sample ring buffer plus the currently installed transform.

    ``transform`` is only ever replaced wholesale, so a reader holding a
    reference always sees one complete fit.
    """

    def __init__(self, config: CalibrationConfig) -> None:
        self.config = config
        self._samples: deque[CalibrationSample] = deque(maxlen=config.sample_cap)
        self.transform: CalibrationTransform = IDENTITY
        self.rejected_fits = 0
        self.consecutive_rejections = 0
        self.fit_count = 0
        self.last_report: Optional[FitReport] = None
        self._dirty = False
        self._last_fit_ms: Optional[float] = None

    @property
    def ready(self) -> bool:
        return self.transform.ready

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def samples(self) -> tuple[CalibrationSample, ...]:
        return tuple(self._samples)

    def reconfigure(self, config: CalibrationConfig) -> None:
        self.config = config
        if self._samples.maxlen != config.sample_cap:
            self._samples = deque(self._samples, maxlen=config.sample_cap)
            self._dirty = True

    def add_sample(self, sample: CalibrationSample, now_ms: float) -> bool:
        self._samples.append(sample)
        self._dirty = True
        return self.tick(now_ms)

    def request_refit(self, now_ms: float, force: bool = False) -> bool:
        self._dirty = True
        return self.tick(now_ms, force=force)

    def tick(self, now_ms: float, force: bool = False) -> bool:
        """Run a pending refit if the minimum interval has passed; True if a new fit was installed."""
        if not self._dirty:
            return False
        if (
            not force
            and self._last_fit_ms is not None
            and now_ms - self._last_fit_ms < self.config.min_refit_interval_ms
        ):
            return False
        return self._refit(now_ms)

    def _refit(self, now_ms: float) -> bool:
        snapshot = tuple(self._samples)
        self._dirty = False
        if len(snapshot) < self.config.min_samples or distinct_raw_count(snapshot) < self.config.min_samples:
            return False
        self._last_fit_ms = now_ms

        fitted = fit_transform(snapshot, now_ms, self.config)
        if fitted is None:
            self.rejected_fits += 1
            self.consecutive_rejections += 1
            logger.warning(
                "calibration fit rejected (%d samples, %d in a row), keeping previous transform",
                len(snapshot),
                self.consecutive_rejections,
            )
            return False

        self.transform = fitted
        self.fit_count += 1
        self.consecutive_rejections = 0
        self.last_report = fit_report(fitted, snapshot)
        if self.last_report is not None:
            logger.info("calibration %s over %d samples", self.last_report.note(), len(snapshot))
        return True

    def apply(
        self,
        raw: tuple[float, float],
        pose_delta: tuple[float, float],
        viewport: tuple[int, int],
    ) -> tuple[float, float]:
        transform = self.transform
        return transform.apply(raw, pose_delta, viewport)

    def reset(self) -> None:
        self._samples.clear()
        self.transform = IDENTITY
        self.rejected_fits = 0
        self.consecutive_rejections = 0
        self.last_report = None
        self._dirty = False
        self._last_fit_ms = None


@dataclass
class CaptureSession:
    target: tuple[float, float]
    kind: CaptureKind
    started_ms: float
    deadline_ms: float
    raws: list[tuple[float, float]] = field(default_factory=list)
    poses: list[tuple[float, float]] = field(default_factory=list)

    @property
    def frame_count(self) -> int:
        return len(self.raws)

    def add(self, raw: tuple[float, float], pose_delta: tuple[float, float]) -> None:
        self.raws.append((float(raw[0]), float(raw[1])))
        self.poses.append((float(pose_delta[0]), float(pose_delta[1])))

    def expired(self, now_ms: float) -> bool:
        return now_ms >= self.deadline_ms

    def average(self, timestamp_ms: float) -> Optional[CalibrationSample]:
        if not self.raws:
            return None
        raw = np.mean(np.array(self.raws, dtype=float), axis=0)
        pose = np.mean(np.array(self.poses, dtype=float), axis=0)
        return CalibrationSample(
            raw=(float(raw[0]), float(raw[1])),
            target=(float(self.target[0]), float(self.target[1])),
            pose_delta=(float(pose[0]), float(pose[1])),
            timestamp_ms=float(timestamp_ms),
            kind=self.kind,
            frames=len(self.raws),
        )


def calibration_grid(stage: str, viewport: tuple[int, int]) -> tuple[list[tuple[float, float]], int]:
    """Target points for a calibration stage and the captures wanted per point."""
    if stage == "primary":
        layout, captures = PRIMARY_GRID, 3
    elif stage == "fine":
        layout, captures = FINE_GRID, 2
    else:
        raise ValueError(f"unknown calibration stage: {stage!r}")
    w, h = float(viewport[0]), float(viewport[1])
    span = 1.0 - 2.0 * GRID_INSET
    points = [
        ((GRID_INSET + span * px / 100.0) * w, (GRID_INSET + span * py / 100.0) * h)
        for px, py in layout
    ]
    return points, captures
