import dataclasses

import numpy as np
import pytest

from gazedwell.calibration import (
    CalibrationSample,
    CaptureKind,
    CaptureSession,
    RegressionCalibrator,
    SingularFitError,
    calibration_grid,
    effective_ridge,
    fit_report,
    fit_transform,
    pose_penalty,
    sample_weights,
    solve_linear_system,
    time_decay,
)
from gazedwell.config import CalibrationConfig

RAWS = [(100, 100), (400, 120), (250, 300), (600, 500), (150, 450), (500, 250)]


def _truth(raw):
    rx, ry = raw
    return 2.0 * rx + 0.5 * ry + 40.0, -0.3 * rx + 1.8 * ry + 10.0


def _samples(raws, truth=_truth, t=0.0):
    return [CalibrationSample(raw=(float(r[0]), float(r[1])), target=truth(r), timestamp_ms=t) for r in raws]


def test_solve_linear_system():
    x = solve_linear_system(np.array([[2.0, 1.0], [1.0, 3.0]]), np.array([3.0, 5.0]))
    assert x == pytest.approx([0.8, 1.4])


def test_solve_linear_system_pivots_on_zero_diagonal():
    x = solve_linear_system(np.array([[0.0, 1.0], [1.0, 0.0]]), np.array([2.0, 3.0]))
    assert x == pytest.approx([3.0, 2.0])


def test_solve_linear_system_singular():
    with pytest.raises(SingularFitError):
        solve_linear_system(np.array([[1.0, 2.0], [2.0, 4.0]]), np.array([1.0, 2.0]))


def test_weight_helpers():
    assert time_decay(30_000, 30_000) == pytest.approx(0.5)
    assert time_decay(-10, 30_000) == 1.0
    assert pose_penalty((0.25, 0.0), 0.25) == pytest.approx(0.5)
    assert pose_penalty((0.0, 0.0), 0.25) == 1.0


def test_sparse_targets_weigh_more():
    cfg = CalibrationConfig()
    samples = [
        CalibrationSample(raw=(0, 0), target=(100, 100)),
        CalibrationSample(raw=(1, 1), target=(110, 100)),
        CalibrationSample(raw=(2, 2), target=(900, 900)),
    ]
    w = sample_weights(samples, 0.0, cfg)
    assert w[0] == pytest.approx(1.25)
    assert w[2] == pytest.approx(1.5)


def test_refinement_samples_weigh_less():
    cfg = CalibrationConfig()
    samples = [
        CalibrationSample(raw=(0, 0), target=(100, 100)),
        CalibrationSample(raw=(1, 1), target=(900, 900), kind=CaptureKind.REFINEMENT),
    ]
    w = sample_weights(samples, 0.0, cfg)
    assert w[1] == pytest.approx(w[0] * cfg.refinement_weight)


def test_effective_ridge_is_monotone():
    cfg = CalibrationConfig(ridge_lambda=1e-3, ridge_fade_samples=12)
    values = [effective_ridge(n, cfg) for n in range(1, 101)]
    assert all(a >= b for a, b in zip(values, values[1:]))
    assert effective_ridge(12, cfg) == pytest.approx(1e-3)
    assert effective_ridge(24, cfg) == pytest.approx(5e-4)


def test_exact_fit_recovers_linear_map():
    transform = fit_transform(_samples(RAWS), 0.0, CalibrationConfig())
    assert transform is not None and transform.ready
    expected = np.array([[2.0, 0.5, 0.0, 0.0, 40.0], [-0.3, 1.8, 0.0, 0.0, 10.0]])
    assert np.allclose(transform.coefficients, expected, atol=1e-4)
    assert transform.apply((300, 200), viewport=(4000, 4000)) == pytest.approx(_truth((300, 200)), abs=1e-3)


def test_ridge_changes_small_fits():
    raws = [(100, 100), (200, 150), (150, 250)]
    truth = {(100, 100): (500, 500), (200, 150): (900, 700), (150, 250): (700, 1000)}
    samples = _samples(raws, truth=lambda r: truth[r])
    weak = fit_transform(samples, 0.0, CalibrationConfig(ridge_lambda=1e-3))
    strong = fit_transform(samples, 0.0, CalibrationConfig(ridge_lambda=50.0))
    assert weak is not None and strong is not None
    assert not np.allclose(weak.coefficients, strong.coefficients, rtol=0.0, atol=1e-6)


def test_fit_without_ridge_is_rejected():
    assert fit_transform(_samples(RAWS), 0.0, CalibrationConfig(ridge_lambda=0.0)) is None


def test_fit_needs_distinct_raws():
    samples = [CalibrationSample(raw=(10, 10), target=(100 * i, 100)) for i in range(5)]
    assert fit_transform(samples, 0.0, CalibrationConfig()) is None


def test_two_cluster_end_to_end():
    offsets = [(0, 0), (2, -1), (-2, 1), (1, 2), (-1, -2)]
    samples = []
    for centre, target in (((100, 100), (500, 500)), ((200, 200), (900, 900))):
        for dx, dy in offsets:
            samples.append(CalibrationSample(raw=(centre[0] + dx, centre[1] + dy), target=target))
    transform = fit_transform(samples, 0.0, CalibrationConfig())
    assert transform is not None
    x, y = transform.apply((150, 150), viewport=(1920, 1080))
    assert x == pytest.approx(700.0, abs=1.0)
    assert y == pytest.approx(700.0, abs=1.0)


def test_unready_transform_is_clamped_identity():
    calibrator = RegressionCalibrator(CalibrationConfig())
    assert not calibrator.ready
    assert calibrator.apply((-50.0, 5000.0), (0.0, 0.0), (1920, 1080)) == (0.0, 1079.0)
    assert calibrator.apply((300.0, 200.0), (0.0, 0.0), (1920, 1080)) == (300.0, 200.0)


def test_calibrator_fits_once_enough_samples_arrive():
    calibrator = RegressionCalibrator(CalibrationConfig())
    samples = _samples(RAWS[:3])
    assert not calibrator.add_sample(samples[0], 0)
    assert not calibrator.add_sample(samples[1], 10)
    assert calibrator.add_sample(samples[2], 20)
    assert calibrator.ready
    assert calibrator.fit_count == 1
    assert calibrator.last_report is not None


def test_refits_are_throttled():
    calibrator = RegressionCalibrator(CalibrationConfig(min_refit_interval_ms=250))
    samples = _samples(RAWS)
    for i, sample in enumerate(samples[:3]):
        calibrator.add_sample(sample, i * 10)
    installed = calibrator.transform

    assert not calibrator.add_sample(samples[3], 100)
    assert calibrator.transform is installed
    assert calibrator.dirty
    assert not calibrator.tick(269)
    assert calibrator.tick(270)
    assert calibrator.transform is not installed
    assert not calibrator.dirty


def test_rejected_fit_keeps_previous_transform():
    cfg = CalibrationConfig(min_refit_interval_ms=0)
    calibrator = RegressionCalibrator(cfg)
    samples = _samples(RAWS)
    for sample in samples[:5]:
        calibrator.add_sample(sample, 0)
    installed = calibrator.transform
    assert installed.ready

    calibrator.reconfigure(dataclasses.replace(cfg, ridge_lambda=0.0))
    assert not calibrator.add_sample(samples[5], 0)
    assert calibrator.transform is installed
    assert calibrator.rejected_fits == 1
    assert calibrator.consecutive_rejections == 1


def test_ring_buffer_drops_oldest():
    calibrator = RegressionCalibrator(CalibrationConfig(sample_cap=3))
    for sample in _samples(RAWS):
        calibrator.add_sample(sample, 0)
    assert calibrator.sample_count == 3
    assert calibrator.samples()[0].raw == (600.0, 500.0)


def test_fit_report_on_exact_data():
    samples = _samples(RAWS)
    report = fit_report(fit_transform(samples, 0.0, CalibrationConfig()), samples)
    assert report.count == len(RAWS)
    assert report.median_px < 0.01
    assert report.note() == "fit med=0px p90=0px"


def test_capture_session_average_and_expiry():
    session = CaptureSession(target=(500.0, 500.0), kind=CaptureKind.EXPLICIT, started_ms=0.0, deadline_ms=420.0)
    assert session.average(0.0) is None
    session.add((100.0, 100.0), (0.0, 0.0))
    session.add((110.0, 90.0), (0.1, 0.0))
    assert not session.expired(419.0)
    assert session.expired(420.0)
    sample = session.average(400.0)
    assert sample.raw == (105.0, 95.0)
    assert sample.pose_delta == pytest.approx((0.05, 0.0))
    assert sample.frames == 2
    assert sample.timestamp_ms == 400.0


def test_calibration_grids():
    points, captures = calibration_grid("primary", (1000, 1000))
    assert len(points) == 9 and captures == 3
    assert points[0] == pytest.approx((140.0, 140.0))
    assert points[4] == pytest.approx((500.0, 500.0))
    fine, fine_captures = calibration_grid("fine", (1000, 1000))
    assert len(fine) == 12 and fine_captures == 2
    with pytest.raises(ValueError):
        calibration_grid("extra", (1000, 1000))
