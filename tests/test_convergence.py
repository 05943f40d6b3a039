import math

import numpy as np
import pytest

from compflow import compute_flux_pressure_changes, has_converged, relative_change


@pytest.fixture
def iterates():
    rng = np.random.default_rng(42)
    return dict(
        face_flux=rng.normal(size=12),
        perforation_flux=rng.normal(size=2),
        cell_pressure=1.0e7 + rng.normal(scale=1.0e5, size=4),
        start_face_flux=rng.normal(size=12),
        start_perforation_flux=rng.normal(size=2),
        start_cell_pressure=1.0e7 + rng.normal(scale=1.0e5, size=4),
    )


def test_metrics(iterates):
    flux_change, pressure_change = compute_flux_pressure_changes(**iterates)
    expected_flux = max(
        np.max(np.abs(iterates["face_flux"] - iterates["start_face_flux"])),
        np.max(np.abs(iterates["perforation_flux"] - iterates["start_perforation_flux"])),
    ) / max(np.max(np.abs(iterates["face_flux"])), np.max(np.abs(iterates["perforation_flux"])))
    expected_pressure = np.max(
        np.abs(iterates["cell_pressure"] - iterates["start_cell_pressure"])
    ) / np.max(np.abs(iterates["cell_pressure"]))
    assert flux_change == pytest.approx(expected_flux)
    assert pressure_change == pytest.approx(expected_pressure)


@pytest.mark.parametrize("factor", [7.5, -2.0])
def test_metrics_are_scale_invariant(iterates, factor):
    reference = compute_flux_pressure_changes(**iterates)
    scaled = compute_flux_pressure_changes(**{key: factor * value for key, value in iterates.items()})
    assert scaled == pytest.approx(reference, rel=1e-12)


def test_metrics_without_perforations():
    flux_change, pressure_change = compute_flux_pressure_changes(
        face_flux=np.array([2.0, -4.0]),
        perforation_flux=np.zeros(0),
        cell_pressure=np.array([10.0, 20.0]),
        start_face_flux=np.array([1.0, -4.0]),
        start_perforation_flux=np.zeros(0),
        start_cell_pressure=np.array([10.0, 18.0]),
    )
    assert flux_change == pytest.approx(0.25)
    assert pressure_change == pytest.approx(0.1)


def test_zero_normalizer():
    assert relative_change(0.0, 0.0) == 0.0
    assert math.isinf(relative_change(1.0, 0.0))
    assert relative_change(1.0, 4.0) == 0.25

    flux_change, _ = compute_flux_pressure_changes(
        face_flux=np.zeros(3),
        perforation_flux=np.zeros(0),
        cell_pressure=np.ones(2),
        start_face_flux=np.zeros(3),
        start_perforation_flux=np.zeros(0),
        start_cell_pressure=np.ones(2),
    )
    assert flux_change == 0.0


@pytest.mark.parametrize(
    "flux_change, pressure_change, expected",
    [
        (1e-6, 1.0, True),
        (1.0, 1e-6, True),
        (1e-6, 1e-6, True),
        (1.0, 1.0, False),
        (1e-5, 1e-5, False),
        (float("inf"), 1e-6, True),
    ],
)
def test_either_metric_converges(flux_change, pressure_change, expected):
    assert has_converged(flux_change, pressure_change, 1e-5, 1e-5) is expected
