import numpy as np
import pytest

from compflow import (
    ComputationError,
    LinearlyCompressibleFluid,
    ValidationError,
    compute_corey_mobilities,
)

from .conftest import REFERENCE_PRESSURE


def test_formation_volume_factors_at_reference_pressure(three_phase_fluid):
    fvf = three_phase_fluid.formation_volume_factors(np.full(3, REFERENCE_PRESSURE))
    np.testing.assert_allclose(fvf, [1.0, 1.2, 5.0e-3])


def test_formation_volume_factor_decreases_with_pressure(three_phase_fluid):
    low = three_phase_fluid.formation_volume_factors(np.full(3, REFERENCE_PRESSURE))
    high = three_phase_fluid.formation_volume_factors(np.full(3, 2.0 * REFERENCE_PRESSURE))
    assert np.all(high < low)


def test_non_positive_formation_volume_factor_raises(three_phase_fluid):
    with pytest.raises(ComputationError):
        three_phase_fluid.formation_volume_factors(np.full(3, 1.0e15))


def test_state_saturations_and_volumes(three_phase_fluid):
    pressure = np.full(3, REFERENCE_PRESSURE)
    state = three_phase_fluid.compute_state(pressure, np.array([10.0, 5.0, 400.0]))
    np.testing.assert_allclose(state.phase_volumes, [10.0, 6.0, 2.0])
    np.testing.assert_allclose(state.saturation, [10.0 / 18.0, 6.0 / 18.0, 2.0 / 18.0])
    assert state.total_volume == pytest.approx(18.0)
    np.testing.assert_allclose(state.phase_to_component, np.diag([1.0, 1.0 / 1.2, 200.0]))
    np.testing.assert_allclose(state.phase_compressibility, [4.0e-10, 1.0e-9, 1.0e-7])
    assert state.total_compressibility == pytest.approx(
        (10.0 * 4.0e-10 + 6.0 * 1.0e-9 + 2.0 * 1.0e-7) / 18.0
    )


def test_empty_composition_has_zero_saturation(three_phase_fluid):
    state = three_phase_fluid.compute_state(np.full(3, REFERENCE_PRESSURE), np.zeros(3))
    np.testing.assert_array_equal(state.saturation, 0.0)
    np.testing.assert_array_equal(state.mobility, 0.0)


def test_phase_densities_from_transform(three_phase_fluid):
    state = three_phase_fluid.compute_state(np.full(3, REFERENCE_PRESSURE), np.ones(3))
    densities = three_phase_fluid.phase_densities(state.phase_to_component)
    np.testing.assert_allclose(densities, [1000.0, 800.0 / 1.2, 1.2 * 200.0])


def test_corey_mobilities():
    mobility, derivative = compute_corey_mobilities(
        np.array([0.5, 0.0, 1.0]), np.array([1.0e-3, 1.0e-3, 2.0e-3]), np.array([2.0, 2.0, 1.0])
    )
    np.testing.assert_allclose(mobility, [250.0, 0.0, 500.0])
    np.testing.assert_allclose(derivative, [1000.0, 0.0, 500.0])


def test_linear_mobility_derivative_at_zero_saturation():
    _, derivative = compute_corey_mobilities(
        np.array([0.0]), np.array([1.0e-3]), np.array([1.0])
    )
    np.testing.assert_allclose(derivative, [1000.0])


def test_default_corey_exponents():
    fluid = LinearlyCompressibleFluid(
        surface_density=(800.0, 1.0),
        reference_formation_volume_factor=(1.0, 1.0),
        compressibility=(0.0, 0.0),
        viscosity=(1.0e-3, 1.0e-5),
    )
    assert fluid.corey_exponent == (2.0, 2.0)
    assert fluid.liquid_phase == 0


def test_validation():
    with pytest.raises(ValidationError):
        LinearlyCompressibleFluid(
            surface_density=(800.0,),
            reference_formation_volume_factor=(1.0,),
            compressibility=(0.0,),
            viscosity=(1.0e-3,),
        )
    with pytest.raises(ValidationError):
        LinearlyCompressibleFluid(
            surface_density=(800.0, 1.0),
            reference_formation_volume_factor=(1.0,),
            compressibility=(0.0, 0.0),
            viscosity=(1.0e-3, 1.0e-5),
        )
    with pytest.raises(ValidationError):
        LinearlyCompressibleFluid(
            surface_density=(800.0, 1.0),
            reference_formation_volume_factor=(1.0, 1.0),
            compressibility=(0.0, 0.0),
            viscosity=(1.0e-3, 0.0),
        )
