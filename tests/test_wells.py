import numpy as np
import pytest

from compflow import (
    BHPControl,
    CartesianMesh,
    InvariantViolationError,
    PerforationTable,
    RateControl,
    ValidationError,
    Well,
    Wells,
    WellType,
    compute_effective_drainage_radius,
    compute_perforation_properties,
    compute_well_index,
    compute_well_perforation_pressures,
    compute_well_potentials,
)

from .conftest import REFERENCE_PRESSURE


def _producer(name, cells, bhp=REFERENCE_PRESSURE, **kwargs):
    return Well(
        name=name,
        type=WellType.PRODUCER,
        perforation_cells=cells,
        control=BHPControl(bottom_hole_pressure=bhp),
        reference_depth=0.0,
        **kwargs,
    )


def test_peaceman_well_index():
    re = compute_effective_drainage_radius(10.0, 10.0, 1.0e-13, 1.0e-13)
    assert re == pytest.approx(0.14 * np.sqrt(200.0))
    wi = compute_well_index(1.0e-13, 10.0, 0.1, re, 0.0)
    assert wi == pytest.approx(2.0 * np.pi * 1.0e-12 / np.log(re / 0.1))

    with_skin = compute_well_index(1.0e-13, 10.0, 0.1, re, 2.0)
    assert with_skin < wi


def test_well_indices_follow_perforation_order(line_mesh, line_rock):
    wells = Wells(
        wells=[
            _producer("P1", [2], well_indices=[5.0e-12]),
            _producer("P2", [0, 1]),
        ]
    )
    indices = wells.well_indices(line_mesh, line_rock.flat_permeability)
    assert indices.shape == (3,)
    assert indices[0] == 5.0e-12
    expected = wells.wells[1].get_well_index((10.0, 10.0, 10.0), (1.0e-13, 1.0e-13, 1.0e-13))
    np.testing.assert_allclose(indices[1:], expected)


def test_well_validation():
    with pytest.raises(ValidationError):
        _producer("empty", [])
    with pytest.raises(ValidationError):
        Well(
            name="I",
            type="injector",
            perforation_cells=[0],
            control=BHPControl(bottom_hole_pressure=2.0e7),
            reference_depth=0.0,
        )
    with pytest.raises(ValidationError):
        _producer("P", [0, 1], well_indices=[1.0])
    with pytest.raises(ValidationError):
        Well(
            name="R",
            type="producer",
            perforation_cells=[0],
            control=RateControl(rate=-1.0e-3),
            reference_depth=0.0,
        )
    with pytest.raises(ValidationError):
        Wells(wells=[_producer("P1", [0]), _producer("P2", [0])])


def test_perforation_lookups():
    injector = Well(
        name="I",
        type="injector",
        perforation_cells=[1],
        control=RateControl(rate=1.0e-3),
        reference_depth=5.0,
        injection_mixture=[0.0, 1.0],
        initial_perforation_pressure=1.5e7,
    )
    wells = Wells(wells=[_producer("P", [0, 2], bhp=9.0e6), injector])
    assert wells.num_wells == 2
    assert wells.total_perforations == 3
    assert wells.well_cell(0, 1) == 2
    assert wells.type(1) is WellType.INJECTOR
    assert wells.perforation_pressure(2) == 9.0e6
    assert wells.perforation_pressure(1) == 1.5e7
    np.testing.assert_array_equal(wells.injection_mixture(1), [0.0, 1.0])
    with pytest.raises(ValidationError):
        wells.injection_mixture(0)
    with pytest.raises(ValidationError):
        wells.well_at(5)

    table = PerforationTable.from_wells(wells, num_phases=2, num_components=2)
    np.testing.assert_array_equal(table.wells, [0, 0, 1])
    np.testing.assert_array_equal(table.cells, [0, 2, 1])
    np.testing.assert_array_equal(table.pressure, [9.0e6, 9.0e6, 1.5e7])
    np.testing.assert_array_equal(table.well_perforations(0), [0, 1])


def test_single_perforation_pressures():
    potential = np.array([[100.0, 10.0], [-50.0, -5.0]])
    saturation = np.array([[0.8, 0.2], [0.25, 0.75]])
    pressures = compute_well_perforation_pressures(
        perforation_fluxes=np.array([-1.0e-3, 2.0e-3]),
        bhp=np.array([1.0e7, 2.0e7]),
        potential=potential,
        saturation=saturation,
        perforation_wells=np.array([0, 1]),
        num_wells=2,
    )
    np.testing.assert_allclose(
        pressures, [1.0e7 + 0.8 * 100.0 + 0.2 * 10.0, 2.0e7 - 0.25 * 50.0 - 0.75 * 5.0]
    )


def test_flux_weighted_well_saturation():
    potential = np.array([[0.0, 0.0], [200.0, 20.0]])
    saturation = np.array([[1.0, 0.0], [0.0, 1.0]])
    pressures = compute_well_perforation_pressures(
        perforation_fluxes=np.array([-3.0e-3, -1.0e-3]),
        bhp=np.array([1.0e7]),
        potential=potential,
        saturation=saturation,
        perforation_wells=np.array([0, 0]),
        num_wells=1,
    )
    # Well saturation is (0.75, 0.25)
    np.testing.assert_allclose(pressures, [1.0e7, 1.0e7 + 0.75 * 200.0 + 0.25 * 20.0])


def test_shut_in_well_uses_mean_saturation():
    pressures = compute_well_perforation_pressures(
        perforation_fluxes=np.zeros(2),
        bhp=np.array([1.0e7]),
        potential=np.array([[0.0, 0.0], [200.0, 20.0]]),
        saturation=np.array([[1.0, 0.0], [0.0, 1.0]]),
        perforation_wells=np.array([0, 0]),
        num_wells=1,
    )
    np.testing.assert_allclose(pressures, [1.0e7, 1.0e7 + 0.5 * 200.0 + 0.5 * 20.0])


def test_perforation_pressure_length_checks():
    with pytest.raises(InvariantViolationError):
        compute_well_perforation_pressures(
            perforation_fluxes=np.zeros(1),
            bhp=np.array([1.0e7]),
            potential=np.zeros((2, 2)),
            saturation=np.zeros((2, 2)),
            perforation_wells=np.array([0, 0]),
            num_wells=1,
        )
    with pytest.raises(ValidationError):
        compute_well_perforation_pressures(
            perforation_fluxes=np.zeros(2),
            bhp=np.array([1.0e7, 1.0e7]),
            potential=np.zeros((2, 2)),
            saturation=np.zeros((2, 2)),
            perforation_wells=np.array([0, 0]),
            num_wells=1,
        )


def test_well_potentials(two_phase_fluid):
    mesh = CartesianMesh.from_dimensions((1, 1, 3), (10.0, 10.0, 10.0))
    wells = Wells(wells=[_producer("P", [0, 2])])
    table = PerforationTable.from_wells(wells, num_phases=2, num_components=2)
    table.transform[:] = np.eye(2)

    potential = compute_well_potentials(table, wells, mesh, two_phase_fluid, np.array([0.0, 0.0, 10.0]))
    # Cell centroids are at z = 5 and z = 25
    np.testing.assert_allclose(potential[0], [800.0 * 10.0 * 5.0, 1.2 * 10.0 * 5.0])
    np.testing.assert_allclose(potential[1], [800.0 * 10.0 * 25.0, 1.2 * 10.0 * 25.0])
    assert potential is table.potential


def test_well_potentials_require_vertical_gravity(line_mesh, two_phase_fluid):
    wells = Wells(wells=[_producer("P", [0])])
    table = PerforationTable.from_wells(wells, num_phases=2, num_components=2)
    with pytest.raises(InvariantViolationError):
        compute_well_potentials(table, wells, line_mesh, two_phase_fluid, np.array([1.0, 0.0, 9.8]))

    empty = PerforationTable.from_wells(Wells(), num_phases=2, num_components=2)
    potential = compute_well_potentials(empty, Wells(), line_mesh, two_phase_fluid, np.array([1.0, 0.0, 9.8]))
    assert potential.shape == (0, 2)


def test_perforation_properties(two_phase_fluid, line_mesh, line_rock, make_state):
    injector = Well(
        name="I",
        type="injector",
        perforation_cells=[0],
        control=BHPControl(bottom_hole_pressure=2.0e7),
        reference_depth=0.0,
        injection_mixture=[0.0, 50.0],
    )
    wells = Wells(wells=[injector, _producer("P", [2])])
    table = PerforationTable.from_wells(wells, num_phases=2, num_components=2)
    cell_pressure, _, cell_z = make_state(line_mesh, line_rock, two_phase_fluid)

    compute_perforation_properties(two_phase_fluid, wells, table, cell_pressure, cell_z)

    # Injector: gas only, evaluated at the perforation pressure
    np.testing.assert_allclose(table.saturation[0], [0.0, 1.0])
    fvf = two_phase_fluid.formation_volume_factors(np.full(2, 2.0e7))
    np.testing.assert_allclose(table.transform[0], np.diag(1.0 / fvf))
    # Producer: takes the oil-filled cell state
    np.testing.assert_allclose(table.saturation[1], [1.0, 0.0])
    np.testing.assert_allclose(table.mobility[1], [1000.0, 0.0])


def test_perforation_properties_detect_count_mismatch(two_phase_fluid, line_mesh, line_rock, make_state):
    wells = Wells(wells=[_producer("P", [0, 1])])
    stale = PerforationTable.from_wells(Wells(wells=[_producer("P", [0])]), num_phases=2, num_components=2)
    cell_pressure, _, cell_z = make_state(line_mesh, line_rock, two_phase_fluid)
    with pytest.raises(InvariantViolationError):
        compute_perforation_properties(two_phase_fluid, wells, stale, cell_pressure, cell_z)
