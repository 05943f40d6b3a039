import numpy as np
import pytest

from compflow import (
    CartesianMesh,
    RockProperties,
    ValidationError,
    compute_fluid_properties,
)

from .conftest import REFERENCE_PRESSURE

DT = 1000.0


def _properties(mesh, rock, fluid, cell_pressure, face_pressure, cell_z, gravity=None, inflow=(0.0, 1.0)):
    return compute_fluid_properties(
        mesh=mesh,
        rock=rock,
        fluid=fluid,
        gravity=np.zeros(3) if gravity is None else gravity,
        cell_pressure=cell_pressure,
        face_pressure=face_pressure,
        cell_z=cell_z,
        inflow_mixture=np.asarray(inflow),
        dt=DT,
    )


@pytest.mark.parametrize("fill", [1.0, 1.5, 0.9])
def test_volume_discrepancy(line_mesh, line_rock, two_phase_fluid, make_state, fill):
    cell_pressure, face_pressure, cell_z = make_state(line_mesh, line_rock, two_phase_fluid, fill=fill)
    snapshot = _properties(line_mesh, line_rock, two_phase_fluid, cell_pressure, face_pressure, cell_z)

    np.testing.assert_allclose(snapshot.pore_volume, 200.0)
    np.testing.assert_allclose(snapshot.total_phase_volume_density, fill)
    np.testing.assert_allclose(snapshot.relative_volume_discrepancy, abs(fill - 1.0), atol=1e-15)
    np.testing.assert_allclose(
        snapshot.volume_discrepancy, (fill - 1.0) * 200.0 / DT, atol=1e-15
    )
    assert snapshot.max_relative_volume_discrepancy == pytest.approx(abs(fill - 1.0), abs=1e-15)
    assert snapshot.num_cells == 3


def test_compressibility_terms(line_mesh, line_rock, two_phase_fluid, make_state):
    cell_pressure, face_pressure, cell_z = make_state(line_mesh, line_rock, two_phase_fluid, fill=1.5)
    snapshot = _properties(line_mesh, line_rock, two_phase_fluid, cell_pressure, face_pressure, cell_z)
    # Σ_α c_α V_α / pv with V_oil = 1.5 pv
    np.testing.assert_allclose(snapshot.total_compressibility, 1.5e-12)
    np.testing.assert_allclose(snapshot.explicit_jacobian_term, 1.5e-12)
    np.testing.assert_allclose(snapshot.cell_transform[:, 0, 0], 1.0)


def _interior_face(mesh, first, second):
    faces = np.flatnonzero((mesh.face_cells[:, 0] == first) & (mesh.face_cells[:, 1] == second))
    assert faces.size == 1
    return int(faces[0])


def test_faces_take_upstream_composition(line_mesh, line_rock, two_phase_fluid, make_state):
    cell_pressure, face_pressure, cell_z = make_state(line_mesh, line_rock, two_phase_fluid)
    # Cell 1 holds gas only
    cell_z[1] = [0.0, 200.0]

    cell_pressure[:, :] = [[2.0e7], [1.5e7], [1.0e7]]
    face_pressure[:, :] = 1.5e7
    snapshot = _properties(line_mesh, line_rock, two_phase_fluid, cell_pressure, face_pressure, cell_z)
    np.testing.assert_allclose(snapshot.face_mobility[_interior_face(line_mesh, 0, 1)], [1000.0, 0.0])
    np.testing.assert_allclose(snapshot.face_mobility[_interior_face(line_mesh, 1, 2)], [0.0, 1000.0])

    cell_pressure[:, :] = [[1.0e7], [1.5e7], [2.0e7]]
    snapshot = _properties(line_mesh, line_rock, two_phase_fluid, cell_pressure, face_pressure, cell_z)
    np.testing.assert_allclose(snapshot.face_mobility[_interior_face(line_mesh, 0, 1)], [0.0, 1000.0])
    np.testing.assert_allclose(snapshot.face_mobility[_interior_face(line_mesh, 1, 2)], [1000.0, 0.0])
    np.testing.assert_allclose(snapshot.face_mobility_derivative[_interior_face(line_mesh, 1, 2)], [1000.0, 1000.0])


def test_boundary_inflow_uses_inflow_mixture(line_mesh, line_rock, two_phase_fluid, make_state):
    cell_pressure, face_pressure, cell_z = make_state(line_mesh, line_rock, two_phase_fluid)
    left = np.flatnonzero(line_mesh.boundary_ids == 1)[0]
    right = np.flatnonzero(line_mesh.boundary_ids == 2)[0]
    face_pressure[left] = 2.0e7
    face_pressure[right] = 5.0e6

    snapshot = _properties(line_mesh, line_rock, two_phase_fluid, cell_pressure, face_pressure, cell_z)
    np.testing.assert_allclose(snapshot.face_mobility[left], [0.0, 1000.0])
    np.testing.assert_allclose(snapshot.face_mobility[right], [1000.0, 0.0])
    fvf = two_phase_fluid.formation_volume_factors(np.full(2, 2.0e7))
    np.testing.assert_allclose(snapshot.face_transform[left], np.diag(1.0 / fvf))


def test_gravity_offsets(two_phase_fluid, make_state):
    mesh = CartesianMesh.from_dimensions((1, 1, 2), (10.0, 10.0, 10.0))
    rock = RockProperties.homogeneous(mesh.num_cells, porosity=0.2, permeability=1.0e-13)
    cell_pressure, face_pressure, cell_z = make_state(mesh, rock, two_phase_fluid)
    snapshot = _properties(
        mesh, rock, two_phase_fluid, cell_pressure, face_pressure, cell_z, gravity=np.array([0.0, 0.0, 10.0])
    )
    face = _interior_face(mesh, 0, 1)
    np.testing.assert_allclose(snapshot.gravity_capillary_flux[face], [800.0 * 100.0, 1.2 * 100.0])

    bottom = np.flatnonzero(mesh.boundary_ids == 6)[0]
    np.testing.assert_allclose(snapshot.gravity_capillary_flux[bottom], [800.0 * 50.0, 1.2 * 50.0])


def test_time_step_must_be_positive(line_mesh, line_rock, two_phase_fluid, make_state):
    cell_pressure, face_pressure, cell_z = make_state(line_mesh, line_rock, two_phase_fluid)
    with pytest.raises(ValidationError):
        compute_fluid_properties(
            line_mesh,
            line_rock,
            two_phase_fluid,
            np.zeros(3),
            cell_pressure,
            face_pressure,
            cell_z,
            np.array([0.0, 1.0]),
            0.0,
        )
