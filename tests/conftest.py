import typing

import numpy as np
import pytest

from compflow import (
    BoundaryConditions,
    CartesianMesh,
    CompressibleFlowSolver,
    Config,
    FlowBC,
    LinearlyCompressibleFluid,
    RockProperties,
    Wells,
)

REFERENCE_PRESSURE = 1.0e7
"""Pressure at which the test fluids have unit formation volume factors (Pa)."""


@pytest.fixture
def two_phase_fluid() -> LinearlyCompressibleFluid:
    """Oil/gas fluid with equal viscosities and linear relative permeabilities."""
    return LinearlyCompressibleFluid(
        surface_density=(800.0, 1.2),
        reference_formation_volume_factor=(1.0, 1.0),
        compressibility=(1.0e-12, 1.0e-12),
        viscosity=(1.0e-3, 1.0e-3),
        corey_exponent=(1.0, 1.0),
        reference_pressure=REFERENCE_PRESSURE,
    )


@pytest.fixture
def three_phase_fluid() -> LinearlyCompressibleFluid:
    return LinearlyCompressibleFluid(
        surface_density=(1000.0, 800.0, 1.2),
        reference_formation_volume_factor=(1.0, 1.2, 5.0e-3),
        compressibility=(4.0e-10, 1.0e-9, 1.0e-7),
        viscosity=(5.0e-4, 1.0e-3, 2.0e-5),
        reference_pressure=REFERENCE_PRESSURE,
    )


@pytest.fixture
def line_mesh() -> CartesianMesh:
    """Three 10 m cubes along x."""
    return CartesianMesh.from_dimensions((3, 1, 1), (10.0, 10.0, 10.0))


@pytest.fixture
def line_rock(line_mesh: CartesianMesh) -> RockProperties:
    return RockProperties.homogeneous(line_mesh.num_cells, porosity=0.2, permeability=1.0e-13)


@pytest.fixture
def make_state() -> typing.Callable[..., typing.Tuple[np.ndarray, np.ndarray, np.ndarray]]:
    """
    Factory of (cell_pressure, face_pressure, cell_z) filling every pore with oil.

    `fill` scales the oil amount, so `fill=1.5` gives a relative volume
    discrepancy of 0.5 at `pressure`.
    """

    def _make_state(
        mesh: CartesianMesh,
        rock: RockProperties,
        fluid: LinearlyCompressibleFluid,
        pressure: float = REFERENCE_PRESSURE,
        fill: float = 1.0,
    ) -> typing.Tuple[np.ndarray, np.ndarray, np.ndarray]:
        num_phases = fluid.num_phases
        oil = fluid.num_components - 2
        liquid = fluid.liquid_phase
        fvf = fluid.formation_volume_factors(np.full(num_phases, pressure))
        pore_volume = rock.porosity_array * mesh.cell_volumes
        cell_z = np.zeros((mesh.num_cells, fluid.num_components))
        cell_z[:, oil] = fill * pore_volume / fvf[liquid]
        cell_pressure = np.full((mesh.num_cells, num_phases), pressure)
        face_pressure = np.full((mesh.num_faces, num_phases), pressure)
        return cell_pressure, face_pressure, cell_z

    return _make_state


@pytest.fixture
def make_solver() -> typing.Callable[..., CompressibleFlowSolver]:
    """Factory of a configured and set up solver without gravity."""

    def _make_solver(
        mesh: CartesianMesh,
        rock: RockProperties,
        fluid: LinearlyCompressibleFluid,
        bc: typing.Optional[BoundaryConditions] = None,
        wells: typing.Optional[Wells] = None,
        config: typing.Optional[Config] = None,
        linear_solver: typing.Any = None,
    ) -> CompressibleFlowSolver:
        solver = CompressibleFlowSolver(
            num_components=fluid.num_components, linear_solver=linear_solver
        )
        if config is None:
            config = Config(
                iterative_solver="direct", inflow_mixture_oil=1.0, inflow_mixture_gas=0.0
            )
        solver.init(config)
        solver.setup(
            mesh,
            rock,
            fluid,
            wells or Wells(),
            np.zeros(3),
            bc if bc is not None else BoundaryConditions(),
        )
        return solver

    return _make_solver


@pytest.fixture
def pressure_drop_bc() -> BoundaryConditions:
    """200 bar on the x- side, 100 bar on the x+ side, no flow elsewhere."""
    return BoundaryConditions(
        conditions={
            1: FlowBC.dirichlet(2.0e7),
            2: FlowBC.dirichlet(1.0e7),
        }
    )
