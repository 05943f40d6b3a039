"""Fluid property evaluation for cells, faces and well perforations."""

import logging

import attrs
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ValidationError
from compflow.types import (
    FluidModel,
    Mesh,
    OneDimensionalArray,
    Rock,
    TwoDimensionalArray,
    WellsInterface,
    WellType,
)
from compflow.wells.core import PerforationTable

logger = logging.getLogger(__name__)

__all__ = [
    "FluidPropertySnapshot",
    "compute_fluid_properties",
    "compute_perforation_properties",
]


@attrs.frozen
class FluidPropertySnapshot:
    """
    Cell and face fluid properties at one pressure iteration.

    Rebuilt wholesale on every iteration.
    """

    total_compressibility: OneDimensionalArray
    """Total compressibility of each cell per unit pore volume, `tpvd * Σ_α S_α c_α` (1/Pa)."""
    volume_discrepancy: OneDimensionalArray
    """
    Volume discrepancy rate of each cell (m³/s).

    `(tpvd - 1) * pore_volume / dt`, positive when the fluid occupies more
    than the pore volume.
    """
    relative_volume_discrepancy: OneDimensionalArray
    """Relative volume discrepancy `|tpvd - 1|` of each cell."""
    total_phase_volume_density: OneDimensionalArray
    """Total phase volume per unit pore volume (tpvd) of each cell."""
    explicit_jacobian_term: OneDimensionalArray
    """Negative pressure derivative of the total phase volume density of each cell (1/Pa)."""
    cell_transform: np.ndarray
    """Cell phase-to-component transforms, shape (num_cells, num_components, num_phases)."""
    face_transform: np.ndarray
    """Face phase-to-component transforms, shape (num_faces, num_components, num_phases)."""
    face_mobility: TwoDimensionalArray
    """Face phase mobilities, shape (num_faces, num_phases)."""
    face_mobility_derivative: TwoDimensionalArray
    """Face phase mobility saturation derivatives, shape (num_faces, num_phases)."""
    gravity_capillary_flux: TwoDimensionalArray
    """
    Gravity pressure offset of each face and phase, shape (num_faces, num_phases) (Pa).

    `ρ_α g·(x_second - x_first)`, where a boundary face's outside point is
    its centroid. Capillary pressure is not included.
    """
    pore_volume: OneDimensionalArray
    """Pore volume of each cell (m³)."""

    @property
    def num_cells(self) -> int:
        return self.total_compressibility.shape[0]

    @property
    def max_relative_volume_discrepancy(self) -> float:
        if self.relative_volume_discrepancy.size == 0:
            return 0.0
        return float(np.max(self.relative_volume_discrepancy))


def compute_fluid_properties(
    mesh: Mesh,
    rock: Rock,
    fluid: FluidModel,
    gravity: OneDimensionalArray,
    cell_pressure: TwoDimensionalArray,
    face_pressure: TwoDimensionalArray,
    cell_z: TwoDimensionalArray,
    inflow_mixture: OneDimensionalArray,
    dt: float,
) -> FluidPropertySnapshot:
    """
    Evaluate the fluid state of every cell and face.

    Cell quantities come from the cell pressure and composition. Each face is
    evaluated at its liquid pressure with the composition of its upstream
    cell, the upstream side being chosen by the liquid phase potential. A
    boundary face whose pressure exceeds its cell pressure carries inflow and
    is evaluated with `inflow_mixture`.

    :param mesh: Mesh topology and geometry.
    :param rock: Rock properties.
    :param fluid: Fluid model.
    :param gravity: Gravity vector (m/s²).
    :param cell_pressure: Cell phase pressures, shape (num_cells, num_phases) (Pa).
    :param face_pressure: Face phase pressures, shape (num_faces, num_phases) (Pa).
    :param cell_z: Cell component surface volumes, shape (num_cells, num_components).
    :param inflow_mixture: Composition flowing in through boundary faces.
    :param dt: Time step size (s).
    :return: `FluidPropertySnapshot`.
    """
    if dt <= 0.0:
        raise ValidationError(f"Time step must be positive, got {dt}.")

    dtype = get_dtype()
    num_cells = mesh.num_cells
    num_faces = mesh.num_faces
    num_phases = fluid.num_phases
    num_components = fluid.num_components
    liquid = fluid.liquid_phase
    gravity = np.asarray(gravity, dtype=dtype)
    inflow_mixture = np.asarray(inflow_mixture, dtype=dtype)

    pore_volume = np.array(
        [rock.porosity(cell) * mesh.cell_volume(cell) for cell in range(num_cells)],
        dtype=dtype,
    )
    total_compressibility = np.zeros(num_cells, dtype=dtype)
    tpvd = np.zeros(num_cells, dtype=dtype)
    explicit_jacobian_term = np.zeros(num_cells, dtype=dtype)
    cell_transform = np.zeros((num_cells, num_components, num_phases), dtype=dtype)
    cell_density = np.zeros((num_cells, num_phases), dtype=dtype)

    for cell in range(num_cells):
        state = fluid.compute_state(cell_pressure[cell], cell_z[cell])
        tpvd[cell] = state.total_volume / pore_volume[cell]
        # Per unit pore volume, so that pv * ct equals -d(pv * tpvd)/dp
        total_compressibility[cell] = state.total_compressibility * tpvd[cell]
        explicit_jacobian_term[cell] = (
            np.dot(state.phase_compressibility, state.phase_volumes) / pore_volume[cell]
        )
        cell_transform[cell] = state.phase_to_component
        cell_density[cell] = fluid.phase_densities(state.phase_to_component)

    face_transform = np.zeros((num_faces, num_components, num_phases), dtype=dtype)
    face_mobility = np.zeros((num_faces, num_phases), dtype=dtype)
    face_mobility_derivative = np.zeros((num_faces, num_phases), dtype=dtype)
    gravity_capillary_flux = np.zeros((num_faces, num_phases), dtype=dtype)

    face_cells = mesh.face_cells
    for face in range(num_faces):
        first, second = int(face_cells[face, 0]), int(face_cells[face, 1])
        first_centroid = mesh.cell_centroids[first]
        if second >= 0:
            displacement = mesh.cell_centroids[second] - first_centroid
            liquid_density = 0.5 * (cell_density[first, liquid] + cell_density[second, liquid])
            potential_drop = (
                cell_pressure[first, liquid]
                - cell_pressure[second, liquid]
                + liquid_density * np.dot(gravity, displacement)
            )
            upstream = first if potential_drop >= 0.0 else second
            composition = cell_z[upstream]
        else:
            displacement = mesh.face_centroids[face] - first_centroid
            if face_pressure[face, liquid] > cell_pressure[first, liquid]:
                composition = inflow_mixture
            else:
                composition = cell_z[first]

        pressure = np.full(num_phases, face_pressure[face, liquid], dtype=dtype)
        state = fluid.compute_state(pressure, composition)
        face_transform[face] = state.phase_to_component
        face_mobility[face] = state.mobility
        face_mobility_derivative[face] = state.mobility_derivative
        gravity_capillary_flux[face] = fluid.phase_densities(state.phase_to_component) * np.dot(
            gravity, displacement
        )

    return FluidPropertySnapshot(
        total_compressibility=total_compressibility,
        volume_discrepancy=(tpvd - 1.0) * pore_volume / dt,
        relative_volume_discrepancy=np.abs(tpvd - 1.0),
        total_phase_volume_density=tpvd,
        explicit_jacobian_term=explicit_jacobian_term,
        cell_transform=cell_transform,
        face_transform=face_transform,
        face_mobility=face_mobility,
        face_mobility_derivative=face_mobility_derivative,
        gravity_capillary_flux=gravity_capillary_flux,
        pore_volume=pore_volume,
    )


def compute_perforation_properties(
    fluid: FluidModel,
    wells: WellsInterface,
    table: PerforationTable,
    cell_pressure: TwoDimensionalArray,
    cell_z: TwoDimensionalArray,
) -> None:
    """
    Evaluate the fluid state of every well perforation.

    Injector perforations are evaluated at the perforation pressure with the
    well's injection mixture. All other perforations take the pressure and
    composition of the perforated cell. The table's `transform`, `mobility`
    and `saturation` entries are overwritten in place.

    :param fluid: Fluid model.
    :param wells: Wells owning the perforations.
    :param table: Perforation table to update.
    :param cell_pressure: Cell phase pressures, shape (num_cells, num_phases) (Pa).
    :param cell_z: Cell component surface volumes, shape (num_cells, num_components).
    :raises InvariantViolationError: If the wells list a different number of
        perforations than the table holds.
    """
    num_phases = fluid.num_phases
    dtype = get_dtype()
    perforation = 0
    for well in range(wells.num_wells):
        is_injector = wells.type(well) is WellType.INJECTOR
        for local in range(wells.num_perforations(well)):
            cell = wells.well_cell(well, local)
            if perforation >= len(table):
                # Keep counting so the mismatch is reported in full
                perforation += 1
                continue
            if is_injector:
                pressure = np.full(num_phases, table.pressure[perforation], dtype=dtype)
                state = fluid.compute_state(pressure, wells.injection_mixture(cell))
            else:
                state = fluid.compute_state(cell_pressure[cell], cell_z[cell])
            table.transform[perforation] = state.phase_to_component
            table.mobility[perforation] = state.mobility
            table.saturation[perforation] = state.saturation
            perforation += 1

    table.check_count(perforation, "perforations processed")
    logger.debug(f"Updated fluid properties of {perforation} perforations")
