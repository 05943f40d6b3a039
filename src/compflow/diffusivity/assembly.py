"""
Two-point flux approximation (TPFA) assembly of the compressible pressure equation.

Unknowns are the cell pressures followed by one bottom-hole pressure per
well. For cell `i` the assembled equation reads

    (pv_i c_t,i / dt) (p_i - p0_i) + Σ_f u_f - Σ_k q_k = s_i + r_i

where `u_f` is the total outward face flux, `q_k` the flux of the
perforations in the cell (positive meaning injection), `s_i` the source
term and `r_i` the volume discrepancy rate. Face and perforation fluxes are

    u_fα = T_f λ_fα (p_first - p_second + g_fα)
    q_kα = WI_k λ_kα (BHP_w + Φ_kα - p_cell)

Each well adds one row holding either its bottom-hole pressure or its
total rate.
"""

import logging
import typing

import attrs
import numba
import numpy as np
from scipy.sparse import coo_matrix  # type: ignore[import-untyped]

from compflow._precision import get_dtype
from compflow.errors import ValidationError
from compflow.models import FlowSolution, LinearSystem
from compflow.types import (
    FaceBCType,
    IndexArray,
    Mesh,
    OneDimensionalArray,
    TwoDimensionalArray,
)
from compflow.wells.base import Wells
from compflow.wells.controls import BHPControl

logger = logging.getLogger(__name__)

__all__ = ["TPFACompressibleAssembler", "compute_half_transmissibilities"]

_PRESSURE = int(FaceBCType.PRESSURE)
_FLUX = int(FaceBCType.FLUX)


@numba.njit(cache=True)
def compute_half_transmissibilities(
    face_cells: np.ndarray,
    face_areas: np.ndarray,
    face_centroids: np.ndarray,
    cell_centroids: np.ndarray,
    permeability: np.ndarray,
) -> typing.Tuple[np.ndarray, np.ndarray]:
    """
    Compute the one-sided transmissibilities of every face.

        t = A (d·K·d) / |d|³

    where `d` is the vector from the cell centroid to the face centroid.

    :param face_cells: Array of shape (num_faces, 2) of the cells of each face, -1 for outside.
    :param face_areas: Face areas (m²).
    :param face_centroids: Face centroids, shape (num_faces, 3) (m).
    :param cell_centroids: Cell centroids, shape (num_cells, 3) (m).
    :param permeability: Flat row-major permeability tensors, 9 entries per cell (m²).
    :return: Tuple of (first_half, second_half) transmissibilities (m³). The
        second half is zero on boundary faces.
    """
    num_faces = face_cells.shape[0]
    first_half = np.zeros(num_faces)
    second_half = np.zeros(num_faces)
    for face in range(num_faces):
        for side in range(2):
            cell = face_cells[face, side]
            if cell < 0:
                continue
            d = face_centroids[face] - cell_centroids[cell]
            distance_squared = 0.0
            dkd = 0.0
            for row in range(3):
                distance_squared += d[row] * d[row]
                for column in range(3):
                    dkd += d[row] * permeability[9 * cell + 3 * row + column] * d[column]
            value = face_areas[face] * dkd / (distance_squared * np.sqrt(distance_squared))
            if side == 0:
                first_half[face] = value
            else:
                second_half[face] = value
    return first_half, second_half


@numba.njit(cache=True)
def _assemble_face_terms(
    face_cells: np.ndarray,
    transmissibility: np.ndarray,
    bc_types: np.ndarray,
    bc_values: np.ndarray,
    face_mobility: np.ndarray,
    gravity_flux: np.ndarray,
    num_cells: int,
) -> typing.Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Build the COO triplets and right-hand side contributions of all faces.

    :return: Tuple of (rows, cols, vals, rhs_additions).
    """
    num_faces, num_phases = face_mobility.shape
    rows = np.empty(4 * num_faces, dtype=np.int64)
    cols = np.empty(4 * num_faces, dtype=np.int64)
    vals = np.empty(4 * num_faces)
    rhs_additions = np.zeros(num_cells)
    count = 0

    for face in range(num_faces):
        first = face_cells[face, 0]
        second = face_cells[face, 1]
        total_mobility = 0.0
        gravity_term = 0.0
        for phase in range(num_phases):
            total_mobility += face_mobility[face, phase]
            gravity_term += face_mobility[face, phase] * gravity_flux[face, phase]
        coefficient = transmissibility[face] * total_mobility
        gravity_term *= transmissibility[face]

        if second >= 0:
            rows[count] = first
            cols[count] = first
            vals[count] = coefficient
            rows[count + 1] = first
            cols[count + 1] = second
            vals[count + 1] = -coefficient
            rows[count + 2] = second
            cols[count + 2] = second
            vals[count + 2] = coefficient
            rows[count + 3] = second
            cols[count + 3] = first
            vals[count + 3] = -coefficient
            count += 4
            rhs_additions[first] -= gravity_term
            rhs_additions[second] += gravity_term
        elif bc_types[face] == _PRESSURE:
            rows[count] = first
            cols[count] = first
            vals[count] = coefficient
            count += 1
            rhs_additions[first] += coefficient * bc_values[face] - gravity_term
        elif bc_types[face] == _FLUX:
            rhs_additions[first] -= bc_values[face]

    return rows[:count], cols[:count], vals[:count], rhs_additions


@numba.njit(cache=True)
def _compute_face_phase_fluxes(
    face_cells: np.ndarray,
    transmissibility: np.ndarray,
    bc_types: np.ndarray,
    bc_values: np.ndarray,
    face_mobility: np.ndarray,
    gravity_flux: np.ndarray,
    cell_pressure: np.ndarray,
) -> typing.Tuple[np.ndarray, np.ndarray]:
    """
    Compute the phase fluxes and phase potential drops of all faces.

    :return: Tuple of (phase_fluxes, potential_drops), both of shape (num_faces, num_phases).
    """
    num_faces, num_phases = face_mobility.shape
    phase_fluxes = np.zeros((num_faces, num_phases))
    potential_drops = np.zeros((num_faces, num_phases))
    for face in range(num_faces):
        first = face_cells[face, 0]
        second = face_cells[face, 1]
        if second >= 0:
            outside_pressure = cell_pressure[second]
        elif bc_types[face] == _PRESSURE:
            outside_pressure = bc_values[face]
        else:
            if bc_types[face] == _FLUX:
                total_mobility = 0.0
                for phase in range(num_phases):
                    total_mobility += face_mobility[face, phase]
                if total_mobility > 0.0:
                    for phase in range(num_phases):
                        phase_fluxes[face, phase] = (
                            bc_values[face] * face_mobility[face, phase] / total_mobility
                        )
            continue

        for phase in range(num_phases):
            drop = cell_pressure[first] - outside_pressure + gravity_flux[face, phase]
            potential_drops[face, phase] = drop
            phase_fluxes[face, phase] = transmissibility[face] * face_mobility[face, phase] * drop
    return phase_fluxes, potential_drops


@numba.njit(cache=True)
def _compute_face_pressures(
    face_cells: np.ndarray,
    first_half: np.ndarray,
    second_half: np.ndarray,
    bc_types: np.ndarray,
    bc_values: np.ndarray,
    cell_pressure: np.ndarray,
) -> np.ndarray:
    num_faces = face_cells.shape[0]
    face_pressure = np.empty(num_faces)
    for face in range(num_faces):
        first = face_cells[face, 0]
        second = face_cells[face, 1]
        if second >= 0:
            weight = first_half[face] + second_half[face]
            face_pressure[face] = (
                first_half[face] * cell_pressure[first] + second_half[face] * cell_pressure[second]
            ) / weight
        elif bc_types[face] == _PRESSURE:
            face_pressure[face] = bc_values[face]
        else:
            face_pressure[face] = cell_pressure[first]
    return face_pressure


@attrs.define
class TPFACompressibleAssembler:
    """
    Reference assembler of the compressible pressure system on a TPFA discretization.

    Call `init` once per mesh and well layout, then `assemble` and
    `compute_pressures_and_fluxes` once per pressure iteration. The explicit
    transport methods use the fluxes of the last extraction.
    """

    mesh: typing.Optional[Mesh] = attrs.field(default=None, init=False)
    wells: typing.Optional[Wells] = attrs.field(default=None, init=False)
    gravity: OneDimensionalArray = attrs.field(factory=lambda: np.zeros(3), init=False)
    pore_volume: OneDimensionalArray = attrs.field(factory=lambda: np.zeros(0), init=False)
    first_half_transmissibility: OneDimensionalArray = attrs.field(
        factory=lambda: np.zeros(0), init=False
    )
    second_half_transmissibility: OneDimensionalArray = attrs.field(
        factory=lambda: np.zeros(0), init=False
    )
    transmissibility: OneDimensionalArray = attrs.field(factory=lambda: np.zeros(0), init=False)
    """Face transmissibilities (m³)."""
    perforation_wells: IndexArray = attrs.field(
        factory=lambda: np.zeros(0, dtype=np.int64), init=False
    )
    perforation_cells: IndexArray = attrs.field(
        factory=lambda: np.zeros(0, dtype=np.int64), init=False
    )
    well_indices: OneDimensionalArray = attrs.field(factory=lambda: np.zeros(0), init=False)
    """Well index of each perforation (m³)."""
    _system: typing.Optional[LinearSystem] = attrs.field(default=None, init=False)
    _inputs: typing.Dict[str, typing.Any] = attrs.field(factory=dict, init=False)
    _face_phase_flux: typing.Optional[TwoDimensionalArray] = attrs.field(default=None, init=False)
    _face_potential_drop: typing.Optional[TwoDimensionalArray] = attrs.field(
        default=None, init=False
    )
    _perforation_phase_flux: typing.Optional[TwoDimensionalArray] = attrs.field(
        default=None, init=False
    )

    @property
    def num_cells(self) -> int:
        return self._require_mesh().num_cells

    @property
    def num_wells(self) -> int:
        return 0 if self.wells is None else self.wells.num_wells

    def _require_mesh(self) -> Mesh:
        if self.mesh is None:
            raise ValidationError("Assembler is not initialized. Call `init` first.")
        return self.mesh

    def _require_inputs(self) -> typing.Dict[str, typing.Any]:
        if not self._inputs:
            raise ValidationError("No pressure system assembled. Call `assemble` first.")
        return self._inputs

    def init(
        self,
        mesh: Mesh,
        wells: Wells,
        permeability: OneDimensionalArray,
        porosity: OneDimensionalArray,
        gravity: OneDimensionalArray,
    ) -> None:
        """
        Bind the mesh and wells and precompute transmissibilities and well indices.

        :param mesh: Mesh topology and geometry.
        :param wells: Wells with their controls.
        :param permeability: Flat row-major permeability tensors, 9 entries per cell (m²).
        :param porosity: Cell porosities (fraction).
        :param gravity: Gravity vector (m/s²).
        """
        permeability = np.ascontiguousarray(permeability, dtype=np.float64)
        if permeability.shape[0] != 9 * mesh.num_cells:
            raise ValidationError(
                f"Expected {9 * mesh.num_cells} permeability entries, got {permeability.shape[0]}."
            )
        self.mesh = mesh
        self.wells = wells
        self.gravity = np.asarray(gravity, dtype=get_dtype())
        self.pore_volume = np.asarray(porosity, dtype=get_dtype()) * mesh.cell_volumes

        first_half, second_half = compute_half_transmissibilities(
            np.ascontiguousarray(mesh.face_cells, dtype=np.int64),
            np.ascontiguousarray(mesh.face_areas, dtype=np.float64),
            np.ascontiguousarray(mesh.face_centroids, dtype=np.float64),
            np.ascontiguousarray(mesh.cell_centroids, dtype=np.float64),
            permeability,
        )
        interior = mesh.face_cells[:, 1] >= 0
        transmissibility = first_half.copy()
        combined = first_half + second_half
        transmissibility[interior] = np.divide(
            first_half[interior] * second_half[interior],
            combined[interior],
            out=np.zeros(int(np.sum(interior))),
            where=combined[interior] > 0.0,
        )
        self.first_half_transmissibility = first_half
        self.second_half_transmissibility = second_half
        self.transmissibility = transmissibility

        perforation_wells = []
        perforation_cells = []
        for well in range(wells.num_wells):
            for perforation in range(wells.num_perforations(well)):
                perforation_wells.append(well)
                perforation_cells.append(wells.well_cell(well, perforation))
        self.perforation_wells = np.asarray(perforation_wells, dtype=np.int64)
        self.perforation_cells = np.asarray(perforation_cells, dtype=np.int64)
        self.well_indices = wells.well_indices(mesh, permeability)

        size = mesh.num_cells + wells.num_wells
        self._system = LinearSystem(
            A=coo_matrix((size, size)).tocsr(),
            b=np.zeros(size, dtype=get_dtype()),
            x=np.zeros(size, dtype=get_dtype()),
        )
        self._inputs = {}
        logger.debug(
            f"Initialized TPFA assembler: {mesh.num_cells} cells, {mesh.num_faces} faces, "
            f"{wells.num_wells} wells, {len(perforation_cells)} perforations"
        )

    def assemble(
        self,
        sources: OneDimensionalArray,
        bc_types: IndexArray,
        bc_values: OneDimensionalArray,
        dt: float,
        total_compressibility: OneDimensionalArray,
        volume_discrepancy: OneDimensionalArray,
        cell_transform: np.ndarray,
        face_transform: np.ndarray,
        perforation_transform: np.ndarray,
        face_mobility: TwoDimensionalArray,
        perforation_mobility: TwoDimensionalArray,
        initial_cell_pressure: OneDimensionalArray,
        gravity_capillary_flux: TwoDimensionalArray,
        perforation_potential: TwoDimensionalArray,
        surface_densities: OneDimensionalArray,
    ) -> None:
        """
        Assemble the pressure system.

        :param sources: Volumetric source rate of each cell (m³/s).
        :param bc_types: `FaceBCType` code of each face.
        :param bc_values: Prescribed pressure or flux of each face.
        :param dt: Time step size (s).
        :param total_compressibility: Total compressibility of each cell (1/Pa).
        :param volume_discrepancy: Volume discrepancy rate of each cell (m³/s).
        :param cell_transform: Cell phase-to-component transforms.
        :param face_transform: Face phase-to-component transforms.
        :param perforation_transform: Perforation phase-to-component transforms.
        :param face_mobility: Face phase mobilities, shape (num_faces, num_phases).
        :param perforation_mobility: Perforation phase mobilities, shape (num_perforations, num_phases).
        :param initial_cell_pressure: Cell pressures at the start of the time step (Pa).
        :param gravity_capillary_flux: Face phase gravity offsets, shape (num_faces, num_phases) (Pa).
        :param perforation_potential: Perforation phase gravity potentials (Pa).
        :param surface_densities: Component surface densities (kg/m³).
        """
        mesh = self._require_mesh()
        wells = typing.cast(Wells, self.wells)
        if dt <= 0.0:
            raise ValidationError(f"Time step must be positive, got {dt}.")

        num_cells = mesh.num_cells
        num_wells = wells.num_wells
        size = num_cells + num_wells
        face_mobility = np.ascontiguousarray(face_mobility, dtype=np.float64)
        gravity_capillary_flux = np.ascontiguousarray(gravity_capillary_flux, dtype=np.float64)
        bc_types = np.ascontiguousarray(bc_types, dtype=np.int64)
        bc_values = np.ascontiguousarray(bc_values, dtype=np.float64)
        perforation_mobility = np.asarray(perforation_mobility, dtype=np.float64)
        perforation_potential = np.asarray(perforation_potential, dtype=np.float64)

        rows, cols, vals, rhs = _assemble_face_terms(
            np.ascontiguousarray(mesh.face_cells, dtype=np.int64),
            self.transmissibility,
            bc_types,
            bc_values,
            face_mobility,
            gravity_capillary_flux,
            num_cells,
        )
        b = np.zeros(size)
        b[:num_cells] += rhs

        accumulation = self.pore_volume * np.asarray(total_compressibility) / dt
        cell_index = np.arange(num_cells, dtype=np.int64)
        b[:num_cells] += (
            accumulation * np.asarray(initial_cell_pressure)
            + np.asarray(sources)
            + np.asarray(volume_discrepancy)
        )

        well_rows = []
        well_cols = []
        well_vals = []
        well_coefficients = self.well_indices * perforation_mobility.sum(axis=1)
        well_gravity = self.well_indices * np.sum(
            perforation_mobility * perforation_potential, axis=1
        )
        for perforation in range(self.perforation_cells.shape[0]):
            cell = int(self.perforation_cells[perforation])
            well_row = num_cells + int(self.perforation_wells[perforation])
            coefficient = well_coefficients[perforation]
            # Cell equation: - q_k
            well_rows.extend((cell, cell))
            well_cols.extend((cell, well_row))
            well_vals.extend((coefficient, -coefficient))
            b[cell] += well_gravity[perforation]

        for well in range(num_wells):
            well_row = num_cells + well
            control = wells.control(well)
            perforations = np.flatnonzero(self.perforation_wells == well)
            if isinstance(control, BHPControl):
                well_rows.append(well_row)
                well_cols.append(well_row)
                well_vals.append(1.0)
                b[well_row] = control.bottom_hole_pressure
                continue

            total_coefficient = float(np.sum(well_coefficients[perforations]))
            if total_coefficient == 0.0:
                logger.warning(
                    f"Rate-controlled well {well} has no mobile perforations; fixing its bottom-hole pressure equation"
                )
                well_rows.append(well_row)
                well_cols.append(well_row)
                well_vals.append(1.0)
                b[well_row] = 0.0
                continue

            # Σ_k q_k = rate
            for perforation in perforations:
                cell = int(self.perforation_cells[perforation])
                coefficient = well_coefficients[perforation]
                well_rows.extend((well_row, well_row))
                well_cols.extend((well_row, cell))
                well_vals.extend((coefficient, -coefficient))
            b[well_row] = control.rate - float(np.sum(well_gravity[perforations]))

        all_rows = np.concatenate([rows, cell_index, np.asarray(well_rows, dtype=np.int64)])
        all_cols = np.concatenate([cols, cell_index, np.asarray(well_cols, dtype=np.int64)])
        all_vals = np.concatenate([vals, accumulation, np.asarray(well_vals, dtype=np.float64)])
        A = coo_matrix((all_vals, (all_rows, all_cols)), shape=(size, size)).tocsr()
        A.sum_duplicates()

        system = typing.cast(LinearSystem, self._system)
        system.A = A
        system.b = b.astype(get_dtype(), copy=False)
        if system.x.shape[0] != size:
            system.x = np.zeros(size, dtype=get_dtype())

        self._inputs = {
            "sources": np.asarray(sources, dtype=np.float64),
            "bc_types": bc_types,
            "bc_values": bc_values,
            "cell_transform": np.asarray(cell_transform),
            "face_transform": np.asarray(face_transform),
            "perforation_transform": np.asarray(perforation_transform),
            "face_mobility": face_mobility,
            "perforation_mobility": perforation_mobility,
            "gravity_capillary_flux": gravity_capillary_flux,
            "perforation_potential": perforation_potential,
            "surface_densities": np.asarray(surface_densities, dtype=np.float64),
        }
        logger.debug(f"Assembled pressure system of size {size} with {A.nnz} non-zeros")

    def linear_system(self) -> LinearSystem:
        """The assembled system. Its `x` buffer is read by `compute_pressures_and_fluxes`."""
        if self._system is None:
            raise ValidationError("Assembler is not initialized. Call `init` first.")
        return self._system

    def compute_pressures_and_fluxes(self) -> FlowSolution:
        """
        Extract pressures and fluxes from the solution buffer of the linear system.

        :return: `FlowSolution` with face and perforation fluxes consistent with the solution.
        """
        mesh = self._require_mesh()
        inputs = self._require_inputs()
        system = self.linear_system()
        num_cells = mesh.num_cells
        face_cells = np.ascontiguousarray(mesh.face_cells, dtype=np.int64)

        cell_pressure = np.ascontiguousarray(system.x[:num_cells], dtype=np.float64)
        well_bhp = np.asarray(system.x[num_cells:], dtype=np.float64)

        face_phase_flux, potential_drop = _compute_face_phase_fluxes(
            face_cells,
            self.transmissibility,
            inputs["bc_types"],
            inputs["bc_values"],
            inputs["face_mobility"],
            inputs["gravity_capillary_flux"],
            cell_pressure,
        )
        face_pressure = _compute_face_pressures(
            face_cells,
            self.first_half_transmissibility,
            self.second_half_transmissibility,
            inputs["bc_types"],
            inputs["bc_values"],
            cell_pressure,
        )

        perforation_phase_flux = (
            self.well_indices[:, None]
            * inputs["perforation_mobility"]
            * (
                well_bhp[self.perforation_wells][:, None]
                + inputs["perforation_potential"]
                - cell_pressure[self.perforation_cells][:, None]
            )
        )
        surface_densities = inputs["surface_densities"]
        perforation_mass_flux = np.array(
            [
                surface_densities
                @ (inputs["perforation_transform"][perforation] @ perforation_phase_flux[perforation])
                for perforation in range(perforation_phase_flux.shape[0])
            ],
            dtype=np.float64,
        ).reshape(perforation_phase_flux.shape[0])

        self._face_phase_flux = face_phase_flux
        self._face_potential_drop = potential_drop
        self._perforation_phase_flux = perforation_phase_flux

        dtype = get_dtype()
        return FlowSolution(
            cell_pressure=cell_pressure.astype(dtype, copy=True),
            face_pressure=face_pressure.astype(dtype, copy=False),
            face_flux=face_phase_flux.sum(axis=1).astype(dtype, copy=False),
            well_bhp=well_bhp.astype(dtype, copy=True),
            perforation_flux=perforation_phase_flux.sum(axis=1).astype(dtype, copy=False),
            perforation_mass_flux=perforation_mass_flux.astype(dtype, copy=False),
        )

    def _require_fluxes(self) -> typing.Tuple[np.ndarray, np.ndarray, np.ndarray]:
        if (
            self._face_phase_flux is None
            or self._face_potential_drop is None
            or self._perforation_phase_flux is None
        ):
            raise ValidationError(
                "No fluxes available. Call `compute_pressures_and_fluxes` after a pressure solve first."
            )
        return self._face_phase_flux, self._face_potential_drop, self._perforation_phase_flux

    def explicit_timestep_limit(
        self,
        face_mobility: TwoDimensionalArray,
        face_mobility_derivative: TwoDimensionalArray,
    ) -> float:
        """
        Estimate the largest stable time step of explicit transport.

            dt_max = min_i pv_i / Σ_{f ∋ i} Σ_α T_f |ΔΦ_fα| |∂λ_fα/∂S_α|

        :param face_mobility: Face phase mobilities, shape (num_faces, num_phases).
        :param face_mobility_derivative: Face phase mobility derivatives, shape (num_faces, num_phases).
        :return: Time step limit (s), `inf` when no face carries a saturation-dependent flux.
        """
        mesh = self._require_mesh()
        _, potential_drop, _ = self._require_fluxes()
        if np.shape(face_mobility) != potential_drop.shape:
            raise ValidationError(
                f"Face mobility shape {np.shape(face_mobility)} does not match {potential_drop.shape}."
            )

        face_rate = self.transmissibility * np.sum(
            np.abs(potential_drop) * np.abs(np.asarray(face_mobility_derivative)), axis=1
        )
        denominator = np.zeros(mesh.num_cells)
        face_cells = mesh.face_cells
        np.add.at(denominator, face_cells[:, 0], face_rate)
        interior = face_cells[:, 1] >= 0
        np.add.at(denominator, face_cells[interior, 1], face_rate[interior])

        active = denominator > 0.0
        if not np.any(active):
            return float("inf")
        return float(np.min(self.pore_volume[active] / denominator[active]))

    def explicit_transport(
        self,
        dt: float,
        cell_z: TwoDimensionalArray,
        inflow_mixture: OneDimensionalArray,
    ) -> None:
        """
        Advance the cell compositions by one explicit step, in place.

        Face phase fluxes carry components through the face transforms and
        perforation fluxes through the perforation transforms. Positive
        sources add the inflow mixture, negative sources remove the cell
        content in proportion to its reservoir volume.

        :param dt: Time step size (s).
        :param cell_z: Cell component surface volumes, shape (num_cells, num_components), updated in place.
        :param inflow_mixture: Composition added by positive sources.
        """
        mesh = self._require_mesh()
        inputs = self._require_inputs()
        face_phase_flux, _, perforation_phase_flux = self._require_fluxes()
        face_transform = inputs["face_transform"]
        cell_transform = inputs["cell_transform"]
        perforation_transform = inputs["perforation_transform"]
        inflow_mixture = np.asarray(inflow_mixture)

        component_change = np.zeros_like(cell_z, dtype=np.float64)
        face_cells = mesh.face_cells
        for face in range(face_cells.shape[0]):
            component_flux = face_transform[face] @ face_phase_flux[face]
            component_change[face_cells[face, 0]] -= component_flux
            if face_cells[face, 1] >= 0:
                component_change[face_cells[face, 1]] += component_flux

        for perforation in range(perforation_phase_flux.shape[0]):
            cell = self.perforation_cells[perforation]
            component_change[cell] += (
                perforation_transform[perforation] @ perforation_phase_flux[perforation]
            )

        sources = inputs["sources"]
        for cell in np.flatnonzero(sources):
            source = sources[cell]
            if source > 0.0:
                component_change[cell] += source * inflow_mixture
                continue
            phase_volumes = np.linalg.lstsq(cell_transform[cell], cell_z[cell], rcond=None)[0]
            reservoir_volume = float(np.sum(phase_volumes))
            if reservoir_volume > 0.0:
                component_change[cell] += cell_z[cell] * source / reservoir_volume

        cell_z += dt * component_change
        negative = cell_z < 0.0
        if np.any(negative):
            logger.warning(
                f"Explicit transport produced {int(np.sum(negative))} negative component amounts "
                f"(min {float(np.min(cell_z)):.3e}); clipping to zero. Consider a smaller time step."
            )
            cell_z[negative] = 0.0
