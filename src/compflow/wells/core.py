"""Core well calculations: Peaceman well indices, perforation tables and the perforation pressure model."""

import logging
import typing

import attrs
import numba
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import InvariantViolationError, ValidationError
from compflow.types import (
    FluidModel,
    IndexArray,
    Mesh,
    OneDimensionalArray,
    TwoDimensionalArray,
    WellsInterface,
)

logger = logging.getLogger(__name__)

__all__ = [
    "compute_well_index",
    "compute_effective_drainage_radius",
    "PerforationTable",
    "compute_well_potentials",
    "compute_well_perforation_pressures",
]


@numba.njit(cache=True)
def compute_well_index(
    permeability: float,
    interval_thickness: float,
    wellbore_radius: float,
    effective_drainage_radius: float,
    skin_factor: float = 0.0,
) -> float:
    """
    Compute the well index of a perforation using the Peaceman equation.

    The formula for the well index is:
    WI = (2π * k * h) / (ln(re/rw) + s)

    where:
        - WI is the well index (m³)
        - k is the effective permeability of the perforated cell (m²)
        - h is the perforated interval thickness (m)
        - re is the effective drainage radius (m)
        - rw is the wellbore radius (m)
        - s is the skin factor (dimensionless, default is 0)

    :param permeability: Effective permeability of the perforated cell (m²).
    :param interval_thickness: Thickness of the perforated interval (m).
    :param wellbore_radius: Radius of the wellbore (m).
    :param effective_drainage_radius: Effective drainage radius (m).
    :param skin_factor: Skin factor for the well (dimensionless, default is 0).
    :return: The well index (m³).
    """
    return (2.0 * np.pi * permeability * interval_thickness) / (
        np.log(effective_drainage_radius / wellbore_radius) + skin_factor
    )


@numba.njit(cache=True)
def compute_effective_drainage_radius(
    delta_x: float,
    delta_y: float,
    k_x: float,
    k_y: float,
) -> float:
    """
    Compute Peaceman's effective drainage radius of a vertical well.

        r_e = 0.28 * √[ (∆x² √(k_y/k_x) + ∆y² √(k_x/k_y)) ] / ( (k_y/k_x)^¼ + (k_x/k_y)^¼ )

    which reduces to `0.14 * √(∆x² + ∆y²)` for isotropic permeability.

    :param delta_x: Cell size along x (m).
    :param delta_y: Cell size along y (m).
    :param k_x: Permeability along x (m²).
    :param k_y: Permeability along y (m²).
    :return: The effective drainage radius (m).
    """
    ratio_yx = np.sqrt(k_y / k_x)
    ratio_xy = np.sqrt(k_x / k_y)
    return (
        0.28
        * np.sqrt(delta_x**2 * ratio_yx + delta_y**2 * ratio_xy)
        / (np.sqrt(ratio_yx) + np.sqrt(ratio_xy))
    )


def _as_index_array(value: typing.Any) -> IndexArray:
    return np.ascontiguousarray(value, dtype=np.int64)


@attrs.define
class PerforationTable:
    """
    Struct-of-arrays view of all well perforations, keyed by global perforation index.

    Perforations are numbered well by well, in the order the wells list them.
    Topology (`wells`, `cells`) is fixed once built. Pressures are updated
    every pressure iteration, fluid state (`transform`, `mobility`,
    `saturation`) every fluid property evaluation, and `potential` once per
    pressure solve.
    """

    wells: IndexArray = attrs.field(converter=_as_index_array)
    """Owning well of each perforation."""
    cells: IndexArray = attrs.field(converter=_as_index_array)
    """Perforated cell of each perforation."""
    pressure: OneDimensionalArray
    """Perforation pressures (Pa)."""
    transform: np.ndarray
    """Phase-to-component transforms of shape (num_perforations, num_components, num_phases)."""
    mobility: TwoDimensionalArray
    """Phase mobilities of shape (num_perforations, num_phases)."""
    saturation: TwoDimensionalArray
    """Phase saturations of shape (num_perforations, num_phases)."""
    potential: TwoDimensionalArray
    """Phase gravity potentials of shape (num_perforations, num_phases) (Pa)."""

    def __attrs_post_init__(self) -> None:
        self.check_count(self.cells.shape[0], "cell entries")
        self.check_count(self.pressure.shape[0], "pressure entries")
        for name in ("transform", "mobility", "saturation", "potential"):
            self.check_count(getattr(self, name).shape[0], f"{name} entries")

    @classmethod
    def from_wells(
        cls, wells: WellsInterface, num_phases: int, num_components: int
    ) -> "PerforationTable":
        """
        Build the perforation table of a set of wells.

        Initial perforation pressures are read from `wells.perforation_pressure(cell)`.

        :param wells: Wells whose perforations are listed.
        :param num_phases: Number of fluid phases.
        :param num_components: Number of fluid components.
        :return: `PerforationTable` with zeroed fluid state and potentials.
        """
        dtype = get_dtype()
        perf_wells = []
        perf_cells = []
        for well in range(wells.num_wells):
            for perforation in range(wells.num_perforations(well)):
                perf_wells.append(well)
                perf_cells.append(wells.well_cell(well, perforation))

        num_perforations = len(perf_cells)
        pressure = np.array(
            [wells.perforation_pressure(cell) for cell in perf_cells], dtype=dtype
        )
        return cls(
            wells=perf_wells,
            cells=perf_cells,
            pressure=pressure.reshape(num_perforations),
            transform=np.zeros((num_perforations, num_components, num_phases), dtype=dtype),
            mobility=np.zeros((num_perforations, num_phases), dtype=dtype),
            saturation=np.zeros((num_perforations, num_phases), dtype=dtype),
            potential=np.zeros((num_perforations, num_phases), dtype=dtype),
        )

    def __len__(self) -> int:
        return self.wells.shape[0]

    @property
    def num_perforations(self) -> int:
        return self.wells.shape[0]

    def check_count(self, count: int, what: str = "entries") -> None:
        """
        Assert that a number of processed entries equals the number of perforations.

        :param count: Number of entries processed or provided.
        :param what: Description of the entries, used in the error message.
        :raises InvariantViolationError: If the counts differ.
        """
        if count != self.num_perforations:
            raise InvariantViolationError(
                f"Perforation table has {self.num_perforations} perforations but got {count} {what}."
            )

    def set_pressures(self, pressure: OneDimensionalArray) -> None:
        """Overwrite the perforation pressures."""
        pressure = np.asarray(pressure)
        self.check_count(pressure.shape[0], "perforation pressures")
        self.pressure[:] = pressure

    def well_perforations(self, well: int) -> IndexArray:
        """Global indices of the perforations of a well."""
        return np.flatnonzero(self.wells == well)


def compute_well_potentials(
    table: PerforationTable,
    wells: WellsInterface,
    mesh: Mesh,
    fluid: FluidModel,
    gravity: OneDimensionalArray,
) -> TwoDimensionalArray:
    """
    Compute the gravity potential of every perforation and phase.

        Φ_kα = ρ_α(A_k) * g_z * (z_cell(k) - z_ref(well(k)))

    where `A_k` is the perforation's phase-to-component transform. The
    potentials are written into `table.potential` and returned.

    :param table: Perforation table with up-to-date transforms.
    :param wells: Wells providing reference depths.
    :param mesh: Mesh providing cell centroids.
    :param fluid: Fluid model providing phase densities.
    :param gravity: Gravity vector (m/s²).
    :return: Potentials of shape (num_perforations, num_phases) (Pa).
    :raises InvariantViolationError: If gravity has a horizontal component while wells are perforated.
    """
    gravity = np.asarray(gravity, dtype=get_dtype())
    if len(table) > 0 and (gravity[0] != 0.0 or gravity[1] != 0.0):
        raise InvariantViolationError(
            f"Well potentials require vertical gravity, got gravity vector {gravity}."
        )

    gravity_z = gravity[2]
    for perforation in range(len(table)):
        cell = table.cells[perforation]
        well = table.wells[perforation]
        depth_delta = mesh.cell_centroid(cell)[2] - wells.reference_depth(well)
        densities = fluid.phase_densities(table.transform[perforation])
        table.potential[perforation, :] = densities * gravity_z * depth_delta
    return table.potential


@numba.njit(cache=True)
def _perforation_pressures_kernel(
    perforation_fluxes: np.ndarray,
    bhp: np.ndarray,
    potential: np.ndarray,
    saturation: np.ndarray,
    perforation_wells: np.ndarray,
    num_wells: int,
) -> np.ndarray:
    num_perforations, num_phases = saturation.shape
    flux_sum = np.zeros(num_wells)
    weighted_saturation = np.zeros((num_wells, num_phases))
    plain_saturation = np.zeros((num_wells, num_phases))
    perforation_count = np.zeros(num_wells)

    for perforation in range(num_perforations):
        well = perforation_wells[perforation]
        flux = perforation_fluxes[perforation]
        flux_sum[well] += flux
        perforation_count[well] += 1.0
        for phase in range(num_phases):
            weighted_saturation[well, phase] += flux * saturation[perforation, phase]
            plain_saturation[well, phase] += saturation[perforation, phase]

    well_saturation = np.zeros((num_wells, num_phases))
    for well in range(num_wells):
        if flux_sum[well] != 0.0:
            for phase in range(num_phases):
                well_saturation[well, phase] = weighted_saturation[well, phase] / flux_sum[well]
        elif perforation_count[well] > 0.0:
            # Shut-in well, fall back to the unweighted mean
            for phase in range(num_phases):
                well_saturation[well, phase] = (
                    plain_saturation[well, phase] / perforation_count[well]
                )

    perforation_pressures = np.empty(num_perforations)
    for perforation in range(num_perforations):
        well = perforation_wells[perforation]
        correction = 0.0
        for phase in range(num_phases):
            correction += well_saturation[well, phase] * potential[perforation, phase]
        perforation_pressures[perforation] = bhp[well] + correction
    return perforation_pressures


def compute_well_perforation_pressures(
    perforation_fluxes: OneDimensionalArray,
    bhp: OneDimensionalArray,
    potential: TwoDimensionalArray,
    saturation: TwoDimensionalArray,
    perforation_wells: IndexArray,
    num_wells: int,
) -> OneDimensionalArray:
    """
    Compute perforation pressures from bottom-hole pressures and gravity potentials.

    Each well gets one saturation, the flux-weighted average of its
    perforation saturations,

        S̄_w = Σ_k q_k S_k / Σ_k q_k

    and every perforation of the well is then at

        p_k = BHP_w + Σ_α S̄_wα Φ_kα

    Flow through a well is assumed to be all inflow or all outflow. A well
    with zero net flux uses the plain mean of its perforation saturations.

    :param perforation_fluxes: Total flux of each perforation (m³/s).
    :param bhp: Bottom-hole pressure of each well (Pa).
    :param potential: Gravity potentials of shape (num_perforations, num_phases) (Pa).
    :param saturation: Saturations of shape (num_perforations, num_phases).
    :param perforation_wells: Owning well of each perforation.
    :param num_wells: Number of wells.
    :return: Pressure of each perforation (Pa).
    """
    perforation_fluxes = np.asarray(perforation_fluxes, dtype=np.float64)
    saturation = np.ascontiguousarray(saturation, dtype=np.float64)
    num_perforations = saturation.shape[0]
    if perforation_fluxes.shape[0] != num_perforations or potential.shape[0] != num_perforations:
        raise InvariantViolationError(
            f"Expected {num_perforations} perforation fluxes and potentials, "
            f"got {perforation_fluxes.shape[0]} and {potential.shape[0]}."
        )
    if len(bhp) != num_wells:
        raise ValidationError(f"Expected {num_wells} bottom-hole pressures, got {len(bhp)}.")

    pressures = _perforation_pressures_kernel(
        perforation_fluxes,
        np.asarray(bhp, dtype=np.float64),
        np.ascontiguousarray(potential, dtype=np.float64),
        saturation,
        np.asarray(perforation_wells, dtype=np.int64),
        num_wells,
    )
    return pressures.astype(get_dtype(), copy=False)
