"""Value types shared by the solver, its collaborators and its callers."""

import typing

import attrs
import numpy as np
from scipy.sparse import csr_matrix

from compflow._precision import get_dtype
from compflow.errors import ValidationError
from compflow.types import OneDimensionalArray, SolveStatus, TwoDimensionalArray


__all__ = [
    "RockProperties",
    "FluidState",
    "LinearSystem",
    "FlowSolution",
    "SolveResult",
]


def _as_float_array(value: typing.Any) -> np.ndarray:
    return np.ascontiguousarray(value, dtype=get_dtype())


@attrs.frozen(slots=True)
class RockProperties:
    """
    Rock properties of a reservoir model.

    Porosity is stored as one value per cell and permeability as a full
    3x3 tensor per cell.
    """

    porosity_array: OneDimensionalArray = attrs.field(converter=_as_float_array)
    """1D array of cell porosities (fraction)."""
    permeability_array: np.ndarray = attrs.field(converter=_as_float_array)
    """3D array of shape (num_cells, 3, 3) holding cell permeability tensors (m²)."""

    def __attrs_post_init__(self) -> None:
        num_cells = self.porosity_array.shape[0]
        if self.permeability_array.shape != (num_cells, 3, 3):
            raise ValidationError(
                f"Permeability must have shape ({num_cells}, 3, 3), got {self.permeability_array.shape}."
            )
        if np.any(self.porosity_array <= 0.0) or np.any(self.porosity_array > 1.0):
            raise ValidationError("Porosity must lie in the interval (0, 1].")

    @classmethod
    def homogeneous(
        cls,
        num_cells: int,
        porosity: float,
        permeability: typing.Union[float, typing.Tuple[float, float, float]],
    ) -> "RockProperties":
        """
        Build rock properties with the same porosity and diagonal permeability in every cell.

        :param num_cells: Number of cells.
        :param porosity: Porosity (fraction).
        :param permeability: Isotropic permeability, or (kx, ky, kz) (m²).
        :return: `RockProperties` instance.
        """
        diagonal = np.broadcast_to(np.asarray(permeability, dtype=float), (3,))
        tensor = np.zeros((num_cells, 3, 3))
        tensor[:, [0, 1, 2], [0, 1, 2]] = diagonal
        return cls(
            porosity_array=np.full(num_cells, porosity),
            permeability_array=tensor,
        )

    @property
    def num_cells(self) -> int:
        return self.porosity_array.shape[0]

    def porosity(self, cell: int) -> float:
        return float(self.porosity_array[cell])

    def permeability(self, cell: int) -> TwoDimensionalArray:
        return self.permeability_array[cell]

    @property
    def flat_permeability(self) -> OneDimensionalArray:
        """Permeability tensors as one flat row-major array of 9 entries per cell."""
        return self.permeability_array.reshape(-1)


@attrs.frozen(slots=True)
class FluidState:
    """
    Fluid state at a single point (cell, face or perforation).
    """

    saturation: OneDimensionalArray
    """Phase saturations (fraction), one per phase."""
    mobility: OneDimensionalArray
    """Phase mobilities (1/(Pa·s)), one per phase."""
    mobility_derivative: OneDimensionalArray
    """Derivative of each phase mobility with respect to its own saturation."""
    phase_volumes: OneDimensionalArray
    """Reservoir volume occupied by each phase (m³)."""
    phase_compressibility: OneDimensionalArray
    """Phase compressibilities at fixed composition (1/Pa)."""
    phase_to_component: TwoDimensionalArray
    """Transform of shape (num_components, num_phases) mapping phase volumes to component surface volumes."""

    @property
    def total_volume(self) -> float:
        """Total reservoir volume of all phases (m³)."""
        return float(np.sum(self.phase_volumes))

    @property
    def total_compressibility(self) -> float:
        """Saturation-weighted total fluid compressibility (1/Pa)."""
        return float(np.dot(self.saturation, self.phase_compressibility))


@attrs.define
class LinearSystem:
    """
    Sparse linear system `A·x = b` with its solution buffer.

    Unknowns are ordered as cell pressures followed by one bottom-hole
    pressure per well.
    """

    A: csr_matrix
    """Coefficient matrix in CSR format."""
    b: OneDimensionalArray
    """Right-hand side vector."""
    x: OneDimensionalArray
    """Solution buffer, read back by `compute_pressures_and_fluxes`."""

    @property
    def size(self) -> int:
        return self.b.shape[0]


@attrs.frozen(slots=True)
class FlowSolution:
    """Pressures and fluxes extracted from a solved pressure system."""

    cell_pressure: OneDimensionalArray
    """Scalar cell pressures (Pa)."""
    face_pressure: OneDimensionalArray
    """Scalar face pressures (Pa)."""
    face_flux: OneDimensionalArray
    """Total signed volumetric flux across each face (m³/s), positive from the first to the second face cell."""
    well_bhp: OneDimensionalArray
    """Bottom-hole pressure of each well (Pa)."""
    perforation_flux: OneDimensionalArray
    """Total volumetric flux of each perforation (m³/s), positive meaning injection."""
    perforation_mass_flux: OneDimensionalArray
    """Total mass flux of each perforation (kg/s), positive meaning injection."""


@attrs.frozen(slots=True)
class SolveResult:
    """Outcome of a pressure solve."""

    status: SolveStatus
    """Terminal state reached by the pressure iteration."""
    iterations: int
    """Number of pressure iterations performed."""
    face_flux: OneDimensionalArray
    """Total signed volumetric flux across each face (m³/s)."""
    well_perf_pressures: OneDimensionalArray
    """Pressure in each well perforation (Pa)."""
    well_perf_fluxes: OneDimensionalArray
    """Total volumetric flux of each perforation (m³/s), positive meaning injection."""
    well_bhp: OneDimensionalArray
    """Bottom-hole pressure of each well (Pa)."""
    well_perf_mass_fluxes: OneDimensionalArray
    """Total mass flux of each perforation (kg/s), positive meaning injection."""
    flux_change: float = float("nan")
    """Relative flux change of the last iteration."""
    pressure_change: float = float("nan")
    """Relative pressure change of the last iteration."""

    @property
    def success(self) -> bool:
        return self.status is SolveStatus.OK
