import enum
import typing

import numpy as np
from scipy.sparse import csr_array, csr_matrix
from typing_extensions import TypeAlias

if typing.TYPE_CHECKING:
    from compflow.diffusivity.base import LinearSolverResult
    from compflow.models import FlowSolution, FluidState, LinearSystem


__all__ = [
    "PHASE_NAMES",
    "COMPONENT_NAMES",
    "WellType",
    "FlowBCType",
    "FaceBCType",
    "SolveStatus",
    "IterativeSolver",
    "Preconditioner",
    "Mesh",
    "Rock",
    "FluidModel",
    "WellsInterface",
    "PressureAssembler",
    "SupportsLinearSolve",
]

PHASE_NAMES: typing.Dict[int, typing.Tuple[str, ...]] = {
    2: ("liquid", "vapour"),
    3: ("aqua", "liquid", "vapour"),
}
"""Phase ordering by number of phases."""
COMPONENT_NAMES: typing.Dict[int, typing.Tuple[str, ...]] = {
    2: ("oil", "gas"),
    3: ("water", "oil", "gas"),
}
"""Component ordering by number of components."""

OneDimensionalArray: TypeAlias = np.typing.NDArray[np.floating]
"""1D array of floats, e.g. one scalar per cell"""
TwoDimensionalArray: TypeAlias = np.typing.NDArray[np.floating]
"""2D array of floats, e.g. one phase vector per cell"""
IndexArray: TypeAlias = np.typing.NDArray[np.integer]
"""1D array of integer indices"""
SparseMatrix = typing.Union[csr_array, csr_matrix]


class WellType(enum.Enum):
    """Enum representing the role of a well."""

    INJECTOR = "injector"
    PRODUCER = "producer"


class FlowBCType(enum.Enum):
    """Kinds of flow boundary conditions that can be attached to a boundary id."""

    DIRICHLET = "dirichlet"
    NEUMANN = "neumann"
    PERIODIC = "periodic"


class FaceBCType(enum.IntEnum):
    """Per-face boundary condition codes consumed by the pressure assembler."""

    UNSET = 0
    PRESSURE = 1
    FLUX = 2


class SolveStatus(enum.Enum):
    """Terminal states of a pressure solve."""

    OK = "ok"
    VOLUME_DISCREPANCY_TOO_LARGE = "volume_discrepancy_too_large"
    FAILED_TO_CONVERGE = "failed_to_converge"


IterativeSolver = typing.Literal["bicgstab", "gmres", "lgmres", "direct"]
"""Linear solvers available to the pressure iteration"""
Preconditioner = typing.Literal["ilu", "diagonal", "amg"]
"""Preconditioners available to the iterative linear solvers"""


class Mesh(typing.Protocol):
    """Cell/face topology and geometry required by the solver."""

    @property
    def num_cells(self) -> int: ...

    @property
    def num_faces(self) -> int: ...

    @property
    def cell_volumes(self) -> OneDimensionalArray: ...

    @property
    def cell_centroids(self) -> TwoDimensionalArray: ...

    @property
    def cell_dimensions(self) -> TwoDimensionalArray: ...

    @property
    def face_cells(self) -> IndexArray: ...

    @property
    def face_areas(self) -> OneDimensionalArray: ...

    @property
    def face_centroids(self) -> TwoDimensionalArray: ...

    def cell_volume(self, cell: int, /) -> float: ...

    def cell_centroid(self, cell: int, /) -> OneDimensionalArray: ...

    def boundary_id(self, face: int, /) -> int: ...


class Rock(typing.Protocol):
    """Per-cell rock properties."""

    def porosity(self, cell: int, /) -> float: ...

    def permeability(self, cell: int, /) -> TwoDimensionalArray: ...

    @property
    def flat_permeability(self) -> OneDimensionalArray: ...


class FluidModel(typing.Protocol):
    """Fluid state evaluation from a phase pressure vector and a component vector."""

    @property
    def num_phases(self) -> int: ...

    @property
    def num_components(self) -> int: ...

    @property
    def liquid_phase(self) -> int: ...

    def compute_state(
        self, pressure: OneDimensionalArray, composition: OneDimensionalArray
    ) -> "FluidState": ...

    def phase_densities(self, transform: TwoDimensionalArray) -> OneDimensionalArray: ...

    def surface_densities(self) -> OneDimensionalArray: ...


class WellsInterface(typing.Protocol):
    """Well and perforation topology."""

    @property
    def num_wells(self) -> int: ...

    def num_perforations(self, well: int, /) -> int: ...

    def well_cell(self, well: int, perforation: int, /) -> int: ...

    def type(self, well: int, /) -> WellType: ...

    def injection_mixture(self, cell: int, /) -> OneDimensionalArray: ...

    def reference_depth(self, well: int, /) -> float: ...

    def perforation_pressure(self, cell: int, /) -> float: ...


class PressureAssembler(typing.Protocol):
    """Assembles and post-processes the compressible pressure system."""

    def init(
        self,
        mesh: Mesh,
        wells: WellsInterface,
        permeability: OneDimensionalArray,
        porosity: OneDimensionalArray,
        gravity: OneDimensionalArray,
    ) -> None: ...

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
    ) -> None: ...

    def linear_system(self) -> "LinearSystem": ...

    def compute_pressures_and_fluxes(self) -> "FlowSolution": ...

    def explicit_timestep_limit(
        self,
        face_mobility: TwoDimensionalArray,
        face_mobility_derivative: TwoDimensionalArray,
    ) -> float: ...

    def explicit_transport(
        self,
        dt: float,
        cell_z: TwoDimensionalArray,
        inflow_mixture: OneDimensionalArray,
    ) -> None: ...


class SupportsLinearSolve(typing.Protocol):
    """Sparse linear solver."""

    def solve(
        self,
        A: SparseMatrix,
        b: OneDimensionalArray,
        x0: typing.Optional[OneDimensionalArray] = None,
    ) -> typing.Tuple[OneDimensionalArray, "LinearSolverResult"]: ...
