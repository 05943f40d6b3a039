"""Flow boundary conditions keyed by mesh boundary id."""

from collections import defaultdict
import logging
import typing

import attrs
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ConfigurationError
from compflow.types import FaceBCType, FlowBCType, IndexArray, Mesh, OneDimensionalArray


logger = logging.getLogger(__name__)

__all__ = [
    "FlowBC",
    "BoundaryConditions",
    "BoundaryConditionTable",
    "build_boundary_condition_table",
]


@attrs.frozen
class FlowBC:
    """
    Flow condition applied to every face sharing a boundary id.

    A Dirichlet condition prescribes the face pressure (Pa). A Neumann
    condition prescribes the outward volumetric flux (m³/s).
    """

    type: FlowBCType = attrs.field(validator=attrs.validators.instance_of(FlowBCType))
    """Kind of flow condition."""
    value: float = attrs.field(default=0.0, converter=float)
    """Prescribed pressure (Dirichlet) or outward flux (Neumann)."""

    @classmethod
    def dirichlet(cls, pressure: float) -> "FlowBC":
        return cls(type=FlowBCType.DIRICHLET, value=pressure)

    @classmethod
    def neumann(cls, outflux: float = 0.0) -> "FlowBC":
        return cls(type=FlowBCType.NEUMANN, value=outflux)

    @classmethod
    def periodic(cls) -> "FlowBC":
        return cls(type=FlowBCType.PERIODIC)

    @property
    def is_dirichlet(self) -> bool:
        return self.type is FlowBCType.DIRICHLET

    @property
    def is_neumann(self) -> bool:
        return self.type is FlowBCType.NEUMANN

    def pressure(self) -> float:
        return self.value

    def outflux(self) -> float:
        return self.value


def no_flow() -> FlowBC:
    """Zero-flux Neumann condition, the default for unlisted boundary ids."""
    return FlowBC.neumann(0.0)


class BoundaryConditions(defaultdict):
    """
    Mapping of mesh boundary ids to flow conditions.

    Boundary ids that are not listed fall back to the condition produced by
    `factory`, which defaults to no flow.

    Example:
    ```python
    bc = BoundaryConditions(
        conditions={
            1: FlowBC.dirichlet(2.0e7),  # x- side held at 200 bar
            2: FlowBC.dirichlet(1.0e7),  # x+ side held at 100 bar
        }
    )
    bc.flow_condition(3)  # no flow
    ```
    """

    def __init__(
        self,
        conditions: typing.Optional[typing.Mapping[int, FlowBC]] = None,
        factory: typing.Callable[[], FlowBC] = no_flow,
    ) -> None:
        """
        Initializes the `BoundaryConditions`.

        :param conditions: Optional mapping of boundary ids to flow conditions.
        :param factory: Callable providing the condition of unlisted boundary ids.
        """
        super().__init__(factory)
        if conditions:
            self.update(conditions)
        self.factory = factory

    def __reduce_ex__(self, protocol):
        return (self.__class__, (dict(self), self.factory), None, None, None)

    def __copy__(self):
        return self.__class__(conditions=dict(self), factory=self.factory)

    def flow_condition(self, boundary_id: int) -> FlowBC:
        """
        Get the flow condition of a boundary id without inserting defaults.

        :param boundary_id: Mesh boundary id (non-zero).
        :return: The `FlowBC` registered for the id, or the default condition.
        """
        if boundary_id in self:
            return self[boundary_id]
        return self.factory()


@attrs.frozen
class BoundaryConditionTable:
    """Per-face boundary condition codes and values consumed by the pressure assembler."""

    types: IndexArray
    """1D array of `FaceBCType` codes, one per face."""
    values: OneDimensionalArray
    """1D array of prescribed face pressures (Pa) or fluxes (m³/s), one per face."""

    def __len__(self) -> int:
        return self.types.shape[0]

    def dirichlet_faces(self) -> IndexArray:
        """Indices of the faces with a prescribed pressure."""
        return np.flatnonzero(self.types == FaceBCType.PRESSURE)


def build_boundary_condition_table(
    mesh: Mesh, bc: BoundaryConditions
) -> BoundaryConditionTable:
    """
    Translate boundary conditions into per-face codes and values.

    Interior faces (boundary id 0) are left unset. Dirichlet conditions become
    prescribed-pressure faces and Neumann conditions become prescribed-flux
    faces.

    :param mesh: Mesh whose faces are tagged with boundary ids.
    :param bc: Flow conditions keyed by boundary id.
    :return: `BoundaryConditionTable` for all faces of the mesh.
    :raises ConfigurationError: If a Neumann condition has a non-zero flux,
        or a boundary id maps to a condition kind that is not handled.
    """
    num_faces = mesh.num_faces
    types = np.full(num_faces, FaceBCType.UNSET, dtype=np.int64)
    values = np.zeros(num_faces, dtype=get_dtype())
    for face in range(num_faces):
        boundary_id = mesh.boundary_id(face)
        if boundary_id == 0:
            continue
        condition = bc.flow_condition(boundary_id)
        if condition.is_dirichlet:
            types[face] = FaceBCType.PRESSURE
            values[face] = condition.pressure()
        elif condition.is_neumann:
            if condition.outflux() != 0.0:
                raise ConfigurationError(
                    f"Non-zero Neumann flux {condition.outflux()} on boundary id {boundary_id} "
                    "is not supported; only no-flow Neumann conditions can be used."
                )
            types[face] = FaceBCType.FLUX
            values[face] = 0.0
        else:
            raise ConfigurationError(
                f"Unhandled boundary condition type {condition.type.value!r} on boundary id {boundary_id}."
            )

    table = BoundaryConditionTable(types=types, values=values)
    logger.debug(
        f"Boundary condition table: {int(np.sum(types == FaceBCType.PRESSURE))} pressure faces, "
        f"{int(np.sum(types == FaceBCType.FLUX))} flux faces"
    )
    return table
