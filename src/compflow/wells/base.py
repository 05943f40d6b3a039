"""Well definitions and the well collection consumed by the pressure solver."""

import logging
import typing

import attrs
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ValidationError
from compflow.types import Mesh, OneDimensionalArray, WellType
from compflow.wells.controls import BHPControl, RateControl, WellControl
from compflow.wells.core import compute_effective_drainage_radius, compute_well_index

logger = logging.getLogger(__name__)

__all__ = ["Well", "Wells"]


def _as_cell_tuple(value: typing.Iterable[int]) -> typing.Tuple[int, ...]:
    return tuple(int(cell) for cell in value)


def _as_optional_float_tuple(
    value: typing.Optional[typing.Iterable[float]],
) -> typing.Optional[typing.Tuple[float, ...]]:
    if value is None:
        return None
    return tuple(float(v) for v in value)


@attrs.frozen
class Well:
    """Models a vertical well perforating one or more cells."""

    name: str
    """Name of the well."""
    type: WellType = attrs.field(converter=WellType)
    """Role of the well (injector or producer)."""
    perforation_cells: typing.Tuple[int, ...] = attrs.field(converter=_as_cell_tuple)
    """Cells perforated by the well, in perforation order."""
    control: WellControl = attrs.field(
        validator=attrs.validators.instance_of((BHPControl, RateControl))
    )
    """Control strategy for the well."""
    reference_depth: float = attrs.field(converter=float)
    """Depth at which the bottom-hole pressure is measured (m)."""
    injection_mixture: typing.Optional[typing.Tuple[float, ...]] = attrs.field(
        default=None, converter=_as_optional_float_tuple
    )
    """Component composition injected by the well. Required for injectors."""
    radius: float = attrs.field(default=0.1, validator=attrs.validators.gt(0.0))
    """Radius of the wellbore (m)."""
    skin_factor: float = 0.0
    """Skin factor for the well, affecting flow performance."""
    well_indices: typing.Optional[typing.Tuple[float, ...]] = attrs.field(
        default=None, converter=_as_optional_float_tuple
    )
    """Explicit well index of each perforation (m³). Computed with Peaceman's model when not given."""
    initial_perforation_pressure: typing.Optional[float] = None
    """
    Initial pressure of the well's perforations (Pa).

    Defaults to the bottom-hole pressure of BHP-controlled wells, and is
    required for rate-controlled wells.
    """

    def __attrs_post_init__(self) -> None:
        if not self.perforation_cells:
            raise ValidationError(f"Well {self.name!r} must perforate at least one cell.")
        if self.type is WellType.INJECTOR and self.injection_mixture is None:
            raise ValidationError(f"Injection well {self.name!r} needs an injection mixture.")
        if self.well_indices is not None and len(self.well_indices) != len(
            self.perforation_cells
        ):
            raise ValidationError(
                f"Well {self.name!r} has {len(self.perforation_cells)} perforations "
                f"but {len(self.well_indices)} well indices."
            )
        if self.initial_perforation_pressure is None and not isinstance(
            self.control, BHPControl
        ):
            raise ValidationError(
                f"Rate-controlled well {self.name!r} needs an initial perforation pressure."
            )

    @property
    def num_perforations(self) -> int:
        return len(self.perforation_cells)

    @property
    def is_injector(self) -> bool:
        return self.type is WellType.INJECTOR

    def perforation_pressure(self) -> float:
        """Initial perforation pressure of the well (Pa)."""
        if self.initial_perforation_pressure is not None:
            return float(self.initial_perforation_pressure)
        return typing.cast(BHPControl, self.control).bottom_hole_pressure

    def get_well_index(
        self,
        cell_dimensions: typing.Tuple[float, float, float],
        permeability: typing.Tuple[float, float, float],
    ) -> float:
        """
        Compute the well index of a perforation using the Peaceman equation.

        :param cell_dimensions: Size of the perforated cell along x, y and z (m).
        :param permeability: Diagonal permeability of the perforated cell along x, y and z (m²).
        :return: The well index (m³).
        """
        delta_x, delta_y, delta_z = cell_dimensions
        k_x, k_y, _ = permeability
        effective_drainage_radius = compute_effective_drainage_radius(
            delta_x=delta_x, delta_y=delta_y, k_x=k_x, k_y=k_y
        )
        return compute_well_index(
            permeability=float(np.sqrt(k_x * k_y)),
            interval_thickness=delta_z,
            wellbore_radius=self.radius,
            effective_drainage_radius=effective_drainage_radius,
            skin_factor=self.skin_factor,
        )


@attrs.frozen
class Wells:
    """
    Collection of wells in the reservoir model.

    A cell can be perforated by at most one well, so per-cell lookups
    (`injection_mixture`, `perforation_pressure`) are unambiguous.
    """

    wells: typing.Tuple[Well, ...] = attrs.field(factory=tuple, converter=tuple)
    """Wells of the model, in well index order."""
    _cell_to_well: typing.Dict[int, int] = attrs.field(init=False, repr=False)

    def __attrs_post_init__(self) -> None:
        cell_to_well: typing.Dict[int, int] = {}
        for index, well in enumerate(self.wells):
            for cell in well.perforation_cells:
                if cell in cell_to_well:
                    other = self.wells[cell_to_well[cell]].name
                    raise ValidationError(
                        f"Cell {cell} is perforated by both {other!r} and {well.name!r}."
                    )
                cell_to_well[cell] = index
        object.__setattr__(self, "_cell_to_well", cell_to_well)

    def __iter__(self) -> typing.Iterator[Well]:
        return iter(self.wells)

    def __len__(self) -> int:
        return len(self.wells)

    @property
    def num_wells(self) -> int:
        return len(self.wells)

    @property
    def total_perforations(self) -> int:
        return sum(well.num_perforations for well in self.wells)

    def num_perforations(self, well: int) -> int:
        return self.wells[well].num_perforations

    def well_cell(self, well: int, perforation: int) -> int:
        return self.wells[well].perforation_cells[perforation]

    def type(self, well: int) -> WellType:
        return self.wells[well].type

    def control(self, well: int) -> WellControl:
        return self.wells[well].control

    def reference_depth(self, well: int) -> float:
        return self.wells[well].reference_depth

    def well_at(self, cell: int) -> Well:
        """
        Get the well perforating a cell.

        :raises ValidationError: If no well perforates the cell.
        """
        if cell not in self._cell_to_well:
            raise ValidationError(f"No well perforates cell {cell}.")
        return self.wells[self._cell_to_well[cell]]

    def injection_mixture(self, cell: int) -> OneDimensionalArray:
        """Injection mixture of the well perforating a cell."""
        well = self.well_at(cell)
        if well.injection_mixture is None:
            raise ValidationError(f"Well {well.name!r} has no injection mixture.")
        return np.asarray(well.injection_mixture, dtype=get_dtype())

    def perforation_pressure(self, cell: int) -> float:
        """Initial pressure of the perforation in a cell (Pa)."""
        return self.well_at(cell).perforation_pressure()

    def well_indices(self, mesh: Mesh, permeability: OneDimensionalArray) -> OneDimensionalArray:
        """
        Compute the well index of every perforation, in global perforation order.

        :param mesh: Mesh providing the perforated cell dimensions.
        :param permeability: Flat row-major permeability tensors, 9 entries per cell (m²).
        :return: Well indices (m³).
        """
        permeability = np.asarray(permeability).reshape(-1, 3, 3)
        indices = []
        for well in self.wells:
            if well.well_indices is not None:
                indices.extend(well.well_indices)
                continue
            for cell in well.perforation_cells:
                dimensions = tuple(float(d) for d in mesh.cell_dimensions[cell])
                diagonal = tuple(float(k) for k in np.diag(permeability[cell]))
                index = well.get_well_index(
                    cell_dimensions=typing.cast(typing.Tuple[float, float, float], dimensions),
                    permeability=typing.cast(typing.Tuple[float, float, float], diagonal),
                )
                logger.debug(f"Well {well.name!r} perforation in cell {cell}: WI={index:.6e}")
                indices.append(index)
        return np.asarray(indices, dtype=get_dtype())
