"""Well control strategies."""

import typing

import attrs

__all__ = ["BHPControl", "RateControl", "WellControl"]


@attrs.frozen(slots=True)
class BHPControl:
    """
    Bottom Hole Pressure (BHP) control.

    The well's bottom-hole pressure is held at a fixed value and the
    perforation rates follow from the pressure differential between the
    wellbore and the reservoir.
    """

    bottom_hole_pressure: float = attrs.field(validator=attrs.validators.gt(0))
    """Well bottom-hole flowing pressure (Pa)."""

    @property
    def target(self) -> float:
        return self.bottom_hole_pressure

    def __str__(self) -> str:
        return f"BHP Control (BHP={self.bottom_hole_pressure:.4f} Pa)"


@attrs.frozen(slots=True)
class RateControl:
    """
    Total reservoir-volume rate control.

    The sum of the perforation fluxes of the well is held at a fixed value and
    the bottom-hole pressure follows from it. Positive rates inject into the
    reservoir, negative rates produce from it.
    """

    rate: float = attrs.field(converter=float)
    """Total reservoir volumetric rate (m³/s)."""

    @property
    def target(self) -> float:
        return self.rate

    def __str__(self) -> str:
        return f"Rate Control (rate={self.rate:.6e} m³/s)"


WellControl = typing.Union[BHPControl, RateControl]
"""Controls a well can be operated under"""
