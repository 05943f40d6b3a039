"""Convergence metrics of the pressure iteration and the volume discrepancy gate."""

import logging
import typing

import numpy as np

from compflow.properties import FluidPropertySnapshot
from compflow.types import OneDimensionalArray

logger = logging.getLogger(__name__)

__all__ = [
    "max_relative_volume_discrepancy",
    "relative_change",
    "compute_flux_pressure_changes",
    "has_converged",
]


def max_relative_volume_discrepancy(snapshot: FluidPropertySnapshot) -> float:
    """Largest relative volume discrepancy `|tpvd - 1|` over all cells."""
    return snapshot.max_relative_volume_discrepancy


def _max_abs(values: OneDimensionalArray) -> float:
    values = np.asarray(values)
    if values.size == 0:
        return 0.0
    return float(np.max(np.abs(values)))


def relative_change(change: float, scale: float) -> float:
    """
    Divide an absolute change by a normalizing magnitude.

    A zero scale gives 0.0 when the change is also zero and `inf` otherwise.
    """
    if scale > 0.0:
        return change / scale
    return 0.0 if change == 0.0 else float("inf")


def compute_flux_pressure_changes(
    face_flux: OneDimensionalArray,
    perforation_flux: OneDimensionalArray,
    cell_pressure: OneDimensionalArray,
    start_face_flux: OneDimensionalArray,
    start_perforation_flux: OneDimensionalArray,
    start_cell_pressure: OneDimensionalArray,
) -> typing.Tuple[float, float]:
    """
    Compute the relative flux and pressure changes of one iteration.

        flux_change = max(‖Δu‖∞, ‖Δq‖∞) / max(‖u‖∞, ‖q‖∞)
        pressure_change = ‖Δp‖∞ / ‖p‖∞

    where `u` are the face fluxes and `q` the perforation fluxes of the
    current iteration. Both ratios are unchanged when all arguments are
    scaled by the same non-zero factor.

    :param face_flux: Face fluxes of the current iteration.
    :param perforation_flux: Perforation fluxes of the current iteration.
    :param cell_pressure: Cell pressures of the current iteration.
    :param start_face_flux: Face fluxes at the start of the iteration.
    :param start_perforation_flux: Perforation fluxes at the start of the iteration.
    :param start_cell_pressure: Cell pressures at the start of the iteration.
    :return: Tuple of (relative flux change, relative pressure change).
    """
    face_flux = np.asarray(face_flux)
    perforation_flux = np.asarray(perforation_flux)
    cell_pressure = np.asarray(cell_pressure)

    flux_change = max(
        _max_abs(face_flux - np.asarray(start_face_flux)),
        _max_abs(perforation_flux - np.asarray(start_perforation_flux)),
    )
    max_flux = max(_max_abs(face_flux), _max_abs(perforation_flux))
    pressure_change = _max_abs(cell_pressure - np.asarray(start_cell_pressure))
    max_pressure = _max_abs(cell_pressure)
    return relative_change(flux_change, max_flux), relative_change(pressure_change, max_pressure)


def has_converged(
    flux_change: float,
    pressure_change: float,
    flux_tolerance: float,
    pressure_tolerance: float,
) -> bool:
    """
    Convergence test of the pressure iteration.

    Converged as soon as either the relative flux change or the relative
    pressure change falls below its tolerance.
    """
    return flux_change < flux_tolerance or pressure_change < pressure_tolerance
