"""
Linear system formulations of a pressure iteration.

`DirectFormulation` solves the assembled system for the new pressures.
`ResidualJacobianFormulation` reinterprets the same system as a Newton step
on the volume balance residual and solves for a pressure correction. Both
have the same fixed point.
"""

import logging
import os
import typing

import attrs
import numpy as np
from scipy.sparse import diags  # type: ignore[import-untyped]

from compflow.diffusivity.base import LinearSolverResult
from compflow.properties import FluidPropertySnapshot
from compflow.types import (
    IndexArray,
    OneDimensionalArray,
    PressureAssembler,
    SupportsLinearSolve,
    TwoDimensionalArray,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AssemblyInputs",
    "Formulation",
    "DirectFormulation",
    "ResidualJacobianFormulation",
]


@attrs.frozen
class AssemblyInputs:
    """Arguments of `PressureAssembler.assemble` for one pressure iteration."""

    sources: OneDimensionalArray
    bc_types: IndexArray
    bc_values: OneDimensionalArray
    dt: float
    total_compressibility: OneDimensionalArray
    volume_discrepancy: OneDimensionalArray
    cell_transform: np.ndarray
    face_transform: np.ndarray
    perforation_transform: np.ndarray
    face_mobility: TwoDimensionalArray
    perforation_mobility: TwoDimensionalArray
    initial_cell_pressure: OneDimensionalArray
    gravity_capillary_flux: TwoDimensionalArray
    perforation_potential: TwoDimensionalArray
    surface_densities: OneDimensionalArray

    def as_kwargs(self, **overrides: typing.Any) -> typing.Dict[str, typing.Any]:
        kwargs = attrs.asdict(self, recurse=False)
        kwargs.update(overrides)
        return kwargs


class Formulation(typing.Protocol):
    """Assembles and solves the linear system of one pressure iteration."""

    def step(
        self,
        assembler: PressureAssembler,
        linear_solver: SupportsLinearSolve,
        inputs: AssemblyInputs,
        snapshot: FluidPropertySnapshot,
        guess: OneDimensionalArray,
        solve_index: int,
        iteration: int,
        withheld_volume_discrepancy: typing.Optional[OneDimensionalArray] = None,
    ) -> LinearSolverResult:
        """
        Run one iteration, leaving the new cell pressures and bottom-hole
        pressures in the solution buffer of the assembler's linear system.

        :param assembler: Pressure assembler.
        :param linear_solver: Sparse linear solver.
        :param inputs: Assembly arguments of the iteration.
        :param snapshot: Fluid properties of the iteration.
        :param guess: Current cell pressures followed by bottom-hole pressures.
        :param solve_index: Index of the pressure solve, counting from 1.
        :param iteration: Index of the iteration within the solve.
        :param withheld_volume_discrepancy: Part of the initial volume discrepancy
            rate held back by discrepancy relaxation (m³/s), or None when nothing is withheld.
        :return: Outcome of the linear solve.
        """
        ...


@attrs.frozen
class DirectFormulation:
    """Solves the assembled system for the new pressures."""

    def step(
        self,
        assembler: PressureAssembler,
        linear_solver: SupportsLinearSolve,
        inputs: AssemblyInputs,
        snapshot: FluidPropertySnapshot,
        guess: OneDimensionalArray,
        solve_index: int,
        iteration: int,
        withheld_volume_discrepancy: typing.Optional[OneDimensionalArray] = None,
    ) -> LinearSolverResult:
        assembler.assemble(**inputs.as_kwargs())
        system = assembler.linear_system()
        x, result = linear_solver.solve(system.A, system.b, x0=guess)
        system.x[:] = x
        return result


@attrs.frozen
class ResidualJacobianFormulation:
    """
    Solves for a Newton correction of the volume balance residual.

    The system is assembled without the volume discrepancy term. Its
    residual at the current guess is then turned into the residual of

        Σ_f u_f - Σ_k q_k - s + (pv / dt) (1 - tpvd(p)) + w = 0

    by removing the linearized accumulation term, and the diagonal swaps the
    total compressibility for the pressure derivative of `tpvd`. `w` is the
    part of the initial discrepancy rate withheld by discrepancy relaxation.
    """

    output_residual: bool = False
    """Whether to write each residual vector to file."""
    residual_output_directory: str = "."
    """Directory receiving the residual files."""

    def residual_path(self, solve_index: int, iteration: int) -> str:
        return os.path.join(
            self.residual_output_directory, f"residual-{solve_index}-{iteration}.dat"
        )

    def step(
        self,
        assembler: PressureAssembler,
        linear_solver: SupportsLinearSolve,
        inputs: AssemblyInputs,
        snapshot: FluidPropertySnapshot,
        guess: OneDimensionalArray,
        solve_index: int,
        iteration: int,
        withheld_volume_discrepancy: typing.Optional[OneDimensionalArray] = None,
    ) -> LinearSolverResult:
        num_cells = snapshot.num_cells
        assembler.assemble(
            **inputs.as_kwargs(volume_discrepancy=np.zeros(num_cells))
        )
        system = assembler.linear_system()
        guess = np.asarray(guess, dtype=np.float64)

        scale = snapshot.pore_volume / inputs.dt
        total_compressibility = snapshot.total_compressibility
        pressure_change = guess[:num_cells] - np.asarray(inputs.initial_cell_pressure)

        residual = system.A @ guess - system.b
        residual[:num_cells] -= scale * (
            total_compressibility * pressure_change
            - (1.0 - snapshot.total_phase_volume_density)
        )
        if withheld_volume_discrepancy is not None:
            residual[:num_cells] += np.asarray(withheld_volume_discrepancy)

        diagonal_correction = np.zeros(system.size)
        diagonal_correction[:num_cells] = scale * (
            snapshot.explicit_jacobian_term - total_compressibility
        )
        jacobian = (system.A + diags(diagonal_correction, format="csr")).tocsr()

        if self.output_residual:
            path = self.residual_path(solve_index, iteration)
            os.makedirs(self.residual_output_directory, exist_ok=True)
            np.savetxt(path, residual)
            logger.debug(f"Wrote residual of iteration {iteration} to {path!r}")

        correction, result = linear_solver.solve(
            jacobian, residual, x0=np.zeros_like(residual)
        )
        system.x[:] = guess - correction
        return result
