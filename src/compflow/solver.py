"""Picard iteration controller of the compressible multi-phase pressure equation."""

import logging
import typing

import numpy as np

from compflow._precision import get_dtype
from compflow.boundary_conditions import (
    BoundaryConditions,
    BoundaryConditionTable,
    build_boundary_condition_table,
)
from compflow.config import Config
from compflow.diffusivity.assembly import TPFACompressibleAssembler
from compflow.diffusivity.base import LinearSolver
from compflow.diffusivity.convergence import (
    compute_flux_pressure_changes,
    has_converged,
    max_relative_volume_discrepancy,
)
from compflow.diffusivity.formulations import (
    AssemblyInputs,
    DirectFormulation,
    Formulation,
    ResidualJacobianFormulation,
)
from compflow.errors import ConfigurationError, SolverError, ValidationError
from compflow.models import SolveResult
from compflow.properties import (
    FluidPropertySnapshot,
    compute_fluid_properties,
    compute_perforation_properties,
)
from compflow.types import (
    FluidModel,
    Mesh,
    OneDimensionalArray,
    PressureAssembler,
    Rock,
    SolveStatus,
    SupportsLinearSolve,
    TwoDimensionalArray,
    WellsInterface,
)
from compflow.wells.core import (
    PerforationTable,
    compute_well_perforation_pressures,
    compute_well_potentials,
)

logger = logging.getLogger(__name__)

__all__ = ["CompressibleFlowSolver"]


class CompressibleFlowSolver:
    """
    Solves the pressure equation of a compressible multi-phase, multi-component flow.

    Each call to `solve` runs a fixed-point iteration: re-evaluate fluid
    properties, assemble and solve the pressure system, extract pressures
    and fluxes, relax, update the well perforation pressures, and test for
    convergence. Compositions can then be advanced by one explicit (IMPES)
    transport step.

    Usage:
    ```python
    solver = CompressibleFlowSolver(num_components=2)
    solver.init(Config(max_iterations=10))
    solver.setup(mesh, rock, fluid, wells, gravity, bc)
    result = solver.solve(
        cell_pressure, face_pressure, cell_z, well_perf_pressures, src, dt
    )
    if result.status is SolveStatus.VOLUME_DISCREPANCY_TOO_LARGE:
        ...  # retry with a smaller time step
    ```
    """

    def __init__(
        self,
        num_components: int = 3,
        assembler: typing.Optional[PressureAssembler] = None,
        linear_solver: typing.Optional[SupportsLinearSolve] = None,
    ) -> None:
        """
        :param num_components: Number of fluid components (2 or 3).
        :param assembler: Pressure system assembler. Defaults to `TPFACompressibleAssembler`.
        :param linear_solver: Sparse linear solver. Defaults to a `LinearSolver`
            built from the configuration passed to `init`.
        """
        self.num_components = num_components
        self.assembler: PressureAssembler = (
            assembler if assembler is not None else TPFACompressibleAssembler()
        )
        self.linear_solver = linear_solver
        self._owns_linear_solver = linear_solver is None
        self.config: typing.Optional[Config] = None
        self.inflow_mixture: typing.Optional[OneDimensionalArray] = None
        self._formulation: typing.Optional[Formulation] = None
        self._solve_count = 0
        self._last_snapshot: typing.Optional[FluidPropertySnapshot] = None

        self.mesh: typing.Optional[Mesh] = None
        self.rock: typing.Optional[Rock] = None
        self.fluid: typing.Optional[FluidModel] = None
        self.wells: typing.Optional[WellsInterface] = None
        self.gravity: typing.Optional[OneDimensionalArray] = None
        self.porosity: typing.Optional[OneDimensionalArray] = None
        self.bc_table: typing.Optional[BoundaryConditionTable] = None
        self.perforations: typing.Optional[PerforationTable] = None

    @property
    def solve_count(self) -> int:
        """Number of pressure solves started by this solver."""
        return self._solve_count

    def init(self, config: Config) -> None:
        """
        Apply a configuration.

        :param config: Solver configuration.
        :raises ConfigurationError: If the number of components is not handled.
        """
        self.inflow_mixture = config.inflow_mixture(self.num_components)
        if self._owns_linear_solver:
            self.linear_solver = LinearSolver(
                solver=config.iterative_solver,
                preconditioner=config.preconditioner,
                max_iterations=config.linear_solver_max_iterations,
                tolerance=config.linear_solver_tolerance,
            )
        if config.experimental_jacobian:
            self._formulation = ResidualJacobianFormulation(
                output_residual=config.output_residual,
                residual_output_directory=config.residual_output_directory,
            )
        else:
            self._formulation = DirectFormulation()
        self.config = config
        logger.debug(
            f"Pressure solver configured: {type(self._formulation).__name__}, "
            f"linear solver {config.iterative_solver!r}, max {config.max_iterations} iterations"
        )

    def setup(
        self,
        mesh: Mesh,
        rock: Rock,
        fluid: FluidModel,
        wells: WellsInterface,
        gravity: OneDimensionalArray,
        bc: BoundaryConditions,
    ) -> None:
        """
        Bind the model and build the boundary condition and perforation tables.

        :param mesh: Mesh topology and geometry.
        :param rock: Rock properties.
        :param fluid: Fluid model.
        :param wells: Wells and their perforations.
        :param gravity: Gravity vector (m/s²).
        :param bc: Flow boundary conditions keyed by boundary id.
        :raises ConfigurationError: If the fluid's component count differs from
            the solver's, or a boundary condition is not supported.
        """
        if fluid.num_components != self.num_components:
            raise ConfigurationError(
                f"Solver handles {self.num_components} components, fluid has {fluid.num_components}."
            )
        self.mesh = mesh
        self.rock = rock
        self.fluid = fluid
        self.wells = wells
        self.gravity = np.asarray(gravity, dtype=get_dtype())
        self.porosity = np.array(
            [rock.porosity(cell) for cell in range(mesh.num_cells)], dtype=get_dtype()
        )
        self.assembler.init(
            mesh, wells, rock.flat_permeability, self.porosity, self.gravity
        )
        self.bc_table = build_boundary_condition_table(mesh, bc)
        self.perforations = PerforationTable.from_wells(
            wells, num_phases=fluid.num_phases, num_components=fluid.num_components
        )
        self._last_snapshot = None
        logger.info(
            f"Pressure solver set up: {mesh.num_cells} cells, {mesh.num_faces} faces, "
            f"{wells.num_wells} wells, {len(self.perforations)} perforations"
        )

    def _require_ready(self) -> typing.Tuple[Config, Mesh, FluidModel, WellsInterface, PerforationTable]:
        if self.config is None or self._formulation is None:
            raise ValidationError("Solver is not configured. Call `init` first.")
        if (
            self.mesh is None
            or self.fluid is None
            or self.wells is None
            or self.perforations is None
        ):
            raise ValidationError("Solver is not set up. Call `setup` first.")
        return self.config, self.mesh, self.fluid, self.wells, self.perforations

    def compute_fluid_properties(
        self,
        cell_pressure: TwoDimensionalArray,
        face_pressure: TwoDimensionalArray,
        cell_z: TwoDimensionalArray,
        dt: float,
    ) -> FluidPropertySnapshot:
        """Evaluate the cell and face fluid properties of the bound model."""
        _, mesh, fluid, _, _ = self._require_ready()
        return compute_fluid_properties(
            mesh=mesh,
            rock=typing.cast(Rock, self.rock),
            fluid=fluid,
            gravity=typing.cast(OneDimensionalArray, self.gravity),
            cell_pressure=cell_pressure,
            face_pressure=face_pressure,
            cell_z=cell_z,
            inflow_mixture=typing.cast(OneDimensionalArray, self.inflow_mixture),
            dt=dt,
        )

    def _volume_discrepancy_ok(self, snapshot: FluidPropertySnapshot) -> bool:
        config = typing.cast(Config, self.config)
        discrepancy = max_relative_volume_discrepancy(snapshot)
        if discrepancy > config.max_relative_volume_discrepancy:
            logger.warning(
                f"Maximum relative volume discrepancy {discrepancy:.6e} exceeds "
                f"the allowed {config.max_relative_volume_discrepancy:.6e}"
            )
            return False
        logger.info(
            f"Maximum relative volume discrepancy {discrepancy:.6e} is within "
            f"the allowed {config.max_relative_volume_discrepancy:.6e}"
        )
        return True

    def volume_discrepancy_acceptable(
        self,
        cell_pressure: TwoDimensionalArray,
        face_pressure: TwoDimensionalArray,
        cell_z: TwoDimensionalArray,
        dt: float,
    ) -> bool:
        """
        Check whether a state passes the volume discrepancy gate of `solve`.

        :param cell_pressure: Cell phase pressures (Pa).
        :param face_pressure: Face phase pressures (Pa).
        :param cell_z: Cell component surface volumes.
        :param dt: Time step size (s).
        :return: True if the largest relative volume discrepancy is within the configured maximum.
        """
        snapshot = self.compute_fluid_properties(cell_pressure, face_pressure, cell_z, dt)
        return self._volume_discrepancy_ok(snapshot)

    def _estimate_bhp(self, table: PerforationTable, num_wells: int) -> OneDimensionalArray:
        """Bottom-hole pressures implied by the current perforation pressures."""
        bhp = np.zeros(num_wells, dtype=get_dtype())
        for well in range(num_wells):
            perforations = table.well_perforations(well)
            if perforations.size == 0:
                continue
            correction = np.sum(
                table.saturation[perforations] * table.potential[perforations], axis=1
            )
            bhp[well] = float(np.mean(table.pressure[perforations] - correction))
        return bhp

    def solve(
        self,
        cell_pressure: TwoDimensionalArray,
        face_pressure: TwoDimensionalArray,
        cell_z: TwoDimensionalArray,
        well_perf_pressures: OneDimensionalArray,
        src: OneDimensionalArray,
        dt: float,
        well_perf_fluxes: typing.Optional[OneDimensionalArray] = None,
        transport: bool = False,
    ) -> SolveResult:
        """
        Solve the pressure equation for one time step.

        `cell_pressure`, `face_pressure` and `well_perf_pressures` are
        overwritten in place, as is `well_perf_fluxes` when given. `cell_z` is
        advanced by one explicit transport step only when `transport` is set
        and the solve succeeded.

        :param cell_pressure: Cell phase pressures, shape (num_cells, num_phases) (Pa).
        :param face_pressure: Face phase pressures, shape (num_faces, num_phases) (Pa).
        :param cell_z: Cell component surface volumes, shape (num_cells, num_components).
        :param well_perf_pressures: Pressure of each perforation (Pa).
        :param src: Volumetric source rate of each cell (m³/s).
        :param dt: Time step size (s).
        :param well_perf_fluxes: Perforation fluxes of the previous step, used
            as the starting point of the flux change metric.
        :param transport: Whether to advance `cell_z` by one explicit step after a successful solve.
        :return: `SolveResult`.
        :raises SolverError: If the linear solver fails to converge.
        """
        config, mesh, fluid, wells, table = self._require_ready()
        formulation = typing.cast(Formulation, self._formulation)
        linear_solver = typing.cast(SupportsLinearSolve, self.linear_solver)
        bc_table = typing.cast(BoundaryConditionTable, self.bc_table)
        dtype = get_dtype()

        num_cells = mesh.num_cells
        num_faces = mesh.num_faces
        num_phases = fluid.num_phases
        num_wells = wells.num_wells
        num_perforations = len(table)
        if np.shape(cell_pressure) != (num_cells, num_phases):
            raise ValidationError(
                f"Cell pressure must have shape {(num_cells, num_phases)}, got {np.shape(cell_pressure)}."
            )
        if np.shape(face_pressure) != (num_faces, num_phases):
            raise ValidationError(
                f"Face pressure must have shape {(num_faces, num_phases)}, got {np.shape(face_pressure)}."
            )
        if np.shape(cell_z) != (num_cells, self.num_components):
            raise ValidationError(
                f"Cell composition must have shape {(num_cells, self.num_components)}, got {np.shape(cell_z)}."
            )
        sources = np.asarray(src, dtype=dtype)
        if sources.shape != (num_cells,):
            raise ValidationError(f"Sources must have shape {(num_cells,)}, got {sources.shape}.")
        table.set_pressures(np.asarray(well_perf_pressures, dtype=dtype))

        self._solve_count += 1
        solve_index = self._solve_count
        liquid = fluid.liquid_phase
        weight = config.pressure_relaxation_weight

        initial_pressure = np.array(cell_pressure[:, liquid], dtype=dtype)
        pressure = initial_pressure.copy()
        scalar_face_pressure = np.array(face_pressure[:, liquid], dtype=dtype)
        face_flux = np.zeros(num_faces, dtype=dtype)
        if well_perf_fluxes is not None:
            perf_flux = np.array(well_perf_fluxes, dtype=dtype)
            table.check_count(perf_flux.shape[0], "perforation fluxes")
        else:
            perf_flux = np.zeros(num_perforations, dtype=dtype)
        perf_mass_flux = np.zeros(num_perforations, dtype=dtype)
        well_bhp = np.zeros(num_wells, dtype=dtype)
        volume_discrepancy = np.zeros(num_cells, dtype=dtype)
        withheld_volume_discrepancy: typing.Optional[OneDimensionalArray] = None
        surface_densities = fluid.surface_densities()
        flux_change = float("nan")
        pressure_change = float("nan")

        logger.info(f"{'Iteration':>9} {'Rel. flux change':>18} {'Rel. pressure change':>22}")
        status = SolveStatus.FAILED_TO_CONVERGE
        iterations = 0
        for iteration in range(config.max_iterations):
            start_face_flux = face_flux.copy()
            start_perf_flux = perf_flux.copy()
            start_pressure = pressure.copy()

            snapshot = self.compute_fluid_properties(cell_pressure, face_pressure, cell_z, dt)
            compute_perforation_properties(fluid, wells, table, cell_pressure, cell_z)
            self._last_snapshot = snapshot

            if iteration == 0:
                if not self._volume_discrepancy_ok(snapshot):
                    return SolveResult(
                        status=SolveStatus.VOLUME_DISCREPANCY_TOO_LARGE,
                        iterations=0,
                        face_flux=face_flux,
                        well_perf_pressures=table.pressure.copy(),
                        well_perf_fluxes=perf_flux,
                        well_bhp=well_bhp,
                        well_perf_mass_fluxes=perf_mass_flux,
                    )
                volume_discrepancy = snapshot.volume_discrepancy.copy()
                if config.volume_discrepancy_relaxation_time > 0.0:
                    volume_discrepancy *= min(1.0, dt / config.volume_discrepancy_relaxation_time)
                    withheld_volume_discrepancy = snapshot.volume_discrepancy - volume_discrepancy
                compute_well_potentials(
                    table, wells, mesh, fluid, typing.cast(OneDimensionalArray, self.gravity)
                )
                well_bhp = self._estimate_bhp(table, num_wells)

            inputs = AssemblyInputs(
                sources=sources,
                bc_types=bc_table.types,
                bc_values=bc_table.values,
                dt=dt,
                total_compressibility=snapshot.total_compressibility,
                volume_discrepancy=volume_discrepancy,
                cell_transform=snapshot.cell_transform,
                face_transform=snapshot.face_transform,
                perforation_transform=table.transform,
                face_mobility=snapshot.face_mobility,
                perforation_mobility=table.mobility,
                initial_cell_pressure=initial_pressure,
                gravity_capillary_flux=snapshot.gravity_capillary_flux,
                perforation_potential=table.potential,
                surface_densities=surface_densities,
            )
            guess = np.concatenate([pressure, well_bhp])
            result = formulation.step(
                self.assembler,
                linear_solver,
                inputs,
                snapshot,
                guess,
                solve_index,
                iteration,
                withheld_volume_discrepancy,
            )
            if not result.converged:
                message = (
                    f"Linear solver failed to converge in pressure iteration {iteration}: "
                    f"{result.iterations} iterations, residual reduction {result.reduction:.3e}"
                )
                logger.error(message)
                raise SolverError(
                    message, iterations=result.iterations, reduction=result.reduction
                )

            solution = self.assembler.compute_pressures_and_fluxes()
            if weight != 1.0:
                pressure = weight * solution.cell_pressure + (1.0 - weight) * pressure
            else:
                pressure = solution.cell_pressure
            if weight != 1.0 and iteration > 0:
                scalar_face_pressure = (
                    weight * solution.face_pressure + (1.0 - weight) * scalar_face_pressure
                )
                face_flux = weight * solution.face_flux + (1.0 - weight) * face_flux
            else:
                scalar_face_pressure = solution.face_pressure
                face_flux = solution.face_flux
            perf_flux = solution.perforation_flux
            well_bhp = solution.well_bhp
            perf_mass_flux = solution.perforation_mass_flux

            # Capillary pressure is ignored, all phases share one pressure
            cell_pressure[:, :] = pressure[:, None]
            face_pressure[:, :] = scalar_face_pressure[:, None]

            table.set_pressures(
                compute_well_perforation_pressures(
                    perforation_fluxes=perf_flux,
                    bhp=well_bhp,
                    potential=table.potential,
                    saturation=table.saturation,
                    perforation_wells=table.wells,
                    num_wells=num_wells,
                )
            )

            flux_change, pressure_change = compute_flux_pressure_changes(
                face_flux=face_flux,
                perforation_flux=perf_flux,
                cell_pressure=pressure,
                start_face_flux=start_face_flux,
                start_perforation_flux=start_perf_flux,
                start_cell_pressure=start_pressure,
            )
            logger.info(f"{iteration:>9d} {flux_change:>18.6e} {pressure_change:>22.6e}")
            iterations = iteration + 1
            if has_converged(
                flux_change,
                pressure_change,
                config.flux_relative_tolerance,
                config.pressure_relative_tolerance,
            ):
                status = SolveStatus.OK
                break

        if status is SolveStatus.FAILED_TO_CONVERGE:
            logger.warning(
                f"Pressure iteration failed to converge in {config.max_iterations} iterations"
            )

        if isinstance(well_perf_pressures, np.ndarray):
            np.copyto(well_perf_pressures, table.pressure)
        if isinstance(well_perf_fluxes, np.ndarray):
            np.copyto(well_perf_fluxes, perf_flux)

        if status is SolveStatus.OK and transport:
            stable_step = self.stable_step_impes()
            if dt > stable_step:
                logger.warning(
                    f"Time step {dt:.6e} s exceeds the explicit transport stability limit {stable_step:.6e} s"
                )
            self.do_step_impes(cell_z, dt)

        return SolveResult(
            status=status,
            iterations=iterations,
            face_flux=face_flux,
            well_perf_pressures=table.pressure.copy(),
            well_perf_fluxes=perf_flux,
            well_bhp=well_bhp,
            well_perf_mass_fluxes=perf_mass_flux,
            flux_change=flux_change,
            pressure_change=pressure_change,
        )

    def stable_step_impes(self) -> float:
        """
        Largest stable time step of explicit transport after a successful `solve`.

        :return: Time step limit (s).
        """
        if self._last_snapshot is None:
            raise ValidationError("No pressure solution available. Call `solve` first.")
        return self.assembler.explicit_timestep_limit(
            self._last_snapshot.face_mobility,
            self._last_snapshot.face_mobility_derivative,
        )

    def do_step_impes(self, cell_z: TwoDimensionalArray, dt: float) -> None:
        """
        Advance the cell compositions by one explicit transport step, in place.

        Only valid on the state left by a successful `solve`.

        :param cell_z: Cell component surface volumes, shape (num_cells, num_components).
        :param dt: Time step size (s).
        """
        if self.inflow_mixture is None:
            raise ValidationError("Solver is not configured. Call `init` first.")
        self.assembler.explicit_transport(dt, cell_z, self.inflow_mixture)
