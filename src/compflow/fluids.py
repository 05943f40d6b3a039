"""Reference fluid model: immiscible phases with linear formation volume factors."""

import typing

import attrs
import numba
import numpy as np

from compflow._precision import get_dtype
from compflow.errors import ComputationError, ValidationError
from compflow.models import FluidState
from compflow.types import PHASE_NAMES, OneDimensionalArray, TwoDimensionalArray


__all__ = ["LinearlyCompressibleFluid", "compute_corey_mobilities"]


@numba.njit(cache=True)
def compute_corey_mobilities(
    saturation: np.ndarray,
    viscosity: np.ndarray,
    corey_exponent: np.ndarray,
) -> typing.Tuple[np.ndarray, np.ndarray]:
    """
    Compute Corey phase mobilities and their saturation derivatives.

    λ_α = S_α^n_α / μ_α
    ∂λ_α/∂S_α = n_α · S_α^(n_α - 1) / μ_α

    :param saturation: Phase saturations (fraction)
    :param viscosity: Phase viscosities (Pa·s)
    :param corey_exponent: Corey exponents (dimensionless)
    :return: Tuple of (mobility, mobility_derivative)
    """
    num_phases = saturation.shape[0]
    mobility = np.zeros(num_phases)
    derivative = np.zeros(num_phases)
    for phase in range(num_phases):
        s = min(max(saturation[phase], 0.0), 1.0)
        n = corey_exponent[phase]
        mobility[phase] = s**n / viscosity[phase]
        if s > 0.0:
            derivative[phase] = n * s ** (n - 1.0) / viscosity[phase]
        elif n == 1.0:
            derivative[phase] = 1.0 / viscosity[phase]
    return mobility, derivative


def _as_tuple(value: typing.Iterable[float]) -> typing.Tuple[float, ...]:
    return tuple(float(v) for v in value)


@attrs.frozen
class LinearlyCompressibleFluid:
    """
    Immiscible multi-phase fluid where component `c` lives only in phase `c`.

    Each phase has a formation volume factor that varies linearly with
    pressure around a reference pressure,

        B_α(p) = B_ref,α · (1 - c_α · (p - p_ref))

    so that the reservoir volume of a phase is `z_α · B_α(p)` for a component
    surface volume `z_α`. Two-phase fluids carry (oil, gas) in the (liquid,
    vapour) phases; three-phase fluids carry (water, oil, gas) in the (aqua,
    liquid, vapour) phases.
    """

    surface_density: typing.Tuple[float, ...] = attrs.field(converter=_as_tuple)
    """Component densities at surface conditions (kg/m³)."""
    reference_formation_volume_factor: typing.Tuple[float, ...] = attrs.field(
        converter=_as_tuple
    )
    """Phase formation volume factors at the reference pressure (m³/sm³)."""
    compressibility: typing.Tuple[float, ...] = attrs.field(converter=_as_tuple)
    """Phase compressibilities at the reference pressure (1/Pa)."""
    viscosity: typing.Tuple[float, ...] = attrs.field(converter=_as_tuple)
    """Phase viscosities (Pa·s)."""
    corey_exponent: typing.Tuple[float, ...] = attrs.field(
        default=attrs.Factory(
            lambda self: (2.0,) * len(self.surface_density), takes_self=True
        ),
        converter=_as_tuple,
    )
    """Corey relative permeability exponents. Defaults to 2 for every phase."""
    reference_pressure: float = 1.0e5
    """Pressure at which the reference formation volume factors apply (Pa)."""

    def __attrs_post_init__(self) -> None:
        num_phases = len(self.surface_density)
        if num_phases not in PHASE_NAMES:
            raise ValidationError(
                f"Fluid must have 2 or 3 components, got {num_phases}."
            )
        for name in (
            "reference_formation_volume_factor",
            "compressibility",
            "viscosity",
        ):
            if len(getattr(self, name)) != num_phases:
                raise ValidationError(
                    f"{name!r} must have {num_phases} entries, one per phase."
                )
        if len(self.corey_exponent) != num_phases:
            raise ValidationError(
                f"'corey_exponent' must have {num_phases} entries, one per phase."
            )
        if any(mu <= 0.0 for mu in self.viscosity):
            raise ValidationError("Phase viscosities must be positive.")

    @property
    def num_phases(self) -> int:
        return len(self.surface_density)

    @property
    def num_components(self) -> int:
        return len(self.surface_density)

    @property
    def liquid_phase(self) -> int:
        """Index of the liquid phase, whose pressure is the solver's scalar pressure."""
        return PHASE_NAMES[self.num_phases].index("liquid")

    def formation_volume_factors(self, pressure: OneDimensionalArray) -> OneDimensionalArray:
        """
        Compute phase formation volume factors.

        :param pressure: Phase pressures (Pa)
        :return: Formation volume factors, one per phase
        :raises ComputationError: If a formation volume factor is not positive.
        """
        reference = np.asarray(self.reference_formation_volume_factor)
        compressibility = np.asarray(self.compressibility)
        fvf = reference * (
            1.0 - compressibility * (np.asarray(pressure) - self.reference_pressure)
        )
        if np.any(fvf <= 0.0):
            raise ComputationError(
                f"Non-positive formation volume factor {fvf} at pressure {pressure}."
            )
        return fvf

    def compute_state(
        self, pressure: OneDimensionalArray, composition: OneDimensionalArray
    ) -> FluidState:
        """
        Evaluate the fluid state.

        :param pressure: Phase pressures (Pa), one per phase
        :param composition: Component surface volumes (sm³), one per component
        :return: `FluidState` at the given pressure and composition
        """
        dtype = get_dtype()
        fvf = self.formation_volume_factors(pressure)
        surface_volumes = np.maximum(np.asarray(composition, dtype=dtype), 0.0)
        phase_volumes = surface_volumes * fvf
        total_volume = phase_volumes.sum()
        if total_volume > 0.0:
            saturation = phase_volumes / total_volume
        else:
            saturation = np.zeros(self.num_phases, dtype=dtype)

        mobility, mobility_derivative = compute_corey_mobilities(
            saturation=np.ascontiguousarray(saturation, dtype=np.float64),
            viscosity=np.asarray(self.viscosity, dtype=np.float64),
            corey_exponent=np.asarray(self.corey_exponent, dtype=np.float64),
        )
        phase_compressibility = (
            np.asarray(self.compressibility)
            * np.asarray(self.reference_formation_volume_factor)
            / fvf
        )
        return FluidState(
            saturation=saturation,
            mobility=mobility.astype(dtype, copy=False),
            mobility_derivative=mobility_derivative.astype(dtype, copy=False),
            phase_volumes=phase_volumes,
            phase_compressibility=phase_compressibility.astype(dtype, copy=False),
            phase_to_component=np.diag(1.0 / fvf).astype(dtype, copy=False),
        )

    def phase_densities(self, transform: TwoDimensionalArray) -> OneDimensionalArray:
        """
        Compute phase densities from a phase-to-component transform.

        ρ_α = Σ_c ρ_c^surface · A[c, α]

        :param transform: Array of shape (num_components, num_phases)
        :return: Phase densities (kg/m³)
        """
        return np.asarray(self.surface_density) @ np.asarray(transform)

    def surface_densities(self) -> OneDimensionalArray:
        return np.asarray(self.surface_density, dtype=get_dtype())
