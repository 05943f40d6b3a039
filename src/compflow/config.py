import logging
import os
import typing

import attrs
import cattrs
import numpy as np
import yaml
from cattrs.errors import ForbiddenExtraKeysError

from compflow._precision import get_dtype
from compflow.errors import ConfigurationError
from compflow.types import COMPONENT_NAMES, IterativeSolver, Preconditioner

logger = logging.getLogger(__name__)

__all__ = ["Config"]


_converter = cattrs.Converter(forbid_extra_keys=True)


@attrs.frozen
class Config:
    """Pressure solver run configuration and parameters."""

    inflow_mixture_gas: float = attrs.field(
        default=1.0, validator=attrs.validators.ge(0.0)
    )
    """Gas fraction of the mixture flowing in where no injection mixture is given."""
    inflow_mixture_oil: float = attrs.field(
        default=0.0, validator=attrs.validators.ge(0.0)
    )
    """Oil fraction of the mixture flowing in where no injection mixture is given."""
    inflow_mixture_water: float = attrs.field(
        default=0.0, validator=attrs.validators.ge(0.0)
    )
    """Water fraction of the inflow mixture. Only used by three-component fluids."""
    iterative_solver: IterativeSolver = attrs.field(
        default="bicgstab",
        validator=attrs.validators.in_(("bicgstab", "gmres", "lgmres", "direct")),
    )
    """Linear solver used for each pressure system ('bicgstab', 'gmres', 'lgmres', 'direct')."""
    preconditioner: typing.Optional[Preconditioner] = attrs.field(
        default="ilu",
        validator=attrs.validators.optional(
            attrs.validators.in_(("ilu", "diagonal", "amg"))
        ),
    )
    """Preconditioner for the iterative linear solvers. Ignored by the direct solver."""
    linear_solver_max_iterations: int = attrs.field(
        default=1000, validator=attrs.validators.ge(1)
    )
    """Maximum number of linear solver iterations per pressure system."""
    linear_solver_tolerance: float = attrs.field(
        default=1e-8,
        validator=attrs.validators.and_(
            attrs.validators.gt(0.0), attrs.validators.lt(1.0)
        ),
    )
    """Relative residual reduction required from the linear solver."""
    flux_relative_tolerance: float = attrs.field(
        default=1e-5, validator=attrs.validators.gt(0.0)
    )
    """Relative flux change below which the pressure iteration is converged."""
    pressure_relative_tolerance: float = attrs.field(
        default=1e-5, validator=attrs.validators.gt(0.0)
    )
    """Relative pressure change below which the pressure iteration is converged."""
    max_iterations: int = attrs.field(default=15, validator=attrs.validators.ge(1))
    """Maximum number of pressure iterations per solve."""
    max_relative_volume_discrepancy: float = attrs.field(
        default=0.15, validator=attrs.validators.ge(0.0)
    )
    """
    Largest acceptable relative volume discrepancy at the start of a solve.

    A larger discrepancy ends the solve with `SolveStatus.VOLUME_DISCREPANCY_TOO_LARGE`,
    and the caller is expected to retry with a smaller time step.
    """
    volume_discrepancy_relaxation_time: float = attrs.field(
        default=0.0, validator=attrs.validators.ge(0.0)
    )
    """
    Relaxation time for the volume discrepancy (s).

    When positive, the initial discrepancy is scaled by `min(1, dt / relaxation_time)`,
    spreading the correction of a sudden imbalance over several time steps.
    """
    pressure_relaxation_weight: float = attrs.field(
        default=1.0,
        validator=attrs.validators.and_(
            attrs.validators.gt(0.0), attrs.validators.le(1.0)
        ),
    )
    """
    Weight of the newly computed pressures in each iteration.

    A value of 1 disables relaxation. Smaller values blend the new pressures
    (and, from the second iteration on, face pressures and fluxes) with the
    previous iterate.
    """
    experimental_jacobian: bool = False
    """Whether to solve each iteration as a residual/Jacobian (Newton-style) correction."""
    output_residual: bool = False
    """Whether to write the residual vector of each Jacobian iteration to file."""
    residual_output_directory: str = "."
    """Directory receiving the `residual-<solve>-<iteration>.dat` files."""

    def inflow_mixture(self, num_components: int) -> np.ndarray:
        """
        Build the inflow mixture composition vector.

        :param num_components: Number of fluid components (2 or 3).
        :return: Component vector ordered as in `COMPONENT_NAMES[num_components]`.
        :raises ConfigurationError: If the number of components is not handled.
        """
        if num_components not in COMPONENT_NAMES:
            raise ConfigurationError(
                f"Unhandled number of components: {num_components}"
            )
        fractions = {
            "water": self.inflow_mixture_water,
            "oil": self.inflow_mixture_oil,
            "gas": self.inflow_mixture_gas,
        }
        return np.array(
            [fractions[name] for name in COMPONENT_NAMES[num_components]],
            dtype=get_dtype(),
        )

    @classmethod
    def from_dict(cls, data: typing.Mapping[str, typing.Any]) -> "Config":
        """
        Create a configuration from a mapping of option names to values.

        :param data: Mapping of `Config` field names to values. Missing fields take their defaults.
        :return: `Config` instance.
        :raises ConfigurationError: If a key is unknown or a value is invalid.
        """
        try:
            return _converter.structure(dict(data), cls)
        except (
            cattrs.BaseValidationError,
            ForbiddenExtraKeysError,
            ValueError,
            TypeError,
        ) as exc:
            raise ConfigurationError(f"Invalid pressure solver configuration: {exc}") from exc

    @classmethod
    def from_yaml(cls, path: typing.Union[str, os.PathLike]) -> "Config":
        """
        Load a configuration from a YAML file.

        :param path: Path to a YAML file holding a mapping of option names to values.
        :return: `Config` instance.
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file {str(path)!r} must contain a mapping, got {type(data).__name__}."
            )
        logger.debug(f"Loaded pressure solver configuration from {str(path)!r}")
        return cls.from_dict(data)
