import typing


class CompFlowError(Exception):
    """Base class for all compflow-related errors."""

    pass


class ValidationError(CompFlowError, ValueError):
    """Raised when input data fails validation checks."""

    pass


class ConfigurationError(ValidationError):
    """
    Raised when the solver is configured with settings it cannot honour.

    Examples are an unhandled number of fluid components, an unhandled
    boundary condition kind, or a non-zero prescribed boundary flux.
    """

    pass


class PreconditionerError(CompFlowError):
    """Raised when there is an error related to preconditioners."""

    pass


class SolverError(CompFlowError):
    """Raised when the linear solver fails to converge within its maximum number of iterations."""

    def __init__(
        self,
        message: str,
        iterations: typing.Optional[int] = None,
        reduction: typing.Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.iterations = iterations
        """Number of linear iterations performed before giving up."""
        self.reduction = reduction
        """Residual reduction achieved by the linear solver."""


class ComputationError(CompFlowError):
    """Raised when there is an error during numerical computations."""

    pass


class InvariantViolationError(CompFlowError, AssertionError):
    """
    Raised when an internal consistency check fails.

    This signals a programming error (e.g. perforation bookkeeping out of sync,
    or horizontal gravity used together with wells), not a user-correctable condition.
    """

    pass
