"""Sparse linear solvers and preconditioners for the pressure system."""

import logging
import typing

import attrs
import numpy as np
import pyamg  # type: ignore[import-untyped]
from scipy.sparse import csr_matrix, diags, isspmatrix_csr  # type: ignore[import-untyped]
from scipy.sparse.linalg import (  # type: ignore[import-untyped]
    LinearOperator,
    bicgstab,
    gmres,
    lgmres,
    spilu,
    spsolve,
)

from compflow._precision import get_floating_point_info
from compflow.errors import PreconditionerError, ValidationError
from compflow.types import IterativeSolver, OneDimensionalArray, Preconditioner, SparseMatrix

logger = logging.getLogger(__name__)


__all__ = [
    "LinearSolverResult",
    "LinearSolver",
    "build_ilu_preconditioner",
    "build_diagonal_preconditioner",
    "build_amg_preconditioner",
]


@attrs.frozen
class LinearSolverResult:
    """Outcome of a linear solve."""

    converged: bool
    """Whether the solver reached the requested tolerance."""
    iterations: int
    """Number of iterations performed."""
    reduction: float
    """Ratio of the final to the initial residual norm."""


def build_amg_preconditioner(
    A_csr: SparseMatrix, cycle: str = "V", **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Algebraic Multigrid (AMG) preconditioner using PyAMG.

    :param A_csr: The coefficient matrix in CSR format.
    :param cycle: Multigrid cycle type ('V', 'W', 'F').
    :param kwargs: Additional arguments for `pyamg.smoothed_aggregation_solver`.
    :return: A SciPy `LinearOperator` that represents the AMG preconditioner.
    """
    ml_solver = pyamg.smoothed_aggregation_solver(A_csr, **kwargs)
    return ml_solver.aspreconditioner(cycle=cycle)


def build_diagonal_preconditioner(A_csr: SparseMatrix) -> LinearOperator:
    """
    Creates a diagonal (Jacobi) preconditioner from the coefficient matrix.

    :param A_csr: The coefficient matrix in CSR format.
    :return: A SciPy `LinearOperator` that represents the diagonal preconditioner.
    """
    diag_elements = A_csr.diagonal()
    # Zero diagonals are left unscaled
    epsilon = get_floating_point_info().eps
    threshold = max(1e-30, 100 * epsilon * float(np.max(np.abs(diag_elements), initial=0.0)))
    diag_elements = np.where(np.abs(diag_elements) < threshold, 1.0, diag_elements)
    M_diag = diags(1.0 / diag_elements, format="csr")
    return LinearOperator(shape=A_csr.shape, matvec=M_diag.dot)  # type: ignore[arg-type]


def build_ilu_preconditioner(A_csr: SparseMatrix, **kwargs: typing.Any) -> LinearOperator:
    """
    Creates an Incomplete LU (ILU) preconditioner using `spilu`.

    :param A_csr: The coefficient matrix in CSR format. It is converted to CSC for `spilu`.
    :return: A SciPy `LinearOperator` that solves the preconditioned system.
    """
    A_csc = A_csr.tocsc()
    kwargs.setdefault("drop_tol", 1e-6)
    kwargs.setdefault("fill_factor", 10)
    ilu_factor = spilu(A_csc, **kwargs)
    return LinearOperator(shape=A_csc.shape, matvec=ilu_factor.solve)  # type: ignore[arg-type]


_PRECONDITIONER_FACTORIES: typing.Dict[str, typing.Callable[[SparseMatrix], LinearOperator]] = {
    "ilu": build_ilu_preconditioner,
    "diagonal": build_diagonal_preconditioner,
    "amg": build_amg_preconditioner,
}


@attrs.frozen
class LinearSolver:
    """
    Solves sparse linear systems with a SciPy Krylov method or a direct factorization.

    Failure to converge is reported through `LinearSolverResult.converged`
    rather than raised, so the caller decides how to react.
    """

    solver: IterativeSolver = attrs.field(
        default="bicgstab",
        validator=attrs.validators.in_(("bicgstab", "gmres", "lgmres", "direct")),
    )
    """Solver to use."""
    preconditioner: typing.Optional[Preconditioner] = "ilu"
    """Preconditioner for the iterative solvers, or None."""
    max_iterations: int = attrs.field(default=1000, validator=attrs.validators.ge(1))
    """Maximum number of iterations of the iterative solvers."""
    tolerance: float = attrs.field(default=1e-8, validator=attrs.validators.gt(0.0))
    """Relative residual reduction required for convergence."""

    def _get_preconditioner(self, A_csr: SparseMatrix) -> typing.Optional[LinearOperator]:
        if self.preconditioner is None:
            return None
        if self.preconditioner not in _PRECONDITIONER_FACTORIES:
            raise ValidationError(
                f"Unknown preconditioner type: {self.preconditioner!r}. "
                f"Available preconditioners: {list(_PRECONDITIONER_FACTORIES.keys())}"
            )
        try:
            return _PRECONDITIONER_FACTORIES[self.preconditioner](A_csr)
        except (RuntimeError, ValueError, ArithmeticError) as exc:
            raise PreconditionerError(f"Error building preconditioner: {exc}") from exc

    def solve(
        self,
        A: SparseMatrix,
        b: OneDimensionalArray,
        x0: typing.Optional[OneDimensionalArray] = None,
    ) -> typing.Tuple[OneDimensionalArray, LinearSolverResult]:
        """
        Solves the linear system A·x = b.

        :param A: Coefficient matrix in CSR format.
        :param b: Right-hand side vector.
        :param x0: Initial guess. Defaults to zero.
        :return: A tuple (x, result) with the solution vector and the solve outcome.
        :raises PreconditionerError: If the preconditioner cannot be built.
        """
        A_csr = A if isspmatrix_csr(A) else csr_matrix(A)
        b = np.asarray(b, dtype=np.float64)
        if x0 is None:
            x0 = np.zeros_like(b)
        x0 = np.asarray(x0, dtype=np.float64)
        initial_residual = float(np.linalg.norm(b - A_csr @ x0))

        if self.solver == "direct":
            x = np.asarray(spsolve(A_csr.tocsc(), b))
            converged = bool(np.all(np.isfinite(x)))
            iterations = 1
        else:
            M = self._get_preconditioner(A_csr)
            counter = {"iterations": 0}

            def callback(_: typing.Any) -> None:
                counter["iterations"] += 1

            kwargs: typing.Dict[str, typing.Any] = dict(
                x0=x0,
                M=M,
                rtol=self.tolerance,
                atol=0.0,
                maxiter=self.max_iterations,
                callback=callback,
            )
            if self.solver == "bicgstab":
                x, info = bicgstab(A_csr, b, **kwargs)
            elif self.solver == "gmres":
                x, info = gmres(A_csr, b, callback_type="x", **kwargs)
            else:
                x, info = lgmres(A_csr, b, **kwargs)
            converged = info == 0
            iterations = counter["iterations"]

        final_residual = float(np.linalg.norm(b - A_csr @ x)) if np.all(np.isfinite(x)) else np.inf
        if initial_residual > 0.0:
            reduction = final_residual / initial_residual
        else:
            reduction = 0.0 if final_residual == 0.0 else np.inf

        result = LinearSolverResult(
            converged=converged, iterations=iterations, reduction=float(reduction)
        )
        if not converged:
            logger.warning(
                f"Linear solver {self.solver!r} failed to converge within {self.max_iterations} "
                f"iterations (reduction {result.reduction:.3e})"
            )
        else:
            logger.debug(
                f"Linear solver {self.solver!r} converged in {iterations} iterations "
                f"(reduction {result.reduction:.3e})"
            )
        return np.ascontiguousarray(x), result
