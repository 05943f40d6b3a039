from contextlib import contextmanager
from contextvars import ContextVar

import numpy as np


__all__ = ["get_dtype", "with_precision", "get_floating_point_info"]

_compflow_dtype: ContextVar[np.typing.DTypeLike] = ContextVar(
    "_compflow_dtype", default=np.float64
)


def get_dtype() -> np.typing.DTypeLike:
    """
    Get the data type of the pressures, fluxes and compositions allocated by the solver.

    :return: The current data type.
    """
    return _compflow_dtype.get()


@contextmanager
def with_precision(dtype: np.typing.DTypeLike):
    """
    Allocate solver arrays with `dtype` within the context.

    :param dtype: The data type to use within the context.
    """
    token = _compflow_dtype.set(dtype)
    try:
        yield
    finally:
        _compflow_dtype.reset(token)


def get_floating_point_info() -> np.finfo:
    """Machine limits of the current data type."""
    return np.finfo(get_dtype())
