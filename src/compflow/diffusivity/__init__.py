from .base import *  # noqa
from .assembly import *  # noqa
from .convergence import *  # noqa
from .formulations import *  # noqa
