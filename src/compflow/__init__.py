"""
*compflow*

Pressure solver for compressible multi-phase, multi-component flow in porous media.
"""

from ._precision import *  # noqa
from .errors import *  # noqa
from .types import *  # noqa
from .config import *  # noqa
from .models import *  # noqa
from .grids import *  # noqa
from .fluids import *  # noqa
from .boundary_conditions import *  # noqa
from .wells import *  # noqa
from .properties import *  # noqa
from .diffusivity import *  # noqa
from .solver import *  # noqa
