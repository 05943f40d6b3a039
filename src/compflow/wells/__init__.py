from .base import *  # noqa
from .controls import *  # noqa
from .core import *  # noqa
