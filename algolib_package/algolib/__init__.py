# Everything at the "core" of algolib will be imported directly (e.g. `from .[module] import *`).
# Everything not as important will be only be imported as a module (e.g. `from . import [module]`).
from . import atomic, config, errors
from .envstore import *
from .hardware import *
from .template import *
from .tuning import *
