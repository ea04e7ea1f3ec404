"""MCMC for multistate continuous-time movement models."""

from .states import *
from .habitat import *
from .movement import *
from .switching import *
from .simulate import *
from .mh_moves import *
from .config import *
from .trace import *
from .runner import open_trace_writer, run_mcmc

__all__ = [name for name in globals() if not name.startswith("_")]
