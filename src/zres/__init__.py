"""zres package root."""

from zres.exceptions import NeverThrown, ResError
from zres.invariants import never

__all__ = ["__version__", "NeverThrown", "ResError", "never"]

__version__ = "0.1.0"
