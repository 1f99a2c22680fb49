"""makercode: reliable code generation through decomposition and voting."""

__version__ = "0.1.0"
