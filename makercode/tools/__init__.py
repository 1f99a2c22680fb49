"""Working-tree side effects: applying voted results to files."""

from makercode.tools.apply import HANDLERS, AppliedChange, ResultApplier

__all__ = ["HANDLERS", "AppliedChange", "ResultApplier"]
