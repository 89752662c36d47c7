class ReachabilityError(Exception):
    """Base class of all faults raised by the set algebra and its transformers."""


class DimensionError(ReachabilityError, ValueError):
    """Shapes of centers, generators, constraints or filters do not agree."""


class ShapeError(DimensionError):
    """A flattened set cannot be reshaped into the requested height and width."""


class ConstraintMismatchError(ReachabilityError, ValueError):
    """Two sets that must share one constraint system do not."""


class SolverError(ReachabilityError, RuntimeError):
    """The LP backend returned neither an optimum nor a proof of infeasibility."""
