"""
Exceptions and warnings raised by the blood-processing and kinetic-fitting routines.

Errors that indicate caller misuse (bad times, negative constants, unknown methods) derive from
:class:`ValueError`. Optimizer exhaustion derives from :class:`RuntimeError` so that callers can retry
with :func:`petkin.multistart.multistart_curve_fit` or different bounds.
"""


class InvalidParameterError(ValueError):
    """Malformed or out-of-range input, e.g. a negative dispersion constant or non-monotonic times."""


class InsufficientDataError(ValueError):
    """Fewer observations than the number of free parameters a model needs."""


class NonConvergentFitError(RuntimeError):
    """No optimization attempt converged to an optimum away from the parameter bounds."""


class BoundaryHitWarning(UserWarning):
    """A fit converged with at least one parameter sitting on its bound."""


class ModelSelectionAmbiguousWarning(UserWarning):
    """The information criteria of the two best candidate models differ negligibly."""
