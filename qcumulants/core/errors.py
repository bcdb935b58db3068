"""
Exception taxonomy for symbolic operator derivations.

All failures are raised synchronously where they are detected. None of them
is retried internally; callers adjust their declarations (extra indices,
completion caps, filters) and rerun the derivation.
"""


class QCumulantsError(Exception):
    """Base class for all errors raised by the package."""

    pass


class InvalidSpaceError(QCumulantsError):
    """Raised when an operator does not match the Hilbert space it is declared on."""

    pass


class InvalidLevelError(QCumulantsError):
    """Raised when a transition references a level the space does not declare."""

    pass


class NonTerminatingClosureError(QCumulantsError):
    """Raised when completion exceeds its pass or equation cap."""

    pass


class UnresolvableIndexEqualityError(QCumulantsError):
    """Raised when an index equality cannot be decided during scaling or evaluation."""

    pass


class MissingAverageError(QCumulantsError):
    """Raised when a numeric export references an average that is not a state."""

    pass
