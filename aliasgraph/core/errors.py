"""
Exception types raised by the shared-storage transforms.

All errors are raised at the point of detection and propagate unmodified.
None of them is transient, so nothing in aliasgraph retries on them.
"""


class AliasGraphError(Exception):
    """Base class for all aliasgraph errors."""


class InvariantViolation(AliasGraphError, RuntimeError):
    """
    A transform found the module tree in an inconsistent state.

    This is a programmer error (e.g. a declared parameter field holding
    something that is not a tensor) and aborts the call.
    """


class UnsupportedConversion(AliasGraphError, TypeError):
    """
    A tensor could not be converted to the requested element type.

    ``shared_type`` is not atomic: when this is raised the tree may be left
    partially converted and should be discarded rather than trained further.
    """


class CycleDetected(AliasGraphError, RecursionError):
    """A module tree contains a reference cycle and cannot be walked."""
