"""
Exception classes for EMSet operations.
This module provides a hierarchy of custom exceptions for subsetting and
slot consistency errors.
"""


class AscendError(Exception):
    """Base exception for ascend operations."""

    pass


class ArgumentError(AscendError, ValueError):
    """Missing, empty or invalid arguments."""

    pass


class PreconditionError(AscendError):
    """A required prior computation (e.g. clustering) has not been run."""

    pass


class SelectionError(AscendError, LookupError):
    """The requested values match nothing in the dataset."""

    pass


class SlotMismatchError(AscendError):
    """Expression matrix and metadata cannot be reconciled."""

    pass
