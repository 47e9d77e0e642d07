"""
Exceptions raised by the N-Tuple training engine.
"""


class NTupleError(Exception):
    """Base class for the errors of this package."""


class PatternShapeError(NTupleError, ValueError):
    """A pattern cannot index a weight table."""


class WeightFormatError(NTupleError, ValueError):
    """A weight record does not match the network shape."""


class CheckpointError(NTupleError, ValueError):
    """A checkpoint is missing, corrupt or incompatible."""


class StorageError(NTupleError, OSError):
    """A durable read or write failed."""


class DeviceDisposedError(NTupleError, RuntimeError):
    """The device engine was used after ``dispose()``."""


class NumericalOverflowError(NTupleError, ArithmeticError):
    """Weights became non-finite after a gradient application."""


class ValidationMismatchError(NTupleError, RuntimeError):
    """Device and reference computations disagree beyond tolerance."""
