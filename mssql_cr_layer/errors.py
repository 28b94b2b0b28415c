"""
Exception hierarchy for the common requests layer.

Every error raised by this package derives from ``MssqlCrLayerError``.
Driver exceptions (the DB-API ``Error`` classes of ``pymssql`` or
``pyodbc``) are translated at the driver boundary with ``raise ... from``
so the original exception stays available as ``__cause__``.
"""

from __future__ import annotations


class MssqlCrLayerError(Exception):
    """Base class for all errors raised by ``mssql_cr_layer``."""


class ConfigurationError(MssqlCrLayerError):
    """Invalid configuration, e.g. an unknown isolation level name."""


class BindingError(MssqlCrLayerError):
    """A parameter could not be bound to the statement."""


class ArityError(BindingError):
    """The statement references more positional parameters than supplied."""


class TruncationError(MssqlCrLayerError):
    """A value does not fit the declared width of its column or parameter."""


class ExecutionError(MssqlCrLayerError):
    """Any other failure reported by the driver while running a statement."""


class TransactionError(MssqlCrLayerError):
    """Begin, commit or rollback failed, or a finished transaction was reused."""


_BINDING_MARKERS = ('must declare the scalar variable',)
_TRUNCATION_MARKERS = ('would be truncated', 'arithmetic overflow')


def translate_driver_error(exc: BaseException) -> MssqlCrLayerError:
    """Map a driver exception onto the package taxonomy by its message."""
    message = str(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in _BINDING_MARKERS):
        return BindingError(message)
    if any(marker in lowered for marker in _TRUNCATION_MARKERS):
        return TruncationError(message)
    return ExecutionError(message)
