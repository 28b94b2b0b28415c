"""
SQL Server parameter types and type inference.

``SqlType`` is the driver level type of one prepared statement input,
rendered as the T-SQL declaration used by ``sp_prepare``.
``infer_type`` picks the type for a parameter value, honouring an
explicit descriptor when one is given.

Numbers without a descriptor are always bound as ``decimal``: the
precision and scale are derived from the value's textual form so the
literal the caller wrote survives the round trip unchanged.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from ..errors import BindingError, ConfigurationError

if TYPE_CHECKING:
    from .binder import Param

MAX_PRECISION = 38
MAX_NVARCHAR_LENGTH = 4000
DEFAULT_DECIMAL_PRECISION = 18
DEFAULT_DECIMAL_SCALE = 0

DESCRIPTOR_TYPES = ('integer', 'number', 'date', 'datetime', 'string')


@dataclass(frozen=True)
class SqlType:
    """A SQL Server data type with its size arguments."""

    name: str
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None

    @property
    def declaration(self) -> str:
        if self.precision is not None:
            return f"{self.name}({self.precision},{self.scale or 0})"
        if self.name == 'nvarchar':
            if self.length is None or self.length > MAX_NVARCHAR_LENGTH:
                return 'nvarchar(max)'
            return f'nvarchar({self.length})'
        if self.name in ('datetime2', 'datetimeoffset'):
            return f'{self.name}(7)'
        if self.name == 'varbinary':
            return 'varbinary(max)'
        return self.name

    @property
    def is_naive_datetime(self) -> bool:
        return self.name == 'datetime2'

    @property
    def is_aware_datetime(self) -> bool:
        return self.name == 'datetimeoffset'

    def __str__(self) -> str:
        return self.declaration


INT = SqlType('int')
BIT = SqlType('bit')
DATE = SqlType('date')
DATETIME2 = SqlType('datetime2')
DATETIMEOFFSET = SqlType('datetimeoffset')
NVARCHAR = SqlType('nvarchar')
VARBINARY = SqlType('varbinary')


def decimal_type(precision: int, scale: int) -> SqlType:
    return SqlType('decimal', precision=precision, scale=scale)


def nvarchar_type(length: Optional[int] = None) -> SqlType:
    return SqlType('nvarchar', length=length)


def numeric_type_for(value: Any) -> SqlType:
    """Return a ``decimal`` type wide enough for ``value``'s literal form.

    The scale is the number of digits after the point, reduced by the
    exponent for scientific notation (never below zero).  The precision
    is the digit count of the literal, widened so that both the integer
    digits and the scale fit.

    >>> numeric_type_for(0.99).declaration
    'decimal(3,2)'
    """
    if isinstance(value, float):
        if not math.isfinite(value):
            raise BindingError(f"Cannot bind non-finite number {value!r}")
        text = repr(value)
    elif isinstance(value, Decimal) and not value.is_finite():
        raise BindingError(f"Cannot bind non-finite number {value!r}")
    else:
        text = str(value)
    mantissa, _, exponent = text.lower().partition('e')
    _, _, fraction = mantissa.partition('.')
    shift = int(exponent) if exponent else 0
    digits = sum(ch.isdigit() for ch in mantissa)
    scale = max(len(fraction) - shift, 0)
    integer_digits = max(digits - len(fraction) + shift, 0)
    precision = max(digits, integer_digits + scale, 1)
    return decimal_type(min(precision, MAX_PRECISION), min(scale, MAX_PRECISION))


def _descriptor_type(descriptor: Param) -> SqlType:
    kind = descriptor.type
    if kind == 'integer':
        return INT
    if kind == 'number':
        precision = descriptor.max_length or DEFAULT_DECIMAL_PRECISION
        scale = descriptor.decimals or DEFAULT_DECIMAL_SCALE
        return decimal_type(precision, scale)
    if kind == 'date':
        return DATE
    if kind == 'datetime':
        if descriptor.timezone == 'ignore':
            return DATETIME2
        return DATETIMEOFFSET
    if kind == 'string':
        return nvarchar_type(descriptor.max_length)
    raise ConfigurationError(
        f"Unknown parameter type {kind!r}; expected one of {', '.join(DESCRIPTOR_TYPES)}"
    )


def infer_type(value: Any, descriptor: Optional[Param] = None) -> SqlType:
    """Resolve the SQL type used to bind ``value``.

    Args:
        value: The value that will be bound (``None`` for NULL).
        descriptor: Optional explicit descriptor; its ``type`` wins over
            anything inferred from ``value``.

    Returns:
        The ``SqlType`` for the prepared statement declaration.

    Raises:
        ConfigurationError: If the descriptor names an unknown type.
        BindingError: If ``value`` is a non-finite number.
    """
    if descriptor is not None and descriptor.type is not None:
        return _descriptor_type(descriptor)
    if isinstance(value, datetime):
        return DATETIME2
    if isinstance(value, date):
        return DATE
    if isinstance(value, bool):
        return BIT
    if isinstance(value, (int, float, Decimal)):
        return numeric_type_for(value)
    if isinstance(value, (bytes, bytearray)):
        return VARBINARY
    if isinstance(value, str) and descriptor is not None and descriptor.max_length:
        return nvarchar_type(descriptor.max_length)
    return NVARCHAR
