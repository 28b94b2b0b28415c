"""
Parameter binding for prepared statements.

Statements are written with positional ``$1, $2 ...`` placeholders (and a
sequence of values) or named ``@name`` placeholders (and a mapping).
``bind`` rewrites positional placeholders to ``@p1, @p2 ...``, resolves
every value to a ``BoundInput`` with its SQL type and returns a
``BoundStatement`` ready for ``sp_prepare``/``sp_execute``.

A parameter value is one of:

* ``None`` – bound as NULL;
* a ``date``/``datetime`` – bound as a date or datetime;
* any other scalar (``str``, ``int``, ``float``, ``Decimal``, ``bool``,
  ``bytes``) – type inferred from the value;
* an explicit descriptor, either ``Param(...)`` or a plain dict with the
  keys ``value``, ``type``, ``maxLength``, ``decimals`` and ``timezone``.

Example::

    bound = bind("INSERT INTO t VALUES ($1, $2)", [3, Param('Duck', 'string', max_length=10)])
    bound.statement     # "INSERT INTO t VALUES (@p1, @p2)"
    bound.declarations  # "@p1 decimal(1,0), @p2 nvarchar(10)"
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import ArityError, BindingError, TruncationError
from .types import DATE, MAX_NVARCHAR_LENGTH, SqlType, infer_type

_POSITIONAL_RE = re.compile(r"\$(\d+)(?!\w)")

_DESCRIPTOR_KEYS = frozenset(('value', 'type', 'maxLength', 'max_length', 'decimals', 'timezone'))


@dataclass
class Param:
    """Explicit parameter descriptor.

    ``value`` left as ``None`` always binds NULL, whatever the ``type``.
    """

    value: Any = None
    type: Optional[str] = None
    max_length: Optional[int] = None
    decimals: Optional[int] = None
    timezone: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Param:
        return cls(
            value=data.get('value'),
            type=data.get('type'),
            max_length=data.get('maxLength', data.get('max_length')),
            decimals=data.get('decimals'),
            timezone=data.get('timezone'),
        )


# Tagged union of the parameter shapes the binder understands.

@dataclass(frozen=True)
class NullParam:
    pass


@dataclass(frozen=True)
class ScalarParam:
    value: Any


@dataclass(frozen=True)
class DateTimeParam:
    value: date


@dataclass(frozen=True)
class DescriptorParam:
    descriptor: Param


ParamVariant = Union[NullParam, ScalarParam, DateTimeParam, DescriptorParam]


def classify(entry: Any) -> ParamVariant:
    """Tag a raw parameter entry with its variant."""
    if entry is None:
        return NullParam()
    if isinstance(entry, Param):
        return DescriptorParam(entry)
    if isinstance(entry, Mapping):
        unknown = set(entry) - _DESCRIPTOR_KEYS
        if unknown:
            raise BindingError(f"Unknown parameter descriptor keys: {', '.join(sorted(unknown))}")
        return DescriptorParam(Param.from_mapping(entry))
    if isinstance(entry, date):
        return DateTimeParam(entry)
    return ScalarParam(entry)


@dataclass(frozen=True)
class BoundInput:
    """One typed input of a prepared statement."""

    name: str
    value: Any
    sql_type: SqlType

    @property
    def declaration(self) -> str:
        return f"@{self.name} {self.sql_type.declaration}"


@dataclass
class BoundStatement:
    statement: str
    inputs: List[BoundInput] = field(default_factory=list)

    @property
    def declarations(self) -> Optional[str]:
        """Parameter definition list for ``sp_prepare`` or ``None`` without inputs."""
        if not self.inputs:
            return None
        return ', '.join(i.declaration for i in self.inputs)

    @property
    def values(self) -> Tuple[Any, ...]:
        return tuple(i.value for i in self.inputs)


def _parse_datetime(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text.strip().replace('Z', '+00:00'))
    except ValueError:
        raise BindingError(f"Cannot convert {text!r} to a date/time value") from None


def _coerce_temporal(value: Any, sql_type: SqlType) -> Any:
    """Convert strings and dates to the Python value the declared type expects."""
    if isinstance(value, str):
        value = _parse_datetime(value)
    if sql_type == DATE:
        return value.date() if isinstance(value, datetime) else value
    if not isinstance(value, datetime) and isinstance(value, date):
        value = datetime.combine(value, time())
    return value


def _normalize_datetime(value: Any, sql_type: SqlType) -> Any:
    """Line a datetime up with the precision and zone semantics of its type."""
    if not isinstance(value, datetime):
        return value
    if sql_type.is_naive_datetime and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if sql_type.is_aware_datetime and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_width(name: str, value: Any, sql_type: SqlType) -> None:
    if sql_type.name != 'nvarchar' or sql_type.length is None or sql_type.length > MAX_NVARCHAR_LENGTH:
        return
    if isinstance(value, str) and len(value) > sql_type.length:
        raise TruncationError(
            f"Value for parameter @{name} is {len(value)} characters long, "
            f"longer than the declared maxLength {sql_type.length}"
        )


def resolve(name: str, entry: Any) -> BoundInput:
    """Resolve one parameter entry to its bound value and SQL type."""
    variant = classify(entry)
    if isinstance(variant, NullParam):
        return BoundInput(name, None, infer_type(None))
    if isinstance(variant, DescriptorParam):
        descriptor = variant.descriptor
        value = descriptor.value
        sql_type = infer_type(value, descriptor)
        if value is not None and descriptor.type in ('date', 'datetime'):
            value = _coerce_temporal(value, sql_type)
        value = _normalize_datetime(value, sql_type)
        _check_width(name, value, sql_type)
        return BoundInput(name, value, sql_type)
    if isinstance(variant, DateTimeParam):
        sql_type = infer_type(variant.value)
        return BoundInput(name, _normalize_datetime(variant.value, sql_type), sql_type)
    sql_type = infer_type(variant.value)
    return BoundInput(name, variant.value, sql_type)


def _bind_positional(statement: str, params: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    tokens: List[int] = []
    for match in _POSITIONAL_RE.finditer(statement):
        index = int(match.group(1))
        if index not in tokens:
            tokens.append(index)
    if len(tokens) > len(params):
        raise ArityError(
            f"Too many parameters in statement: {len(tokens)} placeholders, {len(params)} values supplied"
        )
    named: Dict[str, Any] = {}
    for index in tokens:
        if index < 1 or index > len(params):
            raise ArityError(f"Parameter ${index} not found in supplied parameters")
        named[f'p{index}'] = params[index - 1]
    rewritten = _POSITIONAL_RE.sub(lambda m: f"@p{m.group(1)}", statement)
    return rewritten, named


def bind(statement: str, params: Union[Sequence[Any], Mapping[str, Any]]) -> BoundStatement:
    """Build the typed inputs for ``statement``.

    Args:
        statement: SQL with ``$n`` or ``@name`` placeholders.
        params: A sequence for positional placeholders or a mapping for
            named ones.  Values the statement does not reference are
            ignored.

    Returns:
        The (possibly rewritten) statement and its typed inputs.

    Raises:
        ArityError: If the statement references more positional
            placeholders than values were supplied.
        BindingError: If a value cannot be converted for its type.
        TruncationError: If a string exceeds its declared ``maxLength``.
    """
    if isinstance(params, Mapping):
        named = {str(key).lstrip('@'): value for key, value in params.items()}
    elif isinstance(params, (str, bytes)) or not isinstance(params, Sequence):
        raise BindingError(f"Parameters must be a sequence or a mapping, got {type(params).__name__}")
    else:
        statement, named = _bind_positional(statement, params)
    inputs = [resolve(name, entry) for name, entry in named.items()]
    logging.debug("[binder] bound statement", extra={"statement": statement, "inputs": [i.declaration for i in inputs]})
    return BoundStatement(statement, inputs)
