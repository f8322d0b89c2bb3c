"""
Column filters for generated INSERT, UPDATE and UPSERT statements.

A filter is called with the column descriptor and the current field value
and returns True when the column should be left out of the statement.
"""
from collections.abc import Callable
from typing import Any

from sqlrecord.mapping import ColumnInfo, FieldFlag
from sqlrecord.types import is_null, is_zero

ColumnFilter = Callable[[ColumnInfo, Any], bool]

__all__ = [
    'ColumnFilter',
    'ignore_columns',
    'only_columns',
    'ignore_fields',
    'only_fields',
    'ignore_flags',
    'IGNORE_DEFAULT',
    'IGNORE_PRIMARY_KEY',
    'IGNORE_READ_ONLY',
    'IGNORE_NULL',
    'IGNORE_NULL_OR_ZERO',
    'IGNORE_NULL_OR_ZERO_DEFAULT',
    'IGNORE_ZERO_PRIMARY_KEY',
]


def ignore_columns(*names: str) -> ColumnFilter:
    """Skip the named columns."""
    names = frozenset(names)
    return lambda column, value: column.name in names


def only_columns(*names: str) -> ColumnFilter:
    """Skip every column not named."""
    names = frozenset(names)
    return lambda column, value: column.name not in names


def ignore_fields(*names: str) -> ColumnFilter:
    """Skip the columns mapped from the named record fields."""
    names = frozenset(names)
    return lambda column, value: column.field_name in names


def only_fields(*names: str) -> ColumnFilter:
    names = frozenset(names)
    return lambda column, value: column.field_name not in names


def ignore_flags(flags: FieldFlag) -> ColumnFilter:
    """Skip columns carrying any of `flags`."""
    return lambda column, value: bool(column.flags & flags)


def _ignore_null(column: ColumnInfo, value: Any) -> bool:
    return is_null(value)


def _ignore_null_or_zero(column: ColumnInfo, value: Any) -> bool:
    return is_null(value) or is_zero(value)


def _ignore_null_or_zero_default(column: ColumnInfo, value: Any) -> bool:
    return column.has_default and (is_null(value) or is_zero(value))


def _ignore_zero_primary_key(column: ColumnInfo, value: Any) -> bool:
    return column.is_primary_key and (is_null(value) or is_zero(value))


IGNORE_DEFAULT = ignore_flags(FieldFlag.HAS_DEFAULT)
IGNORE_PRIMARY_KEY = ignore_flags(FieldFlag.PRIMARY_KEY)
IGNORE_READ_ONLY = ignore_flags(FieldFlag.READ_ONLY)
IGNORE_NULL = _ignore_null
IGNORE_NULL_OR_ZERO = _ignore_null_or_zero
IGNORE_NULL_OR_ZERO_DEFAULT = _ignore_null_or_zero_default
IGNORE_ZERO_PRIMARY_KEY = _ignore_zero_primary_key
