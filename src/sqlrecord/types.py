"""
Value binding between Python values and driver values.

This module provides:
- Valuer and Scanner: capabilities a type can implement to control its own
  conversion
- adapt_arg/adapt_args: convert query arguments before they reach the driver
- scan_value: convert a driver value into a typed destination
- split_array: tokenize textual array literals
- is_null/is_zero: value predicates used by column filters
"""
import datetime
import decimal
import enum
import json
import logging
import types
import typing
import uuid
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import dateutil.parser
import numpy as np
import pandas as pd

from sqlrecord.exceptions import TypeConversionError

if TYPE_CHECKING:
    from sqlrecord.strategy import DatabaseStrategy

logger = logging.getLogger(__name__)

__all__ = [
    'Valuer',
    'Scanner',
    'adapt_arg',
    'adapt_args',
    'scan_value',
    'split_array',
    'is_null',
    'is_zero',
    'string_value',
]

_NoneType = type(None)
_BYTES_TYPES = (bytes, bytearray, memoryview)
_TRUE_STRINGS = {'t', 'true', 'y', 'yes', 'on', '1'}
_FALSE_STRINGS = {'f', 'false', 'n', 'no', 'off', '0'}
_JSON_ESCAPES = {'b': '\b', 'f': '\f', 'n': '\n', 'r': '\r', 't': '\t'}


@runtime_checkable
class Valuer(Protocol):
    """Value that converts itself to a driver value."""

    def db_value(self) -> Any: ...


class Scanner(Protocol):
    """Type that builds itself from a driver value.

    Implemented as a classmethod so a destination can be allocated
    from its type alone.
    """

    @classmethod
    def db_scan(cls, value: Any) -> Any: ...


def _is_scanner_type(tp: Any) -> bool:
    return isinstance(tp, type) and callable(getattr(tp, 'db_scan', None))


# Outbound: Python -> driver

def _convert_numpy_value(val: Any) -> Any:
    """Convert NumPy value to Python type."""
    if isinstance(val, np.floating) and np.isnan(val):
        return None
    if isinstance(val, np.datetime64):
        if np.isnat(val):
            return None
        return pd.Timestamp(val).to_pydatetime()
    if isinstance(val, np.generic):
        return val.item()
    return val


def is_null(value: Any) -> bool:
    """True for values that are sent as SQL NULL.

    None, pandas missing markers, NumPy NaN/NaT and Valuer objects whose
    `db_value()` is null.
    """
    if value is None or value is pd.NA or value is pd.NaT:
        return True
    if isinstance(value, Valuer) and not isinstance(value, type):
        return is_null(value.db_value())
    if isinstance(value, np.generic):
        return _convert_numpy_value(value) is None
    return False


def is_zero(value: Any) -> bool:
    """True for the zero value of common scalar and container types."""
    if isinstance(value, uuid.UUID):
        return value.int == 0
    if isinstance(value, (bool, int, float, decimal.Decimal, str, *_BYTES_TYPES,
                          list, tuple, dict, set, frozenset)):
        return not value
    if isinstance(value, np.generic):
        return not value.item()
    return False


def adapt_arg(value: Any, strategy: 'DatabaseStrategy | None' = None) -> Any:
    """Convert a single query argument to a driver-compatible value.
    """
    if isinstance(value, Valuer) and not isinstance(value, type):
        value = value.db_value()
    if value is None or value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, np.ndarray):
        value = value.tolist()
    if isinstance(value, np.generic):
        value = _convert_numpy_value(value)
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, enum.Enum):
        return adapt_arg(value.value, strategy)
    if isinstance(value, (list, tuple)) and not _is_scanner_type(type(value)):
        items = [adapt_arg(v, strategy) for v in value]
        return strategy.adapt_array(items) if strategy is not None else items
    if isinstance(value, dict):
        return strategy.adapt_json(value) if strategy is not None else value
    return strategy.adapt_value(value) if strategy is not None else value


def adapt_args(args: tuple | list, strategy: 'DatabaseStrategy | None' = None) -> list:
    """Convert query arguments for database operations."""
    return [adapt_arg(arg, strategy) for arg in args]


# Inbound: driver -> Python

def _fail(value: Any, dest: Any, reason: str = '') -> TypeConversionError:
    name = getattr(dest, '__name__', repr(dest))
    msg = f"can't scan {type(value).__name__} value {value!r} as {name}"
    if reason:
        msg = f'{msg}: {reason}'
    return TypeConversionError(msg)


def _decode(value: Any) -> str:
    return bytes(value).decode('utf-8')


def _parse_datetime(text: str) -> datetime.datetime:
    try:
        return dateutil.parser.isoparse(text)
    except ValueError:
        return dateutil.parser.parse(text)


def _scan_bool(value: Any, dest: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, np.integer)):
        return bool(value)
    if isinstance(value, _BYTES_TYPES):
        value = _decode(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise _fail(value, dest)


def _scan_int(value: Any, dest: Any) -> int:
    if isinstance(value, bool):
        raise _fail(value, dest)
    if isinstance(value, (int, float, decimal.Decimal, np.integer, np.floating)):
        return dest(int(value)) if dest is not int else int(value)
    raise _fail(value, dest)


def _scan_float(value: Any, dest: Any) -> float:
    if isinstance(value, bool):
        raise _fail(value, dest)
    if isinstance(value, (int, float, decimal.Decimal, np.integer, np.floating)):
        return float(value)
    raise _fail(value, dest)


def _scan_decimal(value: Any, dest: Any) -> decimal.Decimal:
    if isinstance(value, bool):
        raise _fail(value, dest)
    if isinstance(value, decimal.Decimal):
        return value
    if isinstance(value, int):
        return decimal.Decimal(value)
    if isinstance(value, float):
        return decimal.Decimal(str(value))
    if isinstance(value, _BYTES_TYPES):
        value = _decode(value)
    if isinstance(value, str):
        try:
            return decimal.Decimal(value.strip())
        except decimal.InvalidOperation:
            raise _fail(value, dest) from None
    raise _fail(value, dest)


def _scan_str(value: Any, dest: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, _BYTES_TYPES):
        try:
            return _decode(value)
        except UnicodeDecodeError as e:
            raise _fail(value, dest, str(e)) from None
    if isinstance(value, uuid.UUID):
        return str(value)
    raise _fail(value, dest)


def _scan_bytes(value: Any, dest: Any) -> bytes:
    if isinstance(value, _BYTES_TYPES):
        return bytes(value)
    if isinstance(value, str):
        return value.encode('utf-8')
    if isinstance(value, uuid.UUID):
        return value.bytes
    raise _fail(value, dest)


def _scan_datetime(value: Any, dest: Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    if isinstance(value, _BYTES_TYPES):
        value = _decode(value)
    if isinstance(value, str):
        try:
            return _parse_datetime(value)
        except (ValueError, OverflowError) as e:
            raise _fail(value, dest, str(e)) from None
    raise _fail(value, dest)


def _scan_date(value: Any, dest: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, (str, *_BYTES_TYPES)):
        return _scan_datetime(value, dest).date()
    raise _fail(value, dest)


def _scan_time(value: Any, dest: Any) -> datetime.time:
    if isinstance(value, datetime.time):
        return value
    if isinstance(value, datetime.datetime):
        return value.timetz()
    if isinstance(value, _BYTES_TYPES):
        value = _decode(value)
    if isinstance(value, str):
        try:
            return datetime.time.fromisoformat(value.strip())
        except ValueError as e:
            raise _fail(value, dest, str(e)) from None
    raise _fail(value, dest)


def _scan_uuid(value: Any, dest: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        if isinstance(value, _BYTES_TYPES):
            raw = bytes(value)
            return uuid.UUID(bytes=raw) if len(raw) == 16 else uuid.UUID(raw.decode())
        if isinstance(value, str):
            return uuid.UUID(value)
    except ValueError as e:
        raise _fail(value, dest, str(e)) from None
    raise _fail(value, dest)


def _scan_json(value: Any, dest: Any) -> Any:
    if isinstance(value, _BYTES_TYPES):
        value = _decode(value)
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as e:
            raise _fail(value, dest, str(e)) from None
    if not isinstance(value, dest):
        raise _fail(value, dest)
    return value


_SCALAR_SCANNERS = {
    bool: _scan_bool,
    int: _scan_int,
    float: _scan_float,
    decimal.Decimal: _scan_decimal,
    str: _scan_str,
    bytes: _scan_bytes,
    datetime.datetime: _scan_datetime,
    datetime.date: _scan_date,
    datetime.time: _scan_time,
    uuid.UUID: _scan_uuid,
    }


def _scan_sequence(value: Any, dest: Any, origin: type) -> Any:
    args = typing.get_args(dest)
    elem_type = args[0] if args else Any
    if origin is tuple and len(args) == 2 and args[1] is Ellipsis:
        elem_type = args[0]
    elif origin is tuple and args:
        elem_type = Any

    if isinstance(value, _BYTES_TYPES):
        value = _decode(value)
    if isinstance(value, str):
        items = [_scan_text(element, elem_type) for element in split_array(value)]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [scan_value(element, elem_type) for element in value]
    else:
        raise _fail(value, dest)
    return origin(items) if origin is not list else items


def _scan_text(text: str | None, dest: Any) -> Any:
    """Scan one element of a textual array literal."""
    if text is None or dest is Any or _is_scanner_type(dest):
        return scan_value(text, dest)
    base = _unwrap_optional(dest)
    if base is bool:
        return _scan_bool(text, dest)
    if base in {int, float}:
        try:
            return base(text.strip())
        except ValueError:
            raise _fail(text, dest) from None
    if base is bytes and text.startswith('\\x'):
        return bytes.fromhex(text[2:])
    return scan_value(text, dest)


def _unwrap_optional(tp: Any) -> Any:
    origin = typing.get_origin(tp)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(tp) if a is not _NoneType]
        if len(args) == 1:
            return args[0]
    return tp


def scan_value(value: Any, dest: Any = Any) -> Any:
    """Convert a driver value into an instance of `dest`.

    `dest` is a type or a typing annotation (`int | None`, `list[str]`).
    Null sets nullable and container destinations to None and raises
    TypeConversionError for scalar destinations.
    """
    if dest is Any or dest is object or dest is None:
        return value

    if _is_scanner_type(dest):
        return dest.db_scan(value)

    origin = typing.get_origin(dest)

    if origin is typing.Annotated:
        return scan_value(value, typing.get_args(dest)[0])

    if origin is typing.Union or origin is types.UnionType:
        args = typing.get_args(dest)
        non_null = [a for a in args if a is not _NoneType]
        if value is None:
            if _NoneType in args:
                return None
            raise _fail(value, dest, 'value is NULL')
        if len(non_null) == 1:
            return scan_value(value, non_null[0])
        for candidate in non_null:
            if isinstance(candidate, type) and isinstance(value, candidate):
                return value
        errors = []
        for candidate in non_null:
            try:
                return scan_value(value, candidate)
            except TypeConversionError as e:
                errors.append(str(e))
        raise _fail(value, dest, '; '.join(errors))

    if origin in {list, tuple, set, frozenset}:
        if value is None:
            return None
        return _scan_sequence(value, dest, origin)

    if origin is dict:
        dest = dict

    if value is None:
        if dest in {list, tuple, dict, set, frozenset}:
            return None
        raise _fail(value, dest, 'value is NULL')

    if dest in {list, tuple, set, frozenset}:
        return _scan_sequence(value, dest, dest)

    if dest is dict:
        return _scan_json(value, dict)

    if isinstance(dest, type) and issubclass(dest, enum.Enum):
        if isinstance(value, dest):
            return value
        if isinstance(value, _BYTES_TYPES):
            value = _decode(value)
        try:
            return dest(value)
        except ValueError:
            if isinstance(value, str) and value in dest.__members__:
                return dest[value]
            raise _fail(value, dest) from None

    if not isinstance(dest, type):
        raise _fail(value, dest, 'unsupported destination type')

    for base, scanner in _SCALAR_SCANNERS.items():
        if dest is base or (base is not bool and issubclass(dest, base) and not issubclass(dest, bool)):
            if dest is not base and isinstance(value, dest):
                return value
            return scanner(value, dest)

    if isinstance(value, dest):
        return value
    raise _fail(value, dest)


# Array literals

_CLOSERS = {'{': '}', '[': ']'}


def _unescape(inner: str, i: int, json_mode: bool) -> tuple[str, int]:
    """Decode the escape at `inner[i]` (a backslash); return text and next index."""
    if i + 1 >= len(inner):
        return '\\', i + 1
    nxt = inner[i + 1]
    if json_mode:
        if nxt == 'u' and i + 6 <= len(inner):
            code = int(inner[i + 2:i + 6], 16)
            # UTF-16 surrogate pair encodes one code point outside the BMP
            if 0xD800 <= code < 0xDC00 and inner[i + 6:i + 8] == '\\u' and i + 12 <= len(inner):
                low = int(inner[i + 8:i + 12], 16)
                if 0xDC00 <= low < 0xE000:
                    return chr(0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)), i + 12
            return chr(code), i + 6
        return _JSON_ESCAPES.get(nxt, nxt), i + 2
    return nxt, i + 2


def split_array(text: str) -> list[str | None]:
    """Split a textual array literal into element strings.

    Accepts PostgreSQL literals (`{a,"b c",NULL}`) and JSON arrays
    (`["a","b c",null]`). Quoted elements are unquoted and unescaped,
    unquoted NULL/null elements become None, nested arrays are returned as
    their literal text.

    >>> split_array('{1,2,3}')
    ['1', '2', '3']
    >>> split_array('{"a,b",NULL,c}')
    ['a,b', None, 'c']
    >>> split_array('[[1,2],[3]]')
    ['[1,2]', '[3]']
    """
    stripped = text.strip()
    if len(stripped) < 2 or stripped[0] not in _CLOSERS or stripped[-1] != _CLOSERS[stripped[0]]:
        raise TypeConversionError(f'not an array literal: {text!r}')
    json_mode = stripped[0] == '['
    inner = stripped[1:-1]
    if not inner.strip():
        return []

    elements: list[str | None] = []
    buf: list[str] = []
    was_quoted = False
    quoted = False
    depth = 0
    nested_quoted = False
    i = 0

    def flush() -> None:
        token = ''.join(buf)
        if not was_quoted:
            token = token.strip()
            if token.lower() == 'null':
                elements.append(None)
                return
        elements.append(token)

    while i < len(inner):
        ch = inner[i]
        if depth > 0:
            buf.append(ch)
            if nested_quoted:
                if ch == '\\' and i + 1 < len(inner):
                    buf.append(inner[i + 1])
                    i += 2
                    continue
                if ch == '"':
                    nested_quoted = False
            elif ch == '"':
                nested_quoted = True
            elif ch in _CLOSERS:
                depth += 1
            elif ch in _CLOSERS.values():
                depth -= 1
            i += 1
            continue
        if quoted:
            if ch == '\\':
                decoded, i = _unescape(inner, i, json_mode)
                buf.append(decoded)
                continue
            if ch == '"':
                quoted = False
            else:
                buf.append(ch)
            i += 1
            continue
        if ch == '"':
            quoted = True
            was_quoted = True
        elif ch in _CLOSERS:
            depth = 1
            buf.append(ch)
        elif ch == ',':
            flush()
            buf = []
            was_quoted = False
        elif ch.isspace() and (was_quoted or not buf):
            pass
        else:
            buf.append(ch)
        i += 1

    if quoted or depth:
        raise TypeConversionError(f'unterminated array literal: {text!r}')
    flush()
    return elements


def string_value(value: Any) -> str:
    """Render a driver value as text; NULL becomes the empty string."""
    if value is None:
        return ''
    if isinstance(value, _BYTES_TYPES):
        return bytes(value).decode('utf-8', errors='replace')
    return str(value)


if __name__ == '__main__':
    __import__('doctest').testmod(optionflags=4 | 8 | 32)
