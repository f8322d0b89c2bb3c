"""
Dialect query formatting.

A `QueryFormatter` validates and quotes identifiers, renders placeholders
and renders argument values into a query for logging and error messages:

    >>> fmt = PostgresFormatter()
    >>> fmt.quote_identifier('created_at')
    '"created_at"'
    >>> fmt.placeholder(0)
    '$1'
    >>> format_query('SELECT * FROM t WHERE a=$1', fmt, "it's")
    "SELECT * FROM t WHERE a='it''s'"

The formatted query is for humans only; queries are always executed with
bound arguments.
"""
import datetime
import decimal
import enum
import json
import re
import uuid
from collections.abc import Sequence
from typing import Any

from sqlrecord.exceptions import ConfigurationError, NotSupportedError
from sqlrecord.types import Valuer

__all__ = [
    'QueryFormatter',
    'PostgresFormatter',
    'SQLiteFormatter',
    'MySQLFormatter',
    'SQLServerFormatter',
    'format_query',
    'format_timestamp',
    'normalize_query',
]

# =============================================================================
# Value rendering
# =============================================================================


def format_timestamp(value: datetime.datetime) -> str:
    """Render a timestamp as `'YYYY-MM-DD HH:MM:SS.ffffff+07:00:00'`.

    Trailing zeros of the fraction are dropped, UTC renders as `Z` and
    naive timestamps carry no offset.
    """
    text = value.strftime('%Y-%m-%d %H:%M:%S')
    if value.microsecond:
        text += f'.{value.microsecond:06d}'.rstrip('0')
    offset = value.utcoffset()
    if offset is not None:
        seconds = int(offset.total_seconds())
        if seconds == 0:
            text += 'Z'
        else:
            sign = '+' if seconds > 0 else '-'
            hours, rest = divmod(abs(seconds), 3600)
            minutes, secs = divmod(rest, 60)
            text += f'{sign}{hours:02d}:{minutes:02d}:{secs:02d}'
    return f"'{text}'"


def _is_array_text(text: str) -> bool:
    return len(text) >= 2 and ((text[0] == '{' and text[-1] == '}')
                               or (text[0] == '[' and text[-1] == ']'))


# =============================================================================
# Formatters
# =============================================================================


class QueryFormatter:
    """Base formatter; subclasses set the placeholder style and quoting.
    """
    dialect: str = 'generic'
    identifier_pattern = re.compile(r'^[0-9A-Za-z$_]{1,64}$')
    quote_open = '"'
    quote_close = '"'
    positional = False
    max_args = 1024

    def validate_identifier(self, name: str) -> None:
        if not isinstance(name, str) or not self.identifier_pattern.match(name):
            raise ConfigurationError(f'invalid {self.dialect} identifier: {name!r}')

    def quote_identifier(self, name: str) -> str:
        """Validate `name` and return it quoted."""
        self.validate_identifier(name)
        return f'{self.quote_open}{name}{self.quote_close}'

    def format_table_name(self, name: str) -> str:
        """Validate a possibly schema-qualified table name.

        The name is returned as given so that case-folding rules of the
        database still apply.
        """
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f'invalid {self.dialect} table name: {name!r}')
        parts = name.split('.')
        if len(parts) > 2:
            raise ConfigurationError(f'invalid {self.dialect} table name: {name!r}')
        for part in parts:
            self.validate_identifier(part)
        return name

    def placeholder(self, index: int) -> str:
        """Placeholder for the argument at the zero-based `index`."""
        return f'${index + 1}'

    def placeholders(self, count: int, start: int = 0) -> list[str]:
        return [self.placeholder(i) for i in range(start, start + count)]

    def quote_string_literal(self, text: str) -> str:
        return "'" + text.replace("'", "''") + "'"

    def format_array_literal(self, values: Sequence) -> str:
        """Render a sequence as a quoted JSON array literal."""
        return self.quote_string_literal(json.dumps(list(values), default=str))

    def format_value(self, value: Any) -> str:
        """Render `value` as SQL for debugging and logging.
        """
        if value is None:
            return 'NULL'
        if isinstance(value, Valuer) and not isinstance(value, type):
            return self.format_value(value.db_value())
        if isinstance(value, bool):
            return 'TRUE' if value else 'FALSE'
        if isinstance(value, enum.Enum):
            return self.format_value(value.value)
        if isinstance(value, datetime.datetime):
            return format_timestamp(value)
        if isinstance(value, (datetime.date, datetime.time)):
            return f"'{value.isoformat()}'"
        if isinstance(value, (int, float, decimal.Decimal)):
            return str(value)
        if isinstance(value, uuid.UUID):
            return f"'{value}'"
        if isinstance(value, str):
            if _is_array_text(value):
                return f"'{value}'"
            return self.quote_string_literal(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            try:
                text = raw.decode('utf-8')
            except UnicodeDecodeError:
                return "'\\x" + raw.hex() + "'"
            if _is_array_text(text):
                return f"'{text}'"
            return self.quote_string_literal(text)
        if isinstance(value, dict):
            return self.quote_string_literal(json.dumps(value, default=str))
        if isinstance(value, (list, tuple, set, frozenset)):
            return self.format_array_literal(list(value))
        return str(value)

    def insert_unique_clause(self, conflict: str) -> str:
        return f' ON CONFLICT ({conflict}) DO NOTHING RETURNING TRUE'

    def upsert_clause(self, conflict_columns: list[str],
                      updates: list[tuple[str, int]]) -> str:
        """ON CONFLICT clause updating `updates` (quoted column, value index)."""
        if not updates:
            return f' ON CONFLICT({",".join(conflict_columns)}) DO NOTHING'
        sets = ','.join(f'{col}={self.placeholder(index)}' for col, index in updates)
        return f' ON CONFLICT({",".join(conflict_columns)}) DO UPDATE SET {sets}'


class PostgresFormatter(QueryFormatter):
    dialect = 'postgresql'
    identifier_pattern = re.compile(r'^[A-Za-z_][A-Za-z0-9_]{0,62}$')
    max_args = 65535

    def format_array_literal(self, values: Sequence) -> str:
        """Render a sequence as a quoted PostgreSQL array literal `'{a,b}'`."""
        return self.quote_string_literal(self._array_text(values))

    def _array_text(self, values: Sequence) -> str:
        items = []
        for value in values:
            if value is None:
                items.append('NULL')
            elif isinstance(value, bool):
                items.append('t' if value else 'f')
            elif isinstance(value, (int, float, decimal.Decimal)):
                items.append(str(value))
            elif isinstance(value, (list, tuple)):
                items.append(self._array_text(value))
            else:
                if isinstance(value, (bytes, bytearray)):
                    text = '\\x' + bytes(value).hex()
                elif isinstance(value, datetime.datetime):
                    text = format_timestamp(value)[1:-1]
                else:
                    text = str(value)
                escaped = text.replace('\\', '\\\\').replace('"', '\\"')
                items.append(f'"{escaped}"')
        return '{' + ','.join(items) + '}'


class SQLiteFormatter(QueryFormatter):
    dialect = 'sqlite'
    positional = True
    max_args = 32766

    def placeholder(self, index: int) -> str:
        return '?'

    def upsert_clause(self, conflict_columns: list[str],
                      updates: list[tuple[str, int]]) -> str:
        if not updates:
            return super().upsert_clause(conflict_columns, updates)
        sets = ','.join(f'{col}=excluded.{col}' for col, _ in updates)
        return f' ON CONFLICT({",".join(conflict_columns)}) DO UPDATE SET {sets}'


class MySQLFormatter(QueryFormatter):
    dialect = 'mysql'
    quote_open = '`'
    quote_close = '`'
    positional = True
    max_args = 65535

    def placeholder(self, index: int) -> str:
        return '?'

    def quote_string_literal(self, text: str) -> str:
        return "'" + text.replace('\\', '\\\\').replace("'", "''") + "'"

    def insert_unique_clause(self, conflict: str) -> str:
        raise NotSupportedError('INSERT ... ON CONFLICT DO NOTHING RETURNING is not supported by MySQL')

    def upsert_clause(self, conflict_columns: list[str],
                      updates: list[tuple[str, int]]) -> str:
        if not updates:
            updates = [(conflict_columns[0], 0)]
        sets = ','.join(f'{col}=VALUES({col})' for col, _ in updates)
        return f' ON DUPLICATE KEY UPDATE {sets}'


class SQLServerFormatter(QueryFormatter):
    dialect = 'mssql'
    quote_open = '['
    quote_close = ']'
    max_args = 2100

    def placeholder(self, index: int) -> str:
        return f'@p{index + 1}'

    def insert_unique_clause(self, conflict: str) -> str:
        raise NotSupportedError('INSERT ... ON CONFLICT is not supported by SQL Server')

    def upsert_clause(self, conflict_columns: list[str],
                      updates: list[tuple[str, int]]) -> str:
        raise NotSupportedError('INSERT ... ON CONFLICT is not supported by SQL Server')


# =============================================================================
# Query rendering
# =============================================================================


def normalize_query(query: str) -> str:
    """Trim a query for display.

    Single-line queries are stripped. Multi-line queries lose trailing
    whitespace, empty lines and the leading whitespace common to all lines.
    """
    lines = query.split('\n')
    if len(lines) == 1:
        return query.strip()

    lines = [line.rstrip() for line in lines]
    lines = [line for line in lines if line]
    if not lines:
        return ''

    while lines[0] and lines[0][0].isspace():
        first = lines[0][0]
        if not all(line[:1] == first for line in lines[1:]):
            break
        lines = [line[1:] for line in lines]
    return '\n'.join(lines)


def format_query(query: str, formatter: QueryFormatter, *args: Any) -> str:
    """Substitute `args` into `query` and normalize whitespace.

    Numbered placeholders are replaced from the highest index down so that
    `$1` never matches inside `$10`. Positional `?` placeholders are
    replaced in order of appearance.
    """
    if formatter.positional:
        parts = query.split('?')
        if len(parts) > 1:
            out = [parts[0]]
            for i, part in enumerate(parts[1:]):
                out.append(formatter.format_value(args[i]) if i < len(args) else '?')
                out.append(part)
            query = ''.join(out)
    else:
        for i in range(len(args) - 1, -1, -1):
            query = query.replace(formatter.placeholder(i), formatter.format_value(args[i]))
    return normalize_query(query)


if __name__ == '__main__':
    __import__('doctest').testmod(optionflags=4 | 8 | 32)
