"""
INSERT, UPDATE and UPSERT composition.

Builders take a formatter, a table name and column names and return the
SQL text. Builders whose argument order differs between numbered and
positional placeholder styles return a `ComposedQuery` that reorders the
arguments with `bind`.
"""
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlrecord.cache import Cache
from sqlrecord.exceptions import ConfigurationError, ValidationError
from sqlrecord.mapping import ColumnInfo
from sqlrecord.sql import QueryFormatter

logger = logging.getLogger(__name__)

__all__ = [
    'ComposedQuery',
    'sorted_values',
    'build_insert',
    'build_insert_unique',
    'build_insert_returning',
    'build_update',
    'build_update_struct',
    'build_upsert_struct',
    'cached_record_query',
]


@dataclass(frozen=True, slots=True)
class ComposedQuery:
    """SQL text plus the order in which logical arguments are bound.
    """
    sql: str
    arg_order: tuple[int, ...] | None = None

    def bind(self, args: Sequence[Any]) -> list[Any]:
        if self.arg_order is None:
            return list(args)
        return [args[i] for i in self.arg_order]


def sorted_values(values: Mapping[str, Any]) -> tuple[list[str], list[Any]]:
    """Split a column-value mapping into column names and values sorted by name.
    """
    if not values:
        raise ValidationError('no values to insert or update')
    names = sorted(values)
    return names, [values[name] for name in names]


def _quoted(formatter: QueryFormatter, columns: Sequence[str]) -> list[str]:
    return [formatter.quote_identifier(c) for c in columns]


def build_insert(formatter: QueryFormatter, table: str, columns: Sequence[str]) -> str:
    """`INSERT INTO <table>("c1",...) VALUES(<ph1>,...)`."""
    if not columns:
        raise ValidationError(f'no values to insert into {table}')
    table = formatter.format_table_name(table)
    cols = ','.join(_quoted(formatter, columns))
    placeholders = ','.join(formatter.placeholders(len(columns)))
    return f'INSERT INTO {table}({cols}) VALUES({placeholders})'


def build_insert_unique(formatter: QueryFormatter, table: str, columns: Sequence[str],
                        on_conflict: str) -> str:
    """INSERT that returns TRUE only when a row was inserted.

    `on_conflict` is the conflict target with or without parentheses.
    """
    conflict = on_conflict.strip()
    if conflict.startswith('(') and conflict.endswith(')'):
        conflict = conflict[1:-1].strip()
    if not conflict:
        raise ValidationError('on_conflict must name the conflict columns')
    return build_insert(formatter, table, columns) + formatter.insert_unique_clause(conflict)


def build_insert_returning(formatter: QueryFormatter, table: str, columns: Sequence[str],
                           returning: str) -> str:
    if not returning or not returning.strip():
        raise ValidationError('returning must not be empty')
    return f'{build_insert(formatter, table, columns)} RETURNING {returning}'


def build_update(formatter: QueryFormatter, table: str, columns: Sequence[str],
                 where: str, n_where_args: int) -> ComposedQuery:
    """UPDATE with a caller supplied WHERE clause.

    Logical arguments are the WHERE arguments followed by the column values;
    numbered placeholders of the SET clause start after the WHERE arguments.
    """
    if not columns:
        raise ValidationError(f'no values to update in {table}')
    table = formatter.format_table_name(table)
    sets = ','.join(f'{col}={formatter.placeholder(n_where_args + i)}'
                    for i, col in enumerate(_quoted(formatter, columns)))
    sql = f'UPDATE {table} SET {sets}'
    if where and where.strip():
        sql = f'{sql} WHERE {where}'
    arg_order = None
    if formatter.positional:
        n = len(columns)
        arg_order = tuple(range(n_where_args, n_where_args + n)) + tuple(range(n_where_args))
    return ComposedQuery(sql, arg_order)


def build_update_struct(formatter: QueryFormatter, table: str, columns: Sequence[ColumnInfo],
                        pk_indices: Sequence[int]) -> ComposedQuery:
    """UPDATE of a record by its primary key.

    Logical arguments are all gathered column values in declaration order.
    SET skips primary key and read-only columns.
    """
    if not columns:
        raise ValidationError(f'no values to update in {table}')
    if not pk_indices:
        raise ConfigurationError(f'no primary key column to update {table} by')
    pk_set = set(pk_indices)
    set_indices = [i for i, c in enumerate(columns) if i not in pk_set and not c.is_read_only]
    if not set_indices:
        raise ValidationError(f'no values to update in {table}')
    table = formatter.format_table_name(table)
    sets = ','.join(f'{formatter.quote_identifier(columns[i].name)}={formatter.placeholder(i)}'
                    for i in set_indices)
    where = ' AND '.join(f'{formatter.quote_identifier(columns[i].name)}={formatter.placeholder(i)}'
                         for i in pk_indices)
    arg_order = tuple(set_indices) + tuple(pk_indices) if formatter.positional else None
    return ComposedQuery(f'UPDATE {table} SET {sets} WHERE {where}', arg_order)


def build_upsert_struct(formatter: QueryFormatter, table: str, columns: Sequence[ColumnInfo],
                        pk_indices: Sequence[int]) -> str:
    """INSERT of a record that updates the existing row on primary key conflict.
    """
    if not pk_indices:
        raise ConfigurationError(f'no primary key column to upsert {table} on')
    sql = build_insert(formatter, table, [c.name for c in columns])
    pk_set = set(pk_indices)
    conflict = [formatter.quote_identifier(columns[i].name) for i in pk_indices]
    updates = [(formatter.quote_identifier(c.name), i) for i, c in enumerate(columns)
               if i not in pk_set and not c.is_read_only]
    return sql + formatter.upsert_clause(conflict, updates)


def cached_record_query(key: tuple, build: Callable[[], Any]) -> Any:
    """Return the composed record query for `key`, building it once.
    """
    manager = Cache.get_instance()
    cache = manager.get_cache('record_queries', maxsize=512)
    lock = manager.get_lock('record_queries')
    with lock:
        query = cache.get(key)
    if query is None:
        query = build()
        with lock:
            cache[key] = query
        logger.debug(f'Cached {key[0]} query for {key[1].__name__}')
    return query
