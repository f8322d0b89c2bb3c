"""
Record-oriented database access for PostgreSQL, SQLite, MySQL and SQL Server.

Dataclass records map to table rows through `db` field tags:

    @dataclass
    class User:
        id: int = db_field('id,pk=public.users')
        name: str = ''
        created_at: datetime | None = db_field('created_at,default', default=None)

    cn = connect(drivername='sqlite', database=':memory:')
    cn.insert_struct(User(id=1, name='Erik'), table='users')

All operations can be called either as:
- Module functions: sqlrecord.insert_struct(cn, record)
- ConnectionWrapper methods: cn.insert_struct(record)
"""
__version__ = '0.1.0'

from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from sqlrecord.connection import ConnectionWrapper, connect
from sqlrecord.context import Context, background
from sqlrecord.exceptions import Cancelled, CheckViolationError, ConfigurationError
from sqlrecord.exceptions import ConnectionFailure, DatabaseError, DbConnectionError
from sqlrecord.exceptions import DeadlineExceeded, ForeignKeyViolationError
from sqlrecord.exceptions import IntegrityError, IntegrityViolationError, NoRowsError
from sqlrecord.exceptions import NotNullViolationError, NotSupportedError
from sqlrecord.exceptions import NotWithinTransactionError, OperationalError, QueryError
from sqlrecord.exceptions import ShapeError, TransactionDoneError, TransactionError
from sqlrecord.exceptions import TypeConversionError, UniqueViolation
from sqlrecord.exceptions import UniqueViolationError, ValidationError
from sqlrecord.exceptions import WithinTransactionError, is_check_violation
from sqlrecord.exceptions import is_constraint_violation, is_foreign_key_violation
from sqlrecord.exceptions import is_not_null_violation, is_query_canceled
from sqlrecord.exceptions import is_serialization_failure, is_unique_violation
from sqlrecord.filters import ColumnFilter
from sqlrecord.isolation import IsolationLevel, TransactionOptions
from sqlrecord.mapping import DEFAULT_FIELD_MAPPER, TaggedFieldMapper, db_field
from sqlrecord.mapping import embedded, get_struct_mapping, identity_name
from sqlrecord.mapping import ignore_untagged, to_snake_case
from sqlrecord.options import DatabaseOptions
from sqlrecord.rows import Row, Rows
from sqlrecord.transaction import Transaction, serialized_transaction
from sqlrecord.transaction import transaction, transaction_read_only

T = TypeVar('T')


def execute(cn: ConnectionWrapper, sql: str, *args: Any) -> int:
    """Execute a SQL query and return affected row count.
    """
    return cn.execute(sql, *args)


def query_row(cn: ConnectionWrapper, sql: str, *args: Any) -> Row:
    return cn.query_row(sql, *args)


def query_rows(cn: ConnectionWrapper, sql: str, *args: Any) -> Rows:
    return cn.query_rows(sql, *args)


def query_value(cn: ConnectionWrapper, sql: str, *args: Any, type_: Any = Any) -> Any:
    """Execute a query and return the single value of its single row.
    """
    return cn.query_value(sql, *args, type_=type_)


def insert(cn: ConnectionWrapper, table: str, values: Mapping[str, Any]) -> int:
    return cn.insert(table, values)


def update(cn: ConnectionWrapper, table: str, values: Mapping[str, Any],
           where: str, *args: Any) -> int:
    return cn.update(table, values, where, *args)


def insert_struct(cn: ConnectionWrapper, record: Any, *filters: ColumnFilter,
                  table: str | None = None) -> int:
    """Insert a dataclass record.
    """
    return cn.insert_struct(record, *filters, table=table)


def update_struct(cn: ConnectionWrapper, record: Any, *filters: ColumnFilter,
                  table: str | None = None) -> int:
    """Update a dataclass record by its primary key.
    """
    return cn.update_struct(record, *filters, table=table)


def upsert_struct(cn: ConnectionWrapper, record: Any, *filters: ColumnFilter,
                  table: str | None = None) -> int:
    """Insert a dataclass record or update the row with the same primary key.
    """
    return cn.upsert_struct(record, *filters, table=table)


def query_structs(cn: ConnectionWrapper, record_type: type[T], sql: str, *args: Any) -> list[T]:
    """Execute a query and scan every row into a new record of `record_type`.
    """
    return cn.query_rows(sql, *args).scan_struct_slice(record_type)


def for_each_row(cn: ConnectionWrapper, func: Callable[..., Any], sql: str, *args: Any) -> None:
    """Call `func` with each row of the query scanned into its parameters.
    """
    cn.query_rows(sql, *args).for_each_row_call(func)


__all__ = [
    'connect',
    'ConnectionWrapper',
    'DatabaseOptions',
    'Context',
    'background',
    'IsolationLevel',
    'TransactionOptions',
    'Transaction',
    'transaction',
    'transaction_read_only',
    'serialized_transaction',
    'Row',
    'Rows',
    'db_field',
    'embedded',
    'get_struct_mapping',
    'TaggedFieldMapper',
    'DEFAULT_FIELD_MAPPER',
    'ignore_untagged',
    'identity_name',
    'to_snake_case',
    'execute',
    'query_row',
    'query_rows',
    'query_value',
    'query_structs',
    'for_each_row',
    'insert',
    'update',
    'insert_struct',
    'update_struct',
    'upsert_struct',
    'DatabaseError',
    'ValidationError',
    'ConfigurationError',
    'ShapeError',
    'TypeConversionError',
    'QueryError',
    'IntegrityViolationError',
    'UniqueViolationError',
    'ForeignKeyViolationError',
    'NotNullViolationError',
    'CheckViolationError',
    'ConnectionFailure',
    'Cancelled',
    'DeadlineExceeded',
    'NotSupportedError',
    'WithinTransactionError',
    'NotWithinTransactionError',
    'TransactionDoneError',
    'TransactionError',
    'NoRowsError',
    'DbConnectionError',
    'IntegrityError',
    'OperationalError',
    'UniqueViolation',
    'is_unique_violation',
    'is_foreign_key_violation',
    'is_not_null_violation',
    'is_check_violation',
    'is_constraint_violation',
    'is_serialization_failure',
    'is_query_canceled',
]
