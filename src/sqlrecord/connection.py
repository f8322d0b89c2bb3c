"""
Database connection handling with SQLAlchemy.

This module provides:
1. The `connect()` function for creating new database connections
2. The `ConnectionWrapper` handle, which is either a root handle owning a
   SQLAlchemy engine (the driver pool) or a transaction handle bound to
   one pooled connection
3. Engine creation and teardown through a thread-safe registry

The ConnectionWrapper is the primary database client, providing methods like:
- execute(sql, *args) - Execute SQL and return affected row count
- query_row(sql, *args) / query_rows(sql, *args) - Row adapters
- insert(table, values) / update(table, values, where, *args) - Column-value writes
- insert_struct(record) / update_struct(record) / upsert_struct(record) - Record writes
- begin() / commit() / rollback() / transaction(func) - Transactions
- listen_on_channel(channel, on_notify) - LISTEN/NOTIFY
"""
import atexit
import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from functools import wraps
from typing import Any, Self, TypeVar

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from sqlrecord.context import Context, background
from sqlrecord.exceptions import Cancelled, ConfigurationError, ConnectionFailure, DatabaseError
from sqlrecord.exceptions import DbConnectionError, NoRowsError, NotSupportedError
from sqlrecord.exceptions import NotWithinTransactionError, TransactionDoneError
from sqlrecord.exceptions import WithinTransactionError, wrap_error_with_query
from sqlrecord.filters import IGNORE_READ_ONLY, ColumnFilter
from sqlrecord.isolation import IsolationLevel, TransactionOptions
from sqlrecord.isolation import check_options_compatible
from sqlrecord.listener import ListenerRegistry, OnNotify, OnUnlisten
from sqlrecord.mapping import DEFAULT_FIELD_MAPPER, TaggedFieldMapper
from sqlrecord.mapping import get_struct_mapping
from sqlrecord.options import DatabaseOptions, load_options
from sqlrecord.query import ComposedQuery, build_insert, build_insert_returning
from sqlrecord.query import build_insert_unique, build_update, build_update_struct
from sqlrecord.query import build_upsert_struct, cached_record_query, sorted_values
from sqlrecord.rows import Row, Rows, RowsWithError, RowWithError
from sqlrecord.sql import QueryFormatter, format_query
from sqlrecord.strategy import DatabaseStrategy, get_strategy
from sqlrecord.transaction import DriverTransaction, TransactionState, next_tx_id
from sqlrecord.transaction import savepoint_name, transaction
from sqlrecord.types import adapt_args

__all__ = [
    'ConnectionWrapper',
    'connect',
    'check_connection',
    'get_engine_for_options',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

T = TypeVar('T')
_engine_registry: dict[int, Engine] = {}
_engine_registry_lock = threading.RLock()


def check_connection(func: Callable[..., T] | None = None, *, max_retries: int = 3,
                     retry_delay: float = 1, retry_errors: type | tuple[type, ...] | None = None,
                     retry_backoff: float = 1.5,
                     sleep_func: Callable[[float], None] = time.sleep) -> Callable[..., T]:
    """Connection retry decorator with backoff.

    Decorator that handles connection errors by automatically retrying the operation.
    It has configurable retry parameters and supports exponential backoff.

    Supports both @check_connection and @check_connection() syntax.
    """
    def decorator(f: Callable[..., T]) -> Callable[..., T]:
        @wraps(f)
        def inner(*args: Any, **kwargs: Any) -> T:
            error_types = retry_errors if retry_errors is not None else (
                DbConnectionError + (sa.exc.OperationalError, sa.exc.InterfaceError))

            tries = 0
            delay = retry_delay
            while True:
                try:
                    return f(*args, **kwargs)
                except error_types as err:
                    tries += 1
                    if tries >= max_retries:
                        logger.error(f'Maximum retries ({max_retries}) exceeded: {err}')
                        raise
                    logger.warning(f'Connection error (attempt {tries}/{max_retries}): {err}')
                    sleep_func(delay)
                    delay *= retry_backoff

        return inner

    if func is None:
        return decorator
    return decorator(func)


def get_engine_for_options(options: DatabaseOptions,
                           engine_factory: Callable[..., Engine] = sa.create_engine,
                           **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine for the given options and register it for disposal.

    Every new connection is configured by the dialect strategy before it
    enters the pool.
    """
    strategy = get_strategy(options.drivername)
    url = strategy.build_connection_url(options)
    engine_kwargs: dict[str, Any] = {'echo': False}
    engine_kwargs.update(strategy.get_engine_kwargs(options))
    engine_kwargs.update(kwargs)

    engine = engine_factory(url, **engine_kwargs)

    def on_connect(dbapi_conn: Any, connection_record: Any) -> None:
        strategy.configure_connection(dbapi_conn, options)
    sa.event.listen(engine, 'connect', on_connect)

    with _engine_registry_lock:
        _engine_registry[id(engine)] = engine
    logger.debug(f'Created new engine for {options.drivername}')
    return engine


def dispose_engine(engine: Engine) -> None:
    with _engine_registry_lock:
        _engine_registry.pop(id(engine), None)
    engine.dispose()


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        engines = list(_engine_registry.values())
        _engine_registry.clear()
    for engine in engines:
        engine.dispose()
    logger.debug('All database engines disposed')


atexit.register(dispose_all_engines)


class _RootState:
    """State shared by a root handle and every handle derived from it."""

    def __init__(self, options: DatabaseOptions, engine: Engine,
                 strategy: DatabaseStrategy) -> None:
        self.options = options
        self.engine = engine
        self.strategy = strategy
        self.calls = 0
        self.time = 0.0
        self.closed = False
        self.lock = threading.Lock()

    def addcall(self, elapsed: float) -> None:
        with self.lock:
            self.time += elapsed
            self.calls += 1


def connect(options: DatabaseOptions | dict[str, Any] | None = None,
            engine_factory: Callable[..., Engine] = sa.create_engine,
            **kwargs: Any) -> 'ConnectionWrapper':
    """Connect to a database using an options object, a dict or keyword arguments.

    Examples
        cn = connect(drivername='sqlite', database=':memory:')
        cn = connect({'drivername': 'postgresql', 'hostname': 'localhost',
                      'username': 'app', 'password': 'secret', 'database': 'app'})
    """
    options = load_options(options, **kwargs)
    engine = get_engine_for_options(options, engine_factory=engine_factory)
    cn = ConnectionWrapper(_RootState(options, engine, get_strategy(options.drivername)))
    if options.check_connection:
        try:
            cn.ping()
        except Exception:
            cn.close()
            raise
    logger.debug(f'Connected to {options.drivername} database {options.database}')
    return cn


class ConnectionWrapper:
    """Handle for a database or for one level of a transaction.

    Handles are value-like: `with_context` and `with_field_mapper` return
    clones sharing the engine, formatter and caches. A root handle checks
    out a pooled connection for every call. A transaction handle, returned
    by `begin`, routes every call through its transaction's connection and
    must not be used from two threads at once.
    """

    def __init__(self, root: _RootState, context: Context | None = None,
                 field_mapper: TaggedFieldMapper | None = None,
                 tx: TransactionState | None = None,
                 driver_tx: DriverTransaction | None = None) -> None:
        self._root = root
        self.context = context or background()
        self.field_mapper = field_mapper or DEFAULT_FIELD_MAPPER
        self._tx = tx
        self._driver_tx = driver_tx

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    def __repr__(self) -> str:
        state = f'tx={self._tx.id} depth={self._tx.depth}' if self._tx else 'root'
        return f'<ConnectionWrapper {self.dialect} {state}>'

    def _clone(self, **changes: Any) -> 'ConnectionWrapper':
        values = {'context': self.context, 'field_mapper': self.field_mapper,
                  'tx': self._tx, 'driver_tx': self._driver_tx}
        values.update(changes)
        return ConnectionWrapper(self._root, **values)

    # Configuration

    @property
    def options(self) -> DatabaseOptions:
        return self._root.options

    def config(self) -> DatabaseOptions:
        """A copy of the options this handle was connected with."""
        return dataclasses.replace(self._root.options, extra=dict(self._root.options.extra))

    @property
    def strategy(self) -> DatabaseStrategy:
        return self._root.strategy

    @property
    def formatter(self) -> QueryFormatter:
        return self._root.strategy.formatter

    @property
    def dialect(self) -> str:
        """Return the dialect name ('postgresql', 'sqlite', 'mysql' or 'mssql')."""
        return self._root.strategy.dialect_name

    @property
    def engine(self) -> Engine:
        return self._root.engine

    @property
    def is_pooled(self) -> bool:
        """Check if this connection is using SQLAlchemy's connection pooling
        """
        return not isinstance(self._root.engine.pool, sa.pool.NullPool)

    def default_isolation_level(self) -> IsolationLevel:
        return self._root.options.default_isolation or self._root.strategy.default_isolation_level

    def stats(self) -> dict[str, Any]:
        """Query count, total query time and pool status."""
        return {
            'calls': self._root.calls,
            'time': self._root.time,
            'pool': self._root.engine.pool.status(),
        }

    def with_field_mapper(self, mapper: TaggedFieldMapper) -> 'ConnectionWrapper':
        return self._clone(field_mapper=mapper)

    def with_context(self, context: Context) -> 'ConnectionWrapper':
        """Clone carrying `context`; cancelling it aborts running statements."""
        return self._clone(context=context)

    # Driver access

    @check_connection
    def _checkout(self) -> Any:
        return self._root.engine.raw_connection()

    def _acquire(self) -> tuple[Any, Callable[[], None]]:
        """Connection for the next statement and the function that releases it."""
        if self._tx is not None:
            if not self._tx.active or self._driver_tx.closed:
                raise TransactionDoneError(f'transaction {self._tx.id} is already committed or rolled back')
            return self._driver_tx.raw_conn, lambda: None
        if self._root.closed:
            raise ConfigurationError('connection is closed')
        try:
            raw = self._checkout()
        except (sa.exc.DBAPIError, sa.exc.TimeoutError) as e:
            raise ConnectionFailure(f'cannot get a {self.dialect} connection: {e}') from e
        return raw, raw.close

    def _wrap_error(self, err: Exception, query: str, args: tuple) -> DatabaseError:
        try:
            formatted = format_query(query, self.formatter, *args)
        except Exception:
            formatted = query
        if self.context.done() and not isinstance(err, Cancelled):
            cancelled = self.context.error()
            return type(cancelled)(f'{cancelled} from query: {formatted}', query=formatted)
        return wrap_error_with_query(err, query, formatted)

    def _log_query(self, query: str, args: tuple) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f'SQL:\n{format_query(query, self.formatter, *args)}')

    def _run(self, query: str, args: tuple) -> tuple[Any, Callable[[], None]]:
        """Execute `query` and return the open cursor and the release function."""
        self.context.check()
        strategy = self._root.strategy
        sql, driver_args = strategy.prepare_query(query, adapt_args(args, strategy))
        self._log_query(query, args)
        raw, release = self._acquire()
        start = time.time()
        cursor = None
        unregister = None
        try:
            unregister = self.context.on_cancel(lambda: strategy.cancel(raw))
            cursor = strategy.create_cursor(raw)
            if driver_args:
                cursor.execute(sql, driver_args)
            else:
                cursor.execute(sql)
        except Exception as e:
            if cursor is not None:
                cursor.close()
            release()
            raise self._wrap_error(e, query, args) from e
        finally:
            if unregister is not None:
                unregister()
            elapsed = time.time() - start
            self._root.addcall(elapsed)
            logger.debug(f'Query time: {elapsed:.4f}s')
        return cursor, release

    # Liveness

    def ping(self, timeout: float | None = None) -> None:
        """Check that the database answers within `timeout` seconds."""
        ctx = self.context.child(timeout)
        try:
            self.with_context(ctx).execute(self._root.strategy.ping_sql)
        finally:
            ctx.close()

    # Execute and query

    def execute(self, query: str, *args: Any) -> int:
        """Execute a SQL query with the given parameters and return affected row count.
        """
        cursor, release = self._run(query, args)
        try:
            return cursor.rowcount
        finally:
            cursor.close()
            release()

    def query_rows(self, query: str, *args: Any) -> Rows | RowsWithError:
        """Execute a query and return a `Rows` adapter over its result.

        A failed query returns an adapter that raises the error on first use.
        """
        try:
            cursor, release = self._run(query, args)
        except DatabaseError as e:
            return RowsWithError(e)
        return Rows(cursor, query=query, context=self.context,
                    field_mapper=self.field_mapper, on_close=release)

    def query_row(self, query: str, *args: Any) -> Row | RowWithError:
        """Execute a query expected to return a single row.

        A failed query returns an adapter that raises the error on first use.
        """
        rows = self.query_rows(query, *args)
        if isinstance(rows, RowsWithError):
            return RowWithError(rows.err())
        return Row(rows)

    def query_value(self, query: str, *args: Any, type_: Any = Any) -> Any:
        """Execute a query and scan the single column of its single row into `type_`."""
        return self.query_row(query, *args).scan_value(type_)

    # Column-value writes

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        """Insert a row of column values, columns sorted by name."""
        names, vals = sorted_values(values)
        return self.execute(build_insert(self.formatter, table, names), *vals)

    def insert_unique(self, table: str, values: Mapping[str, Any], on_conflict: str) -> bool:
        """Insert a row unless it conflicts on `on_conflict`; True if inserted."""
        names, vals = sorted_values(values)
        sql = build_insert_unique(self.formatter, table, names, on_conflict)
        try:
            return self.query_row(sql, *vals).scan_value(bool)
        except NoRowsError:
            return False

    def insert_returning(self, table: str, values: Mapping[str, Any], returning: str) -> Row:
        names, vals = sorted_values(values)
        sql = build_insert_returning(self.formatter, table, names, returning)
        return self.query_row(sql, *vals)

    def _compose_update(self, table: str, values: Mapping[str, Any], where: str,
                        args: tuple) -> tuple[ComposedQuery, list]:
        names, vals = sorted_values(values)
        query = build_update(self.formatter, table, names, where, len(args))
        return query, query.bind(list(args) + vals)

    def update(self, table: str, values: Mapping[str, Any], where: str, *args: Any) -> int:
        """Update `values` in the rows matching `where`.

        `where` uses placeholders `1..k` for the k `args`; the SET values
        follow at `k+1..k+n`.
        """
        query, bound = self._compose_update(table, values, where, args)
        return self.execute(query.sql, *bound)

    def update_returning_row(self, table: str, values: Mapping[str, Any], returning: str,
                             where: str, *args: Any) -> Row:
        query, bound = self._compose_update(table, values, where, args)
        return self.query_row(f'{query.sql} RETURNING {returning}', *bound)

    def update_returning_rows(self, table: str, values: Mapping[str, Any], returning: str,
                              where: str, *args: Any) -> Rows:
        query, bound = self._compose_update(table, values, where, args)
        return self.query_rows(f'{query.sql} RETURNING {returning}', *bound)

    # Record writes

    def _gather(self, record: Any, filters: tuple[ColumnFilter, ...], table: str | None):
        mapping = get_struct_mapping(record, self.field_mapper)
        table = table or mapping.table_name
        if not table:
            raise ConfigurationError(
                f'no table name for {mapping.record_type.__name__}: pass table= or tag '
                'a primary key column with pk=<table>')
        columns, pk_indices, values = mapping.gather(record, IGNORE_READ_ONLY, *filters)
        return mapping, table, columns, pk_indices, values

    def _record_query(self, kind: str, mapping: Any, table: str, filters: tuple,
                      build: Callable[[], Any], *extra: Any) -> Any:
        if filters:
            return build()
        key = (kind, mapping.record_type, self.field_mapper, self.dialect, table) + extra
        return cached_record_query(key, build)

    def insert_struct(self, record: Any, *filters: ColumnFilter, table: str | None = None) -> int:
        """Insert a record; read-only columns are left out.

        The table comes from `table=`, a `pk=<table>` tag or `__tablename__`.
        """
        mapping, table, columns, _, values = self._gather(record, filters, table)
        sql = self._record_query('insert', mapping, table, filters,
                                 lambda: build_insert(self.formatter, table, [c.name for c in columns]))
        return self.execute(sql, *values)

    def insert_structs(self, records: Iterable[Any], *filters: ColumnFilter,
                       table: str | None = None) -> None:
        """Insert records in one transaction, one statement per record."""
        records = list(records)
        if not records:
            return
        transaction(self, lambda tx: [tx.insert_struct(r, *filters, table=table) for r in records])

    def insert_unique_struct(self, record: Any, on_conflict: str, *filters: ColumnFilter,
                             table: str | None = None) -> bool:
        """Insert a record unless it conflicts on `on_conflict`; True if inserted."""
        mapping, table, columns, _, values = self._gather(record, filters, table)
        sql = self._record_query(
            'insert_unique', mapping, table, filters,
            lambda: build_insert_unique(self.formatter, table, [c.name for c in columns], on_conflict),
            on_conflict)
        try:
            return self.query_row(sql, *values).scan_value(bool)
        except NoRowsError:
            return False

    def insert_returning_struct(self, record: Any, returning: str, *filters: ColumnFilter,
                                table: str | None = None) -> Row:
        mapping, table, columns, _, values = self._gather(record, filters, table)
        sql = self._record_query(
            'insert_returning', mapping, table, filters,
            lambda: build_insert_returning(self.formatter, table, [c.name for c in columns], returning),
            returning)
        return self.query_row(sql, *values)

    def update_struct(self, record: Any, *filters: ColumnFilter, table: str | None = None) -> int:
        """Update a record by its primary key columns."""
        mapping, table, columns, pk_indices, values = self._gather(record, filters, table)
        query = self._record_query(
            'update', mapping, table, filters,
            lambda: build_update_struct(self.formatter, table, columns, pk_indices))
        return self.execute(query.sql, *query.bind(values))

    def upsert_struct(self, record: Any, *filters: ColumnFilter, table: str | None = None) -> int:
        """Insert a record or update the row with the same primary key."""
        mapping, table, columns, pk_indices, values = self._gather(record, filters, table)
        sql = self._record_query(
            'upsert', mapping, table, filters,
            lambda: build_upsert_struct(self.formatter, table, columns, pk_indices))
        return self.execute(sql, *values)

    def upsert_structs(self, records: Iterable[Any], *filters: ColumnFilter,
                       table: str | None = None) -> None:
        """Upsert records in one transaction, one statement per record."""
        records = list(records)
        if not records:
            return
        transaction(self, lambda tx: [tx.upsert_struct(r, *filters, table=table) for r in records])

    # Notifications

    def _listener_key(self) -> str:
        if self._tx is not None:
            raise WithinTransactionError('notifications are not available inside a transaction')
        if not self._root.strategy.supports_notifications:
            raise NotSupportedError(f'notifications are not supported by {self.dialect}')
        return self._root.options.connect_url()

    def listen_on_channel(self, channel: str, on_notify: OnNotify | None,
                          on_unlisten: OnUnlisten | None = None) -> None:
        """Call `on_notify(channel, payload)` for every notification on `channel`.

        `on_unlisten(channel)` runs when the channel is unlistened or the
        listener connection is lost.
        """
        key = self._listener_key()
        options = self._root.options
        strategy = self._root.strategy
        ListenerRegistry.get_instance().listen(
            key, lambda: strategy.connect_listener(options), channel, on_notify, on_unlisten)

    def unlisten_channel(self, channel: str) -> None:
        ListenerRegistry.get_instance().unlisten(self._listener_key(), channel)

    def is_listening_on_channel(self, channel: str) -> bool:
        if self._tx is not None or not self._root.strategy.supports_notifications:
            return False
        return ListenerRegistry.get_instance().is_listening(self._root.options.connect_url(), channel)

    # Transactions

    @property
    def is_transaction(self) -> bool:
        return self._tx is not None

    @property
    def transaction_state(self) -> TransactionState | None:
        return self._tx

    def begin(self, options: TransactionOptions | None = None,
              tx_id: int | None = None) -> 'ConnectionWrapper':
        """Begin a transaction, or a savepoint on a transaction handle.

        Returns a new handle for the transaction; this handle is unchanged.
        """
        if tx_id is not None and tx_id == 0:
            raise ConfigurationError('transaction id must not be zero')
        self.context.check()
        if self._tx is None:
            return self._begin_root(options or self._root.options.transaction_options(), tx_id)

        if not self._tx.active or self._driver_tx.closed:
            raise TransactionDoneError(f'transaction {self._tx.id} is already committed or rolled back')
        check_options_compatible(self._tx.options, options, self.default_isolation_level())
        depth = self._tx.depth + 1
        name = savepoint_name(depth)
        try:
            self._driver_tx.savepoint(name)
        except Exception as e:
            raise self._wrap_error(e, self._root.strategy.savepoint_sql(name), ()) from e
        state = TransactionState(id=tx_id or self._tx.id, options=options or self._tx.options,
                                 depth=depth)
        logger.debug(f'Transaction {state.id}: savepoint {name} (depth {depth})')
        return self._clone(tx=state)

    def _begin_root(self, options: TransactionOptions, tx_id: int | None) -> 'ConnectionWrapper':
        raw, release = self._acquire()

        def release_conn(invalidate: bool) -> None:
            if invalidate:
                raw.invalidate()
            else:
                release()

        driver_tx = DriverTransaction(raw, self._root.strategy, release_conn)
        try:
            driver_tx.begin(options)
        except Exception as e:
            driver_tx.close()
            begin_sql = '; '.join(self._root.strategy.begin_statements(options))
            raise self._wrap_error(e, begin_sql, ()) from e
        state = TransactionState(id=tx_id or next_tx_id(), options=options, depth=1)
        logger.debug(f'Transaction {state.id}: begin')
        return self._clone(tx=state, driver_tx=driver_tx)

    def _end(self, commit: bool) -> None:
        if self._tx is None:
            raise NotWithinTransactionError(f'{"commit" if commit else "rollback"} called outside a transaction')
        if not self._tx.active:
            raise TransactionDoneError(f'transaction {self._tx.id} is already committed or rolled back')
        if self._driver_tx.closed:
            self._tx.active = False
            raise TransactionDoneError(f'transaction {self._tx.id} was ended by an enclosing level')
        strategy = self._root.strategy
        self._tx.active = False
        depth = self._tx.depth
        if depth == 1:
            sql = strategy.commit_sql() if commit else strategy.rollback_sql()
            try:
                self._driver_tx.commit() if commit else self._driver_tx.rollback()
            except Exception as e:
                self._driver_tx.close(invalidate=True)
                raise self._wrap_error(e, sql, ()) from e
            self._driver_tx.close()
        else:
            name = savepoint_name(depth)
            sql = (strategy.release_savepoint_sql(name) if commit
                   else strategy.rollback_to_savepoint_sql(name))
            try:
                if commit:
                    self._driver_tx.release_savepoint(name)
                else:
                    self._driver_tx.rollback_to_savepoint(name)
            except Exception as e:
                raise self._wrap_error(e, sql or '', ()) from e
        logger.debug(f'Transaction {self._tx.id}: {"commit" if commit else "rollback"} (depth {depth})')

    def commit(self) -> None:
        """Commit the transaction, or release the savepoint of a nested level."""
        self._end(commit=True)

    def rollback(self) -> None:
        """Roll back the transaction, or roll back to the savepoint of a nested level."""
        self._end(commit=False)

    def transaction(self, func: Callable[['ConnectionWrapper'], T],
                    options: TransactionOptions | None = None, savepoint: bool = True) -> T:
        """Run `func(tx)` in a transaction; see `sqlrecord.transaction.transaction`."""
        return transaction(self, func, options, savepoint)

    def close(self) -> None:
        """Roll back an active transaction handle, or dispose the pool of a root handle.
        """
        if self._tx is not None:
            if self._tx.active and not self._driver_tx.closed:
                self.rollback()
            return
        with self._root.lock:
            if self._root.closed:
                return
            self._root.closed = True
        dispose_engine(self._root.engine)
        logger.debug(f'Connection closed: {self._root.calls} queries in {self._root.time:.2f}s '
                     f'(avg: {self._root.time / max(1, self._root.calls):.3f}s per query)')
