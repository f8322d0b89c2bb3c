"""
Row adapters over DBAPI cursors.

`Rows` is a forward-only cursor with three scan modes:

    with cn.query_rows('SELECT id, name FROM users') as rows:
        while rows.next():
            user_id, name = rows.scan(int, str)

- positional: `scan(*types)` converts the current row into the given types
- struct: `scan_struct(User)` fills a dataclass record by column name
- bulk: `scan_struct_slice`, `scan_slice` and `scan_all_rows_as_strings`
  consume the remaining rows and close the cursor

`Row` wraps a query expected to return a single row. Scanning it when the
query returned nothing raises `NoRowsError`.
"""
import logging
from collections.abc import Callable, Iterator
from typing import Any

from sqlrecord.callback import make_row_callback
from sqlrecord.context import Context, background
from sqlrecord.exceptions import DatabaseError, NoRowsError, ShapeError
from sqlrecord.exceptions import ValidationError, wrap_error_with_query
from sqlrecord.mapping import TaggedFieldMapper, get_struct_mapping, new_record
from sqlrecord.mapping import record_type_of
from sqlrecord.types import scan_value, string_value

logger = logging.getLogger(__name__)

__all__ = [
    'Rows',
    'Row',
    'RowsWithError',
    'RowWithError',
]


class Rows:
    """Forward-only iteration over the result of a query.

    `next()` must be called before every scan, including the first one.
    After `next()` returns False, `err()` tells a normal end of the result
    apart from a failure. `close()` is idempotent and runs `on_close`, which
    the connection uses to return the pooled connection.
    """

    def __init__(self, cursor: Any, *, query: str = '',
                 context: Context | None = None,
                 field_mapper: TaggedFieldMapper | None = None,
                 on_close: Callable[[], None] | None = None) -> None:
        self._cursor = cursor
        self._query = query
        self._context = context or background()
        self._field_mapper = field_mapper
        self._on_close = on_close
        description = getattr(cursor, 'description', None)
        self._columns = [d[0] for d in description] if description else []
        self._current: tuple | None = None
        self._err: DatabaseError | None = None
        self._closed = False

    def __enter__(self) -> 'Rows':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __iter__(self) -> Iterator[tuple]:
        """Iterate the remaining rows as tuples of driver values."""
        try:
            while self.next():
                yield self._current
        finally:
            self.close()
        if self._err is not None:
            raise self._err

    @property
    def context(self) -> Context:
        return self._context

    @property
    def closed(self) -> bool:
        return self._closed

    def columns(self) -> list[str]:
        """Column names of the result."""
        return list(self._columns)

    def next(self) -> bool:
        """Advance to the next row; False at the end of the result or on error.
        """
        self._current = None
        if self._closed or not self._columns:
            self.close()
            return False
        try:
            self._context.check()
            row = self._cursor.fetchone()
        except DatabaseError as e:
            self._err = e
            self.close()
            return False
        except Exception as e:
            self._err = wrap_error_with_query(e, self._query)
            self._err.__cause__ = e
            self.close()
            return False
        if row is None:
            self.close()
            return False
        self._current = tuple(row)
        return True

    def err(self) -> DatabaseError | None:
        """The error that ended iteration, or None."""
        return self._err

    def close(self) -> None:
        """Close the cursor; closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        try:
            self._cursor.close()
        except Exception as e:
            logger.debug(f'Error closing cursor: {e}')
        finally:
            if self._on_close is not None:
                on_close, self._on_close = self._on_close, None
                on_close()

    def _require_row(self) -> tuple:
        if self._current is None:
            raise ValidationError('scan called without a successful call to next')
        return self._current

    def scan_values(self) -> tuple:
        """The current row as driver values."""
        return self._require_row()

    def scan(self, *types: Any) -> tuple:
        """Convert the current row into `types`, one per column.

        Without types the driver values are returned unchanged.
        """
        row = self._require_row()
        if not types:
            return row
        if len(types) != len(row):
            raise ValidationError(
                f'scan got {len(types)} destinations for {len(row)} columns {self._columns}')
        return tuple(scan_value(value, tp) for value, tp in zip(row, types))

    def scan_struct(self, record: Any) -> Any:
        """Fill a dataclass record from the current row.

        `record` is a record instance, which is filled in place, or a
        record type, for which a fresh record is allocated. Every result
        column must map to a field of the record.
        """
        row = self._require_row()
        if isinstance(record, type):
            record_type_of(record)
            record = new_record(record)
        mapping = get_struct_mapping(record, self._field_mapper)
        for target, value in zip(mapping.scan_targets(record, self._columns), row):
            try:
                target.set(scan_value(value, target.field_type))
            except DatabaseError as e:
                raise ShapeError(f'scanning column {target.column.name!r} into {target}: {e}') from e
        return record

    def _drain(self, scan: Callable[[], Any]) -> list:
        with self:
            results = []
            while self.next():
                results.append(scan())
        if self._err is not None:
            raise self._err
        return results

    def scan_struct_slice(self, record_type: type) -> list:
        """Scan all remaining rows into new records of `record_type`."""
        record_type_of(record_type)
        return self._drain(lambda: self.scan_struct(record_type))

    def scan_slice(self, value_type: Any = Any) -> list:
        """Scan the single column of all remaining rows into `value_type`."""
        if len(self._columns) != 1:
            self.close()
            raise ShapeError(f'scan_slice needs a single column result, got {self._columns}')
        return self._drain(lambda: scan_value(self._current[0], value_type))

    def scan_all_rows_as_strings(self, include_header: bool = False) -> list[list[str]]:
        """Render all remaining rows as strings; NULL becomes ''."""
        header = [self.columns()] if include_header else []
        return header + self._drain(lambda: [string_value(v) for v in self._current])

    def for_each_row(self, callback: Callable[['Rows'], Any]) -> None:
        """Call `callback` with this adapter positioned on each row.

        The context is checked before every callback. Rows are closed on
        exit, also when the callback raises.
        """
        with self:
            while self.next():
                self._context.check()
                callback(self)
        if self._err is not None:
            raise self._err

    def for_each_row_call(self, func: Callable[..., Any]) -> None:
        """Call `func` with each row scanned into its parameters.

        See `sqlrecord.callback.make_row_callback` for accepted signatures.
        """
        try:
            call = make_row_callback(func)
        except ValidationError:
            self.close()
            raise
        self.for_each_row(lambda rows: call(self._context, rows))


class Row:
    """Adapter for a query that returns at most one row.

    `next()` returns True once. Scans fetch the row, close the cursor and
    raise `NoRowsError` if the query returned nothing.
    """

    def __init__(self, rows: Rows) -> None:
        self._rows = rows
        self._fetched = False
        self._next_called = False

    def __enter__(self) -> 'Row':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def columns(self) -> list[str]:
        return self._rows.columns()

    def next(self) -> bool:
        if self._next_called:
            return False
        self._next_called = True
        return True

    def err(self) -> DatabaseError | None:
        return self._rows.err()

    def close(self) -> None:
        self._rows.close()

    def _scan(self, scan: Callable[[Rows], Any]) -> Any:
        if self._fetched:
            raise ValidationError('row was already scanned')
        self._fetched = True
        try:
            if not self._rows.next():
                if (err := self._rows.err()) is not None:
                    raise err
                raise NoRowsError(f'no rows in result set of query: {self._rows._query}',
                                  query=self._rows._query)
            return scan(self._rows)
        finally:
            self._rows.close()

    def scan_values(self) -> tuple:
        return self._scan(lambda rows: rows.scan_values())

    def scan(self, *types: Any) -> tuple:
        """Fetch the row and convert it into `types`, one per column."""
        return self._scan(lambda rows: rows.scan(*types))

    def scan_struct(self, record: Any) -> Any:
        """Fetch the row into a record instance or a new record of a type."""
        return self._scan(lambda rows: rows.scan_struct(record))

    def scan_value(self, value_type: Any = Any) -> Any:
        """Fetch the single column of the row."""
        def scan(rows: Rows) -> Any:
            values = rows.scan_values()
            if len(values) != 1:
                raise ShapeError(f'expected a single column, got {rows.columns()}')
            return scan_value(values[0], value_type)
        return self._scan(scan)


class RowsWithError:
    """Stand-in for `Rows` of a query that failed; every use raises the error.
    """

    def __init__(self, error: DatabaseError) -> None:
        self._error = error

    def __enter__(self) -> 'RowsWithError':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        pass

    def __iter__(self) -> Iterator[tuple]:
        raise self._error

    def err(self) -> DatabaseError:
        return self._error

    def close(self) -> None:
        pass

    def _raise(self, *args: Any, **kwargs: Any) -> Any:
        raise self._error

    columns = next = scan = scan_values = scan_struct = _raise
    scan_struct_slice = scan_slice = scan_all_rows_as_strings = _raise
    for_each_row = for_each_row_call = _raise


class RowWithError:
    """Stand-in for `Row` of a query that failed; every use raises the error.
    """

    def __init__(self, error: DatabaseError) -> None:
        self._error = error

    def __enter__(self) -> 'RowWithError':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        pass

    def err(self) -> DatabaseError:
        return self._error

    def close(self) -> None:
        pass

    def _raise(self, *args: Any, **kwargs: Any) -> Any:
        raise self._error

    columns = next = scan = scan_values = scan_struct = scan_value = _raise
