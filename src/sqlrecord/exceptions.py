"""
Database-specific exception classes.

Every error raised by this package derives from `DatabaseError`. Errors
surfaced by a driver are wrapped exactly once by `wrap_error_with_query`,
which keeps the driver exception as `__cause__` so the predicates at the
bottom of this module can still inspect it.
"""
import re
import sqlite3

import psycopg

RETRYABLE_PATTERNS = [
    # SSL/TLS errors
    r'ssl',
    r'tls',
    # Connection drops
    r'connection.*(closed|reset|refused|lost|terminated|broken)',
    r'server closed',
    r'eof detected',
    r'broken pipe',
    r'connection reset',
    # Timeouts
    r'timeout',
    r'timed out',
    # Network issues
    r'could not connect',
    r'no route to host',
    r'network.*(unreachable|error)',
    r'host.*(unreachable|down)',
    # Database unavailable or busy
    r'database.*unavailable',
    r'database is locked',
    r'too many connections',
    r'connection pool',
]

_RETRYABLE_REGEX = re.compile('|'.join(RETRYABLE_PATTERNS), re.IGNORECASE)


def is_retryable_error(exc: BaseException) -> bool:
    """Check if an exception represents a transient error worth retrying.

    Returns True for errors that are likely transient and may succeed on retry:
    - SSL/TLS errors
    - Connection drops/resets
    - Timeouts
    - Network issues
    - Database temporarily unavailable or locked

    :param exc: The exception to check.
    :returns: True if the error is likely transient and worth retrying.
    """
    if isinstance(exc, ConnectionFailure):
        return True
    error_msg = str(exc).lower()
    return bool(_RETRYABLE_REGEX.search(error_msg))


class DatabaseError(Exception):
    """Base class for all sqlrecord errors.

    `query` holds the debug-formatted query once the error has been
    wrapped, `constraint` the violated constraint name when known.
    """

    def __init__(self, *args, query: str | None = None,
                 constraint: str | None = None) -> None:
        super().__init__(*args)
        self.query = query
        self.constraint = constraint


class ValidationError(DatabaseError):
    """Caller error: empty values, wrong scan destinations, bad arguments.
    """


class ConfigurationError(DatabaseError):
    """Programmer error in identifiers, record tags or options.
    """


class ShapeError(DatabaseError):
    """Result set does not fit the destination (schema drift).
    """


class TypeConversionError(ShapeError):
    """Error converting types between Python and database.
    """


class QueryError(DatabaseError):
    """Error in query syntax or execution.
    """


class IntegrityViolationError(QueryError):
    """Database constraint violation error.
    """


class UniqueViolationError(IntegrityViolationError):
    """Unique or primary key constraint violation.
    """


class ForeignKeyViolationError(IntegrityViolationError):
    """Foreign key constraint violation.
    """


class NotNullViolationError(IntegrityViolationError):
    """NOT NULL constraint violation.
    """


class CheckViolationError(IntegrityViolationError):
    """CHECK constraint violation.
    """


class ExclusionViolationError(IntegrityViolationError):
    """Exclusion constraint violation.
    """


class RestrictViolationError(IntegrityViolationError):
    """Restrict violation.
    """


class ConnectionFailure(DatabaseError):
    """Transient error establishing or maintaining a database connection.
    """


class Cancelled(DatabaseError):
    """Operation aborted because its context was cancelled.
    """


class DeadlineExceeded(Cancelled):
    """Operation aborted because its context deadline passed.
    """


class NotSupportedError(DatabaseError):
    """Operation is not available for the connection's dialect.
    """


class TransactionStateError(DatabaseError):
    """Transaction state machine misuse.
    """


class WithinTransactionError(TransactionStateError):
    """Operation is not allowed inside a transaction.
    """


class NotWithinTransactionError(TransactionStateError):
    """Commit or rollback called outside of a transaction.
    """


class TransactionDoneError(TransactionStateError):
    """Transaction was already committed or rolled back.
    """


class TransactionError(DatabaseError):
    """Transaction could not be started, or an error was followed by a failed rollback.
    """

    def __init__(self, *args, error: BaseException | None = None,
                 rollback_error: BaseException | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.error = error
        self.rollback_error = rollback_error


class NoRowsError(DatabaseError):
    """Query returned no rows where one was expected.
    """


DbConnectionError = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    sqlite3.InterfaceError,
    ConnectionFailure,
    )

IntegrityError = (
    psycopg.IntegrityError,
    sqlite3.IntegrityError,
    IntegrityViolationError,
    )

OperationalError = (
    psycopg.OperationalError,
    sqlite3.OperationalError,
    )

UniqueViolation = (
    psycopg.errors.UniqueViolation,
    UniqueViolationError,
    )

_SQLSTATE_CLASSES = {
    '23505': UniqueViolationError,
    '23503': ForeignKeyViolationError,
    '23502': NotNullViolationError,
    '23514': CheckViolationError,
    '23P01': ExclusionViolationError,
    '23001': RestrictViolationError,
    }

_SQLITE_CONSTRAINT_CLASSES = [
    (re.compile(r'UNIQUE constraint failed: ?(.*)', re.IGNORECASE), UniqueViolationError),
    (re.compile(r'PRIMARY KEY constraint failed: ?(.*)', re.IGNORECASE), UniqueViolationError),
    (re.compile(r'FOREIGN KEY constraint failed()', re.IGNORECASE), ForeignKeyViolationError),
    (re.compile(r'NOT NULL constraint failed: ?(.*)', re.IGNORECASE), NotNullViolationError),
    (re.compile(r'CHECK constraint failed: ?(.*)', re.IGNORECASE), CheckViolationError),
    ]


def classify_error(err: BaseException) -> tuple[type[DatabaseError], str | None]:
    """Map a driver exception to an error class and a constraint name.
    """
    if isinstance(err, DatabaseError):
        return type(err), err.constraint

    if isinstance(err, psycopg.Error):
        sqlstate = getattr(err, 'sqlstate', None)
        diag = getattr(err, 'diag', None)
        constraint = getattr(diag, 'constraint_name', None) if diag is not None else None
        if sqlstate in _SQLSTATE_CLASSES:
            return _SQLSTATE_CLASSES[sqlstate], constraint
        if isinstance(err, psycopg.IntegrityError):
            return IntegrityViolationError, constraint
        if sqlstate == '57014':
            return Cancelled, None
        # class 08 is a connection exception, 57P an operator shutdown
        if isinstance(err, psycopg.InterfaceError) or (
                isinstance(err, psycopg.OperationalError)
                and (sqlstate is None or sqlstate.startswith(('08', '57P')))):
            return ConnectionFailure, None
        return QueryError, constraint

    if isinstance(err, sqlite3.IntegrityError):
        message = str(err)
        for pattern, cls in _SQLITE_CONSTRAINT_CLASSES:
            if (match := pattern.search(message)):
                return cls, (match.group(1) or None)
        return IntegrityViolationError, None

    if isinstance(err, sqlite3.OperationalError) and 'interrupted' in str(err).lower():
        return Cancelled, None

    if isinstance(err, sqlite3.InterfaceError) or is_retryable_error(err):
        return ConnectionFailure, None

    message = str(err).lower()
    if 'duplicate' in message or 'unique' in message:
        return UniqueViolationError, None
    if 'foreign key' in message:
        return ForeignKeyViolationError, None
    return QueryError, None


def wrap_error_with_query(err: BaseException, query: str,
                          formatted: str | None = None) -> DatabaseError:
    """Wrap a driver error once with the (formatted) query that caused it.

    Errors that already carry a query are returned unchanged. Raise the
    result with `raise wrapped from err` to keep the driver error available.
    """
    if isinstance(err, DatabaseError) and err.query is not None:
        return err
    formatted = formatted or query
    cls, constraint = classify_error(err)
    if isinstance(err, DatabaseError):
        err.query = formatted
        return err
    return cls(f'{err} from query: {formatted}', query=formatted, constraint=constraint)


def _error_chain(err: BaseException | None):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def _violation(err: BaseException | None, classes: tuple, constraints: tuple[str, ...]) -> bool:
    for exc in _error_chain(err):
        if isinstance(exc, classes):
            if not constraints:
                return True
            name = getattr(exc, 'constraint', None)
            if name is None and isinstance(exc, psycopg.Error) and exc.diag is not None:
                name = exc.diag.constraint_name
            return name in constraints
    return False


def is_unique_violation(err: BaseException | None, *constraints: str) -> bool:
    """Return True if `err` or its cause is a unique violation,
    optionally restricted to the named constraints.
    """
    return _violation(err, (UniqueViolationError, psycopg.errors.UniqueViolation), constraints)


def is_foreign_key_violation(err: BaseException | None, *constraints: str) -> bool:
    return _violation(err, (ForeignKeyViolationError, psycopg.errors.ForeignKeyViolation), constraints)


def is_not_null_violation(err: BaseException | None, *constraints: str) -> bool:
    return _violation(err, (NotNullViolationError, psycopg.errors.NotNullViolation), constraints)


def is_check_violation(err: BaseException | None, *constraints: str) -> bool:
    return _violation(err, (CheckViolationError, psycopg.errors.CheckViolation), constraints)


def is_constraint_violation(err: BaseException | None, *constraints: str) -> bool:
    """Return True for any integrity violation signalled by the database.
    """
    return _violation(err, (IntegrityViolationError, psycopg.IntegrityError,
                            sqlite3.IntegrityError), constraints)


def is_serialization_failure(err: BaseException | None) -> bool:
    """Return True if the error chain contains a serialization failure
    or deadlock, both of which succeed when the transaction is retried.
    """
    for exc in _error_chain(err):
        if isinstance(exc, (psycopg.errors.SerializationFailure,
                            psycopg.errors.DeadlockDetected)):
            return True
        if isinstance(exc, sqlite3.OperationalError) and 'database is locked' in str(exc):
            return True
    return False


def is_query_canceled(err: BaseException | None) -> bool:
    for exc in _error_chain(err):
        if isinstance(exc, (Cancelled, psycopg.errors.QueryCanceled)):
            return True
    return False
