"""
Base strategy interface for dialect-specific behavior.

A strategy bundles everything that differs between databases: the query
formatter, the SQLAlchemy URL and engine arguments used to build the
driver pool, connection setup, cursor creation, transaction statements,
value adaptation and query cancellation.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from sqlrecord.exceptions import ConfigurationError, NotSupportedError
from sqlrecord.isolation import IsolationLevel, TransactionOptions
from sqlrecord.sql import QueryFormatter

if TYPE_CHECKING:
    from sqlrecord.options import DatabaseOptions

logger = logging.getLogger(__name__)

# Registry of dialect name -> strategy class
# Defined here to avoid circular imports (concrete strategies import from base)
_STRATEGY_REGISTRY: dict[str, type['DatabaseStrategy']] = {}


def register_strategy(dialect: str):
    """Decorator to register a strategy class for a dialect.

    Usage:
        @register_strategy('postgresql')
        class PostgresStrategy(DatabaseStrategy):
            ...
    """
    def decorator(cls: type['DatabaseStrategy']) -> type['DatabaseStrategy']:
        _STRATEGY_REGISTRY[dialect] = cls
        return cls
    return decorator


def get_driver_connection(raw_conn: Any) -> Any:
    """Unwrap a pooled SQLAlchemy connection to the DBAPI driver connection."""
    return getattr(raw_conn, 'driver_connection', raw_conn)


class DatabaseStrategy(ABC):
    """Base class for database-specific operations.
    """
    formatter_class: type[QueryFormatter] = QueryFormatter
    supports_notifications = False
    default_isolation_level = IsolationLevel.READ_COMMITTED
    ping_sql = 'SELECT 1'

    def __init__(self) -> None:
        self.formatter = self.formatter_class()

    @property
    @abstractmethod
    def dialect_name(self) -> str:
        """Return the dialect identifier (e.g., 'postgresql', 'sqlite')."""

    @abstractmethod
    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the database connection URL for this dialect.

        Args:
            options: DatabaseOptions containing connection parameters

        Returns
            SQLAlchemy URL
        """

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return SQLAlchemy create_engine kwargs for this dialect.

        Args:
            options: DatabaseOptions containing connection parameters

        Returns
            Dictionary of keyword arguments for create_engine
        """
        kwargs: dict[str, Any] = {'connect_args': dict(options.extra)}
        if not options.use_pool:
            kwargs['poolclass'] = sa.pool.NullPool
        else:
            kwargs['pool_size'] = options.pool_max_connections
            kwargs['pool_recycle'] = options.pool_max_idle_time
            kwargs['pool_timeout'] = options.pool_wait_timeout
            kwargs['pool_pre_ping'] = True
        return kwargs

    @abstractmethod
    def configure_connection(self, dbapi_conn: Any, options: 'DatabaseOptions') -> None:
        """Prepare a freshly opened driver connection.

        Connections run in autocommit mode; transactions are started with
        explicit statements from `begin_statements`.

        Args:
            dbapi_conn: The raw DBAPI connection
            options: Options the pool was created with
        """

    def create_cursor(self, raw_conn: Any) -> Any:
        """Create a cursor accepting this dialect's placeholders."""
        return raw_conn.cursor()

    def prepare_query(self, query: str, args: list) -> tuple[str, list]:
        """Rewrite query and arguments into the form the driver expects."""
        return query, args

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return list of required option field names for this dialect.

        Returns
            List of field names that must have non-None/non-zero values
        """
        return []

    @classmethod
    def validate_options(cls, options: 'DatabaseOptions') -> None:
        """Validate options for this dialect.

        Raises
            ConfigurationError: If any required field is None or 0
        """
        for field in cls.get_required_options():
            if not getattr(options, field):
                raise ConfigurationError(f'field {field} cannot be None or 0')

    # Transactions

    def begin_statements(self, options: TransactionOptions) -> list[str]:
        """Statements that open a transaction with `options`."""
        sql = 'BEGIN'
        if options.isolation_level is not None:
            sql += f' ISOLATION LEVEL {options.isolation_level.sql}'
        if options.read_only:
            sql += ' READ ONLY'
        return [sql]

    def commit_sql(self) -> str:
        return 'COMMIT'

    def rollback_sql(self) -> str:
        return 'ROLLBACK'

    def savepoint_sql(self, name: str) -> str:
        return f'SAVEPOINT {name}'

    def release_savepoint_sql(self, name: str) -> str | None:
        return f'RELEASE SAVEPOINT {name}'

    def rollback_to_savepoint_sql(self, name: str) -> str:
        return f'ROLLBACK TO SAVEPOINT {name}'

    # Values

    def adapt_array(self, items: list) -> Any:
        """Array argument as sent to the driver; JSON text by default."""
        return json.dumps(items, default=str)

    def adapt_json(self, value: dict) -> Any:
        return json.dumps(value, default=str)

    def adapt_value(self, value: Any) -> Any:
        """Final per-dialect conversion of a scalar argument."""
        return value

    # Cancellation and notifications

    def cancel(self, raw_conn: Any) -> None:
        """Abort the statement running on `raw_conn`."""
        logger.debug(f'Query cancellation is not supported for {self.dialect_name}')

    def connect_listener(self, options: 'DatabaseOptions') -> Any:
        """Open a dedicated driver connection for notifications."""
        raise NotSupportedError(f'notifications are not supported by {self.dialect_name}')
