"""
SQLite-specific strategy implementation.

Connections run with the driver's implicit transactions disabled so that
BEGIN/COMMIT and savepoints are issued explicitly. Foreign keys are
enforced and file databases use the WAL journal. In-memory databases
share one connection through a static pool, since every new connection
would open a different empty database.
"""
import datetime
import decimal
import logging
import uuid
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from sqlrecord.isolation import IsolationLevel, TransactionOptions
from sqlrecord.sql import SQLiteFormatter
from sqlrecord.strategy.base import DatabaseStrategy, get_driver_connection
from sqlrecord.strategy.base import register_strategy

if TYPE_CHECKING:
    from sqlrecord.options import DatabaseOptions

logger = logging.getLogger(__name__)


def is_memory_database(database: str | None) -> bool:
    """Check whether `database` names an in-memory SQLite database.

    >>> is_memory_database(':memory:')
    True
    >>> is_memory_database('/tmp/app.db')
    False
    """
    if not database or database == ':memory:':
        return True
    return database.startswith('file::memory:') or 'mode=memory' in database


@register_strategy('sqlite')
class SQLiteStrategy(DatabaseStrategy):
    """SQLite-specific operations.
    """
    formatter_class = SQLiteFormatter
    default_isolation_level = IsolationLevel.SERIALIZABLE

    @property
    def dialect_name(self) -> str:
        """Return the dialect identifier for SQLite."""
        return 'sqlite'

    @classmethod
    def get_required_options(cls) -> list[str]:
        return ['database']

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for SQLite."""
        return sa.URL.create('sqlite', database=options.database)

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return SQLAlchemy create_engine kwargs for SQLite."""
        connect_args = {'check_same_thread': False, 'isolation_level': None}
        if options.timeout:
            connect_args['timeout'] = options.timeout
        if is_memory_database(options.database):
            connect_args.update(options.extra)
            return {'connect_args': connect_args, 'poolclass': sa.pool.StaticPool,
                    'pool_reset_on_return': None}
        kwargs = super().get_engine_kwargs(options)
        kwargs['connect_args'] = connect_args | kwargs['connect_args']
        return kwargs

    def configure_connection(self, dbapi_conn: Any, options: 'DatabaseOptions') -> None:
        """Disable implicit transactions and enable foreign keys and WAL."""
        conn = get_driver_connection(dbapi_conn)
        conn.isolation_level = None
        cursor = conn.cursor()
        try:
            cursor.execute('PRAGMA foreign_keys = ON')
            if not is_memory_database(options.database):
                cursor.execute('PRAGMA journal_mode = WAL')
            if options.read_only:
                cursor.execute('PRAGMA query_only = ON')
        finally:
            cursor.close()

    def begin_statements(self, options: TransactionOptions) -> list[str]:
        """SQLite transactions are serializable; writers lock up front."""
        if options.isolation_level is IsolationLevel.SERIALIZABLE and not options.read_only:
            return ['BEGIN IMMEDIATE']
        return ['BEGIN']

    def adapt_value(self, value: Any) -> Any:
        """Store temporal values as ISO text and exact numbers as text."""
        if isinstance(value, datetime.datetime):
            return value.isoformat(sep=' ')
        if isinstance(value, (datetime.date, datetime.time)):
            return value.isoformat()
        if isinstance(value, (decimal.Decimal, uuid.UUID)):
            return str(value)
        return value

    def cancel(self, raw_conn: Any) -> None:
        get_driver_connection(raw_conn).interrupt()
        logger.debug('Interrupted SQLite connection')
