"""
MySQL-specific strategy implementation.

Uses mysql-connector with server-side prepared cursors, which accept
`?` placeholders.
"""
import logging
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from sqlrecord.isolation import IsolationLevel, TransactionOptions
from sqlrecord.sql import MySQLFormatter
from sqlrecord.strategy.base import DatabaseStrategy, get_driver_connection
from sqlrecord.strategy.base import register_strategy

if TYPE_CHECKING:
    from sqlrecord.options import DatabaseOptions

logger = logging.getLogger(__name__)


@register_strategy('mysql')
class MySQLStrategy(DatabaseStrategy):
    """MySQL-specific operations.
    """
    formatter_class = MySQLFormatter
    default_isolation_level = IsolationLevel.REPEATABLE_READ

    @property
    def dialect_name(self) -> str:
        return 'mysql'

    @classmethod
    def get_required_options(cls) -> list[str]:
        return ['hostname', 'username', 'database']

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        query = {}
        if options.timeout:
            query['connection_timeout'] = str(options.timeout)
        return sa.URL.create(
            drivername='mysql+mysqlconnector',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query,
        )

    def configure_connection(self, dbapi_conn: Any, options: 'DatabaseOptions') -> None:
        conn = get_driver_connection(dbapi_conn)
        conn.autocommit = True
        if options.read_only:
            cursor = conn.cursor()
            try:
                cursor.execute('SET SESSION TRANSACTION READ ONLY')
            finally:
                cursor.close()

    def create_cursor(self, raw_conn: Any) -> Any:
        """Prepared cursors take `?` placeholders."""
        return get_driver_connection(raw_conn).cursor(prepared=True)

    def begin_statements(self, options: TransactionOptions) -> list[str]:
        """The isolation level applies to the next transaction only."""
        statements = []
        if options.isolation_level is not None:
            statements.append(f'SET TRANSACTION ISOLATION LEVEL {options.isolation_level.sql}')
        statements.append('START TRANSACTION READ ONLY' if options.read_only else 'START TRANSACTION')
        return statements
