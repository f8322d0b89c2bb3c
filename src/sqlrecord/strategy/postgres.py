"""
PostgreSQL-specific strategy implementation.

Queries use `$N` placeholders and run on psycopg raw cursors, which send
them to the server unchanged. Lists are bound as native arrays and dicts
as JSON.
"""
import logging
from typing import TYPE_CHECKING, Any

import psycopg
import sqlalchemy as sa
from psycopg.conninfo import make_conninfo
from psycopg.types.json import Json

from sqlrecord.isolation import IsolationLevel
from sqlrecord.sql import PostgresFormatter
from sqlrecord.strategy.base import DatabaseStrategy, get_driver_connection
from sqlrecord.strategy.base import register_strategy

if TYPE_CHECKING:
    from sqlrecord.options import DatabaseOptions

logger = logging.getLogger(__name__)


@register_strategy('postgresql')
class PostgresStrategy(DatabaseStrategy):
    """PostgreSQL-specific operations.
    """
    formatter_class = PostgresFormatter
    supports_notifications = True
    default_isolation_level = IsolationLevel.READ_COMMITTED

    @property
    def dialect_name(self) -> str:
        """Return the dialect identifier for PostgreSQL."""
        return 'postgresql'

    @classmethod
    def get_required_options(cls) -> list[str]:
        return ['hostname', 'username', 'database']

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for PostgreSQL."""
        query = {}
        if options.timeout:
            query['connect_timeout'] = str(options.timeout)
        if options.appname:
            query['application_name'] = options.appname
        return sa.URL.create(
            drivername='postgresql+psycopg',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query,
        )

    def configure_connection(self, dbapi_conn: Any, options: 'DatabaseOptions') -> None:
        """Switch the connection to autocommit and apply session defaults."""
        conn = get_driver_connection(dbapi_conn)
        conn.autocommit = True
        if options.read_only:
            conn.execute('SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY')
        if options.default_isolation is not None:
            conn.execute('SET SESSION CHARACTERISTICS AS TRANSACTION ISOLATION LEVEL '
                         f'{options.default_isolation.sql}')

    def create_cursor(self, raw_conn: Any) -> psycopg.RawCursor:
        """Raw cursors take `$N` placeholders."""
        return psycopg.RawCursor(get_driver_connection(raw_conn))

    def adapt_array(self, items: list) -> list:
        return items

    def adapt_json(self, value: dict) -> Json:
        return Json(value)

    def cancel(self, raw_conn: Any) -> None:
        get_driver_connection(raw_conn).cancel()
        logger.debug('Sent cancel request to PostgreSQL')

    def listener_conninfo(self, options: 'DatabaseOptions') -> str:
        return make_conninfo(
            '',
            host=options.hostname,
            port=options.port or None,
            user=options.username,
            password=options.password,
            dbname=options.database,
            connect_timeout=options.timeout or None,
            application_name=options.appname,
        )

    def connect_listener(self, options: 'DatabaseOptions') -> psycopg.Connection:
        """Open an autocommit connection dedicated to LISTEN/NOTIFY."""
        return psycopg.connect(self.listener_conninfo(options), autocommit=True)
