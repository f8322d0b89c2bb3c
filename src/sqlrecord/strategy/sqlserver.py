"""
SQL Server-specific strategy implementation.

Queries are written with `@pN` placeholders. pyodbc only understands
positional `?` markers, so `prepare_query` rewrites each `@pN` to `?` and
orders the arguments by occurrence, which lets a placeholder repeat.
"""
import logging
import re
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from sqlrecord.exceptions import ValidationError
from sqlrecord.isolation import TransactionOptions
from sqlrecord.sql import SQLServerFormatter
from sqlrecord.strategy.base import DatabaseStrategy, get_driver_connection
from sqlrecord.strategy.base import register_strategy

if TYPE_CHECKING:
    from sqlrecord.options import DatabaseOptions

logger = logging.getLogger(__name__)

DEFAULT_ODBC_DRIVER = 'ODBC Driver 18 for SQL Server'

_PLACEHOLDER_RE = re.compile(r'@p(\d+)\b')


@register_strategy('mssql')
class SQLServerStrategy(DatabaseStrategy):
    """SQL Server-specific operations.
    """
    formatter_class = SQLServerFormatter

    @property
    def dialect_name(self) -> str:
        return 'mssql'

    @classmethod
    def get_required_options(cls) -> list[str]:
        return ['hostname', 'username', 'database']

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for SQL Server via pyodbc."""
        query = {'driver': options.extra.get('driver', DEFAULT_ODBC_DRIVER)}
        if options.extra.get('trust_server_certificate'):
            query['TrustServerCertificate'] = 'yes'
        if options.appname:
            query['app'] = options.appname
        return sa.URL.create(
            drivername='mssql+pyodbc',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query,
        )

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        kwargs = super().get_engine_kwargs(options)
        connect_args = {k: v for k, v in kwargs['connect_args'].items()
                        if k not in {'driver', 'trust_server_certificate'}}
        if options.timeout:
            connect_args['timeout'] = options.timeout
        kwargs['connect_args'] = connect_args
        return kwargs

    def configure_connection(self, dbapi_conn: Any, options: 'DatabaseOptions') -> None:
        get_driver_connection(dbapi_conn).autocommit = True

    def prepare_query(self, query: str, args: list) -> tuple[str, list]:
        """Rewrite `@pN` placeholders to `?` with arguments in occurrence order.

        >>> SQLServerStrategy().prepare_query('SELECT @p2, @p1, @p2', ['a', 'b'])
        ('SELECT ?, ?, ?', ['b', 'a', 'b'])
        """
        ordered = []

        def replace(match: re.Match) -> str:
            index = int(match.group(1)) - 1
            if index < 0 or index >= len(args):
                raise ValidationError(f'placeholder @p{index + 1} has no argument')
            ordered.append(args[index])
            return '?'

        return _PLACEHOLDER_RE.sub(replace, query), ordered

    def begin_statements(self, options: TransactionOptions) -> list[str]:
        statements = []
        if options.isolation_level is not None:
            statements.append(f'SET TRANSACTION ISOLATION LEVEL {options.isolation_level.sql}')
        if options.read_only:
            logger.debug('SQL Server has no read-only transactions; starting read-write')
        statements.append('BEGIN TRANSACTION')
        return statements

    def savepoint_sql(self, name: str) -> str:
        return f'SAVE TRANSACTION {name}'

    def release_savepoint_sql(self, name: str) -> str | None:
        """Savepoints are released with the enclosing transaction."""
        return None

    def rollback_to_savepoint_sql(self, name: str) -> str:
        return f'ROLLBACK TRANSACTION {name}'
