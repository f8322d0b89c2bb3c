import pathlib
import sys
from dataclasses import dataclass, field, fields
from typing import Any

from sqlrecord.exceptions import ConfigurationError
from sqlrecord.isolation import IsolationLevel, TransactionOptions
from sqlrecord.strategy import get_available_dialects, get_strategy_class
from sqlrecord.strategy import is_supported_dialect

__all__ = [
    'DatabaseOptions',
    'IsolationLevel',
    'TransactionOptions',
    'load_options',
]


def _scriptname() -> str | None:
    if not sys.argv or not sys.argv[0]:
        return None
    return pathlib.Path(sys.argv[0]).stem or None


@dataclass
class DatabaseOptions:
    """Options

    supported driver names: `postgresql`, `sqlite`, `mysql`, `mssql`

    Connection pooling options:
    - use_pool: Whether to keep a pool of open connections (default: True)
    - pool_max_connections: Maximum connections in pool (default: 5)
    - pool_max_idle_time: Seconds before a pooled connection is recycled (default: 300)
    - pool_wait_timeout: Maximum seconds to wait for a connection (default: 30)

    `extra` is passed to the driver as additional connect arguments.
    """
    drivername: str = 'postgresql'
    hostname: str = None
    username: str = None
    password: str = field(default=None, repr=False)
    database: str = None
    port: int = 0
    timeout: int = 0
    appname: str = None
    read_only: bool = False
    default_isolation: IsolationLevel | str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    check_connection: bool = True
    # Connection pooling parameters
    use_pool: bool = True
    pool_max_connections: int = 5
    pool_max_idle_time: int = 300
    pool_wait_timeout: int = 30

    def __post_init__(self):
        if not is_supported_dialect(self.drivername):
            available = get_available_dialects()
            raise ConfigurationError(f'drivername must be one of: {available}')
        self.appname = self.appname or _scriptname() or 'python_console'
        self.default_isolation = IsolationLevel.parse(self.default_isolation)
        self.extra = dict(self.extra or {})
        strategy_cls = get_strategy_class(self.drivername)
        strategy_cls.validate_options(self)

    def connect_url(self) -> str:
        """Connect string identifying the target database, password included.
        """
        strategy = get_strategy_class(self.drivername)()
        return strategy.build_connection_url(self).render_as_string(hide_password=False)

    def transaction_options(self) -> TransactionOptions:
        """Options a root transaction starts with when none are given.
        """
        return TransactionOptions(isolation_level=self.default_isolation,
                                  read_only=self.read_only)


def load_options(options: 'DatabaseOptions | dict[str, Any] | None' = None,
                 **kw: Any) -> DatabaseOptions:
    """Build `DatabaseOptions` from an options object, a dict or keyword arguments.

    Keyword arguments override values from `options`.
    """
    if isinstance(options, DatabaseOptions):
        if not kw:
            return options
        values = {f.name: getattr(options, f.name) for f in fields(DatabaseOptions)}
    elif isinstance(options, dict):
        values = dict(options)
    elif options is None:
        values = {}
    else:
        raise ConfigurationError(f'Unsupported options type: {type(options).__name__}')
    values.update(kw)
    known = {f.name for f in fields(DatabaseOptions)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f'Unknown options: {sorted(unknown)}')
    return DatabaseOptions(**values)
