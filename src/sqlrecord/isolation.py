"""
Transaction isolation levels and per-transaction options.
"""
import enum
from dataclasses import dataclass

from sqlrecord.exceptions import ConfigurationError

__all__ = [
    'IsolationLevel',
    'TransactionOptions',
    'check_options_compatible',
]


class IsolationLevel(enum.IntEnum):
    """Isolation levels ordered from weakest to strongest.
    """
    READ_UNCOMMITTED = 1
    READ_COMMITTED = 2
    REPEATABLE_READ = 3
    SERIALIZABLE = 4

    @property
    def sql(self) -> str:
        return self.name.replace('_', ' ')

    @classmethod
    def parse(cls, value: 'IsolationLevel | str | None') -> 'IsolationLevel | None':
        """Accept an enum member, its name or its SQL spelling.
        """
        if value is None or isinstance(value, IsolationLevel):
            return value
        key = str(value).strip().upper().replace(' ', '_').replace('-', '_')
        try:
            return cls[key]
        except KeyError:
            raise ConfigurationError(f'Unknown isolation level: {value!r}') from None


@dataclass(frozen=True)
class TransactionOptions:
    """Options passed to `begin`.

    An isolation level of None means the connection default.
    """
    isolation_level: IsolationLevel | None = None
    read_only: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'isolation_level', IsolationLevel.parse(self.isolation_level))


def check_options_compatible(outer: TransactionOptions | None,
                             inner: TransactionOptions | None,
                             default: IsolationLevel) -> None:
    """Raise if a nested transaction asks for more than its parent provides.

    A read-write transaction cannot nest inside a read-only one and the
    inner isolation level cannot be stronger than the outer one.
    """
    if inner is None:
        return
    outer = outer or TransactionOptions()
    if outer.read_only and not inner.read_only:
        raise ConfigurationError('parent transaction is read-only but child is not')
    inner_level = inner.isolation_level or default
    outer_level = outer.isolation_level or default
    if inner_level > outer_level:
        raise ConfigurationError(
            f'parent transaction isolation level {outer_level.sql} '
            f'is lower than child level {inner_level.sql}')
