"""
Transaction handling with savepoint nesting.

A transaction is started with `ConnectionWrapper.begin`, which returns a
new handle bound to one pooled connection. Beginning on a transaction
handle opens a savepoint:

    Root  --begin-->    Tx(1)      BEGIN
    Tx(d) --begin-->    Tx(d+1)    SAVEPOINT sp_d
    Tx(1) --commit-->   Root       COMMIT
    Tx(d) --commit-->   Tx(d-1)    RELEASE SAVEPOINT sp_{d-1}
    Tx(1) --rollback--> Root       ROLLBACK
    Tx(d) --rollback--> Tx(d-1)    ROLLBACK TO SAVEPOINT sp_{d-1}

The closure form commits when the function returns and rolls back when
it raises:

    def transfer(tx):
        tx.execute('UPDATE accounts SET balance = balance - $1 WHERE id = $2', 10, 1)
        tx.execute('UPDATE accounts SET balance = balance + $1 WHERE id = $2', 10, 2)

    transaction(cn, transfer)

    with Transaction(cn) as tx:
        transfer(tx)
"""
import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from sqlrecord.exceptions import DatabaseError, TransactionDoneError, TransactionError
from sqlrecord.exceptions import is_serialization_failure
from sqlrecord.isolation import IsolationLevel, TransactionOptions

if TYPE_CHECKING:
    from sqlrecord.connection import ConnectionWrapper
    from sqlrecord.strategy import DatabaseStrategy

logger = logging.getLogger(__name__)

__all__ = [
    'TransactionState',
    'DriverTransaction',
    'Transaction',
    'next_tx_id',
    'savepoint_name',
    'transaction',
    'transaction_read_only',
    'serialized_transaction',
]

T = TypeVar('T')

_tx_ids = itertools.count(1)
_tx_ids_lock = threading.Lock()


def next_tx_id() -> int:
    """Next process-wide transaction id; ids start at 1 and never repeat."""
    with _tx_ids_lock:
        return next(_tx_ids)


def savepoint_name(depth: int) -> str:
    """Name of the savepoint opened by a handle at `depth` (depth >= 2)."""
    return f'sp_{depth - 1}'


@dataclass
class TransactionState:
    """State of a transaction handle.

    Depth 1 is the driver transaction, deeper levels are savepoints.
    `active` turns False once the level is committed or rolled back.
    """
    id: int
    options: TransactionOptions
    depth: int
    active: bool = True


class DriverTransaction:
    """The transaction statements issued on one pooled connection.

    Shared by every nesting level of a transaction. `close` hands the
    connection back through `release`; after a failed COMMIT or ROLLBACK
    the connection is invalidated instead of being reused.
    """

    def __init__(self, raw_conn: Any, strategy: 'DatabaseStrategy',
                 release: Callable[[bool], None]) -> None:
        self.raw_conn = raw_conn
        self.strategy = strategy
        self._release = release
        self.closed = False

    def execute(self, sql: str) -> None:
        cursor = self.strategy.create_cursor(self.raw_conn)
        try:
            cursor.execute(sql)
        finally:
            cursor.close()
        logger.debug(f'Transaction statement: {sql}')

    def begin(self, options: TransactionOptions) -> None:
        for sql in self.strategy.begin_statements(options):
            self.execute(sql)

    def commit(self) -> None:
        self.execute(self.strategy.commit_sql())

    def rollback(self) -> None:
        self.execute(self.strategy.rollback_sql())

    def savepoint(self, name: str) -> None:
        self.execute(self.strategy.savepoint_sql(name))

    def release_savepoint(self, name: str) -> None:
        sql = self.strategy.release_savepoint_sql(name)
        if sql is not None:
            self.execute(sql)

    def rollback_to_savepoint(self, name: str) -> None:
        self.execute(self.strategy.rollback_to_savepoint_sql(name))

    def close(self, invalidate: bool = False) -> None:
        if self.closed:
            return
        self.closed = True
        self._release(invalidate)


def _rollback_after_error(tx: 'ConnectionWrapper', err: Exception) -> None:
    """Roll back after `err`; a failing rollback raises both errors together."""
    try:
        tx.rollback()
    except TransactionDoneError:
        pass
    except Exception as rollback_err:
        logger.error(f'Rollback after error failed: {rollback_err}')
        raise TransactionError(f'{err}; rollback failed: {rollback_err}',
                               error=err, rollback_error=rollback_err) from err
    logger.warning(f'Transaction rolled back: {err}')


def _run(tx: 'ConnectionWrapper', func: Callable[['ConnectionWrapper'], T],
         commit: bool) -> T:
    try:
        result = func(tx)
    except Exception as err:
        _rollback_after_error(tx, err)
        raise
    except BaseException:
        try:
            tx.rollback()
        except TransactionDoneError:
            pass
        except Exception:
            logger.exception('Rollback after interrupt failed')
        raise
    if commit:
        tx.commit()
    return result


def transaction(cn: 'ConnectionWrapper', func: Callable[['ConnectionWrapper'], T],
                options: TransactionOptions | None = None, savepoint: bool = True) -> T:
    """Run `func(tx)` in a transaction and return its result.

    The transaction commits when `func` returns and rolls back when it
    raises; the exception is re-raised. If the rollback itself fails, a
    `TransactionError` carrying both errors is raised instead.

    Args:
        cn: Root or transaction handle
        func: Function called with the transaction handle
        options: Isolation level and read-only flag
        savepoint: On a transaction handle, True opens a savepoint while
            False runs `func` directly in the enclosing transaction, which
            is still rolled back if `func` raises

    Raises
        TransactionError: If the transaction cannot begin or the rollback
            after an error fails
    """
    if cn.is_transaction and not savepoint:
        return _run(cn, func, commit=False)
    try:
        tx = cn.begin(options)
    except DatabaseError as err:
        raise TransactionError(f'begin transaction: {err}', error=err) from err
    return _run(tx, func, commit=True)


def transaction_read_only(cn: 'ConnectionWrapper',
                          func: Callable[['ConnectionWrapper'], T]) -> T:
    """Run `func(tx)` in a read-only transaction."""
    return transaction(cn, func, TransactionOptions(read_only=True))


def serialized_transaction(cn: 'ConnectionWrapper', func: Callable[['ConnectionWrapper'], T],
                           max_retries: int = 5, retry_delay: float = 0.05,
                           retry_backoff: float = 2,
                           sleep_func: Callable[[float], None] = time.sleep) -> T:
    """Run `func(tx)` in a SERIALIZABLE transaction, retrying serialization failures.

    Inside an existing transaction `func` runs once in a savepoint, since
    only the outermost transaction can be retried.
    """
    options = TransactionOptions(isolation_level=IsolationLevel.SERIALIZABLE)
    if cn.is_transaction:
        return transaction(cn, func, options)

    tries = 0
    delay = retry_delay
    while True:
        try:
            return transaction(cn, func, options)
        except Exception as err:
            tries += 1
            if not is_serialization_failure(err) or tries >= max_retries:
                raise
            logger.warning(f'Serialization failure (attempt {tries}/{max_retries}): {err}')
            sleep_func(delay)
            delay *= retry_backoff


class Transaction:
    """Context manager form of `transaction`.

    Examples
        with Transaction(cn) as tx:
            tx.insert_struct(order)
            tx.update('stock', {'count': n}, 'item_id=$1', item_id)
    """

    def __init__(self, cn: 'ConnectionWrapper', options: TransactionOptions | None = None,
                 savepoint: bool = True) -> None:
        self.cn = cn
        self.options = options
        self.savepoint = savepoint
        self.tx: 'ConnectionWrapper | None' = None
        self._owns = False

    def __enter__(self) -> 'ConnectionWrapper':
        if self.cn.is_transaction and not self.savepoint:
            self.tx = self.cn
            return self.tx
        try:
            self.tx = self.cn.begin(self.options)
        except DatabaseError as err:
            raise TransactionError(f'begin transaction: {err}', error=err) from err
        self._owns = True
        return self.tx

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        if exc_type is None:
            if self._owns:
                self.tx.commit()
            return False
        if issubclass(exc_type, Exception):
            _rollback_after_error(self.tx, exc_value)
        else:
            try:
                self.tx.rollback()
            except TransactionDoneError:
                pass
            except Exception:
                logger.exception('Rollback after interrupt failed')
        return False
