"""
LISTEN/NOTIFY subscriptions.

One `Listener` per target database owns a dedicated autocommit connection
and a daemon thread. The thread runs queued LISTEN/UNLISTEN commands,
waits for notifications and pings the server after 90 seconds without
traffic. Notifications fan out to the callbacks registered for their
channel; a failing callback is logged and does not affect the others.

When the connection is lost the listener closes itself, leaves the
registry and calls every registered `on_unlisten` callback. The next
`listen` creates a fresh listener.
"""
import atexit
import concurrent.futures
import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from sqlrecord.exceptions import ConnectionFailure, DatabaseError, wrap_error_with_query
from sqlrecord.sql import PostgresFormatter

logger = logging.getLogger(__name__)

__all__ = [
    'Listener',
    'ListenerRegistry',
    'OnNotify',
    'OnUnlisten',
]

OnNotify = Callable[[str, str], Any]
OnUnlisten = Callable[[str], Any]

PING_INTERVAL = 90.0
POLL_TIMEOUT = 1.0
COMMAND_TIMEOUT = 30.0

_formatter = PostgresFormatter()


class Listener:
    """Notification subscription on one database connection.

    Args:
        key: Connect string identifying the database
        connect: Opens the autocommit driver connection
        registry: Registry the listener leaves when it closes
    """

    def __init__(self, key: str, connect: Callable[[], Any],
                 registry: 'ListenerRegistry | None' = None,
                 ping_interval: float = PING_INTERVAL,
                 poll_timeout: float = POLL_TIMEOUT) -> None:
        self.key = key
        self.ping_interval = ping_interval
        self.poll_timeout = poll_timeout
        self._registry = registry
        self._lock = threading.RLock()
        self._on_notify: dict[str, list[OnNotify]] = {}
        self._on_unlisten: dict[str, list[OnUnlisten]] = {}
        self._pending: dict[str, Future] = {}
        self._commands: queue.Queue[tuple[str, Future]] = queue.Queue()
        self._closed = threading.Event()
        self._conn = connect()
        self._thread = threading.Thread(target=self._run, name='sqlrecord-listener', daemon=True)
        self._thread.start()
        logger.debug('Listener connected')

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def is_listening(self, channel: str) -> bool:
        with self._lock:
            return bool(self._on_notify.get(channel) or self._on_unlisten.get(channel))

    def channels(self) -> list[str]:
        with self._lock:
            return sorted(set(self._on_notify) | set(self._on_unlisten))

    def listen(self, channel: str, on_notify: OnNotify | None,
               on_unlisten: OnUnlisten | None = None) -> None:
        """Register callbacks for `channel`; LISTEN is issued for the first one only.

        A caller joining a channel whose LISTEN is still in flight waits for
        it and fails with it; the failed channel keeps no callbacks.
        """
        quoted = _formatter.quote_identifier(channel)
        with self._lock:
            first = channel not in self._on_notify and channel not in self._on_unlisten
            pending = self._pending.get(channel)
            if first:
                pending = self._pending[channel] = Future()
            if on_notify is not None:
                self._on_notify.setdefault(channel, []).append(on_notify)
            else:
                self._on_notify.setdefault(channel, [])
            if on_unlisten is not None:
                self._on_unlisten.setdefault(channel, []).append(on_unlisten)
        if not first:
            if pending is not None and threading.current_thread() is not self._thread:
                self._wait(pending, f'LISTEN {quoted}')
            logger.debug(f'Added callback to channel {channel}')
            return
        try:
            self._submit(f'LISTEN {quoted}')
        except Exception as e:
            with self._lock:
                self._on_notify.pop(channel, None)
                self._on_unlisten.pop(channel, None)
                self._pending.pop(channel, None)
            pending.set_exception(e)
            raise
        with self._lock:
            self._pending.pop(channel, None)
        pending.set_result(None)
        logger.debug(f'Listening on channel {channel}')

    def unlisten(self, channel: str) -> None:
        """Drop all callbacks of `channel`, issue UNLISTEN and call its `on_unlisten` callbacks.
        """
        quoted = _formatter.quote_identifier(channel)
        self._submit(f'UNLISTEN {quoted}')
        with self._lock:
            self._on_notify.pop(channel, None)
            callbacks = self._on_unlisten.pop(channel, [])
        for callback in callbacks:
            self._safe_unlisten_callback(callback, channel)
        logger.debug(f'Stopped listening on channel {channel}')

    def close(self) -> None:
        """Close the connection and call every registered `on_unlisten` callback."""
        self._shutdown(None)

    def _submit(self, sql: str) -> None:
        if self.closed:
            raise ConnectionFailure('listener is closed')
        if threading.current_thread() is self._thread:
            self._execute(sql)
            return
        future: Future = Future()
        self._commands.put((sql, future))
        if self.closed and future.cancel():
            raise ConnectionFailure('listener is closed')
        self._wait(future, sql)

    @staticmethod
    def _wait(future: Future, sql: str) -> None:
        try:
            future.result(timeout=COMMAND_TIMEOUT)
        except (concurrent.futures.TimeoutError, concurrent.futures.CancelledError) as e:
            raise ConnectionFailure(f'listener did not run {sql}: {e!r}') from e

    def _execute(self, sql: str) -> None:
        try:
            self._conn.execute(sql)
        except DatabaseError:
            raise
        except Exception as e:
            raise wrap_error_with_query(e, sql) from e

    def _run_commands(self) -> None:
        while True:
            try:
                sql, future = self._commands.get_nowait()
            except queue.Empty:
                return
            if not future.set_running_or_notify_cancel():
                continue
            try:
                self._execute(sql)
            except Exception as e:
                future.set_exception(e)
                if isinstance(e, ConnectionFailure):
                    raise
            else:
                future.set_result(None)

    def _run(self) -> None:
        last_activity = time.monotonic()
        try:
            while not self._closed.is_set():
                self._run_commands()
                for notify in self._conn.notifies(timeout=self.poll_timeout, stop_after=1):
                    last_activity = time.monotonic()
                    self._handle_notify(notify)
                if time.monotonic() - last_activity >= self.ping_interval:
                    self._execute('SELECT 1')
                    last_activity = time.monotonic()
        except Exception as e:
            if not self._closed.is_set():
                logger.error(f'Listener connection lost: {e}')
                self._shutdown(e)

    def _handle_notify(self, notify: Any) -> None:
        self.notify(notify.channel, notify.payload)

    def notify(self, channel: str, payload: str) -> None:
        """Call the callbacks of `channel` with a snapshot taken under the lock."""
        with self._lock:
            callbacks = list(self._on_notify.get(channel, ()))
        for callback in callbacks:
            try:
                callback(channel, payload)
            except Exception:
                logger.exception(f'Notify callback for channel {channel} failed')

    def _safe_unlisten_callback(self, callback: OnUnlisten, channel: str) -> None:
        try:
            callback(channel)
        except Exception:
            logger.exception(f'Unlisten callback for channel {channel} failed')

    def _shutdown(self, error: BaseException | None) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            unlisten = {channel: list(callbacks) for channel, callbacks in self._on_unlisten.items()}
            self._on_notify.clear()
            self._on_unlisten.clear()
        if self._registry is not None:
            self._registry.remove(self)
        while True:
            try:
                _, future = self._commands.get_nowait()
            except queue.Empty:
                break
            future.set_exception(ConnectionFailure(f'listener closed: {error}'))
        try:
            self._conn.close()
        except Exception as e:
            logger.debug(f'Error closing listener connection: {e}')
        for channel, callbacks in unlisten.items():
            for callback in callbacks:
                self._safe_unlisten_callback(callback, channel)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=self.poll_timeout * 2)
        logger.debug('Listener closed')


class ListenerRegistry:
    """Process-wide listeners keyed by connect string.

    Thread-safe singleton; `close_all` runs at interpreter exit.
    """

    _instance = None
    _lock = threading.RLock()

    def __init__(self) -> None:
        self._listeners: dict[str, Listener] = {}

    @classmethod
    def get_instance(cls) -> 'ListenerRegistry':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def get(self, key: str) -> Listener | None:
        with self._lock:
            return self._listeners.get(key)

    def get_or_create(self, key: str, connect: Callable[[], Any]) -> Listener:
        with self._lock:
            listener = self._listeners.get(key)
            if listener is None or listener.closed:
                listener = Listener(key, connect, registry=self)
                self._listeners[key] = listener
            return listener

    def remove(self, listener: Listener) -> None:
        with self._lock:
            if self._listeners.get(listener.key) is listener:
                del self._listeners[listener.key]

    def listen(self, key: str, connect: Callable[[], Any], channel: str,
               on_notify: OnNotify | None, on_unlisten: OnUnlisten | None = None) -> None:
        self.get_or_create(key, connect).listen(channel, on_notify, on_unlisten)

    def unlisten(self, key: str, channel: str) -> None:
        listener = self.get(key)
        if listener is None:
            raise ConnectionFailure(f'no listener to unlisten channel {channel} from')
        listener.unlisten(channel)

    def is_listening(self, key: str, channel: str) -> bool:
        listener = self.get(key)
        return listener is not None and listener.is_listening(channel)

    def close_all(self) -> None:
        """Close every listener."""
        with self._lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
        for listener in listeners:
            listener.close()


def close_all_listeners() -> None:
    ListenerRegistry.get_instance().close_all()


atexit.register(close_all_listeners)
