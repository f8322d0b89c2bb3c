"""Unit tests for LISTEN/NOTIFY subscriptions.

Uses a fake notification connection in place of a psycopg connection:
`push` delivers a notification to the listener thread and `drop` makes the
next poll fail like a lost server connection.
"""
import queue
import threading
import time
from collections import namedtuple

import psycopg
import pytest
from sqlrecord.exceptions import ConfigurationError, ConnectionFailure, NotSupportedError
from sqlrecord.exceptions import QueryError, WithinTransactionError
from sqlrecord.listener import Listener, ListenerRegistry

Notify = namedtuple('Notify', ['channel', 'payload', 'pid'])


class FakeNotifyConnection:

    def __init__(self):
        self.executed = []
        self.errors = {}
        self.closed = False
        self._incoming = queue.Queue()

    def execute(self, sql):
        for fragment, error in self.errors.items():
            if fragment in sql:
                raise error
        self.executed.append(sql)

    def notifies(self, timeout=None, stop_after=None):
        try:
            item = self._incoming.get(timeout=min(timeout or 0.01, 0.01))
        except queue.Empty:
            return
        if isinstance(item, BaseException):
            raise item
        yield item

    def push(self, channel, payload):
        self._incoming.put(Notify(channel, payload, 1))

    def drop(self):
        self._incoming.put(psycopg.OperationalError('server closed the connection unexpectedly'))

    def close(self):
        self.closed = True


class GatedConnection(FakeNotifyConnection):
    """Holds every statement until `gate` is set."""

    def __init__(self):
        super().__init__()
        self.gate = threading.Event()

    def execute(self, sql):
        self.gate.wait(2)
        super().execute(sql)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def conn():
    return FakeNotifyConnection()


@pytest.fixture
def listener(conn):
    listener = Listener('postgresql://test@localhost/test', lambda: conn, poll_timeout=0.01)
    yield listener
    listener.close()


class TestListener:

    def test_single_listen_for_many_callbacks(self, listener, conn):
        listener.listen('events', lambda c, p: None)
        listener.listen('events', lambda c, p: None)
        listener.listen('other', None)
        assert conn.executed == ['LISTEN "events"', 'LISTEN "other"']
        assert listener.channels() == ['events', 'other']
        assert listener.is_listening('events')

    def test_notifications_fan_out(self, listener, conn):
        received = []
        done = threading.Event()

        def first(channel, payload):
            received.append(('first', channel, payload))

        def broken(channel, payload):
            raise RuntimeError('callback failed')

        def last(channel, payload):
            received.append(('last', channel, payload))
            done.set()

        for callback in (first, broken, last):
            listener.listen('events', callback)
        conn.push('events', 'hello')
        assert done.wait(2)
        assert received == [('first', 'events', 'hello'), ('last', 'events', 'hello')]

    def test_notification_for_other_channel_ignored(self, listener, conn):
        received = []
        listener.listen('events', lambda c, p: received.append(p))
        conn.push('unrelated', 'x')
        conn.push('events', 'y')
        assert wait_for(lambda: received == ['y'])

    def test_unlisten_calls_unlisten_callbacks(self, listener, conn):
        unlistened = []
        listener.listen('events', lambda c, p: None, unlistened.append)
        listener.listen('events', None, unlistened.append)
        listener.unlisten('events')
        assert conn.executed == ['LISTEN "events"', 'UNLISTEN "events"']
        assert unlistened == ['events', 'events']
        assert not listener.is_listening('events')

    def test_invalid_channel_name(self, listener, conn):
        with pytest.raises(ConfigurationError):
            listener.listen('bad channel', lambda c, p: None)
        assert conn.executed == []
        assert not listener.is_listening('bad channel')

    def test_failed_listen_unregisters_channel(self, listener, conn):
        conn.errors['LISTEN'] = RuntimeError('permission denied')
        with pytest.raises(QueryError, match='permission denied'):
            listener.listen('events', lambda c, p: None)
        assert not listener.is_listening('events')

    def test_concurrent_listen_shares_failure(self):
        conn = GatedConnection()
        conn.errors['LISTEN'] = RuntimeError('permission denied')
        listener = Listener('key', lambda: conn, poll_timeout=0.01)
        errors = {}

        def join(name):
            try:
                listener.listen('events', lambda c, p: None)
            except Exception as e:
                errors[name] = e

        try:
            first = threading.Thread(target=join, args=('first',))
            first.start()
            assert wait_for(lambda: listener.is_listening('events'))
            second = threading.Thread(target=join, args=('second',))
            second.start()
            assert wait_for(lambda: len(listener._on_notify.get('events', ())) == 2)
            conn.gate.set()
            first.join(2)
            second.join(2)
            assert isinstance(errors.get('first'), QueryError)
            assert isinstance(errors.get('second'), QueryError)
            assert not listener.is_listening('events')
        finally:
            conn.gate.set()
            listener.close()

    def test_command_timeout_raises_connection_failure(self, monkeypatch):
        monkeypatch.setattr('sqlrecord.listener.COMMAND_TIMEOUT', 0.05)
        conn = GatedConnection()
        listener = Listener('key', lambda: conn, poll_timeout=0.01)
        try:
            with pytest.raises(ConnectionFailure, match='did not run'):
                listener.listen('events', None)
            assert not listener.is_listening('events')
        finally:
            conn.gate.set()
            listener.close()

    def test_connection_loss_closes_listener(self, listener, conn):
        lost = threading.Event()
        unlistened = []

        def on_unlisten(channel):
            unlistened.append(channel)
            lost.set()

        listener.listen('events', lambda c, p: None, on_unlisten)
        conn.drop()
        assert lost.wait(2)
        assert wait_for(lambda: listener.closed)
        assert unlistened == ['events']
        assert conn.closed
        with pytest.raises(ConnectionFailure, match='closed'):
            listener.listen('events', lambda c, p: None)

    def test_close_calls_every_unlisten_callback(self, listener, conn):
        unlistened = []
        listener.listen('a', None, unlistened.append)
        listener.listen('b', None, unlistened.append)
        listener.close()
        listener.close()
        assert sorted(unlistened) == ['a', 'b']
        assert conn.closed

    def test_ping_after_idle_interval(self, conn):
        listener = Listener('key', lambda: conn, ping_interval=0.0, poll_timeout=0.01)
        try:
            assert wait_for(lambda: 'SELECT 1' in conn.executed)
        finally:
            listener.close()


class TestListenerRegistry:

    @pytest.fixture
    def registry(self):
        registry = ListenerRegistry()
        yield registry
        registry.close_all()

    def test_one_listener_per_key(self, registry):
        connections = []

        def connect():
            connections.append(FakeNotifyConnection())
            return connections[-1]

        registry.listen('db1', connect, 'a', lambda c, p: None)
        registry.listen('db1', connect, 'b', lambda c, p: None)
        registry.listen('db2', connect, 'a', lambda c, p: None)
        assert len(connections) == 2
        assert registry.is_listening('db1', 'b')
        assert not registry.is_listening('db2', 'b')
        assert not registry.is_listening('db3', 'a')

    def test_unlisten_without_listener(self, registry):
        with pytest.raises(ConnectionFailure):
            registry.unlisten('db1', 'a')

    def test_lost_listener_is_replaced(self, registry):
        connections = []

        def connect():
            connections.append(FakeNotifyConnection())
            return connections[-1]

        registry.listen('db1', connect, 'a', lambda c, p: None)
        first = registry.get('db1')
        connections[0].drop()
        assert wait_for(lambda: registry.get('db1') is None)
        registry.listen('db1', connect, 'a', lambda c, p: None)
        assert registry.get('db1') is not first
        assert len(connections) == 2

    def test_close_all(self, registry):
        unlistened = []
        conn = FakeNotifyConnection()
        registry.listen('db1', lambda: conn, 'a', None, unlistened.append)
        registry.close_all()
        assert unlistened == ['a']
        assert registry.get('db1') is None
        assert conn.closed


class TestConnectionHandle:

    @pytest.fixture(autouse=True)
    def close_listeners(self):
        yield
        ListenerRegistry.get_instance().close_all()

    def test_listen_on_channel(self, recording_cn, monkeypatch):
        conn = FakeNotifyConnection()
        monkeypatch.setattr(recording_cn.strategy, 'connect_listener', lambda options: conn)
        received = []
        recording_cn.listen_on_channel('jobs', lambda c, p: received.append(p))
        assert recording_cn.is_listening_on_channel('jobs')
        conn.push('jobs', '42')
        assert wait_for(lambda: received == ['42'])
        recording_cn.unlisten_channel('jobs')
        assert not recording_cn.is_listening_on_channel('jobs')
        assert conn.executed == ['LISTEN "jobs"', 'UNLISTEN "jobs"']

    def test_not_supported_by_sqlite(self, make_recording_cn):
        cn = make_recording_cn('sqlite')
        with pytest.raises(NotSupportedError):
            cn.listen_on_channel('jobs', lambda c, p: None)
        assert not cn.is_listening_on_channel('jobs')

    def test_not_available_in_transaction(self, recording_cn):
        tx = recording_cn.begin()
        with pytest.raises(WithinTransactionError):
            tx.listen_on_channel('jobs', lambda c, p: None)
        with pytest.raises(WithinTransactionError):
            tx.unlisten_channel('jobs')
        assert not tx.is_listening_on_channel('jobs')
        tx.rollback()
