"""
Cancellation and deadline tokens carried by connection handles.

A `Context` is checked before every driver call and before every row
callback. Cancelling a context runs the registered cancel callbacks, which
the connection uses to interrupt a statement that is already running.
"""
import logging
import threading
import time
import weakref
from collections.abc import Callable

from sqlrecord.exceptions import Cancelled, ConfigurationError, DeadlineExceeded

logger = logging.getLogger(__name__)

__all__ = ['Context', 'background']


class Context:
    """Cancellation token with an optional deadline.

    Child contexts are cancelled together with their parent and inherit the
    earlier of the two deadlines. A parent holds its children weakly; a
    child that is dropped without `close()` leaves the parent.

    Examples
        ctx = Context.with_timeout(5)
        cn.with_context(ctx).execute('select pg_sleep(10)')  # raises DeadlineExceeded
    """
    can_cancel = True

    def __init__(self, parent: 'Context | None' = None,
                 deadline: float | None = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_key = 0
        self._error: Cancelled | None = None
        self._timer: threading.Timer | None = None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline
        self._unregister_parent = None
        if parent is not None and parent.can_cancel:
            child_ref = weakref.ref(self)

            def cancel_child() -> None:
                child = child_ref()
                if child is not None:
                    child._cancel(parent.error())

            self._unregister_parent = parent.on_cancel(cancel_child)
            weakref.finalize(self, self._unregister_parent)
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._cancel(DeadlineExceeded('context deadline exceeded'))
            else:
                self._timer = threading.Timer(
                    remaining, self._cancel, args=(DeadlineExceeded('context deadline exceeded'),))
                self._timer.daemon = True
                self._timer.start()

    @classmethod
    def with_timeout(cls, seconds: float, parent: 'Context | None' = None) -> 'Context':
        """Create a context that cancels itself after `seconds`."""
        return cls(parent=parent, deadline=time.monotonic() + seconds)

    def child(self, timeout: float | None = None) -> 'Context':
        """Derive a sub-token, optionally bounded by `timeout` seconds."""
        if timeout is None:
            return Context(parent=self)
        return Context.with_timeout(timeout, parent=self)

    def cancel(self) -> None:
        """Cancel the context and every context derived from it."""
        self._cancel(Cancelled('context canceled'))

    def _cancel(self, error: Cancelled | None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._error = error or Cancelled('context canceled')
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        if self._timer is not None:
            self._timer.cancel()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception('Context cancel callback failed')

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register `callback` to run when the context is cancelled.

        Runs immediately if the context is already done. Returns a function
        that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                key = self._next_key
                self._next_key += 1
                self._callbacks[key] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(key, None)
                return unregister
        callback()
        return lambda: None

    def done(self) -> bool:
        return self._event.is_set()

    def error(self) -> Cancelled | None:
        """The cancellation error, or None while the context is live."""
        return self._error

    def check(self) -> None:
        """Raise the cancellation error if the context is done."""
        if self._event.is_set():
            raise self._error

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def close(self) -> None:
        """Release the parent registration and the deadline timer."""
        if self._timer is not None:
            self._timer.cancel()
        if self._unregister_parent is not None:
            self._unregister_parent()
            self._unregister_parent = None


class _BackgroundContext(Context):
    """Root context without deadline that nothing can cancel."""
    can_cancel = False

    def cancel(self) -> None:
        raise ConfigurationError('the background context cannot be cancelled')

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        return lambda: None


_BACKGROUND = _BackgroundContext()


def background() -> Context:
    """The root context that is never cancelled."""
    return _BACKGROUND
