"""Unit tests for cancellation tokens and deadlines."""
import gc
import logging

import pytest
from sqlrecord.context import Context, background
from sqlrecord.exceptions import Cancelled, ConfigurationError, DeadlineExceeded


def test_cancel_runs_callbacks_once():
    ctx = Context()
    calls = []
    ctx.on_cancel(lambda: calls.append(1))
    ctx.cancel()
    ctx.cancel()
    assert calls == [1]
    assert ctx.done()
    assert isinstance(ctx.error(), Cancelled)
    with pytest.raises(Cancelled, match='context canceled'):
        ctx.check()


def test_live_context_checks_clean():
    ctx = Context()
    ctx.check()
    assert not ctx.done()
    assert ctx.error() is None
    assert ctx.remaining() is None


def test_child_cancelled_with_parent():
    parent = Context()
    child = parent.child()
    parent.cancel()
    assert child.done()
    assert isinstance(child.error(), Cancelled)


def test_cancelling_child_leaves_parent():
    parent = Context()
    child = parent.child()
    child.cancel()
    assert not parent.done()


def test_child_of_cancelled_parent_starts_done():
    parent = Context()
    parent.cancel()
    assert parent.child().done()


def test_deadline_exceeded():
    ctx = Context.with_timeout(0.01)
    assert ctx.wait(2)
    with pytest.raises(DeadlineExceeded):
        ctx.check()


def test_zero_timeout_done_immediately():
    ctx = Context.with_timeout(0)
    assert ctx.done()
    assert isinstance(ctx.error(), DeadlineExceeded)
    assert ctx.remaining() == 0.0


def test_child_inherits_earlier_deadline():
    parent = Context.with_timeout(0.5)
    child = parent.child(timeout=60)
    assert child.deadline == parent.deadline
    shorter = parent.child(timeout=0.1)
    assert shorter.deadline < parent.deadline
    for ctx in (parent, child, shorter):
        ctx.close()


def test_on_cancel_after_done_runs_immediately():
    ctx = Context()
    ctx.cancel()
    calls = []
    ctx.on_cancel(lambda: calls.append(1))
    assert calls == [1]


def test_unregister_prevents_callback():
    ctx = Context()
    calls = []
    unregister = ctx.on_cancel(lambda: calls.append(1))
    unregister()
    ctx.cancel()
    assert calls == []


def test_failing_callback_logged(caplog):
    ctx = Context()
    calls = []

    def broken():
        raise RuntimeError('interrupt failed')

    ctx.on_cancel(broken)
    ctx.on_cancel(lambda: calls.append(1))
    with caplog.at_level(logging.ERROR, logger='sqlrecord.context'):
        ctx.cancel()
    assert calls == [1]
    assert 'cancel callback failed' in caplog.text


def test_close_detaches_from_parent():
    parent = Context()
    child = parent.child()
    child.close()
    parent.cancel()
    assert not child.done()


def test_background_never_done():
    ctx = background()
    assert ctx is background()
    assert not ctx.done()
    assert ctx.deadline is None


def test_background_cannot_be_cancelled():
    with pytest.raises(ConfigurationError):
        background().cancel()
    for _ in range(100):
        background().child()
    assert not background()._callbacks


def test_dropped_child_leaves_parent():
    parent = Context()
    for _ in range(100):
        parent.child()
    gc.collect()
    assert not parent._callbacks
    kept = parent.child()
    parent.cancel()
    assert kept.done()


if __name__ == '__main__':
    pytest.main([__file__])
