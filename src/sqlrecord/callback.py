"""
Per-row callbacks built from a function signature.

`make_row_callback` inspects a function once and returns a closure that
scans each row into fresh values matching the function's parameters:

    def on_user(ctx: Context, user_id: int, name: str): ...
    def on_user(user: User): ...

An optional leading `Context` parameter receives the handle's context.
The remaining parameters are either one per result column, scanned into
their annotated types, or a single dataclass parameter that receives a
record scanned with `scan_struct`.
"""
import dataclasses
import inspect
import logging
import typing
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from sqlrecord.context import Context
from sqlrecord.exceptions import ValidationError
from sqlrecord.types import _is_scanner_type

if TYPE_CHECKING:
    from sqlrecord.rows import Rows

logger = logging.getLogger(__name__)

__all__ = ['RowCallback', 'make_row_callback']

RowCallback = Callable[[Context, 'Rows'], None]

_VARIADIC = {inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD}


def _func_name(func: Callable) -> str:
    return getattr(func, '__qualname__', None) or repr(func)


def _resolve_hints(func: Callable) -> dict[str, Any]:
    target = func.__call__ if not inspect.isroutine(func) and callable(func) else func
    try:
        return typing.get_type_hints(target)
    except Exception as e:
        logger.debug(f'Could not resolve type hints of {_func_name(func)}: {e}')
        return {}


def _is_context_type(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, Context)


def _is_record_type(tp: Any) -> bool:
    """Dataclasses are records unless they scan themselves from one column."""
    return (isinstance(tp, type) and dataclasses.is_dataclass(tp)
            and not _is_scanner_type(tp))


def make_row_callback(func: Callable[..., Any]) -> RowCallback:
    """Build a per-row closure calling `func` with the scanned row.

    Raises
        ValidationError: If `func` is variadic, takes no row parameter,
            has a record parameter that is not the only row parameter, or
            declares a return type other than None.
    """
    if not callable(func):
        raise ValidationError(f'row callback must be callable, got {type(func).__name__}')
    name = _func_name(func)
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError) as e:
        raise ValidationError(f'cannot inspect row callback {name}: {e}') from e

    params = list(signature.parameters.values())
    if any(p.kind in _VARIADIC for p in params):
        raise ValidationError(f'row callback {name} must not be variadic')

    hints = _resolve_hints(func)
    returns = hints.get('return', signature.return_annotation)
    if returns not in {inspect.Signature.empty, None, type(None)}:
        raise ValidationError(f'row callback {name} must not return a value, declared {returns!r}')

    takes_context = bool(params) and _is_context_type(hints.get(params[0].name))
    if takes_context:
        params = params[1:]
    if not params:
        raise ValidationError(f'row callback {name} needs at least one row parameter')

    types = [hints.get(p.name, Any) for p in params]
    record_positions = [i for i, tp in enumerate(types) if _is_record_type(tp)]
    if record_positions:
        if len(params) != 1:
            raise ValidationError(
                f'row callback {name} takes a record parameter, which must be its only '
                'row parameter')
        record_type = types[0]

        def call_with_record(ctx: Context, rows: 'Rows') -> None:
            record = rows.scan_struct(record_type)
            if takes_context:
                func(ctx, record)
            else:
                func(record)
        return call_with_record

    def call_with_columns(ctx: Context, rows: 'Rows') -> None:
        values = rows.scan(*types)
        if takes_context:
            func(ctx, *values)
        else:
            func(*values)
    return call_with_columns
