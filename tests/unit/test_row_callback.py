"""Unit tests for make_row_callback signature validation."""
from dataclasses import dataclass
from unittest.mock import MagicMock

import pytest
from sqlrecord.callback import make_row_callback
from sqlrecord.context import Context, background
from sqlrecord.exceptions import ValidationError
from sqlrecord.rows import Rows

from tests.fixtures.records import Document, User


def rows_returning(*values, record=None):
    rows = MagicMock()
    rows.scan.return_value = values
    rows.scan_struct.return_value = record
    return rows


def test_columns_scanned_into_annotated_types():
    seen = []

    def on_row(user_id: int, name: str) -> None:
        seen.append((user_id, name))

    rows = rows_returning(1, 'Alice')
    make_row_callback(on_row)(background(), rows)
    rows.scan.assert_called_once_with(int, str)
    assert seen == [(1, 'Alice')]


def test_unannotated_parameters_receive_driver_values():
    seen = []
    rows = rows_returning(1, None)
    make_row_callback(lambda a, b: seen.append((a, b)))(background(), rows)
    assert seen == [(1, None)]


def test_leading_context_parameter():
    seen = []

    def on_row(ctx: Context, name: str):
        seen.append((ctx, name))

    ctx = Context()
    rows = rows_returning('Alice')
    make_row_callback(on_row)(ctx, rows)
    rows.scan.assert_called_once_with(str)
    assert seen == [(ctx, 'Alice')]


def test_record_parameter():
    user = User(id=1, name='Alice')
    seen = []

    def on_user(user: User):
        seen.append(user)

    rows = rows_returning(record=user)
    make_row_callback(on_user)(background(), rows)
    rows.scan_struct.assert_called_once_with(User)
    assert seen == [user]


def test_callable_object():
    class Collector:
        def __init__(self):
            self.documents = []

        def __call__(self, ctx: Context, document: Document) -> None:
            self.documents.append(document)

    collector = Collector()
    document = Document(id=1, title='x')
    make_row_callback(collector)(background(), rows_returning(record=document))
    assert collector.documents == [document]


@pytest.mark.parametrize(('func', 'message'), [
    (lambda *args: None, 'variadic'),
    (lambda **kwargs: None, 'variadic'),
    (lambda: None, 'at least one row parameter'),
], ids=['var_positional', 'var_keyword', 'no_parameters'])
def test_rejected_signatures(func, message):
    with pytest.raises(ValidationError, match=message):
        make_row_callback(func)


def test_context_only_is_rejected():
    def only_context(ctx: Context):
        pass

    with pytest.raises(ValidationError, match='at least one row parameter'):
        make_row_callback(only_context)


def test_record_must_be_only_row_parameter():
    def mixed(user: User, extra: int):
        pass

    with pytest.raises(ValidationError, match='only row parameter'):
        make_row_callback(mixed)


def test_return_value_rejected():
    def returns_value(user_id: int) -> int:
        return user_id

    with pytest.raises(ValidationError, match='must not return a value'):
        make_row_callback(returns_value)


def test_not_callable():
    with pytest.raises(ValidationError, match='must be callable'):
        make_row_callback(42)


@dataclass
class Cents:
    amount: int

    @classmethod
    def db_scan(cls, value):
        return cls(int(value))


def test_scanner_dataclass_is_a_column():
    seen = []

    def on_row(price: Cents, quantity: int):
        seen.append((price, quantity))

    cursor = MagicMock()
    cursor.description = [('price', None), ('quantity', None)]
    cursor.fetchone.side_effect = [('150', 2), None]
    Rows(cursor).for_each_row_call(on_row)
    assert seen == [(Cents(150), 2)]
