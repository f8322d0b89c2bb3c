"""
Record round trips against an in-memory SQLite database.
"""
import datetime

import pytest
from sqlrecord.exceptions import NoRowsError, NotNullViolationError, UniqueViolationError
from sqlrecord.exceptions import is_not_null_violation, is_unique_violation
from sqlrecord.filters import only_columns

from tests.fixtures.records import Audit, Document, MultiPrimaryKeyRow, User

pytestmark = pytest.mark.sqlite


def test_connect_and_query_value(sqlite_cn):
    assert sqlite_cn.dialect == 'sqlite'
    assert sqlite_cn.query_value('SELECT COUNT(*) FROM test_table', type_=int) == 3
    assert sqlite_cn.query_value('SELECT value FROM test_table WHERE name = ?', 'Bob') == 20


def test_insert_struct_round_trip(sqlite_cn, users):
    for user in users:
        assert sqlite_cn.insert_struct(user) == 1

    loaded = sqlite_cn.query_row('SELECT * FROM users WHERE id = ?', 3).scan_struct(User)
    assert loaded.name == 'Charlie'
    assert loaded.email == 'charlie@example.com'
    assert loaded.score == 30.25
    assert loaded.active is True
    assert loaded.tags == ['a', 'b,c']
    assert isinstance(loaded.created_at, datetime.datetime)


def test_scan_into_existing_record(sqlite_cn, users):
    sqlite_cn.insert_struct(users[1])
    user = User(id=99, name='placeholder')
    sqlite_cn.query_row('SELECT id, name, email, active FROM users WHERE id = ?', 2).scan_struct(user)
    assert (user.id, user.name, user.email, user.active) == (2, 'Bob', None, False)
    assert user.score == 0.0


def test_query_structs_in_order(sqlite_cn, users):
    sqlite_cn.insert_structs(users)
    loaded = sqlite_cn.query_rows('SELECT * FROM users ORDER BY id').scan_struct_slice(User)
    assert [u.name for u in loaded] == ['Alice', 'Bob', 'Charlie']
    assert loaded[0].tags == ['admin']


def test_update_struct(sqlite_cn, users):
    alice = users[0]
    sqlite_cn.insert_struct(alice)
    alice.score = 99.5
    alice.tags = []
    assert sqlite_cn.update_struct(alice) == 1
    row = sqlite_cn.query_row('SELECT score, tags FROM users WHERE id = ?', alice.id)
    assert row.scan(float, list[str]) == (99.5, [])


def test_update_struct_missing_row(sqlite_cn):
    assert sqlite_cn.update_struct(User(id=404, name='nobody')) == 0


def test_upsert_idempotent(sqlite_cn, users):
    bob = users[1]
    sqlite_cn.upsert_struct(bob)
    sqlite_cn.upsert_struct(bob)
    bob.name = 'Robert'
    sqlite_cn.upsert_struct(bob)
    assert sqlite_cn.query_value('SELECT COUNT(*) FROM users', type_=int) == 1
    assert sqlite_cn.query_value('SELECT name FROM users WHERE id = ?', 2) == 'Robert'


def test_upsert_multi_primary_key(sqlite_cn):
    created = datetime.datetime(2024, 5, 6, 7, 8, 9)
    row = MultiPrimaryKeyRow('a', 'b', 'c', created)
    sqlite_cn.upsert_struct(row, table='multi_pk')
    row.created_at = created + datetime.timedelta(days=1)
    sqlite_cn.upsert_struct(row, table='multi_pk')
    loaded = sqlite_cn.query_row('SELECT * FROM multi_pk').scan_struct(MultiPrimaryKeyRow)
    assert loaded == row


def test_insert_unique(sqlite_cn):
    assert sqlite_cn.insert_unique('test_table', {'name': 'David', 'value': 40}, 'name') is True
    assert sqlite_cn.insert_unique('test_table', {'name': 'David', 'value': 41}, '(name)') is False
    assert sqlite_cn.query_value('SELECT value FROM test_table WHERE name = ?', 'David') == 40


def test_insert_and_update_column_values(sqlite_cn):
    sqlite_cn.insert('test_table', {'name': "Erik's", 'value': 5})
    assert sqlite_cn.update('test_table', {'value': 6}, 'name = ?', "Erik's") == 1
    assert sqlite_cn.query_value('SELECT value FROM test_table WHERE name = ?', "Erik's") == 6


def test_insert_returning(sqlite_cn):
    row = sqlite_cn.insert_returning('test_table', {'name': 'Eve', 'value': 50}, 'id')
    assert row.scan_value(int) == 4


def test_embedded_record(sqlite_cn):
    doc = Document(id=1, title='Plan', audit=Audit(created_by='erik'))
    sqlite_cn.insert_struct(doc)
    loaded = sqlite_cn.query_row('SELECT * FROM documents WHERE id = ?', 1).scan_struct(Document)
    assert loaded == doc
    doc.audit.updated_by = 'anna'
    sqlite_cn.update_struct(doc)
    assert sqlite_cn.query_value('SELECT updated_by FROM documents') == 'anna'


def test_column_filter(sqlite_cn, users):
    alice = users[0]
    sqlite_cn.insert_struct(alice)
    alice.name = 'Alicia'
    alice.score = 0.5
    sqlite_cn.update_struct(alice, only_columns('id', 'name'))
    assert sqlite_cn.query_row('SELECT name, score FROM users WHERE id = 1').scan(str, float) == (
        'Alicia', 10.5)


def test_unique_violation(sqlite_cn, users):
    sqlite_cn.insert_struct(users[0])
    duplicate = User(id=10, name='Alice')
    with pytest.raises(UniqueViolationError) as exc_info:
        sqlite_cn.insert_struct(duplicate)
    assert is_unique_violation(exc_info.value)
    assert is_unique_violation(exc_info.value, 'users.name')
    assert 'from query:' in str(exc_info.value)


def test_not_null_violation(sqlite_cn):
    with pytest.raises(NotNullViolationError) as exc_info:
        sqlite_cn.execute('INSERT INTO test_table (name) VALUES (?)', 'Zed')
    assert is_not_null_violation(exc_info.value)


def test_no_rows(sqlite_cn):
    with pytest.raises(NoRowsError):
        sqlite_cn.query_row('SELECT * FROM users WHERE id = ?', 1).scan_struct(User)


def test_for_each_row_call(sqlite_cn):
    seen = []

    def on_row(name: str, value: int):
        seen.append((name, value))

    sqlite_cn.query_rows('SELECT name, value FROM test_table ORDER BY id').for_each_row_call(on_row)
    assert seen == [('Alice', 10), ('Bob', 20), ('Charlie', 30)]


def test_for_each_row_with_record(sqlite_cn, users):
    sqlite_cn.insert_structs(users)
    names = []

    def on_user(user: User):
        names.append(user.name)

    sqlite_cn.query_rows('SELECT * FROM users ORDER BY id DESC').for_each_row_call(on_user)
    assert names == ['Charlie', 'Bob', 'Alice']


def test_scan_all_rows_as_strings(sqlite_cn):
    rows = sqlite_cn.query_rows('SELECT name, value FROM test_table ORDER BY id LIMIT 2')
    assert rows.scan_all_rows_as_strings(include_header=True) == [
        ['name', 'value'], ['Alice', '10'], ['Bob', '20']]
