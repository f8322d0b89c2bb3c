"""Unit tests for value binding and scanning.

Tests the public API:
- adapt_arg / adapt_args - Python values to driver values
- scan_value(value, dest) - Driver values to typed destinations
- split_array(text) - Textual array literals
- is_null / is_zero - Column filter predicates
"""
import datetime
import decimal
import enum
import json
import uuid

import numpy as np
import pandas as pd
import pytest
from sqlrecord.exceptions import TypeConversionError
from sqlrecord.strategy import get_strategy
from sqlrecord.types import adapt_arg, adapt_args, is_null, is_zero, scan_value
from sqlrecord.types import split_array, string_value


class Status(enum.Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'


class Priority(enum.IntEnum):
    LOW = 1
    HIGH = 2


class Money:
    """Scanner and Valuer storing cents."""

    def __init__(self, cents):
        self.cents = cents

    def db_value(self):
        return self.cents

    @classmethod
    def db_scan(cls, value):
        return cls(int(value))


class TestAdaptArg:

    def test_plain_values_unchanged(self):
        assert adapt_args((1, 'a', None, 1.5)) == [1, 'a', None, 1.5]

    def test_valuer(self):
        assert adapt_arg(Money(150)) == 150

    def test_enum(self):
        assert adapt_arg(Status.ACTIVE) == 'active'
        assert adapt_arg(Priority.HIGH) == 2

    def test_numpy_values(self):
        assert adapt_arg(np.int64(5)) == 5
        assert type(adapt_arg(np.int64(5))) is int
        assert adapt_arg(np.float64('nan')) is None
        assert adapt_arg(np.datetime64('NaT')) is None
        assert adapt_arg(np.array([1, 2])) == [1, 2]

    def test_pandas_missing_values(self):
        assert adapt_arg(pd.NA) is None
        assert adapt_arg(pd.NaT) is None
        assert adapt_arg(pd.Timestamp('2024-01-02 03:04:05')) == datetime.datetime(2024, 1, 2, 3, 4, 5)

    def test_postgres_arrays_and_json(self):
        strategy = get_strategy('postgresql')
        assert adapt_arg([Status.ACTIVE, 2], strategy) == ['active', 2]
        assert adapt_arg({'a': 1}, strategy).obj == {'a': 1}

    def test_sqlite_serializes_arrays_and_temporal_values(self):
        strategy = get_strategy('sqlite')
        assert adapt_arg(['a', 'b'], strategy) == '["a", "b"]'
        assert json.loads(adapt_arg({'when': datetime.date(2024, 1, 2)}, strategy)) == {'when': '2024-01-02'}
        assert adapt_arg(datetime.datetime(2024, 1, 2, 3, 4, 5), strategy) == '2024-01-02 03:04:05'
        assert adapt_arg(datetime.date(2024, 1, 2), strategy) == '2024-01-02'
        assert adapt_arg(decimal.Decimal('1.10'), strategy) == '1.10'
        assert adapt_arg(uuid.UUID(int=1), strategy) == '00000000-0000-0000-0000-000000000001'
        assert adapt_arg(np.float32(1.5), strategy) == 1.5


class TestScanValue:

    @pytest.mark.parametrize(('value', 'dest', 'expected'), [
        (1, int, 1),
        (1.9, int, 1),
        (decimal.Decimal('2'), int, 2),
        (np.int64(3), int, 3),
        (1, float, 1.0),
        ('1.25', decimal.Decimal, decimal.Decimal('1.25')),
        (1.5, decimal.Decimal, decimal.Decimal('1.5')),
        ('t', bool, True),
        ('false', bool, False),
        (0, bool, False),
        (b'abc', str, 'abc'),
        (uuid.UUID(int=1), str, '00000000-0000-0000-0000-000000000001'),
        ('abc', bytes, b'abc'),
        ('2024-01-02 03:04:05', datetime.datetime, datetime.datetime(2024, 1, 2, 3, 4, 5)),
        ('2024-01-02T03:04:05+00:00', datetime.datetime,
         datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.UTC)),
        (datetime.date(2024, 1, 2), datetime.datetime, datetime.datetime(2024, 1, 2)),
        ('2024-01-02', datetime.date, datetime.date(2024, 1, 2)),
        (datetime.datetime(2024, 1, 2, 3, 4), datetime.date, datetime.date(2024, 1, 2)),
        ('03:04:05', datetime.time, datetime.time(3, 4, 5)),
        ('00000000-0000-0000-0000-000000000001', uuid.UUID, uuid.UUID(int=1)),
        (uuid.UUID(int=1).bytes, uuid.UUID, uuid.UUID(int=1)),
        ('active', Status, Status.ACTIVE),
        ('ACTIVE', Status, Status.ACTIVE),
        (2, Priority, Priority.HIGH),
        ('{"a": 1}', dict, {'a': 1}),
        ('{1,2,3}', list[int], [1, 2, 3]),
        ('["a","b"]', list[str], ['a', 'b']),
        ('{t,f}', list[bool], [True, False]),
        ([1, 2], list[int], [1, 2]),
        ('{1,NULL}', list[int | None], [1, None]),
        ('{1,2}', tuple[int, ...], (1, 2)),
        (None, int | None, None),
        (None, list[str], None),
        (5, int | str, 5),
        ('x', object, 'x'),
    ])
    def test_scan(self, value, dest, expected):
        assert scan_value(value, dest) == expected

    def test_scan_any_returns_value(self):
        marker = object()
        assert scan_value(marker) is marker

    def test_scanner_type(self):
        assert scan_value('150', Money).cents == 150

    def test_scanner_elements_of_arrays(self):
        result = scan_value('{1,2}', list[Money])
        assert [m.cents for m in result] == [1, 2]

    @pytest.mark.parametrize(('value', 'dest'), [
        (None, int),
        (None, str),
        (True, int),
        ('abc', int),
        ('maybe', bool),
        ('x', decimal.Decimal),
        (b'\xff', str),
        ('not a date', datetime.date),
        ('bad', uuid.UUID),
        ('purple', Status),
        ('[1,2]', dict),
    ])
    def test_conversion_errors(self, value, dest):
        with pytest.raises(TypeConversionError):
            scan_value(value, dest)

    def test_error_message_names_destination(self):
        with pytest.raises(TypeConversionError, match="can't scan str value 'abc' as int"):
            scan_value('abc', int)


class TestSplitArray:

    @pytest.mark.parametrize(('text', 'expected'), [
        ('{}', []),
        ('[]', []),
        ('{1,2,3}', ['1', '2', '3']),
        ('{"a,b",NULL,c}', ['a,b', None, 'c']),
        ('{"NULL"}', ['NULL']),
        ('{ a , b }', ['a', 'b']),
        ('{"with \\"quote\\"","back\\\\slash"}', ['with "quote"', 'back\\slash']),
        ('["a","b c",null]', ['a', 'b c', None]),
        ('["a", "b,c" , null]', ['a', 'b,c', None]),
        ('["tab\\tnew\\nline","\\u00e9"]', ['tab\tnew\nline', 'é']),
        ('[[1,2],[3]]', ['[1,2]', '[3]']),
        ('{{1,2},{3,4}}', ['{1,2}', '{3,4}']),
        ('{{"a}",b},c}', ['{"a}",b}', 'c']),
        ('[{"a":"foo"},{"b":"bar"}]', ['{"a":"foo"}', '{"b":"bar"}']),
    ])
    def test_split(self, text, expected):
        assert split_array(text) == expected

    def test_json_surrogate_pair(self):
        assert split_array('["\\ud83d\\ude00", "\\u00e9"]') == ['\U0001F600', 'é']
        assert split_array('["\\ud83d\\ude00"]')[0].encode('utf-8') == b'\xf0\x9f\x98\x80'

    @pytest.mark.parametrize('text', ['', 'abc', '{1,2', '[1,2}', '{"unterminated}', '{{1,2}'])
    def test_invalid(self, text):
        with pytest.raises(TypeConversionError):
            split_array(text)


class TestPredicates:

    @pytest.mark.parametrize('value', [None, pd.NA, pd.NaT, np.float64('nan'), Money(None)])
    def test_is_null(self, value):
        assert is_null(value)

    @pytest.mark.parametrize('value', [0, '', 'x', Money(0), np.float64(1.0)])
    def test_is_not_null(self, value):
        assert not is_null(value)

    @pytest.mark.parametrize(('value', 'expected'), [
        (0, True),
        (0.0, True),
        ('', True),
        (False, True),
        ([], True),
        (uuid.UUID(int=0), True),
        (np.int32(0), True),
        (1, False),
        ('a', False),
        (uuid.UUID(int=1), False),
        (datetime.date(2024, 1, 1), False),
    ])
    def test_is_zero(self, value, expected):
        assert is_zero(value) is expected


def test_string_value():
    assert string_value(None) == ''
    assert string_value(b'abc') == 'abc'
    assert string_value(decimal.Decimal('1.5')) == '1.5'
