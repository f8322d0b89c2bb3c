"""Unit tests for dialect formatters and debug query rendering.

Tests the public API:
- QueryFormatter.quote_identifier / format_table_name / placeholder
- QueryFormatter.format_value - SQL rendering of argument values
- format_query(query, formatter, *args) - Substitution and normalization
"""
import datetime
import decimal
import enum
import uuid

import pytest
from sqlrecord.exceptions import ConfigurationError
from sqlrecord.sql import MySQLFormatter, PostgresFormatter, SQLiteFormatter
from sqlrecord.sql import SQLServerFormatter, format_query, format_timestamp
from sqlrecord.sql import normalize_query

PLUS_7 = datetime.timezone(datetime.timedelta(hours=7))


class DriverValuer:

    def db_value(self):
        return 'A driver.Valuer'


class NullValuer:

    def db_value(self):
        return None


class Color(enum.Enum):
    RED = 'red'


class TestFormatValue:

    @pytest.mark.parametrize(('value', 'expected'), [
        (None, 'NULL'),
        (NullValuer(), 'NULL'),
        (DriverValuer(), "'A driver.Valuer'"),
        (True, 'TRUE'),
        (False, 'FALSE'),
        ('Hello World!', "'Hello World!'"),
        ('', "''"),
        (b'Hello World!', "'Hello World!'"),
        (b'[1,2,3]', "'[1,2,3]'"),
        ('[1,2,3]', "'[1,2,3]'"),
        (b'[{"a":"foo"},{"b":"bar"}]', '\'[{"a":"foo"},{"b":"bar"}]\''),
        (b'\xff\x00', "'\\xff00'"),
        (42, '42'),
        (1.5, '1.5'),
        (decimal.Decimal('1.10'), '1.10'),
        (Color.RED, "'red'"),
        (uuid.UUID(int=1), "'00000000-0000-0000-0000-000000000001'"),
        (datetime.date(2024, 1, 2), "'2024-01-02'"),
        ({'a': 1}, '\'{"a": 1}\''),
    ], ids=['none', 'null_valuer', 'valuer', 'true', 'false', 'string', 'empty_string',
            'bytes', 'byte_array', 'string_array', 'object_array', 'non_utf8', 'int', 'float',
            'decimal', 'enum', 'uuid', 'date', 'dict'])
    def test_format_value(self, value, expected):
        assert PostgresFormatter().format_value(value) == expected

    def test_postgres_list_renders_array_literal(self):
        fmt = PostgresFormatter()
        assert fmt.format_value([1, 2, None]) == "'{1,2,NULL}'"
        assert fmt.format_value(['a', 'b "c"']) == '\'{"a","b \\"c\\""}\''
        assert fmt.format_value([[True], [False]]) == "'{{t},{f}}'"

    def test_other_dialects_render_json_arrays(self):
        assert SQLiteFormatter().format_value([1, 'a']) == '\'[1, "a"]\''

    def test_quotes_doubled(self):
        assert PostgresFormatter().format_value("Erik's") == "'Erik''s'"
        assert MySQLFormatter().format_value('a\\b') == "'a\\\\b'"


class TestFormatTimestamp:

    def test_offset_and_fraction(self):
        value = datetime.datetime(2006, 1, 2, 15, 4, 5, 999999, tzinfo=PLUS_7)
        assert format_timestamp(value) == "'2006-01-02 15:04:05.999999+07:00:00'"

    def test_trailing_zeros_trimmed(self):
        value = datetime.datetime(2006, 1, 2, 15, 4, 5, 120000)
        assert format_timestamp(value) == "'2006-01-02 15:04:05.12'"

    def test_utc(self):
        value = datetime.datetime(2006, 1, 2, 15, 4, 5, tzinfo=datetime.UTC)
        assert format_timestamp(value) == "'2006-01-02 15:04:05Z'"

    def test_negative_offset(self):
        tz = datetime.timezone(-datetime.timedelta(hours=3, minutes=30))
        value = datetime.datetime(2006, 1, 2, 15, 4, 5, tzinfo=tz)
        assert format_timestamp(value) == "'2006-01-02 15:04:05-03:30:00'"


class TestFormatQuery:

    def test_multiline_query_dedented(self):
        query = """

	  SELECT *
	  FROM public.user


	  WHERE
	  	name = $3
	  	AND
	  	active = $2
	  	AND
	  	created_at >= $1
	"""
        expected = """SELECT *
FROM public.user
WHERE
	name = 'Erik''s Test'
	AND
	active = TRUE
	AND
	created_at >= '2006-01-02 15:04:05.999999+07:00:00'"""
        created_at = datetime.datetime(2006, 1, 2, 15, 4, 5, 999999, tzinfo=PLUS_7)
        assert format_query(query, PostgresFormatter(), created_at, True, "Erik's Test") == expected

    def test_single_line_query(self):
        query = 'UPDATE table SET "v1"=$1,v2=$2 ,"v3" = $3'
        expected = 'UPDATE table SET "v1"=\'\',v2=2 ,"v3" = \'3\''
        assert format_query(query, PostgresFormatter(), '', 2, '3') == expected

    def test_high_placeholders_replaced_first(self):
        args = list(range(1, 12))
        query = 'SELECT $1, $10, $11'
        assert format_query(query, PostgresFormatter(), *args) == 'SELECT 1, 10, 11'

    def test_positional_placeholders_in_order(self):
        query = '  SELECT * FROM t WHERE a = ? AND b = ?  '
        assert format_query(query, SQLiteFormatter(), 1, 'x') == "SELECT * FROM t WHERE a = 1 AND b = 'x'"

    def test_sqlserver_placeholders(self):
        assert format_query('SELECT @p1, @p2', SQLServerFormatter(), 1, None) == 'SELECT 1, NULL'

    def test_normalize_without_common_indent(self):
        assert normalize_query('  a\nb  \n\n') == '  a\nb'


class TestIdentifiers:

    @pytest.mark.parametrize(('formatter', 'name', 'expected'), [
        (PostgresFormatter(), 'created_at', '"created_at"'),
        (SQLiteFormatter(), 'created_at', '"created_at"'),
        (MySQLFormatter(), 'created_at', '`created_at`'),
        (SQLServerFormatter(), 'created_at', '[created_at]'),
    ], ids=['postgresql', 'sqlite', 'mysql', 'mssql'])
    def test_quote_identifier(self, formatter, name, expected):
        assert formatter.quote_identifier(name) == expected

    @pytest.mark.parametrize('name', ['', '1abc', 'a b', 'a"b', 'x' * 64, 'drop;'])
    def test_postgres_rejects(self, name):
        with pytest.raises(ConfigurationError):
            PostgresFormatter().quote_identifier(name)

    def test_generic_pattern_allows_leading_digit(self):
        assert MySQLFormatter().quote_identifier('1abc') == '`1abc`'

    def test_table_name_kept_unquoted(self):
        assert PostgresFormatter().format_table_name('public.User') == 'public.User'

    @pytest.mark.parametrize(('formatter', 'expected'), [
        (PostgresFormatter(), ['$1', '$2', '$3']),
        (SQLiteFormatter(), ['?', '?', '?']),
        (MySQLFormatter(), ['?', '?', '?']),
        (SQLServerFormatter(), ['@p1', '@p2', '@p3']),
    ], ids=['postgresql', 'sqlite', 'mysql', 'mssql'])
    def test_placeholders(self, formatter, expected):
        assert formatter.placeholders(3) == expected
