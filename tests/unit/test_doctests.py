import doctest

import pytest
import sqlrecord.mapping
import sqlrecord.sql
import sqlrecord.strategy.sqlite
import sqlrecord.strategy.sqlserver
import sqlrecord.types


@pytest.mark.parametrize('module', [
    sqlrecord.sql,
    sqlrecord.mapping,
    sqlrecord.types,
    sqlrecord.strategy.sqlite,
    sqlrecord.strategy.sqlserver,
], ids=lambda m: m.__name__)
def test_module_examples(module):
    result = doctest.testmod(module, optionflags=4 | 8 | 32)
    assert result.attempted > 0
    assert result.failed == 0
