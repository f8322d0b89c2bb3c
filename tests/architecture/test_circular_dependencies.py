import importlib
import sys

import pytest

MODULES = [
    # Independent modules (no internal deps)
    'sqlrecord.exceptions',
    'sqlrecord.cache',
    'sqlrecord.context',
    'sqlrecord.isolation',
    'sqlrecord.sql',

    # Mapping and value conversion
    'sqlrecord.types',
    'sqlrecord.mapping',
    'sqlrecord.filters',
    'sqlrecord.query',

    # Strategy and options
    'sqlrecord.strategy.base',
    'sqlrecord.strategy.postgres',
    'sqlrecord.strategy.sqlite',
    'sqlrecord.strategy.mysql',
    'sqlrecord.strategy.sqlserver',
    'sqlrecord.strategy',
    'sqlrecord.options',

    # Rows, transactions and connections
    'sqlrecord.callback',
    'sqlrecord.rows',
    'sqlrecord.transaction',
    'sqlrecord.listener',
    'sqlrecord.connection',

    # Main package
    'sqlrecord',
]


@pytest.fixture
def fresh_modules():
    saved = {k: v for k, v in sys.modules.items() if k.split('.')[0] == 'sqlrecord'}
    for name in saved:
        del sys.modules[name]
    yield
    for name in [k for k in sys.modules if k.split('.')[0] == 'sqlrecord']:
        del sys.modules[name]
    sys.modules.update(saved)


@pytest.mark.parametrize('module', MODULES)
def test_module_imports_first(fresh_modules, module):
    """Each module can be the first one imported from the package"""
    importlib.import_module(module)


if __name__ == '__main__':
    __import__('pytest').main([__file__])
