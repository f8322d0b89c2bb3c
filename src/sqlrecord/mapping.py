"""
Record <-> row mapping.

Records are dataclasses. Each field is mapped to a column by a field
mapper reading a tag from the field metadata:

    @dataclass
    class User:
        __tablename__ = 'public.user'

        id: int = db_field('id,pk')
        name: str = db_field('name')
        created_at: datetime | None = db_field('created_at,readonly,default')
        audit: Audit = embedded(Audit)

The tag grammar is `<name>[,<flag>[=<arg>]]*`. The primary key flag may
carry the table name (`id,pk=public.user`). `-` ignores the field.
"""
import dataclasses
import enum
import logging
import types
import typing
from collections.abc import Callable
from dataclasses import MISSING, dataclass
from typing import Any, NamedTuple

from sqlrecord.cache import cached
from sqlrecord.exceptions import ConfigurationError, ShapeError, ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    'FieldFlag',
    'FieldMapping',
    'TaggedFieldMapper',
    'ColumnInfo',
    'StructMapping',
    'FieldTarget',
    'DEFAULT_TAG_KEY',
    'DEFAULT_FIELD_MAPPER',
    'db_field',
    'embedded',
    'ignore_untagged',
    'identity_name',
    'to_snake_case',
    'get_struct_mapping',
    'new_record',
    'is_record',
    'record_type_of',
]

DEFAULT_TAG_KEY = 'db'
EMBED_KEY = 'sqlrecord.embed'


class FieldFlag(enum.Flag):
    NONE = 0
    PRIMARY_KEY = enum.auto()
    READ_ONLY = enum.auto()
    HAS_DEFAULT = enum.auto()


class FieldMapping(NamedTuple):
    """Result of mapping a single field.

    `column` is empty for an embedded record whose fields are mapped into
    the enclosing record.
    """
    table: str | None
    column: str
    flags: FieldFlag
    used: bool


_UNUSED = FieldMapping(None, '', FieldFlag.NONE, False)


def db_field(tag: str, **kwargs: Any) -> Any:
    """`dataclasses.field` carrying a column tag under the default tag key.
    """
    metadata = dict(kwargs.pop('metadata', None) or {})
    metadata[DEFAULT_TAG_KEY] = tag
    return dataclasses.field(metadata=metadata, **kwargs)


def embedded(record_type: type, tag: str | None = None, **kwargs: Any) -> Any:
    """Field whose record type is flattened into the enclosing record.

    Pass `tag='-'` to ignore the embedded record entirely.
    """
    metadata = dict(kwargs.pop('metadata', None) or {})
    metadata[EMBED_KEY] = True
    if tag is not None:
        metadata[DEFAULT_TAG_KEY] = tag
    kwargs.setdefault('default_factory', record_type)
    return dataclasses.field(metadata=metadata, **kwargs)


def ignore_untagged(name: str) -> str:
    """Untagged fields are not mapped."""
    return ''


def identity_name(name: str) -> str:
    """Untagged fields map to a column with the field name."""
    return name


def to_snake_case(name: str) -> str:
    """Convert a field name to snake case.

    Runs of uppercase letters stay together:

    >>> to_snake_case('UntaggedField')
    'untagged_field'
    >>> to_snake_case('DocumentID')
    'document_id'
    >>> to_snake_case('HTMLHandler')
    'htmlhandler'
    >>> to_snake_case('created_at')
    'created_at'
    """
    out = []
    last_was_upper = True
    for ch in name:
        is_upper = ch.isupper()
        if is_upper and not last_was_upper:
            out.append('_')
        out.append(ch.lower())
        last_was_upper = is_upper
    return ''.join(out)


@dataclass(frozen=True)
class TaggedFieldMapper:
    """Maps dataclass fields to columns using tags in the field metadata.

    The flag names and the untagged-name policy are configurable. Mappers
    are hashable and part of the struct mapping cache key.
    """
    tag_key: str = DEFAULT_TAG_KEY
    ignore: str = '-'
    primary_key: str = 'pk'
    read_only: str = 'readonly'
    has_default: str = 'default'
    untagged_name: Callable[[str], str] = ignore_untagged

    def map_field(self, field: dataclasses.Field) -> FieldMapping:
        tag = field.metadata.get(self.tag_key)
        if field.metadata.get(EMBED_KEY):
            if tag is None:
                return FieldMapping(None, '', FieldFlag.NONE, True)
            name = tag.split(',', 1)[0].strip()
            if name == self.ignore:
                return _UNUSED
            if not name:
                return FieldMapping(None, '', FieldFlag.NONE, True)
            return self._parse_tag(tag)

        if field.name.startswith('_'):
            return _UNUSED

        if tag is None:
            column = self.untagged_name(field.name)
            if not column or column == self.ignore:
                return _UNUSED
            return FieldMapping(None, column, FieldFlag.NONE, True)

        return self._parse_tag(tag)

    def _parse_tag(self, tag: str) -> FieldMapping:
        name, *segments = tag.split(',')
        name = name.strip()
        if name in {'', self.ignore}:
            return _UNUSED
        table = None
        flags = FieldFlag.NONE
        for segment in segments:
            flag, _, arg = segment.partition('=')
            flag = flag.strip()
            if not flag:
                continue
            if flag == self.primary_key:
                flags |= FieldFlag.PRIMARY_KEY
                table = arg.strip() or table
            elif flag == self.read_only:
                flags |= FieldFlag.READ_ONLY
            elif flag == self.has_default:
                flags |= FieldFlag.HAS_DEFAULT
        return FieldMapping(table, name, flags, True)


DEFAULT_FIELD_MAPPER = TaggedFieldMapper(untagged_name=to_snake_case)


@dataclass(frozen=True, slots=True)
class ColumnInfo:
    """Descriptor of one mapped column.

    `field_path` locates the field through embedded records,
    `embed_types` holds the record type at each embedded step.
    """
    name: str
    flags: FieldFlag
    field_path: tuple[str, ...]
    field_type: Any = Any
    embed_types: tuple[type, ...] = ()

    @property
    def field_name(self) -> str:
        return self.field_path[-1]

    @property
    def is_primary_key(self) -> bool:
        return bool(self.flags & FieldFlag.PRIMARY_KEY)

    @property
    def is_read_only(self) -> bool:
        return bool(self.flags & FieldFlag.READ_ONLY)

    @property
    def has_default(self) -> bool:
        return bool(self.flags & FieldFlag.HAS_DEFAULT)


def is_record(obj: Any) -> bool:
    """True for dataclass types and instances."""
    return dataclasses.is_dataclass(obj)


def record_type_of(record: Any) -> type:
    """Return the dataclass type of a record instance or type.

    Raises ValidationError for anything that is not a dataclass.
    """
    if isinstance(record, type):
        if not dataclasses.is_dataclass(record):
            raise ValidationError(f'{record.__name__} is not a dataclass record type')
        return record
    if record is None:
        raise ValidationError('record must not be None')
    if not dataclasses.is_dataclass(record):
        raise ValidationError(f'expected a dataclass record, got {type(record).__name__}')
    return type(record)


def _set_field(obj: Any, name: str, value: Any) -> None:
    params = getattr(type(obj), '__dataclass_params__', None)
    if params is not None and params.frozen:
        object.__setattr__(obj, name, value)
    else:
        setattr(obj, name, value)


def new_record(record_type: type) -> Any:
    """Allocate a record with field defaults applied.

    Fields without a default start as None. `__init__` and `__post_init__`
    are not run.
    """
    record = record_type.__new__(record_type)
    for f in dataclasses.fields(record_type):
        if f.default is not MISSING:
            value = f.default
        elif f.default_factory is not MISSING:
            value = f.default_factory()
        else:
            value = None
        object.__setattr__(record, f.name, value)
    return record


def _type_hints(record_type: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(record_type)
    except Exception as e:
        logger.debug(f'Could not resolve type hints of {record_type.__name__}: {e}')
        return {f.name: (f.type if not isinstance(f.type, str) else Any)
                for f in dataclasses.fields(record_type)}


def _unwrap_optional(tp: Any) -> Any:
    origin = typing.get_origin(tp)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


class FieldTarget:
    """Assignable location of a mapped field inside a record instance.
    """

    __slots__ = ('record', 'column')

    def __init__(self, record: Any, column: ColumnInfo) -> None:
        self.record = record
        self.column = column

    @property
    def field_type(self) -> Any:
        return self.column.field_type

    def _parent(self) -> Any:
        obj = self.record
        for name, embed_type in zip(self.column.field_path[:-1], self.column.embed_types):
            child = getattr(obj, name)
            if child is None:
                child = new_record(embed_type)
                _set_field(obj, name, child)
            obj = child
        return obj

    def get(self) -> Any:
        return getattr(self._parent(), self.column.field_name)

    def set(self, value: Any) -> None:
        _set_field(self._parent(), self.column.field_name, value)

    def __repr__(self) -> str:
        return f'FieldTarget({type(self.record).__name__}.{".".join(self.column.field_path)})'


@dataclass(frozen=True)
class StructMapping:
    """Ordered column descriptors of a record type.
    """
    record_type: type
    table_name: str | None
    columns: tuple[ColumnInfo, ...]
    by_name: dict[str, ColumnInfo]

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key_columns(self) -> list[ColumnInfo]:
        return [c for c in self.columns if c.is_primary_key]

    def get_value(self, record: Any, column: ColumnInfo) -> Any:
        obj = record
        for name in column.field_path[:-1]:
            obj = getattr(obj, name)
            if obj is None:
                return None
        return getattr(obj, column.field_name)

    def values(self, record: Any) -> list[Any]:
        return [self.get_value(record, c) for c in self.columns]

    def gather(self, record: Any, *filters: Callable[[ColumnInfo, Any], bool]
               ) -> tuple[list[ColumnInfo], list[int], list[Any]]:
        """Collect the columns, primary key indices and values of `record`.

        A column is skipped when any filter returns True for it.
        """
        columns: list[ColumnInfo] = []
        pk_indices: list[int] = []
        values: list[Any] = []
        for column in self.columns:
            value = self.get_value(record, column)
            if any(f(column, value) for f in filters):
                continue
            if column.is_primary_key:
                pk_indices.append(len(columns))
            columns.append(column)
            values.append(value)
        return columns, pk_indices, values

    def scan_targets(self, record: Any, column_names: list[str]) -> list[FieldTarget]:
        """Locate the field of `record` for each result column.

        Raises ShapeError for result columns without a mapped field and
        ConfigurationError when one field would receive two columns.
        """
        targets: list[FieldTarget | None] = [None] * len(column_names)
        assigned: dict[str, int] = {}
        for index, name in enumerate(column_names):
            column = self.by_name.get(name)
            if column is None:
                continue
            if name in assigned:
                raise ConfigurationError(
                    f'column {name!r} at index {index} maps to the same field of '
                    f'{self.record_type.__name__} as index {assigned[name]}')
            assigned[name] = index
            targets[index] = FieldTarget(record, column)

        unfilled = [(i, name) for i, name in enumerate(column_names) if targets[i] is None]
        if unfilled:
            details = ', '.join(f'{name!r} (index {i})' for i, name in unfilled)
            raise ShapeError(
                f'{self.record_type.__name__} has no mapped field for result columns: {details}')
        return targets


def _walk(record_type: type, mapper: TaggedFieldMapper, path: tuple[str, ...],
          embed_types: tuple[type, ...], visiting: frozenset,
          columns: list[ColumnInfo], tables: list[tuple[str, str]]) -> None:
    if record_type in visiting:
        raise ConfigurationError(f'record type {record_type.__name__} embeds itself')
    visiting = visiting | {record_type}
    hints = _type_hints(record_type)
    for field in dataclasses.fields(record_type):
        mapping = mapper.map_field(field)
        if not mapping.used:
            continue
        field_type = hints.get(field.name, Any)
        if not mapping.column:
            embed_type = _unwrap_optional(field_type)
            if not (isinstance(embed_type, type) and dataclasses.is_dataclass(embed_type)):
                raise ConfigurationError(
                    f'embedded field {record_type.__name__}.{field.name} is not a dataclass')
            _walk(embed_type, mapper, path + (field.name,), embed_types + (embed_type,),
                  visiting, columns, tables)
            continue
        columns.append(ColumnInfo(name=mapping.column, flags=mapping.flags,
                                  field_path=path + (field.name,), field_type=field_type,
                                  embed_types=embed_types))
        if mapping.table:
            tables.append((mapping.table, mapping.column))


@cached('struct_mappings', key=lambda record_type, mapper: (record_type, mapper), maxsize=None)
def _build_struct_mapping(record_type: type, mapper: TaggedFieldMapper) -> StructMapping:
    columns: list[ColumnInfo] = []
    tables: list[tuple[str, str]] = []
    _walk(record_type, mapper, (), (), frozenset(), columns, tables)

    by_name: dict[str, ColumnInfo] = {}
    for column in columns:
        if column.name in by_name:
            first = '.'.join(by_name[column.name].field_path)
            second = '.'.join(column.field_path)
            raise ConfigurationError(
                f'{record_type.__name__} maps column {column.name!r} twice: {first} and {second}')
        by_name[column.name] = column

    table_names = {table for table, _ in tables}
    class_table = getattr(record_type, '__tablename__', None)
    if class_table:
        table_names.add(class_table)
    if len(table_names) > 1:
        raise ConfigurationError(
            f'{record_type.__name__} has conflicting table names: {sorted(table_names)}')

    mapping = StructMapping(record_type=record_type,
                            table_name=next(iter(table_names), None),
                            columns=tuple(columns), by_name=by_name)
    logger.debug(f'Mapped {record_type.__name__} to columns {mapping.column_names}')
    return mapping


def get_struct_mapping(record: Any, mapper: TaggedFieldMapper | None = None) -> StructMapping:
    """Return the memoized mapping of a record instance or type.
    """
    return _build_struct_mapping(record_type_of(record), mapper or DEFAULT_FIELD_MAPPER)


if __name__ == '__main__':
    __import__('doctest').testmod(optionflags=4 | 8 | 32)
