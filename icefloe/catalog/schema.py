"""Table schemas and schema evolution.

A schema is an ordered struct of `NestedField`s. Field ids are permanent:
renames keep the id, drops retire it and additions always receive an id
above the table's `last-column-id`, so no id is ever reused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import replace
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

import pyarrow as pa

from ..exceptions import SchemaEvolutionError
from .types import BinaryType
from .types import BooleanType
from .types import DateType
from .types import DecimalType
from .types import DoubleType
from .types import FixedType
from .types import FloatType
from .types import IcebergType
from .types import IntegerType
from .types import ListType
from .types import LongType
from .types import MapType
from .types import NestedField
from .types import PrimitiveType
from .types import StringType
from .types import StructType
from .types import TimestampType
from .types import TimestamptzType
from .types import TimeType
from .types import UUIDType
from .types import field_from_json
from .types import field_to_json
from .types import nested_fields

logger = logging.getLogger(__name__)

FIELD_ID_KEY = b"PARQUET:field_id"
INITIAL_SCHEMA_ID = 0


class Schema:
    """An immutable, versioned set of columns."""

    def __init__(
        self,
        *fields: NestedField,
        schema_id: int = INITIAL_SCHEMA_ID,
        identifier_field_ids: Iterable[int] = (),
    ):
        self.fields: Tuple[NestedField, ...] = tuple(fields)
        self.schema_id = schema_id
        self.identifier_field_ids: Tuple[int, ...] = tuple(identifier_field_ids)
        self._by_id: Dict[int, NestedField] = {}
        self._by_name: Dict[str, NestedField] = {}
        self._index(self.fields, prefix="")

    def _index(self, fields: Sequence[NestedField], prefix: str) -> None:
        for f in fields:
            if f.field_id in self._by_id:
                raise SchemaEvolutionError(f"Duplicate field id {f.field_id} ({f.name})")
            self._by_id[f.field_id] = f
            name = f"{prefix}{f.name}"
            self._by_name[name] = f
            self._index(nested_fields(f.field_type), prefix=f"{name}.")

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, Schema)
            and self.fields == other.fields
            and self.schema_id == other.schema_id
            and self.identifier_field_ids == other.identifier_field_ids
        )

    def __hash__(self) -> int:
        return hash((self.fields, self.schema_id))

    def __repr__(self) -> str:
        return f"Schema({', '.join(repr(f) for f in self.fields)}, schema_id={self.schema_id})"

    def __str__(self) -> str:
        return "table {\n" + "\n".join(f"  {f}" for f in self.fields) + "\n}"

    def as_struct(self) -> StructType:
        return StructType(*self.fields)

    def same_columns(self, other: "Schema") -> bool:
        return self.fields == other.fields and self.identifier_field_ids == other.identifier_field_ids

    @property
    def field_ids(self) -> List[int]:
        return list(self._by_id)

    @property
    def highest_field_id(self) -> int:
        return max(self._by_id, default=0)

    def find_field(self, name_or_id: Any, case_sensitive: bool = True) -> NestedField:
        """Return a field by id or (dotted) name; raises ValueError when absent."""
        if isinstance(name_or_id, int):
            if name_or_id in self._by_id:
                return self._by_id[name_or_id]
            raise ValueError(f"Could not find field with id: {name_or_id}")
        if name_or_id in self._by_name:
            return self._by_name[name_or_id]
        if not case_sensitive:
            lowered = name_or_id.lower()
            for name, f in self._by_name.items():
                if name.lower() == lowered:
                    return f
        raise ValueError(f"Could not find field with name {name_or_id}")

    def find_column_name(self, field_id: int) -> Optional[str]:
        for name, f in self._by_name.items():
            if f.field_id == field_id:
                return name
        return None

    def find_type(self, name_or_id: Any, case_sensitive: bool = True) -> IcebergType:
        return self.find_field(name_or_id, case_sensitive).field_type

    def select(self, names: Iterable[str], case_sensitive: bool = True) -> "Schema":
        """Project top-level columns (dotted names select a whole top-level column)."""
        names = list(names)
        if not names or "*" in names:
            return self
        wanted = set()
        for name in names:
            top = name.split(".", 1)[0]
            wanted.add(self.find_field(top, case_sensitive).field_id)
        return Schema(
            *[f for f in self.fields if f.field_id in wanted],
            schema_id=self.schema_id,
            identifier_field_ids=[i for i in self.identifier_field_ids if i in wanted],
        )

    def to_dict(self) -> dict:
        return {
            "type": "struct",
            "schema-id": self.schema_id,
            "identifier-field-ids": list(self.identifier_field_ids),
            "fields": [field_to_json(f) for f in self.fields],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Schema":
        return cls(
            *[field_from_json(f) for f in data.get("fields", [])],
            schema_id=int(data.get("schema-id", INITIAL_SCHEMA_ID)),
            identifier_field_ids=data.get("identifier-field-ids") or (),
        )

    def to_arrow(self) -> pa.Schema:
        return pa.schema([_field_to_arrow(f) for f in self.fields])

    @classmethod
    def from_arrow(cls, arrow_schema: pa.Schema, schema_id: int = INITIAL_SCHEMA_ID) -> "Schema":
        """Convert a pyarrow schema, keeping `PARQUET:field_id` ids when present.

        Fields without ids are assigned fresh ones in depth-first order.
        """
        counter = _IdCounter(_max_arrow_field_id(list(arrow_schema)))
        fields = [_field_from_arrow(f, counter) for f in arrow_schema]
        return cls(*fields, schema_id=schema_id)


class _IdCounter:
    def __init__(self, start: int):
        self.last = start

    def next(self) -> int:
        self.last += 1
        return self.last


def _field_metadata(field_id: int) -> Dict[bytes, bytes]:
    return {FIELD_ID_KEY: str(field_id).encode()}


def type_to_arrow(field_type: IcebergType) -> pa.DataType:
    if isinstance(field_type, BooleanType):
        return pa.bool_()
    if isinstance(field_type, IntegerType):
        return pa.int32()
    if isinstance(field_type, LongType):
        return pa.int64()
    if isinstance(field_type, FloatType):
        return pa.float32()
    if isinstance(field_type, DoubleType):
        return pa.float64()
    if isinstance(field_type, DecimalType):
        return pa.decimal128(field_type.precision, field_type.scale)
    if isinstance(field_type, DateType):
        return pa.date32()
    if isinstance(field_type, TimeType):
        return pa.time64("us")
    if isinstance(field_type, TimestampType):
        return pa.timestamp("us")
    if isinstance(field_type, TimestamptzType):
        return pa.timestamp("us", tz="UTC")
    if isinstance(field_type, StringType):
        return pa.large_string()
    if isinstance(field_type, UUIDType):
        return pa.binary(16)
    if isinstance(field_type, FixedType):
        return pa.binary(field_type.length)
    if isinstance(field_type, BinaryType):
        return pa.large_binary()
    if isinstance(field_type, StructType):
        return pa.struct([_field_to_arrow(f) for f in field_type.fields])
    if isinstance(field_type, ListType):
        return pa.large_list(_field_to_arrow(field_type.element_field))
    if isinstance(field_type, MapType):
        return pa.map_(
            _field_to_arrow(field_type.key_field), _field_to_arrow(field_type.value_field)
        )
    raise TypeError(f"Unsupported type: {field_type}")


def _field_to_arrow(f: NestedField) -> pa.Field:
    return pa.field(
        f.name,
        type_to_arrow(f.field_type),
        nullable=not f.required,
        metadata=_field_metadata(f.field_id),
    )


def arrow_field_id(f: pa.Field) -> Optional[int]:
    if f.metadata and FIELD_ID_KEY in f.metadata:
        return int(f.metadata[FIELD_ID_KEY])
    return None


def arrow_children(arrow_type: pa.DataType) -> List[pa.Field]:
    if pa.types.is_struct(arrow_type):
        return [arrow_type.field(i) for i in range(arrow_type.num_fields)]
    if pa.types.is_map(arrow_type):
        return [arrow_type.key_field, arrow_type.item_field]
    if pa.types.is_list(arrow_type) or pa.types.is_large_list(arrow_type):
        return [arrow_type.value_field]
    return []


def _max_arrow_field_id(fields: List[pa.Field]) -> int:
    highest = 0
    for f in fields:
        highest = max(highest, arrow_field_id(f) or 0, _max_arrow_field_id(arrow_children(f.type)))
    return highest


def _type_from_arrow(arrow_type: pa.DataType, counter: _IdCounter) -> IcebergType:
    if pa.types.is_boolean(arrow_type):
        return BooleanType()
    if pa.types.is_int8(arrow_type) or pa.types.is_int16(arrow_type) or pa.types.is_int32(arrow_type):
        return IntegerType()
    if pa.types.is_uint8(arrow_type) or pa.types.is_uint16(arrow_type):
        return IntegerType()
    if pa.types.is_integer(arrow_type):
        return LongType()
    if pa.types.is_float16(arrow_type) or pa.types.is_float32(arrow_type):
        return FloatType()
    if pa.types.is_float64(arrow_type):
        return DoubleType()
    if pa.types.is_decimal(arrow_type):
        return DecimalType(arrow_type.precision, arrow_type.scale)
    if pa.types.is_date(arrow_type):
        return DateType()
    if pa.types.is_time(arrow_type):
        return TimeType()
    if pa.types.is_timestamp(arrow_type):
        return TimestamptzType() if arrow_type.tz else TimestampType()
    if pa.types.is_string(arrow_type) or pa.types.is_large_string(arrow_type):
        return StringType()
    if pa.types.is_fixed_size_binary(arrow_type):
        return FixedType(arrow_type.byte_width)
    if pa.types.is_binary(arrow_type) or pa.types.is_large_binary(arrow_type):
        return BinaryType()
    if pa.types.is_struct(arrow_type):
        return StructType(*[_field_from_arrow(f, counter) for f in arrow_children(arrow_type)])
    if pa.types.is_map(arrow_type):
        key = _field_from_arrow(arrow_type.key_field, counter)
        value = _field_from_arrow(arrow_type.item_field, counter)
        return MapType(key.field_id, key.field_type, value.field_id, value.field_type, value.required)
    if pa.types.is_list(arrow_type) or pa.types.is_large_list(arrow_type):
        element = _field_from_arrow(arrow_type.value_field, counter)
        return ListType(element.field_id, element.field_type, element.required)
    raise TypeError(f"Unsupported arrow type: {arrow_type}")


def _field_from_arrow(f: pa.Field, counter: _IdCounter) -> NestedField:
    field_id = arrow_field_id(f)
    if field_id is None:
        field_id = counter.next()
    return NestedField(
        field_id=field_id,
        name=f.name,
        field_type=_type_from_arrow(f.type, counter),
        required=not f.nullable,
    )


# --- Evolution ---------------------------------------------------------------


@dataclass(frozen=True)
class AddColumn:
    name: str
    field_type: IcebergType
    required: bool = False
    doc: Optional[str] = None
    initial_default: Any = None
    parent: Optional[str] = None
    field_id: Optional[int] = None


@dataclass(frozen=True)
class DeleteColumn:
    name: str


@dataclass(frozen=True)
class RenameColumn:
    name: str
    new_name: str


@dataclass(frozen=True)
class UpdateColumnType:
    name: str
    new_type: PrimitiveType


@dataclass(frozen=True)
class MakeColumnOptional:
    name: str


@dataclass(frozen=True)
class MoveColumn:
    """Move a column within its parent: `first=True`, or `before` / `after` a sibling."""

    name: str
    first: bool = False
    before: Optional[str] = None
    after: Optional[str] = None


@dataclass(frozen=True)
class SchemaUpdateResult:
    schema: Schema
    last_column_id: int


def is_valid_promotion(source: IcebergType, target: IcebergType) -> bool:
    """Widening-only promotions."""
    if source == target:
        return True
    if isinstance(source, IntegerType) and isinstance(target, LongType):
        return True
    if isinstance(source, FloatType) and isinstance(target, DoubleType):
        return True
    if isinstance(source, DecimalType) and isinstance(target, DecimalType):
        return target.scale == source.scale and target.precision >= source.precision
    return False


def _assign_fresh_ids(field_type: IcebergType, counter: _IdCounter) -> IcebergType:
    if isinstance(field_type, StructType):
        return StructType(
            *[
                replace(f, field_id=counter.next(), field_type=_assign_fresh_ids(f.field_type, counter))
                for f in field_type.fields
            ]
        )
    if isinstance(field_type, ListType):
        element_id = counter.next()
        return ListType(element_id, _assign_fresh_ids(field_type.element_type, counter), field_type.element_required)
    if isinstance(field_type, MapType):
        key_id = counter.next()
        value_id = counter.next()
        return MapType(
            key_id,
            _assign_fresh_ids(field_type.key_type, counter),
            value_id,
            _assign_fresh_ids(field_type.value_type, counter),
            field_type.value_required,
        )
    return field_type


class _MutableStruct:
    """Editable view of a struct used while applying changes."""

    def __init__(self, fields: Sequence[NestedField]):
        self.fields: List[NestedField] = list(fields)

    def index(self, name: str) -> int:
        for i, f in enumerate(self.fields):
            if f.name == name:
                return i
        raise SchemaEvolutionError(f"Cannot find column: {name}")


def _split(name: str) -> Tuple[Optional[str], str]:
    if "." in name:
        parent, leaf = name.rsplit(".", 1)
        return parent, leaf
    return None, name


def _get_struct(fields: List[NestedField], path: Optional[str]) -> List[NestedField]:
    """Return the (copied) field list of the struct at `path`."""
    if path is None:
        return fields
    head, _, rest = path.partition(".")
    for f in fields:
        if f.name == head:
            if not isinstance(f.field_type, StructType):
                raise SchemaEvolutionError(f"Cannot add or change fields inside non-struct: {head}")
            return _get_struct(list(f.field_type.fields), rest or None)
    raise SchemaEvolutionError(f"Cannot find parent struct: {path}")


def _set_struct(fields: List[NestedField], path: Optional[str], new_fields: List[NestedField]) -> List[NestedField]:
    if path is None:
        return new_fields
    head, _, rest = path.partition(".")
    out = []
    for f in fields:
        if f.name == head:
            children = _set_struct(list(f.field_type.fields), rest or None, new_fields)  # type: ignore[attr-defined]
            f = replace(f, field_type=StructType(*children))
        out.append(f)
    return out


def evolve_schema(
    current: Schema,
    changes: Iterable[Any],
    last_column_id: int,
    partition_specs: Iterable[Any] = (),
    new_schema_id: Optional[int] = None,
) -> SchemaUpdateResult:
    """Apply `changes` to `current` and return the new schema.

    `partition_specs` are the specs whose source columns must survive (the
    table's active spec). Raises SchemaEvolutionError for narrowing type
    changes, id collisions, illegal drops and unknown or duplicate names.
    """
    if last_column_id < current.highest_field_id:
        raise SchemaEvolutionError(
            f"last-column-id {last_column_id} is lower than the highest field id "
            f"{current.highest_field_id}"
        )

    protected = {pf.source_id for spec in partition_specs for pf in spec.fields}
    counter = _IdCounter(last_column_id)
    fields: List[NestedField] = list(current.fields)
    identifier_ids = list(current.identifier_field_ids)

    for change in changes:
        if isinstance(change, AddColumn):
            fields = _apply_add(fields, change, counter, current)
        elif isinstance(change, DeleteColumn):
            parent, leaf = _split(change.name)
            siblings = _get_struct(fields, parent)
            idx = _MutableStruct(siblings).index(leaf)
            doomed = siblings[idx]
            doomed_ids = {doomed.field_id} | set(Schema(doomed).field_ids)
            if doomed_ids & protected:
                raise SchemaEvolutionError(
                    f"Cannot delete column {change.name}: it is referenced by the partition spec"
                )
            if doomed.field_id in identifier_ids:
                raise SchemaEvolutionError(
                    f"Cannot delete identifier field {change.name}"
                )
            fields = _set_struct(fields, parent, siblings[:idx] + siblings[idx + 1 :])
            logger.debug("retired field ids %s", sorted(doomed_ids))
        elif isinstance(change, RenameColumn):
            parent, leaf = _split(change.name)
            siblings = _get_struct(fields, parent)
            idx = _MutableStruct(siblings).index(leaf)
            if "." in change.new_name:
                raise SchemaEvolutionError(f"Invalid column name: {change.new_name}")
            if any(f.name == change.new_name for i, f in enumerate(siblings) if i != idx):
                raise SchemaEvolutionError(f"Column already exists: {change.new_name}")
            siblings[idx] = replace(siblings[idx], name=change.new_name)
            fields = _set_struct(fields, parent, siblings)
        elif isinstance(change, UpdateColumnType):
            parent, leaf = _split(change.name)
            siblings = _get_struct(fields, parent)
            idx = _MutableStruct(siblings).index(leaf)
            old = siblings[idx]
            if not isinstance(old.field_type, PrimitiveType):
                raise SchemaEvolutionError(f"Cannot change the type of nested column {change.name}")
            if not is_valid_promotion(old.field_type, change.new_type):
                raise SchemaEvolutionError(
                    f"Cannot change column type: {change.name}: {old.field_type} -> {change.new_type}"
                )
            siblings[idx] = replace(old, field_type=change.new_type)
            fields = _set_struct(fields, parent, siblings)
        elif isinstance(change, MakeColumnOptional):
            parent, leaf = _split(change.name)
            siblings = _get_struct(fields, parent)
            idx = _MutableStruct(siblings).index(leaf)
            if siblings[idx].field_id in identifier_ids:
                raise SchemaEvolutionError(f"Identifier field {change.name} must stay required")
            siblings[idx] = replace(siblings[idx], required=False)
            fields = _set_struct(fields, parent, siblings)
        elif isinstance(change, MoveColumn):
            fields = _apply_move(fields, change)
        else:
            raise SchemaEvolutionError(f"Unknown schema change: {change!r}")

    schema_id = new_schema_id if new_schema_id is not None else current.schema_id + 1
    new_schema = Schema(*fields, schema_id=schema_id, identifier_field_ids=identifier_ids)
    return SchemaUpdateResult(schema=new_schema, last_column_id=counter.last)


def _apply_add(
    fields: List[NestedField], change: AddColumn, counter: _IdCounter, current: Schema
) -> List[NestedField]:
    if "." in change.name:
        raise SchemaEvolutionError(f"Invalid column name: {change.name} (use parent=...)")
    if change.required and change.initial_default is None:
        raise SchemaEvolutionError(
            f"Incompatible change: cannot add required column without a default: {change.name}"
        )
    siblings = _get_struct(fields, change.parent)
    if any(f.name == change.name for f in siblings):
        raise SchemaEvolutionError(f"Column already exists: {change.name}")

    if change.field_id is not None:
        if change.field_id <= counter.last or change.field_id in current.field_ids:
            raise SchemaEvolutionError(
                f"Field id {change.field_id} collides with an existing or retired id "
                f"(last assigned: {counter.last})"
            )
        counter.last = change.field_id
        field_id = change.field_id
    else:
        field_id = counter.next()

    new_field = NestedField(
        field_id=field_id,
        name=change.name,
        field_type=_assign_fresh_ids(change.field_type, counter),
        required=change.required,
        doc=change.doc,
        initial_default=change.initial_default,
    )
    return _set_struct(fields, change.parent, list(siblings) + [new_field])


def _apply_move(fields: List[NestedField], change: MoveColumn) -> List[NestedField]:
    parent, leaf = _split(change.name)
    siblings = _get_struct(fields, parent)
    idx = _MutableStruct(siblings).index(leaf)
    moving = siblings.pop(idx)
    if change.first:
        siblings.insert(0, moving)
    elif change.before is not None or change.after is not None:
        ref = change.before if change.before is not None else change.after
        _, ref_leaf = _split(ref)  # type: ignore[arg-type]
        if ref_leaf == leaf:
            raise SchemaEvolutionError(f"Cannot move {change.name} relative to itself")
        ref_idx = _MutableStruct(siblings).index(ref_leaf)
        siblings.insert(ref_idx if change.before is not None else ref_idx + 1, moving)
    else:
        raise SchemaEvolutionError(f"Move of {change.name} needs first, before or after")
    return _set_struct(fields, parent, siblings)


def retired_field_ids(before: Schema, after: Schema) -> List[int]:
    """Ids present in `before` that no longer exist in `after`."""
    remaining = set(after.field_ids)
    return sorted(i for i in before.field_ids if i not in remaining)
