"""Column types and fields.

Types are immutable values. Every field carries a permanent integer id; names
are only labels and may change across schema versions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Optional
from typing import Tuple

from ..exceptions import CorruptMetadataError

DECIMAL_REGEX = re.compile(r"^decimal\(\s*(\d+)\s*,\s*(\d+)\s*\)$")
FIXED_REGEX = re.compile(r"^fixed\[\s*(\d+)\s*\]$")


class IcebergType:
    """Base of all column types."""

    @property
    def is_primitive(self) -> bool:
        return isinstance(self, PrimitiveType)

    @property
    def is_struct(self) -> bool:
        return isinstance(self, StructType)


class PrimitiveType(IcebergType):
    name: str = ""

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(type(self).__name__)


class BooleanType(PrimitiveType):
    name = "boolean"


class IntegerType(PrimitiveType):
    name = "int"


class LongType(PrimitiveType):
    name = "long"


class FloatType(PrimitiveType):
    name = "float"


class DoubleType(PrimitiveType):
    name = "double"


class DateType(PrimitiveType):
    name = "date"


class TimeType(PrimitiveType):
    name = "time"


class TimestampType(PrimitiveType):
    name = "timestamp"


class TimestamptzType(PrimitiveType):
    name = "timestamptz"


class StringType(PrimitiveType):
    name = "string"


class UUIDType(PrimitiveType):
    name = "uuid"


class BinaryType(PrimitiveType):
    name = "binary"


class DecimalType(PrimitiveType):
    def __init__(self, precision: int, scale: int):
        self.precision = precision
        self.scale = scale

    @property
    def name(self) -> str:  # type: ignore[override]
        return f"decimal({self.precision}, {self.scale})"

    def __repr__(self) -> str:
        return f"DecimalType(precision={self.precision}, scale={self.scale})"

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, DecimalType)
            and self.precision == other.precision
            and self.scale == other.scale
        )

    def __hash__(self) -> int:
        return hash(("decimal", self.precision, self.scale))


class FixedType(PrimitiveType):
    def __init__(self, length: int):
        self.length = length

    @property
    def name(self) -> str:  # type: ignore[override]
        return f"fixed[{self.length}]"

    def __repr__(self) -> str:
        return f"FixedType(length={self.length})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, FixedType) and self.length == other.length

    def __hash__(self) -> int:
        return hash(("fixed", self.length))


@dataclass(frozen=True)
class NestedField:
    field_id: int
    name: str
    field_type: IcebergType
    required: bool = False
    doc: Optional[str] = None
    initial_default: Any = None

    def __str__(self) -> str:
        req = "required" if self.required else "optional"
        return f"{self.field_id}: {self.name}: {req} {self.field_type}"


@dataclass(frozen=True)
class StructType(IcebergType):
    fields: Tuple[NestedField, ...]

    def __init__(self, *fields: NestedField):
        object.__setattr__(self, "fields", tuple(fields))

    def field(self, field_id: int) -> Optional[NestedField]:
        for f in self.fields:
            if f.field_id == field_id:
                return f
        return None

    def field_by_name(self, name: str, case_sensitive: bool = True) -> Optional[NestedField]:
        for f in self.fields:
            if f.name == name or (not case_sensitive and f.name.lower() == name.lower()):
                return f
        return None

    def __str__(self) -> str:
        return "struct<" + ", ".join(str(f) for f in self.fields) + ">"


@dataclass(frozen=True)
class ListType(IcebergType):
    element_id: int
    element_type: IcebergType
    element_required: bool = True

    @property
    def element_field(self) -> NestedField:
        return NestedField(self.element_id, "element", self.element_type, self.element_required)

    def __str__(self) -> str:
        return f"list<{self.element_type}>"


@dataclass(frozen=True)
class MapType(IcebergType):
    key_id: int
    key_type: IcebergType
    value_id: int
    value_type: IcebergType
    value_required: bool = True

    @property
    def key_field(self) -> NestedField:
        return NestedField(self.key_id, "key", self.key_type, True)

    @property
    def value_field(self) -> NestedField:
        return NestedField(self.value_id, "value", self.value_type, self.value_required)

    def __str__(self) -> str:
        return f"map<{self.key_type}, {self.value_type}>"


_PRIMITIVES: Dict[str, PrimitiveType] = {
    t.name: t
    for t in (
        BooleanType(),
        IntegerType(),
        LongType(),
        FloatType(),
        DoubleType(),
        DateType(),
        TimeType(),
        TimestampType(),
        TimestamptzType(),
        StringType(),
        UUIDType(),
        BinaryType(),
    )
}


def nested_fields(field_type: IcebergType) -> Tuple[NestedField, ...]:
    """Direct children of a nested type (struct fields, list element, map key/value)."""
    if isinstance(field_type, StructType):
        return field_type.fields
    if isinstance(field_type, ListType):
        return (field_type.element_field,)
    if isinstance(field_type, MapType):
        return (field_type.key_field, field_type.value_field)
    return ()


def type_to_json(field_type: IcebergType) -> Any:
    if isinstance(field_type, PrimitiveType):
        if isinstance(field_type, DecimalType):
            return f"decimal({field_type.precision},{field_type.scale})"
        return str(field_type)
    if isinstance(field_type, StructType):
        return {"type": "struct", "fields": [field_to_json(f) for f in field_type.fields]}
    if isinstance(field_type, ListType):
        return {
            "type": "list",
            "element-id": field_type.element_id,
            "element": type_to_json(field_type.element_type),
            "element-required": field_type.element_required,
        }
    if isinstance(field_type, MapType):
        return {
            "type": "map",
            "key-id": field_type.key_id,
            "key": type_to_json(field_type.key_type),
            "value-id": field_type.value_id,
            "value": type_to_json(field_type.value_type),
            "value-required": field_type.value_required,
        }
    raise TypeError(f"Unknown type: {field_type!r}")


def field_to_json(f: NestedField) -> dict:
    out: Dict[str, Any] = {
        "id": f.field_id,
        "name": f.name,
        "required": f.required,
        "type": type_to_json(f.field_type),
    }
    if f.doc is not None:
        out["doc"] = f.doc
    if f.initial_default is not None:
        out["initial-default"] = f.initial_default
    return out


def type_from_json(data: Any) -> IcebergType:
    """Parse the JSON form of a type. Raises CorruptMetadataError on garbage."""
    if isinstance(data, str):
        text = data.strip()
        if text in _PRIMITIVES:
            return _PRIMITIVES[text]
        m = DECIMAL_REGEX.match(text)
        if m:
            return DecimalType(int(m.group(1)), int(m.group(2)))
        m = FIXED_REGEX.match(text)
        if m:
            return FixedType(int(m.group(1)))
        raise CorruptMetadataError(f"Unknown type: {data!r}")
    if isinstance(data, dict):
        kind = data.get("type")
        try:
            if kind == "struct":
                return StructType(*[field_from_json(f) for f in data["fields"]])
            if kind == "list":
                return ListType(
                    element_id=int(data["element-id"]),
                    element_type=type_from_json(data["element"]),
                    element_required=bool(data.get("element-required", True)),
                )
            if kind == "map":
                return MapType(
                    key_id=int(data["key-id"]),
                    key_type=type_from_json(data["key"]),
                    value_id=int(data["value-id"]),
                    value_type=type_from_json(data["value"]),
                    value_required=bool(data.get("value-required", True)),
                )
        except (KeyError, TypeError, ValueError) as err:
            raise CorruptMetadataError(f"Malformed {kind} type: {data!r}") from err
    raise CorruptMetadataError(f"Unknown type: {data!r}")


def field_from_json(data: Any) -> NestedField:
    if not isinstance(data, dict):
        raise CorruptMetadataError(f"Malformed field: {data!r}")
    try:
        return NestedField(
            field_id=int(data["id"]),
            name=str(data["name"]),
            field_type=type_from_json(data["type"]),
            required=bool(data.get("required", False)),
            doc=data.get("doc"),
            initial_default=data.get("initial-default"),
        )
    except (KeyError, TypeError, ValueError) as err:
        raise CorruptMetadataError(f"Malformed field: {data!r}") from err
