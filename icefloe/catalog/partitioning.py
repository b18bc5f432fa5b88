from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional
from typing import Tuple

from ..exceptions import PartitionEvolutionError
from .conversions import to_internal
from .schema import Schema
from .transforms import BucketTransform
from .transforms import IdentityTransform
from .transforms import Transform
from .transforms import TruncateTransform
from .transforms import VoidTransform
from .transforms import bind_transform
from .transforms import parse_transform
from .types import NestedField
from .types import StructType

logger = logging.getLogger(__name__)

PARTITION_FIELD_ID_START = 1000
INITIAL_SPEC_ID = 0


@dataclass(frozen=True)
class PartitionField:
    source_id: int
    field_id: int
    transform: Transform
    name: str

    def to_dict(self) -> dict:
        return {
            "source-id": self.source_id,
            "field-id": self.field_id,
            "transform": str(self.transform),
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PartitionField":
        return cls(
            source_id=int(data["source-id"]),
            field_id=int(data["field-id"]),
            transform=parse_transform(data["transform"]),
            name=str(data["name"]),
        )


class PartitionSpec:
    """Maps source columns through transforms to the partition tuple of a data file."""

    def __init__(self, *fields: PartitionField, spec_id: int = INITIAL_SPEC_ID):
        self.fields: Tuple[PartitionField, ...] = tuple(fields)
        self.spec_id = spec_id

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, PartitionSpec)
            and self.spec_id == other.spec_id
            and self.fields == other.fields
        )

    def __hash__(self) -> int:
        return hash((self.spec_id, self.fields))

    def __repr__(self) -> str:
        return f"PartitionSpec({', '.join(repr(f) for f in self.fields)}, spec_id={self.spec_id})"

    def compatible_with(self, other: "PartitionSpec") -> bool:
        """Same fields, ignoring the spec id."""
        return self.fields == other.fields

    def is_unpartitioned(self) -> bool:
        return all(isinstance(f.transform, VoidTransform) for f in self.fields)

    @property
    def last_assigned_field_id(self) -> int:
        return max((f.field_id for f in self.fields), default=PARTITION_FIELD_ID_START - 1)

    def fields_by_source_id(self, source_id: int) -> List[PartitionField]:
        return [f for f in self.fields if f.source_id == source_id]

    def partition_type(self, schema: Schema) -> StructType:
        """Struct type of this spec's partition tuples under `schema`."""
        out = []
        for pf in self.fields:
            try:
                source_type = schema.find_type(pf.source_id)
            except ValueError as err:
                raise PartitionEvolutionError(
                    f"Partition field {pf.name} references missing column {pf.source_id}"
                ) from err
            out.append(
                NestedField(
                    field_id=pf.field_id,
                    name=pf.name,
                    field_type=pf.transform.result_type(source_type),
                    required=False,
                )
            )
        return StructType(*out)

    def partition(self, schema: Schema, source_values: Mapping[int, Any]) -> Tuple[Any, ...]:
        """Partition tuple for a record given internal values keyed by source field id."""
        values = []
        for pf in self.fields:
            transform = bind_transform(pf.transform, schema.find_type(pf.source_id))
            values.append(transform.apply(source_values.get(pf.source_id)))
        return tuple(values)

    def partition_for_row(self, schema: Schema, row: Mapping[str, Any]) -> Tuple[Any, ...]:
        """Partition tuple for a row of Python literals keyed by column name."""
        source_values: Dict[int, Any] = {}
        for pf in self.fields:
            name = schema.find_column_name(pf.source_id)
            if name is None:
                raise PartitionEvolutionError(f"Unknown partition source column {pf.source_id}")
            source_values[pf.source_id] = to_internal(schema.find_type(pf.source_id), row.get(name))
        return self.partition(schema, source_values)

    def partition_to_path(self, values: Iterable[Any]) -> str:
        return "/".join(f"{pf.name}={v}" for pf, v in zip(self.fields, values))

    def to_dict(self) -> dict:
        return {"spec-id": self.spec_id, "fields": [f.to_dict() for f in self.fields]}

    @classmethod
    def from_dict(cls, data: dict) -> "PartitionSpec":
        return cls(
            *[PartitionField.from_dict(f) for f in data.get("fields", [])],
            spec_id=int(data.get("spec-id", INITIAL_SPEC_ID)),
        )


UNPARTITIONED_PARTITION_SPEC = PartitionSpec(spec_id=INITIAL_SPEC_ID)


@dataclass(frozen=True)
class AddPartitionField:
    source_name: str
    transform: Transform
    name: Optional[str] = None


@dataclass(frozen=True)
class RemovePartitionField:
    name: str


@dataclass(frozen=True)
class RenamePartitionField:
    name: str
    new_name: str


@dataclass(frozen=True)
class PartitionUpdateResult:
    spec: PartitionSpec
    last_partition_id: int


def default_partition_name(source_name: str, transform: Transform) -> str:
    if isinstance(transform, IdentityTransform):
        return source_name
    if isinstance(transform, BucketTransform):
        return f"{source_name}_bucket_{transform.num_buckets}"
    if isinstance(transform, TruncateTransform):
        return f"{source_name}_trunc_{transform.width}"
    if isinstance(transform, VoidTransform):
        return f"{source_name}_null"
    return f"{source_name}_{transform}"


def evolve_partition_spec(
    current: PartitionSpec,
    schema: Schema,
    changes: Iterable[Any],
    last_partition_id: int,
    existing_specs: Iterable[PartitionSpec] = (),
) -> PartitionUpdateResult:
    """Apply partition changes to `current`.

    Field ids of (source, transform) pairs seen in any earlier spec are
    reused; new pairs get ids above `last_partition_id`. When the resulting
    field list matches an existing spec, that spec is returned unchanged.
    """
    existing_specs = list(existing_specs)
    fields: List[PartitionField] = list(current.fields)
    last_id = max(last_partition_id, PARTITION_FIELD_ID_START - 1)

    historical: Dict[Tuple[int, str], int] = {}
    for spec in existing_specs + [current]:
        for pf in spec.fields:
            historical[(pf.source_id, str(pf.transform))] = pf.field_id

    for change in changes:
        if isinstance(change, AddPartitionField):
            try:
                source = schema.find_field(change.source_name)
            except ValueError as err:
                raise PartitionEvolutionError(f"Cannot find source column: {change.source_name}") from err
            if not change.transform.can_transform(source.field_type):
                raise PartitionEvolutionError(
                    f"Invalid transform {change.transform} for column {change.source_name} "
                    f"of type {source.field_type}"
                )
            key = (source.field_id, str(change.transform))
            if any((f.source_id, str(f.transform)) == key for f in fields):
                raise PartitionEvolutionError(
                    f"Duplicate partition field for {change.source_name} with transform {change.transform}"
                )
            name = change.name or default_partition_name(change.source_name, change.transform)
            if any(f.name == name for f in fields):
                raise PartitionEvolutionError(f"Duplicate partition field name: {name}")
            if key in historical:
                field_id = historical[key]
            else:
                last_id += 1
                field_id = last_id
            fields.append(PartitionField(source.field_id, field_id, change.transform, name))
        elif isinstance(change, RemovePartitionField):
            kept = [f for f in fields if f.name != change.name]
            if len(kept) == len(fields):
                raise PartitionEvolutionError(f"Cannot find partition field to remove: {change.name}")
            fields = kept
        elif isinstance(change, RenamePartitionField):
            if not any(f.name == change.name for f in fields):
                raise PartitionEvolutionError(f"Cannot find partition field to rename: {change.name}")
            if any(f.name == change.new_name for f in fields):
                raise PartitionEvolutionError(f"Duplicate partition field name: {change.new_name}")
            fields = [
                PartitionField(f.source_id, f.field_id, f.transform, change.new_name)
                if f.name == change.name
                else f
                for f in fields
            ]
        else:
            raise PartitionEvolutionError(f"Unknown partition change: {change!r}")

    for pf in fields:
        try:
            column = schema.find_field(pf.name)
        except ValueError:
            continue
        if not (isinstance(pf.transform, IdentityTransform) and column.field_id == pf.source_id):
            raise PartitionEvolutionError(
                f"Partition field name {pf.name} conflicts with a column of a different source"
            )

    candidate = PartitionSpec(*fields, spec_id=current.spec_id)
    for spec in existing_specs + [current]:
        if spec.compatible_with(candidate):
            logger.debug("partition change matches existing spec %s", spec.spec_id)
            return PartitionUpdateResult(spec=spec, last_partition_id=last_id)

    new_spec_id = max([s.spec_id for s in existing_specs] + [current.spec_id]) + 1
    return PartitionUpdateResult(
        spec=PartitionSpec(*fields, spec_id=new_spec_id), last_partition_id=last_id
    )
