"""Table metadata: the root document of a table.

A metadata document is immutable once written. Every change produces a new
`TableMetadata` value (see the `with_*` methods) which the commit engine
writes under a fresh path before swapping the catalog pointer to it.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from ..exceptions import CorruptMetadataError
from ..exceptions import ValidationError
from .partitioning import PARTITION_FIELD_ID_START
from .partitioning import UNPARTITIONED_PARTITION_SPEC
from .partitioning import PartitionSpec
from .schema import Schema
from .snapshots import Snapshot
from .types import StructType

logger = logging.getLogger(__name__)

SUPPORTED_FORMAT_VERSIONS = (1, 2)
DEFAULT_FORMAT_VERSION = 2
UNSORTED_SORT_ORDER = {"order-id": 0, "fields": []}


@dataclass(frozen=True)
class SnapshotLogEntry:
    snapshot_id: int
    timestamp_ms: int


@dataclass(frozen=True)
class MetadataLogEntry:
    metadata_file: str
    timestamp_ms: int


@dataclass(frozen=True)
class TableMetadata:
    location: str
    table_uuid: str
    last_updated_ms: int
    last_column_id: int
    schemas: List[Schema]
    current_schema_id: int
    partition_specs: List[PartitionSpec]
    default_spec_id: int
    last_partition_id: int
    format_version: int = DEFAULT_FORMAT_VERSION
    last_sequence_number: int = 0
    properties: Dict[str, str] = field(default_factory=dict)
    current_snapshot_id: Optional[int] = None
    snapshots: List[Snapshot] = field(default_factory=list)
    snapshot_log: List[SnapshotLogEntry] = field(default_factory=list)
    metadata_log: List[MetadataLogEntry] = field(default_factory=list)
    sort_orders: List[dict] = field(default_factory=lambda: [dict(UNSORTED_SORT_ORDER)])
    default_sort_order_id: int = 0

    # -- lookups -------------------------------------------------------------

    def schema(self) -> Schema:
        return self.schema_by_id(self.current_schema_id)

    def schema_by_id(self, schema_id: int) -> Schema:
        for s in self.schemas:
            if s.schema_id == schema_id:
                return s
        raise ValidationError(f"Unknown schema id: {schema_id}")

    def spec(self) -> PartitionSpec:
        return self.spec_by_id(self.default_spec_id)

    def spec_by_id(self, spec_id: int) -> PartitionSpec:
        for s in self.partition_specs:
            if s.spec_id == spec_id:
                return s
        raise ValidationError(f"Unknown partition spec id: {spec_id}")

    def specs(self) -> Dict[int, PartitionSpec]:
        return {s.spec_id: s for s in self.partition_specs}

    def partition_type_for(self, spec_id: int) -> StructType:
        """Partition struct of a (possibly retired) spec.

        Source columns dropped since the spec was retired are resolved
        against the newest schema that still has them.
        """
        spec = self.spec_by_id(spec_id)
        needed = {pf.source_id for pf in spec.fields}
        for schema in [self.schema()] + list(reversed(self.schemas)):
            if needed.issubset(schema.field_ids):
                return spec.partition_type(schema)
        raise CorruptMetadataError(f"Partition spec {spec_id} references columns missing from every schema")

    def current_snapshot(self) -> Optional[Snapshot]:
        if self.current_snapshot_id is None:
            return None
        return self.snapshot_by_id(self.current_snapshot_id)

    def snapshot_by_id(self, snapshot_id: int) -> Optional[Snapshot]:
        for s in self.snapshots:
            if s.snapshot_id == snapshot_id:
                return s
        return None

    def property(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    # -- updates ---------------------------------------------------------------

    def _touch(self, **changes: Any) -> "TableMetadata":
        now = max(int(time.time() * 1000), self.last_updated_ms)
        return replace(self, last_updated_ms=now, **changes)

    def with_schema(self, schema: Schema, last_column_id: int) -> "TableMetadata":
        """Add `schema` (or reuse an identical existing one) and make it current."""
        if last_column_id < self.last_column_id:
            raise ValidationError("last-column-id cannot decrease")
        for existing in self.schemas:
            if existing.same_columns(schema):
                return self._touch(current_schema_id=existing.schema_id, last_column_id=last_column_id)
        new_id = max(s.schema_id for s in self.schemas) + 1
        schema = Schema(*schema.fields, schema_id=new_id, identifier_field_ids=schema.identifier_field_ids)
        return self._touch(
            schemas=self.schemas + [schema],
            current_schema_id=new_id,
            last_column_id=last_column_id,
        )

    def with_spec(self, spec: PartitionSpec, last_partition_id: int) -> "TableMetadata":
        """Add `spec` if it is new and make it the default spec."""
        if spec.spec_id in self.specs():
            if not self.spec_by_id(spec.spec_id).compatible_with(spec):
                raise ValidationError(f"Spec id {spec.spec_id} already used by a different spec")
            return self._touch(
                default_spec_id=spec.spec_id,
                last_partition_id=max(self.last_partition_id, last_partition_id),
            )
        return self._touch(
            partition_specs=self.partition_specs + [spec],
            default_spec_id=spec.spec_id,
            last_partition_id=max(self.last_partition_id, last_partition_id),
        )

    def with_snapshot(self, snapshot: Snapshot) -> "TableMetadata":
        """Append `snapshot` to the history and make it current."""
        if self.snapshot_by_id(snapshot.snapshot_id) is not None:
            raise ValidationError(f"Snapshot id {snapshot.snapshot_id} already exists")
        if snapshot.sequence_number <= self.last_sequence_number and self.format_version > 1:
            raise ValidationError(
                f"Sequence number {snapshot.sequence_number} is not above {self.last_sequence_number}"
            )
        if snapshot.parent_snapshot_id != self.current_snapshot_id:
            raise ValidationError(
                f"Snapshot parent {snapshot.parent_snapshot_id} is not the current snapshot "
                f"{self.current_snapshot_id}"
            )
        return self._touch(
            snapshots=self.snapshots + [snapshot],
            current_snapshot_id=snapshot.snapshot_id,
            last_sequence_number=snapshot.sequence_number,
            snapshot_log=self.snapshot_log
            + [SnapshotLogEntry(snapshot.snapshot_id, snapshot.timestamp_ms)],
        )

    def with_properties(
        self, updates: Optional[Dict[str, str]] = None, removals: Iterable[str] = ()
    ) -> "TableMetadata":
        props = dict(self.properties)
        props.update({k: str(v) for k, v in (updates or {}).items()})
        for key in removals:
            props.pop(key, None)
        return self._touch(properties=props)

    def with_previous_file(self, metadata_file: Optional[str], max_entries: int = 100) -> "TableMetadata":
        """Record the metadata file this version replaces."""
        if not metadata_file:
            return self
        log = self.metadata_log + [MetadataLogEntry(metadata_file, self.last_updated_ms)]
        return replace(self, metadata_log=log[-max_entries:])


def new_table_metadata(
    schema: Schema,
    location: str,
    spec: PartitionSpec = UNPARTITIONED_PARTITION_SPEC,
    properties: Optional[Dict[str, str]] = None,
    table_uuid: Optional[str] = None,
) -> TableMetadata:
    for pf in spec.fields:
        try:
            source = schema.find_type(pf.source_id)
        except ValueError as err:
            raise ValidationError(f"Partition field {pf.name} has unknown source {pf.source_id}") from err
        if not pf.transform.can_transform(source):
            raise ValidationError(f"Invalid transform {pf.transform} for {pf.name} ({source})")
    return TableMetadata(
        location=location.rstrip("/"),
        table_uuid=table_uuid or str(uuid.uuid4()),
        last_updated_ms=int(time.time() * 1000),
        last_column_id=schema.highest_field_id,
        schemas=[schema],
        current_schema_id=schema.schema_id,
        partition_specs=[spec],
        default_spec_id=spec.spec_id,
        last_partition_id=spec.last_assigned_field_id,
        properties={k: str(v) for k, v in (properties or {}).items()},
    )


# --- JSON ---------------------------------------------------------------------


def table_metadata_to_dict(metadata: TableMetadata) -> dict:
    return {
        "format-version": metadata.format_version,
        "table-uuid": metadata.table_uuid,
        "location": metadata.location,
        "last-sequence-number": metadata.last_sequence_number,
        "last-updated-ms": metadata.last_updated_ms,
        "last-column-id": metadata.last_column_id,
        "current-schema-id": metadata.current_schema_id,
        "schemas": [s.to_dict() for s in metadata.schemas],
        "default-spec-id": metadata.default_spec_id,
        "partition-specs": [s.to_dict() for s in metadata.partition_specs],
        "last-partition-id": metadata.last_partition_id,
        "default-sort-order-id": metadata.default_sort_order_id,
        "sort-orders": metadata.sort_orders,
        "properties": metadata.properties,
        "current-snapshot-id": (
            metadata.current_snapshot_id if metadata.current_snapshot_id is not None else -1
        ),
        "snapshots": [s.to_dict() for s in metadata.snapshots],
        "snapshot-log": [
            {"snapshot-id": e.snapshot_id, "timestamp-ms": e.timestamp_ms} for e in metadata.snapshot_log
        ],
        "metadata-log": [
            {"metadata-file": e.metadata_file, "timestamp-ms": e.timestamp_ms}
            for e in metadata.metadata_log
        ],
    }


def _upgrade_v1(data: dict) -> dict:
    """Normalize a format-version 1 document to the version 2 layout."""
    data = dict(data)
    if "schemas" not in data:
        if "schema" not in data:
            raise CorruptMetadataError("format-version 1 metadata has no schema")
        schema = dict(data["schema"])
        schema.setdefault("schema-id", 0)
        data["schemas"] = [schema]
        data["current-schema-id"] = schema["schema-id"]
    if "partition-specs" not in data:
        fields = data.get("partition-spec", [])
        last_id = PARTITION_FIELD_ID_START - 1
        normalized = []
        for f in fields:
            f = dict(f)
            if "field-id" not in f:
                last_id += 1
                f["field-id"] = last_id
            last_id = max(last_id, int(f["field-id"]))
            normalized.append(f)
        data["partition-specs"] = [{"spec-id": 0, "fields": normalized}]
        data["default-spec-id"] = 0
        data.setdefault("last-partition-id", last_id)
    data.setdefault("last-sequence-number", 0)
    data.setdefault("table-uuid", str(uuid.uuid4()))
    return data


def table_metadata_from_dict(data: Any) -> TableMetadata:
    if not isinstance(data, dict):
        raise CorruptMetadataError("Table metadata must be a JSON object")
    version = data.get("format-version")
    if version not in SUPPORTED_FORMAT_VERSIONS:
        raise CorruptMetadataError(f"Unsupported format-version: {version!r}")
    if version == 1:
        data = _upgrade_v1(data)
    try:
        schemas = [Schema.from_dict(s) for s in data["schemas"]]
        specs = [PartitionSpec.from_dict(s) for s in data["partition-specs"]]
        current_snapshot_id = data.get("current-snapshot-id")
        if current_snapshot_id is not None and int(current_snapshot_id) == -1:
            current_snapshot_id = None
        metadata = TableMetadata(
            format_version=int(version),
            table_uuid=str(data["table-uuid"]),
            location=str(data["location"]),
            last_sequence_number=int(data.get("last-sequence-number", 0)),
            last_updated_ms=int(data["last-updated-ms"]),
            last_column_id=int(data["last-column-id"]),
            schemas=schemas,
            current_schema_id=int(data["current-schema-id"]),
            partition_specs=specs,
            default_spec_id=int(data["default-spec-id"]),
            last_partition_id=int(data.get("last-partition-id", PARTITION_FIELD_ID_START - 1)),
            properties=dict(data.get("properties") or {}),
            current_snapshot_id=int(current_snapshot_id) if current_snapshot_id is not None else None,
            snapshots=[Snapshot.from_dict(s) for s in data.get("snapshots") or []],
            snapshot_log=[
                SnapshotLogEntry(int(e["snapshot-id"]), int(e["timestamp-ms"]))
                for e in data.get("snapshot-log") or []
            ],
            metadata_log=[
                MetadataLogEntry(str(e["metadata-file"]), int(e["timestamp-ms"]))
                for e in data.get("metadata-log") or []
            ],
            sort_orders=list(data.get("sort-orders") or [dict(UNSORTED_SORT_ORDER)]),
            default_sort_order_id=int(data.get("default-sort-order-id", 0)),
        )
    except CorruptMetadataError:
        raise
    except (KeyError, TypeError, ValueError) as err:
        raise CorruptMetadataError(f"Malformed table metadata: {err!r}") from err

    if metadata.last_updated_ms <= 0:
        raise CorruptMetadataError("last-updated-ms must be a positive timestamp")
    if metadata.current_schema_id not in {s.schema_id for s in metadata.schemas}:
        raise CorruptMetadataError(f"current-schema-id {metadata.current_schema_id} is not a known schema")
    if metadata.default_spec_id not in metadata.specs():
        raise CorruptMetadataError(f"default-spec-id {metadata.default_spec_id} is not a known spec")
    if metadata.current_snapshot_id is not None and metadata.current_snapshot() is None:
        raise CorruptMetadataError(f"current-snapshot-id {metadata.current_snapshot_id} is not a known snapshot")
    return metadata


def table_metadata_to_json(metadata: TableMetadata) -> str:
    return json.dumps(table_metadata_to_dict(metadata), indent=2)


def table_metadata_from_json(text: Any) -> TableMetadata:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as err:
        raise CorruptMetadataError(f"Table metadata is not valid JSON: {err}") from err
    return table_metadata_from_dict(data)


def new_metadata_path(location: str, version: int) -> str:
    return f"{location}/metadata/{version:05d}-{uuid.uuid4()}.metadata.json"


def parse_metadata_version(path: str) -> int:
    """Version number encoded in a metadata file name, or -1."""
    name = path.rsplit("/", 1)[-1]
    head = name.split("-", 1)[0].split(".", 1)[0].lstrip("v")
    try:
        return int(head)
    except ValueError:
        return -1


def write_table_metadata(io: Any, path: str, metadata: TableMetadata) -> str:
    """Write a metadata document (write-once) and return its path."""
    io.write(path, table_metadata_to_json(metadata).encode("utf-8"))
    logger.info("wrote table metadata %s", path)
    return path


def holds_table_metadata(io: Any, path: str, metadata: TableMetadata) -> bool:
    """Whether `path` holds exactly the document written for `metadata`."""
    return io.read(path) == table_metadata_to_json(metadata).encode("utf-8")


def read_table_metadata(io: Any, path: str) -> TableMetadata:
    data = io.new_input(path).read()
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise CorruptMetadataError(f"Table metadata {path} is not UTF-8") from err
    return table_metadata_from_json(text)
