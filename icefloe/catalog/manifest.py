"""Manifests and manifest lists.

Both are Parquet files (zstd) whose Arrow schema carries the permanent
field ids as `PARQUET:field_id` metadata, so a reader projects written
records onto its own entry schema by id rather than by name. The table
schema and partition spec a manifest was written under are embedded in the
file's key-value metadata.

ADDED entries are written with a null snapshot id and sequence number and
inherit both from the manifest list that references them. This lets a
manifest of new files be written once and reused by every commit attempt.
"""

from __future__ import annotations

import datetime
import json
import logging
import math
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from dataclasses import replace
from enum import Enum
from enum import IntEnum
from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

import pyarrow as pa
import pyarrow.parquet as pq

from ..exceptions import CorruptMetadataError
from ..exceptions import IncompatibleSchemaError
from .conversions import days_to_date
from .conversions import micros_to_datetime
from .conversions import to_bytes
from .conversions import to_internal
from .partitioning import PartitionSpec
from .schema import Schema
from .schema import arrow_children
from .schema import arrow_field_id
from .types import BinaryType
from .types import BooleanType
from .types import DateType
from .types import DoubleType
from .types import FloatType
from .types import IcebergType
from .types import IntegerType
from .types import ListType
from .types import LongType
from .types import MapType
from .types import NestedField
from .types import StringType
from .types import StructType
from .types import TimestampType
from .types import TimestamptzType
from .types import TimeType
from .types import UUIDType

logger = logging.getLogger(__name__)

FORMAT_VERSION = 2
DEFAULT_COMPRESSION = "zstd"
DEFAULT_MANIFEST_TARGET_SIZE_BYTES = 8 * 1024 * 1024


class FileFormat(str, Enum):
    PARQUET = "PARQUET"
    AVRO = "AVRO"
    ORC = "ORC"


class ManifestEntryStatus(IntEnum):
    EXISTING = 0
    ADDED = 1
    DELETED = 2


@dataclass(frozen=True)
class DataFile:
    """A data file tracked by the table.

    Statistics maps are keyed by field id. A missing map (None) means the
    statistic is unknown, which is not the same as an empty map.
    """

    file_path: str
    file_format: FileFormat = FileFormat.PARQUET
    partition: Tuple[Any, ...] = ()
    record_count: int = 0
    file_size_in_bytes: int = 0
    spec_id: int = 0
    column_sizes: Optional[Dict[int, int]] = None
    value_counts: Optional[Dict[int, int]] = None
    null_value_counts: Optional[Dict[int, int]] = None
    nan_value_counts: Optional[Dict[int, int]] = None
    lower_bounds: Optional[Dict[int, bytes]] = None
    upper_bounds: Optional[Dict[int, bytes]] = None
    split_offsets: Optional[List[int]] = None
    sort_order_id: Optional[int] = None
    key_metadata: Optional[bytes] = None

    def __hash__(self) -> int:
        return hash(self.file_path)

    def referenced_field_ids(self) -> set:
        ids: set = set()
        for stats in (
            self.column_sizes,
            self.value_counts,
            self.null_value_counts,
            self.nan_value_counts,
            self.lower_bounds,
            self.upper_bounds,
        ):
            if stats:
                ids.update(stats)
        return ids


@dataclass(frozen=True)
class ManifestEntry:
    status: ManifestEntryStatus
    snapshot_id: Optional[int]
    data_file: DataFile
    sequence_number: Optional[int] = None
    file_sequence_number: Optional[int] = None

    @property
    def is_live(self) -> bool:
        return self.status != ManifestEntryStatus.DELETED


@dataclass(frozen=True)
class PartitionFieldSummary:
    contains_null: bool
    contains_nan: Optional[bool] = None
    lower_bound: Optional[bytes] = None
    upper_bound: Optional[bytes] = None


@dataclass(frozen=True)
class ManifestFile:
    """Reference to a manifest, as stored in a manifest list."""

    manifest_path: str
    manifest_length: int
    partition_spec_id: int
    added_snapshot_id: Optional[int] = None
    sequence_number: Optional[int] = None
    min_sequence_number: Optional[int] = None
    added_files_count: int = 0
    existing_files_count: int = 0
    deleted_files_count: int = 0
    added_rows_count: int = 0
    existing_rows_count: int = 0
    deleted_rows_count: int = 0
    partitions: Tuple[PartitionFieldSummary, ...] = ()

    @property
    def live_files_count(self) -> int:
        return self.added_files_count + self.existing_files_count

    def has_added_files(self) -> bool:
        return self.added_files_count > 0

    def has_deleted_files(self) -> bool:
        return self.deleted_files_count > 0


# --- Schemas -----------------------------------------------------------------


def _stats_map(field_id: int, name: str, key_id: int, value_id: int, value_type: IcebergType) -> NestedField:
    return NestedField(field_id, name, MapType(key_id, IntegerType(), value_id, value_type, True))


def data_file_type(partition_type: StructType) -> StructType:
    return StructType(
        NestedField(100, "file_path", StringType(), required=True),
        NestedField(101, "file_format", StringType(), required=True),
        NestedField(102, "partition", partition_type, required=True),
        NestedField(103, "record_count", LongType(), required=True),
        NestedField(104, "file_size_in_bytes", LongType(), required=True),
        _stats_map(108, "column_sizes", 117, 118, LongType()),
        _stats_map(109, "value_counts", 119, 120, LongType()),
        _stats_map(110, "null_value_counts", 121, 122, LongType()),
        _stats_map(137, "nan_value_counts", 138, 139, LongType()),
        _stats_map(125, "lower_bounds", 126, 127, BinaryType()),
        _stats_map(128, "upper_bounds", 129, 130, BinaryType()),
        NestedField(131, "key_metadata", BinaryType()),
        NestedField(132, "split_offsets", ListType(133, LongType(), True)),
        NestedField(140, "sort_order_id", IntegerType()),
    )


def entry_schema(partition_type: StructType) -> Schema:
    """Reader/writer schema of one manifest entry for a partition struct."""
    return Schema(
        NestedField(0, "status", IntegerType(), required=True),
        NestedField(1, "snapshot_id", LongType()),
        NestedField(3, "sequence_number", LongType()),
        NestedField(4, "file_sequence_number", LongType()),
        NestedField(2, "data_file", data_file_type(partition_type), required=True),
    )


def _writable(schema: Schema) -> Schema:
    """Parquet cannot store a struct without children, so drop an empty partition."""
    data_file = schema.find_field("data_file")
    struct = data_file.field_type
    partition = struct.field_by_name("partition")  # type: ignore[attr-defined]
    if partition is None or partition.field_type.fields:
        return schema
    trimmed = StructType(*[f for f in struct.fields if f.name != "partition"])  # type: ignore[attr-defined]
    return Schema(*[replace(f, field_type=trimmed) if f.field_id == 2 else f for f in schema.fields])


MANIFEST_LIST_SCHEMA = Schema(
    NestedField(500, "manifest_path", StringType(), required=True),
    NestedField(501, "manifest_length", LongType(), required=True),
    NestedField(502, "partition_spec_id", IntegerType(), required=True),
    NestedField(515, "sequence_number", LongType()),
    NestedField(516, "min_sequence_number", LongType()),
    NestedField(503, "added_snapshot_id", LongType()),
    NestedField(504, "added_files_count", IntegerType()),
    NestedField(505, "existing_files_count", IntegerType()),
    NestedField(506, "deleted_files_count", IntegerType()),
    NestedField(512, "added_rows_count", LongType()),
    NestedField(513, "existing_rows_count", LongType()),
    NestedField(514, "deleted_rows_count", LongType()),
    NestedField(
        507,
        "partitions",
        ListType(
            508,
            StructType(
                NestedField(509, "contains_null", BooleanType(), required=True),
                NestedField(518, "contains_nan", BooleanType()),
                NestedField(510, "lower_bound", BinaryType()),
                NestedField(511, "upper_bound", BinaryType()),
            ),
            True,
        ),
    ),
)


# --- Value conversion --------------------------------------------------------


def _to_arrow_value(field_type: IcebergType, value: Any) -> Any:
    """Internal partition value to something pyarrow accepts for the column type."""
    if value is None:
        return None
    if isinstance(field_type, DateType):
        return days_to_date(value)
    if isinstance(field_type, TimestampType):
        return micros_to_datetime(value)
    if isinstance(field_type, TimestamptzType):
        return micros_to_datetime(value).replace(tzinfo=datetime.timezone.utc)
    if isinstance(field_type, TimeType):
        return (datetime.datetime.min + datetime.timedelta(microseconds=value)).time()
    if isinstance(field_type, UUIDType):
        return value.bytes
    return value


def _stats_to_arrow(stats: Optional[Dict[int, Any]]) -> Optional[List[Tuple[int, Any]]]:
    if stats is None:
        return None
    return sorted(stats.items())


def _stats_from_arrow(value: Any) -> Optional[Dict[int, Any]]:
    if value is None:
        return None
    if isinstance(value, dict):
        return {int(k): v for k, v in value.items()}
    return {int(k): v for k, v in value}


def _entry_to_row(entry: ManifestEntry, partition_type: StructType) -> dict:
    df = entry.data_file
    data_file: Dict[str, Any] = {
        "file_path": df.file_path,
        "file_format": FileFormat(df.file_format).value,
        "record_count": df.record_count,
        "file_size_in_bytes": df.file_size_in_bytes,
        "column_sizes": _stats_to_arrow(df.column_sizes),
        "value_counts": _stats_to_arrow(df.value_counts),
        "null_value_counts": _stats_to_arrow(df.null_value_counts),
        "nan_value_counts": _stats_to_arrow(df.nan_value_counts),
        "lower_bounds": _stats_to_arrow(df.lower_bounds),
        "upper_bounds": _stats_to_arrow(df.upper_bounds),
        "key_metadata": df.key_metadata,
        "split_offsets": list(df.split_offsets) if df.split_offsets is not None else None,
        "sort_order_id": df.sort_order_id,
    }
    if partition_type.fields:
        if len(df.partition) != len(partition_type.fields):
            raise IncompatibleSchemaError(
                f"Partition {df.partition!r} of {df.file_path} does not match {partition_type}"
            )
        data_file["partition"] = {
            f.name: _to_arrow_value(f.field_type, v)
            for f, v in zip(partition_type.fields, df.partition)
        }
    return {
        "status": int(entry.status),
        "snapshot_id": entry.snapshot_id,
        "sequence_number": entry.sequence_number,
        "file_sequence_number": entry.file_sequence_number,
        "data_file": data_file,
    }


def _project_struct(record: Optional[dict], written: Sequence[pa.Field], read: StructType, path: str) -> dict:
    """Project a written record onto `read` by field id."""
    record = record or {}
    by_id = {arrow_field_id(f): f for f in written}
    out: Dict[str, Any] = {}
    for rf in read.fields:
        wf = by_id.get(rf.field_id)
        name = f"{path}{rf.name}"
        if wf is None or wf.name not in record:
            if isinstance(rf.field_type, StructType) and not rf.field_type.fields:
                out[rf.name] = {}
            elif rf.initial_default is not None:
                out[rf.name] = rf.initial_default
            elif not rf.required:
                out[rf.name] = None
            else:
                raise IncompatibleSchemaError(f"Required field {name} ({rf.field_id}) is missing and has no default")
            continue
        value = record[wf.name]
        if value is None:
            if rf.required:
                raise IncompatibleSchemaError(f"Required field {name} ({rf.field_id}) is null")
        elif isinstance(rf.field_type, StructType):
            value = _project_struct(value, arrow_children(wf.type), rf.field_type, f"{name}.")
        out[rf.name] = value
    return out


def _row_to_entry(
    row: dict, written: Sequence[pa.Field], read_schema: Schema, partition_type: StructType, spec_id: int
) -> ManifestEntry:
    projected = _project_struct(row, written, read_schema.as_struct(), "")
    df = projected["data_file"]
    partition_record = df.get("partition") or {}
    try:
        partition = tuple(
            to_internal(f.field_type, partition_record.get(f.name)) for f in partition_type.fields
        )
        data_file = DataFile(
            file_path=df["file_path"],
            file_format=FileFormat(str(df["file_format"]).upper()),
            partition=partition,
            record_count=int(df["record_count"]),
            file_size_in_bytes=int(df["file_size_in_bytes"]),
            spec_id=spec_id,
            column_sizes=_stats_from_arrow(df.get("column_sizes")),
            value_counts=_stats_from_arrow(df.get("value_counts")),
            null_value_counts=_stats_from_arrow(df.get("null_value_counts")),
            nan_value_counts=_stats_from_arrow(df.get("nan_value_counts")),
            lower_bounds=_stats_from_arrow(df.get("lower_bounds")),
            upper_bounds=_stats_from_arrow(df.get("upper_bounds")),
            split_offsets=df.get("split_offsets"),
            sort_order_id=df.get("sort_order_id"),
            key_metadata=df.get("key_metadata"),
        )
        status = ManifestEntryStatus(int(projected["status"]))
    except (TypeError, ValueError) as err:
        raise CorruptMetadataError(f"Malformed manifest entry: {err}") from err
    return ManifestEntry(
        status=status,
        snapshot_id=projected.get("snapshot_id"),
        data_file=data_file,
        sequence_number=projected.get("sequence_number"),
        file_sequence_number=projected.get("file_sequence_number"),
    )


# --- Single entry codec ------------------------------------------------------


def encode_entry(
    data_file: DataFile,
    status: ManifestEntryStatus,
    snapshot_id: Optional[int],
    partition_type: StructType,
) -> bytes:
    """Encode one entry as a self-describing Arrow IPC stream."""
    schema = _writable(entry_schema(partition_type))
    arrow_schema = schema.to_arrow().with_metadata(
        {b"partition-spec-id": str(data_file.spec_id).encode()}
    )
    entry = ManifestEntry(status=ManifestEntryStatus(status), snapshot_id=snapshot_id, data_file=data_file)
    table = pa.Table.from_pylist([_entry_to_row(entry, partition_type)], schema=arrow_schema)
    sink = pa.BufferOutputStream()
    with pa.ipc.new_stream(sink, arrow_schema) as writer:
        writer.write_table(table)
    return sink.getvalue().to_pybytes()


def decode_entry(
    payload: bytes, partition_type: StructType, read_schema: Optional[Schema] = None
) -> ManifestEntry:
    """Decode an entry written by `encode_entry`, possibly under an older schema."""
    try:
        table = pa.ipc.open_stream(pa.BufferReader(payload)).read_all()
    except (pa.ArrowInvalid, OSError) as err:
        raise CorruptMetadataError(f"Unreadable manifest entry: {err}") from err
    if table.num_rows != 1:
        raise CorruptMetadataError(f"Expected one manifest entry, found {table.num_rows}")
    meta = table.schema.metadata or {}
    spec_id = int(meta.get(b"partition-spec-id", b"0"))
    return _row_to_entry(
        table.to_pylist()[0],
        list(table.schema),
        read_schema or entry_schema(partition_type),
        partition_type,
        spec_id,
    )


# --- Manifest writing --------------------------------------------------------


class _PartitionSummaryBuilder:
    def __init__(self, field_type: IcebergType):
        self.field_type = field_type
        self.contains_null = False
        self.contains_nan = False
        self.lower: Any = None
        self.upper: Any = None

    def update(self, value: Any) -> None:
        if value is None:
            self.contains_null = True
        elif isinstance(self.field_type, (FloatType, DoubleType)) and math.isnan(value):
            self.contains_nan = True
        else:
            if self.lower is None or value < self.lower:
                self.lower = value
            if self.upper is None or value > self.upper:
                self.upper = value

    def build(self) -> PartitionFieldSummary:
        return PartitionFieldSummary(
            contains_null=self.contains_null,
            contains_nan=self.contains_nan,
            lower_bound=to_bytes(self.field_type, self.lower) if self.lower is not None else None,
            upper_bound=to_bytes(self.field_type, self.upper) if self.upper is not None else None,
        )


def new_manifest_path(location: str) -> str:
    return f"{location}/metadata/manifest-{uuid.uuid4().hex}.parquet"


def _write_parquet(io: Any, path: str, table: pa.Table, compression: str) -> int:
    buf = pa.BufferOutputStream()
    pq.write_table(table, buf, compression=compression)
    data = buf.getvalue().to_pybytes()
    out = io.new_output(path).create()
    out.write(data)
    out.close()
    return len(data)


def write_manifest(
    io: Any,
    location: str,
    spec: PartitionSpec,
    schema: Schema,
    entries: Sequence[ManifestEntry],
    snapshot_id: Optional[int] = None,
    path: Optional[str] = None,
    compression: str = DEFAULT_COMPRESSION,
) -> ManifestFile:
    """Write one manifest and return its reference.

    `snapshot_id` may be None when the committing snapshot is not known yet;
    `write_manifest_list` fills it in.
    """
    path = path or new_manifest_path(location)
    partition_type = spec.partition_type(schema)
    write_schema = _writable(entry_schema(partition_type))
    arrow_schema = write_schema.to_arrow().with_metadata(
        {
            b"schema": json.dumps(schema.to_dict()).encode(),
            b"partition-spec": json.dumps(spec.to_dict()["fields"]).encode(),
            b"partition-spec-id": str(spec.spec_id).encode(),
            b"format-version": str(FORMAT_VERSION).encode(),
            b"content": b"data",
        }
    )

    summaries = [_PartitionSummaryBuilder(f.field_type) for f in partition_type.fields]
    counts = {status: [0, 0] for status in ManifestEntryStatus}
    rows = []
    min_seq: Optional[int] = None
    for entry in entries:
        if entry.data_file.spec_id != spec.spec_id:
            raise IncompatibleSchemaError(
                f"{entry.data_file.file_path} was written for spec {entry.data_file.spec_id}, "
                f"not {spec.spec_id}"
            )
        rows.append(_entry_to_row(entry, partition_type))
        for builder, value in zip(summaries, entry.data_file.partition):
            builder.update(value)
        counts[entry.status][0] += 1
        counts[entry.status][1] += entry.data_file.record_count
        if entry.sequence_number is not None:
            min_seq = entry.sequence_number if min_seq is None else min(min_seq, entry.sequence_number)

    table = pa.Table.from_pylist(rows, schema=arrow_schema)
    length = _write_parquet(io, path, table, compression)
    logger.info("wrote manifest %s (%d entries, %d bytes)", path, len(rows), length)

    return ManifestFile(
        manifest_path=path,
        manifest_length=length,
        partition_spec_id=spec.spec_id,
        added_snapshot_id=snapshot_id,
        min_sequence_number=min_seq if counts[ManifestEntryStatus.ADDED][0] == 0 else None,
        added_files_count=counts[ManifestEntryStatus.ADDED][0],
        existing_files_count=counts[ManifestEntryStatus.EXISTING][0],
        deleted_files_count=counts[ManifestEntryStatus.DELETED][0],
        added_rows_count=counts[ManifestEntryStatus.ADDED][1],
        existing_rows_count=counts[ManifestEntryStatus.EXISTING][1],
        deleted_rows_count=counts[ManifestEntryStatus.DELETED][1],
        partitions=tuple(b.build() for b in summaries),
    )


def _estimated_entry_size(entry: ManifestEntry) -> int:
    df = entry.data_file
    size = 64 + len(df.file_path)
    for stats in (df.column_sizes, df.value_counts, df.null_value_counts, df.nan_value_counts):
        size += 12 * len(stats or ())
    for bounds in (df.lower_bounds, df.upper_bounds):
        size += sum(4 + len(v) for v in (bounds or {}).values())
    size += 8 * len(df.split_offsets or ())
    return size


def write_manifests(
    io: Any,
    location: str,
    spec: PartitionSpec,
    schema: Schema,
    entries: Sequence[ManifestEntry],
    snapshot_id: Optional[int] = None,
    target_size_bytes: int = DEFAULT_MANIFEST_TARGET_SIZE_BYTES,
    max_workers: Optional[int] = None,
) -> List[ManifestFile]:
    """Split `entries` into manifests of roughly `target_size_bytes` and write them in parallel."""
    chunks: List[List[ManifestEntry]] = []
    current: List[ManifestEntry] = []
    current_size = 0
    for entry in entries:
        size = _estimated_entry_size(entry)
        if current and current_size + size > target_size_bytes:
            chunks.append(current)
            current, current_size = [], 0
        current.append(entry)
        current_size += size
    if current:
        chunks.append(current)
    if not chunks:
        return []
    if len(chunks) == 1:
        return [write_manifest(io, location, spec, schema, chunks[0], snapshot_id)]

    with ThreadPoolExecutor(max_workers=max_workers or min(8, len(chunks))) as pool:
        futures = [
            pool.submit(write_manifest, io, location, spec, schema, chunk, snapshot_id)
            for chunk in chunks
        ]
        return [f.result() for f in futures]


# --- Manifest lists ----------------------------------------------------------


def _manifest_to_row(manifest: ManifestFile) -> dict:
    return {
        "manifest_path": manifest.manifest_path,
        "manifest_length": manifest.manifest_length,
        "partition_spec_id": manifest.partition_spec_id,
        "sequence_number": manifest.sequence_number,
        "min_sequence_number": manifest.min_sequence_number,
        "added_snapshot_id": manifest.added_snapshot_id,
        "added_files_count": manifest.added_files_count,
        "existing_files_count": manifest.existing_files_count,
        "deleted_files_count": manifest.deleted_files_count,
        "added_rows_count": manifest.added_rows_count,
        "existing_rows_count": manifest.existing_rows_count,
        "deleted_rows_count": manifest.deleted_rows_count,
        "partitions": [
            {
                "contains_null": s.contains_null,
                "contains_nan": s.contains_nan,
                "lower_bound": s.lower_bound,
                "upper_bound": s.upper_bound,
            }
            for s in manifest.partitions
        ],
    }


def _manifest_from_row(row: dict) -> ManifestFile:
    try:
        return ManifestFile(
            manifest_path=row["manifest_path"],
            manifest_length=int(row["manifest_length"]),
            partition_spec_id=int(row["partition_spec_id"]),
            added_snapshot_id=row.get("added_snapshot_id"),
            sequence_number=row.get("sequence_number"),
            min_sequence_number=row.get("min_sequence_number"),
            added_files_count=int(row.get("added_files_count") or 0),
            existing_files_count=int(row.get("existing_files_count") or 0),
            deleted_files_count=int(row.get("deleted_files_count") or 0),
            added_rows_count=int(row.get("added_rows_count") or 0),
            existing_rows_count=int(row.get("existing_rows_count") or 0),
            deleted_rows_count=int(row.get("deleted_rows_count") or 0),
            partitions=tuple(
                PartitionFieldSummary(
                    contains_null=bool(p["contains_null"]),
                    contains_nan=p.get("contains_nan"),
                    lower_bound=p.get("lower_bound"),
                    upper_bound=p.get("upper_bound"),
                )
                for p in row.get("partitions") or []
            ),
        )
    except (KeyError, TypeError, ValueError) as err:
        raise CorruptMetadataError(f"Malformed manifest list record: {err}") from err


def write_manifest_list(
    io: Any,
    location: str,
    snapshot_id: int,
    parent_snapshot_id: Optional[int],
    sequence_number: int,
    manifests: Sequence[ManifestFile],
    path: Optional[str] = None,
    compression: str = DEFAULT_COMPRESSION,
) -> str:
    """Write the manifest list of a snapshot and return its path.

    Manifests written by this commit have no snapshot id or sequence number
    yet; they are assigned here.
    """
    path = path or f"{location}/metadata/snap-{snapshot_id}-{uuid.uuid4().hex}.parquet"
    assigned = []
    for m in manifests:
        if m.added_snapshot_id is None:
            m = replace(m, added_snapshot_id=snapshot_id)
        if m.sequence_number is None:
            m = replace(
                m,
                sequence_number=sequence_number,
                min_sequence_number=(
                    sequence_number
                    if m.min_sequence_number is None
                    else min(m.min_sequence_number, sequence_number)
                ),
            )
        assigned.append(m)

    arrow_schema = MANIFEST_LIST_SCHEMA.to_arrow().with_metadata(
        {
            b"snapshot-id": str(snapshot_id).encode(),
            b"parent-snapshot-id": str(parent_snapshot_id).encode(),
            b"sequence-number": str(sequence_number).encode(),
            b"format-version": str(FORMAT_VERSION).encode(),
        }
    )
    table = pa.Table.from_pylist([_manifest_to_row(m) for m in assigned], schema=arrow_schema)
    length = _write_parquet(io, path, table, compression)
    logger.info("wrote manifest list %s (%d manifests, %d bytes)", path, len(assigned), length)
    return path


def _iter_parquet_rows(io: Any, path: str) -> Iterator[Tuple[List[pa.Field], dict]]:
    with io.new_input(path).open() as f:
        try:
            parquet_file = pq.ParquetFile(f)
        except (pa.ArrowInvalid, OSError) as err:
            raise CorruptMetadataError(f"Unreadable Parquet metadata file {path}: {err}") from err
        written = list(parquet_file.schema_arrow)
        for batch in parquet_file.iter_batches():
            for row in batch.to_pylist():
                yield written, row


class ManifestList:
    """Lazy, restartable sequence of the manifests of one snapshot."""

    def __init__(self, io: Any, path: str):
        self.io = io
        self.path = path

    def __iter__(self) -> Iterator[ManifestFile]:
        for written, row in _iter_parquet_rows(self.io, self.path):
            projected = _project_struct(row, written, MANIFEST_LIST_SCHEMA.as_struct(), "")
            yield _manifest_from_row(projected)

    def __repr__(self) -> str:
        return f"ManifestList({self.path!r})"


def read_manifest_list(io: Any, path: str) -> ManifestList:
    return ManifestList(io, path)


class ManifestEntries:
    """Lazy, restartable sequence of the entries of one manifest.

    Entries inherit a null snapshot id, and for ADDED entries a null
    sequence number, from the manifest reference.
    """

    def __init__(
        self,
        io: Any,
        manifest: ManifestFile,
        partition_type: StructType,
        read_schema: Optional[Schema] = None,
        discard_deleted: bool = False,
    ):
        self.io = io
        self.manifest = manifest
        self.partition_type = partition_type
        self.read_schema = read_schema or entry_schema(partition_type)
        self.discard_deleted = discard_deleted

    def _inherit(self, entry: ManifestEntry) -> ManifestEntry:
        updates: Dict[str, Any] = {}
        if entry.snapshot_id is None:
            updates["snapshot_id"] = self.manifest.added_snapshot_id
        if entry.status == ManifestEntryStatus.ADDED:
            if entry.sequence_number is None:
                updates["sequence_number"] = self.manifest.sequence_number
            if entry.file_sequence_number is None:
                updates["file_sequence_number"] = self.manifest.sequence_number
        return replace(entry, **updates) if updates else entry

    def __iter__(self) -> Iterator[ManifestEntry]:
        for written, row in _iter_parquet_rows(self.io, self.manifest.manifest_path):
            entry = _row_to_entry(
                row, written, self.read_schema, self.partition_type, self.manifest.partition_spec_id
            )
            if self.discard_deleted and entry.status == ManifestEntryStatus.DELETED:
                continue
            yield self._inherit(entry)

    def live(self) -> Iterator[ManifestEntry]:
        return (e for e in self if e.is_live)

    def __repr__(self) -> str:
        return f"ManifestEntries({self.manifest.manifest_path!r})"


def read_manifest(
    io: Any,
    manifest: ManifestFile,
    partition_type: StructType,
    read_schema: Optional[Schema] = None,
    discard_deleted: bool = False,
) -> ManifestEntries:
    return ManifestEntries(io, manifest, partition_type, read_schema, discard_deleted)


def read_manifest_metadata(io: Any, path: str) -> Dict[str, str]:
    """Key-value metadata embedded in a manifest (schema, spec, format version)."""
    with io.new_input(path).open() as f:
        meta = pq.ParquetFile(f).schema_arrow.metadata or {}
    return {k.decode(): v.decode() for k, v in meta.items()}
