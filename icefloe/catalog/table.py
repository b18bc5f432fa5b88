from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Set
from typing import Tuple

import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from ..config import ScanOptions
from ..exceptions import IncompatibleSchemaError
from ..exceptions import ValidationError
from .conversions import to_bytes
from .conversions import to_internal
from .expressions import BooleanExpression
from .manifest import DataFile
from .manifest import FileFormat
from .metadata import TableMetadata
from .metadata import read_table_metadata
from .partitioning import PartitionSpec
from .scan import ALL_COLUMNS
from .scan import DataScan
from .schema import Schema
from .snapshots import Snapshot
from .snapshots import resolve_files_as_of
from .snapshots import snapshot_as_of
from .transaction import Transaction
from .types import BinaryType
from .types import BooleanType
from .types import DateType
from .types import DecimalType
from .types import DoubleType
from .types import FloatType
from .types import IntegerType
from .types import LongType
from .types import StringType
from .types import TimestampType
from .types import TimestamptzType
from .types import TimeType

logger = logging.getLogger(__name__)

_BOUNDED_TYPES = (
    BooleanType,
    IntegerType,
    LongType,
    FloatType,
    DoubleType,
    DateType,
    TimeType,
    TimestampType,
    TimestamptzType,
    StringType,
    BinaryType,
    DecimalType,
)


def _conform(table: pa.Table, schema: Schema) -> pa.Table:
    """Cast `table` to the table schema, adding null columns for missing optional fields."""
    known = {f.name for f in schema.fields}
    extra = [name for name in table.column_names if name not in known]
    if extra:
        raise IncompatibleSchemaError(f"Columns not in the table schema: {extra}")

    arrow_schema = schema.to_arrow()
    columns = []
    for f, arrow_field in zip(schema.fields, arrow_schema):
        if f.name in table.column_names:
            columns.append(table.column(f.name).cast(arrow_field.type))
        elif f.required:
            raise IncompatibleSchemaError(f"Required column {f.name} is missing")
        else:
            columns.append(pa.nulls(table.num_rows, arrow_field.type))
    return pa.Table.from_arrays(columns, schema=arrow_schema)


def _column_metrics(table: pa.Table, schema: Schema) -> Dict[str, Dict[int, Any]]:
    metrics: Dict[str, Dict[int, Any]] = {
        "value_counts": {},
        "null_value_counts": {},
        "nan_value_counts": {},
        "lower_bounds": {},
        "upper_bounds": {},
    }
    for f in schema.fields:
        if not f.field_type.is_primitive:
            continue
        column = table.column(f.name)
        metrics["value_counts"][f.field_id] = len(column)
        metrics["null_value_counts"][f.field_id] = column.null_count
        nans = 0
        if isinstance(f.field_type, (FloatType, DoubleType)):
            nans = pc.sum(pc.is_nan(column)).as_py() or 0
            metrics["nan_value_counts"][f.field_id] = nans
        if not isinstance(f.field_type, _BOUNDED_TYPES) or column.null_count + nans >= len(column):
            continue
        extremes = pc.min_max(column)
        low, high = extremes["min"].as_py(), extremes["max"].as_py()
        if low is None or high is None:
            continue
        metrics["lower_bounds"][f.field_id] = to_bytes(f.field_type, to_internal(f.field_type, low))
        metrics["upper_bounds"][f.field_id] = to_bytes(f.field_type, to_internal(f.field_type, high))
    return metrics


def _split_offsets(metadata: pq.FileMetaData) -> Optional[List[int]]:
    offsets = []
    for i in range(metadata.num_row_groups):
        column = metadata.row_group(i).column(0)
        if column.has_dictionary_page and column.dictionary_page_offset:
            offsets.append(column.dictionary_page_offset)
        else:
            offsets.append(column.data_page_offset)
    return sorted(offsets) or None


def _column_sizes(metadata: pq.FileMetaData, schema: Schema) -> Dict[int, int]:
    ids = {f.name: f.field_id for f in schema.fields if f.field_type.is_primitive}
    sizes: Dict[int, int] = {}
    for i in range(metadata.num_row_groups):
        row_group = metadata.row_group(i)
        for j in range(row_group.num_columns):
            column = row_group.column(j)
            field_id = ids.get(column.path_in_schema)
            if field_id is not None:
                sizes[field_id] = sizes.get(field_id, 0) + column.total_compressed_size
    return sizes


def write_arrow_data_files(io: Any, metadata: TableMetadata, table: Any) -> List[DataFile]:
    """Write a pyarrow.Table as Parquet data files, one per partition.

    Returns the DataFile descriptors with their column metrics, ready to be
    staged on a transaction.
    """
    if not hasattr(table, "schema") or not hasattr(table, "num_rows"):
        raise TypeError("expected a pyarrow.Table-like object")

    schema = metadata.schema()
    spec = metadata.spec()
    table = _conform(table, schema)

    groups: Dict[Tuple[Any, ...], List[int]] = {}
    if spec.is_unpartitioned():
        groups[()] = list(range(table.num_rows))
    else:
        sources = sorted({schema.find_column_name(pf.source_id) for pf in spec.fields})
        for index, row in enumerate(table.select(sources).to_pylist()):
            groups.setdefault(spec.partition_for_row(schema, row), []).append(index)

    files = []
    for partition, indices in groups.items():
        part = table if spec.is_unpartitioned() else table.take(pa.array(indices, type=pa.int64()))
        files.append(_write_one(io, metadata, schema, spec, partition, part))
    return files


def _write_one(
    io: Any,
    metadata: TableMetadata,
    schema: Schema,
    spec: PartitionSpec,
    partition: Tuple[Any, ...],
    table: pa.Table,
) -> DataFile:
    directory = f"{metadata.location}/data"
    if partition:
        directory = f"{directory}/{spec.partition_to_path(partition)}"
    data_path = f"{directory}/data-{int(time.time() * 1000)}-{uuid.uuid4().hex}.parquet"

    buf = pa.BufferOutputStream()
    pq.write_table(table, buf, compression="zstd")
    pdata = buf.getvalue().to_pybytes()

    out = io.new_output(data_path).create()
    out.write(pdata)
    out.close()

    parquet_metadata = pq.ParquetFile(pa.BufferReader(pdata)).metadata
    metrics = _column_metrics(table, schema)
    logger.info("wrote data file %s (%d rows, %d bytes)", data_path, table.num_rows, len(pdata))
    return DataFile(
        file_path=data_path,
        file_format=FileFormat.PARQUET,
        partition=partition,
        record_count=int(table.num_rows),
        file_size_in_bytes=len(pdata),
        spec_id=spec.spec_id,
        column_sizes=_column_sizes(parquet_metadata, schema),
        split_offsets=_split_offsets(parquet_metadata),
        **metrics,
    )


@dataclass
class SimpleTable:
    identifier: str
    _metadata: TableMetadata
    metadata_location: Optional[str] = None
    io: Any = None
    catalog: Any = None

    @property
    def metadata(self) -> TableMetadata:
        return self._metadata

    @property
    def location(self) -> str:
        return self._metadata.location

    @property
    def properties(self) -> Dict[str, str]:
        return dict(self._metadata.properties)

    def schema(self) -> Schema:
        return self._metadata.schema()

    def spec(self) -> PartitionSpec:
        return self._metadata.spec()

    def current_snapshot(self) -> Optional[Snapshot]:
        return self._metadata.current_snapshot()

    def snapshots(self) -> List[Snapshot]:
        return list(self._metadata.snapshots)

    def snapshot_as_of(self, snapshot_id: Optional[int] = None, timestamp_ms: Optional[int] = None) -> Snapshot:
        return snapshot_as_of(self._metadata, snapshot_id, timestamp_ms)

    def refresh(self) -> "SimpleTable":
        """Reload the current metadata from the catalog."""
        location = self.catalog.current_metadata_location(self.identifier)
        if location != self.metadata_location:
            self._metadata = read_table_metadata(self.io, location)
            self.metadata_location = location
        return self

    def rel_path(self, path: str) -> str:
        """`path` relative to the table location, when it lies under it."""
        prefix = self.location.rstrip("/") + "/"
        return path[len(prefix) :] if path.startswith(prefix) else path

    def current_data_files(self) -> Set[DataFile]:
        return resolve_files_as_of(self.io, self.current_snapshot(), self._metadata)

    def scan(
        self,
        row_filter: Optional[BooleanExpression] = None,
        selected_fields: Sequence[str] = ALL_COLUMNS,
        snapshot_id: Optional[int] = None,
        options: Optional[ScanOptions] = None,
        **overrides: Any,
    ) -> DataScan:
        """Scan of the table; `overrides` adjust the ScanOptions read from table properties."""
        if options is None:
            options = ScanOptions.from_properties(self._metadata.properties, **overrides)
        return DataScan(
            self._metadata,
            self.io,
            row_filter=row_filter,
            selected_fields=selected_fields,
            snapshot_id=snapshot_id,
            options=options,
        )

    def new_scan(self, *args: Any, **kwargs: Any) -> DataScan:
        return self.scan(*args, **kwargs)

    def new_transaction(self, author: Optional[str] = None, commit_message: Optional[str] = None) -> Transaction:
        if self.catalog is None:
            raise ValidationError(f"Table {self.identifier} is not attached to a catalog")
        return Transaction(
            self.catalog,
            self.identifier,
            self._metadata,
            self.metadata_location,
            io=self.io,
            author=author,
            commit_message=commit_message,
        )

    def _data_files(self, data: Any) -> List[DataFile]:
        if isinstance(data, DataFile):
            return [data]
        if hasattr(data, "schema") and hasattr(data, "num_rows"):
            return write_arrow_data_files(self.io, self._metadata, data)
        return list(data)

    def append(self, data: Any, commit_message: Optional[str] = None) -> Optional[int]:
        """Append DataFiles, or a pyarrow.Table written as new data files, and commit."""
        txn = self.new_transaction(commit_message=commit_message)
        txn.append(self._data_files(data))
        snapshot_id = txn.commit()
        self.refresh()
        return snapshot_id

    def overwrite(
        self, delete_paths: Iterable[str], data: Any = (), commit_message: Optional[str] = None
    ) -> Optional[int]:
        txn = self.new_transaction(commit_message=commit_message)
        txn.overwrite(delete_paths, self._data_files(data))
        snapshot_id = txn.commit()
        self.refresh()
        return snapshot_id
