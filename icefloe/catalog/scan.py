from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from ..config import ScanOptions
from ..deadline import Deadline
from .evaluators import InclusiveMetricsEvaluator
from .evaluators import ManifestEvaluator
from .evaluators import PartitionEvaluator
from .expressions import AlwaysTrue
from .expressions import BooleanExpression
from .expressions import and_
from .manifest import DataFile
from .manifest import FileFormat
from .manifest import read_manifest
from .metadata import TableMetadata
from .schema import Schema
from .snapshots import Snapshot
from .snapshots import manifests_of
from .snapshots import snapshot_as_of

logger = logging.getLogger(__name__)

ALL_COLUMNS = ("*",)


@dataclass(frozen=True)
class FileScanTask:
    """A byte range of one data file to be read by the query engine."""

    file: DataFile
    partition: Tuple[Any, ...]
    spec_id: int
    start: int = 0
    length: int = 0

    @property
    def file_path(self) -> str:
        return self.file.file_path

    @property
    def file_format(self) -> FileFormat:
        return self.file.file_format


def _valid_offsets(offsets: Optional[List[int]], size: int) -> bool:
    if not offsets:
        return False
    if offsets[0] < 0 or offsets[-1] >= size:
        return False
    return all(a < b for a, b in zip(offsets, offsets[1:]))


def split_file(data_file: DataFile, target_size: int) -> Iterator[Tuple[int, int]]:
    """(start, length) ranges covering `data_file`.

    Row-group offsets are kept as boundaries and merged up to `target_size`;
    without offsets the file is cut into fixed-size ranges.
    """
    size = data_file.file_size_in_bytes
    if size <= target_size:
        yield 0, size
        return

    offsets = data_file.split_offsets
    if _valid_offsets(offsets, size):
        boundaries = list(offsets) + [size]
        start = end = boundaries[0]
        for boundary in boundaries[1:]:
            if end > start and boundary - start > target_size:
                yield start, end - start
                start = end
            end = boundary
        yield start, end - start
        return

    for start in range(0, size, target_size):
        yield start, min(target_size, size - start)


class DataScan:
    """Plans the files of one snapshot that might match a row filter.

    Planning is lazy: manifests are opened only as `plan_files()` is
    consumed, so a caller can stop early or cancel through a `Deadline`.
    """

    def __init__(
        self,
        metadata: TableMetadata,
        io: Any,
        row_filter: Optional[BooleanExpression] = None,
        selected_fields: Sequence[str] = ALL_COLUMNS,
        snapshot_id: Optional[int] = None,
        options: Optional[ScanOptions] = None,
        as_of_timestamp_ms: Optional[int] = None,
    ):
        self.metadata = metadata
        self.io = io
        self.row_filter = row_filter if row_filter is not None else AlwaysTrue()
        self.selected_fields = tuple(selected_fields)
        self.snapshot_id = snapshot_id
        self.as_of_timestamp_ms = as_of_timestamp_ms
        self.options = options or ScanOptions.from_properties(metadata.properties)

    def _copy(self, **changes: Any) -> "DataScan":
        params = {
            "metadata": self.metadata,
            "io": self.io,
            "row_filter": self.row_filter,
            "selected_fields": self.selected_fields,
            "snapshot_id": self.snapshot_id,
            "options": self.options,
            "as_of_timestamp_ms": self.as_of_timestamp_ms,
        }
        params.update(changes)
        return DataScan(**params)

    def filter(self, expr: BooleanExpression) -> "DataScan":
        return self._copy(row_filter=and_(self.row_filter, expr))

    def select(self, *names: str) -> "DataScan":
        return self._copy(selected_fields=names)

    def use_snapshot(self, snapshot_id: int) -> "DataScan":
        return self._copy(snapshot_id=snapshot_id, as_of_timestamp_ms=None)

    def snapshot(self) -> Optional[Snapshot]:
        if self.snapshot_id is None and self.as_of_timestamp_ms is None:
            return self.metadata.current_snapshot()
        return snapshot_as_of(self.metadata, self.snapshot_id, self.as_of_timestamp_ms)

    def _schema(self, snapshot: Optional[Snapshot]) -> Schema:
        # time travel reads with the schema the snapshot was written with
        if snapshot is not None and snapshot.schema_id is not None and self.snapshot_id is not None:
            return self.metadata.schema_by_id(snapshot.schema_id)
        return self.metadata.schema()

    def projection(self) -> Schema:
        schema = self._schema(self.snapshot())
        if self.selected_fields == ALL_COLUMNS:
            return schema
        return schema.select(self.selected_fields, self.options.case_sensitive)

    def _tasks(self, data_file: DataFile) -> Iterator[FileScanTask]:
        if not self.options.split_enabled:
            yield FileScanTask(data_file, data_file.partition, data_file.spec_id, 0, data_file.file_size_in_bytes)
            return
        for start, length in split_file(data_file, self.options.split_target_size):
            yield FileScanTask(data_file, data_file.partition, data_file.spec_id, start, length)

    def plan_files(self, deadline: Optional[Deadline] = None) -> Iterator[FileScanTask]:
        deadline = deadline or Deadline.never()
        snapshot = self.snapshot()
        if snapshot is None:
            return
        schema = self._schema(snapshot)
        case_sensitive = self.options.case_sensitive

        manifest_evaluators: Dict[int, ManifestEvaluator] = {}
        partition_evaluators: Dict[int, PartitionEvaluator] = {}
        metrics_evaluator = InclusiveMetricsEvaluator(schema, self.row_filter, case_sensitive)

        for manifest in manifests_of(self.io, snapshot):
            deadline.check("scan planning")
            if manifest.live_files_count == 0:
                continue

            spec_id = manifest.partition_spec_id
            if spec_id not in manifest_evaluators:
                spec = self.metadata.spec_by_id(spec_id)
                partition_type = self.metadata.partition_type_for(spec_id)
                manifest_evaluators[spec_id] = ManifestEvaluator(
                    spec, schema, self.row_filter, case_sensitive, partition_type
                )
                partition_evaluators[spec_id] = PartitionEvaluator(
                    spec, schema, self.row_filter, case_sensitive, partition_type
                )
            if not manifest_evaluators[spec_id].eval(manifest):
                continue

            partition_type = self.metadata.partition_type_for(spec_id)
            for entry in read_manifest(self.io, manifest, partition_type, discard_deleted=True):
                deadline.check("scan planning")
                data_file = entry.data_file
                if not partition_evaluators[spec_id].eval(data_file):
                    logger.debug("pruned data file %s by partition", data_file.file_path)
                    continue
                if not metrics_evaluator.eval(data_file):
                    continue
                yield from self._tasks(data_file)

    def plan_file_paths(self, deadline: Optional[Deadline] = None) -> List[str]:
        seen: Dict[str, None] = {}
        for task in self.plan_files(deadline):
            seen.setdefault(task.file_path, None)
        return list(seen)
