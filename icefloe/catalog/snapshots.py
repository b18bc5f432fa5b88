from __future__ import annotations

import bisect
import logging
import threading
import time
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any
from typing import Dict
from typing import Iterable
from typing import Iterator
from typing import Optional
from typing import Set

from ..exceptions import CorruptMetadataError
from ..exceptions import SnapshotNotFoundError
from .manifest import DataFile
from .manifest import ManifestEntryStatus
from .manifest import ManifestFile
from .manifest import read_manifest
from .manifest import read_manifest_list

logger = logging.getLogger(__name__)

SUMMARY_COUNTERS = (
    "added-data-files",
    "added-files-size",
    "added-records",
    "deleted-data-files",
    "deleted-files-size",
    "deleted-records",
    "total-data-files",
    "total-files-size",
    "total-records",
)


class Operation(str, Enum):
    APPEND = "append"
    OVERWRITE = "overwrite"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True)
class Summary:
    operation: Operation
    properties: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    def to_dict(self) -> dict:
        return {"operation": self.operation.value, **self.properties}

    @classmethod
    def from_dict(cls, data: dict) -> "Summary":
        data = dict(data or {})
        try:
            operation = Operation(data.pop("operation", Operation.APPEND.value))
        except ValueError as err:
            raise CorruptMetadataError(f"Unknown snapshot operation: {err}") from err
        return cls(operation=operation, properties=data)


@dataclass(frozen=True)
class Snapshot:
    snapshot_id: int
    parent_snapshot_id: Optional[int]
    sequence_number: int
    timestamp_ms: int
    manifest_list: Optional[str]
    summary: Summary
    schema_id: Optional[int] = None
    author: Optional[str] = None
    commit_message: Optional[str] = None

    @property
    def operation(self) -> Operation:
        return self.summary.operation

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "snapshot-id": self.snapshot_id,
            "sequence-number": self.sequence_number,
            "timestamp-ms": self.timestamp_ms,
            "manifest-list": self.manifest_list,
            "summary": self.summary.to_dict(),
        }
        if self.parent_snapshot_id is not None:
            data["parent-snapshot-id"] = self.parent_snapshot_id
        if self.schema_id is not None:
            data["schema-id"] = self.schema_id
        if self.author is not None:
            data["author"] = self.author
        if self.commit_message is not None:
            data["commit-message"] = self.commit_message
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        try:
            return cls(
                snapshot_id=int(data["snapshot-id"]),
                parent_snapshot_id=data.get("parent-snapshot-id"),
                sequence_number=int(data.get("sequence-number", 0)),
                timestamp_ms=int(data["timestamp-ms"]),
                manifest_list=data.get("manifest-list"),
                summary=Summary.from_dict(data.get("summary") or {}),
                schema_id=data.get("schema-id"),
                author=data.get("author"),
                commit_message=data.get("commit-message"),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise CorruptMetadataError(f"Malformed snapshot: {data!r}") from err


class SnapshotIdGenerator:
    """Thread-safe, strictly increasing snapshot ids.

    Ids are millisecond timestamps bumped past anything handed out before
    and past the highest id in the metadata the caller passes in.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    def next_id(self, metadata: Any = None) -> int:
        highest = 0
        if metadata is not None:
            highest = max((s.snapshot_id for s in metadata.snapshots), default=0)
        with self._lock:
            self._last = max(self._last + 1, highest + 1, int(time.time() * 1000))
            return self._last


SNAPSHOT_IDS = SnapshotIdGenerator()


class SnapshotSummaryCollector:
    """Accumulates the added/deleted counters of one commit."""

    def __init__(self):
        self.added_files = 0
        self.added_size = 0
        self.added_records = 0
        self.deleted_files = 0
        self.deleted_size = 0
        self.deleted_records = 0

    def add_file(self, data_file: DataFile) -> None:
        self.added_files += 1
        self.added_size += data_file.file_size_in_bytes
        self.added_records += data_file.record_count

    def remove_file(self, data_file: DataFile) -> None:
        self.deleted_files += 1
        self.deleted_size += data_file.file_size_in_bytes
        self.deleted_records += data_file.record_count

    def build(self, parent: Optional[Snapshot]) -> Dict[str, Any]:
        prev_total_files = prev_total_size = prev_total_records = 0
        if parent is not None:
            prev_total_files = int(parent.summary.get("total-data-files", 0))
            prev_total_size = int(parent.summary.get("total-files-size", 0))
            prev_total_records = int(parent.summary.get("total-records", 0))
        return {
            "added-data-files": self.added_files,
            "added-files-size": self.added_size,
            "added-records": self.added_records,
            "deleted-data-files": self.deleted_files,
            "deleted-files-size": self.deleted_size,
            "deleted-records": self.deleted_records,
            "total-data-files": prev_total_files + self.added_files - self.deleted_files,
            "total-files-size": prev_total_size + self.added_size - self.deleted_size,
            "total-records": prev_total_records + self.added_records - self.deleted_records,
        }


def append_snapshot(
    parent: Optional[Snapshot],
    manifest_list: Optional[str],
    operation: Operation,
    snapshot_id: int,
    sequence_number: int,
    summary: Optional[Dict[str, Any]] = None,
    schema_id: Optional[int] = None,
    timestamp_ms: Optional[int] = None,
    author: Optional[str] = None,
    commit_message: Optional[str] = None,
) -> Snapshot:
    """Build the next snapshot node. No I/O: publication happens at commit."""
    if parent is not None and snapshot_id <= parent.snapshot_id:
        raise ValueError(f"Snapshot id {snapshot_id} must be greater than its parent {parent.snapshot_id}")
    if parent is not None and sequence_number <= parent.sequence_number:
        raise ValueError(
            f"Sequence number {sequence_number} must be greater than its parent {parent.sequence_number}"
        )
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    if parent is not None:
        # clocks may disagree between writers; history stays ordered
        timestamp_ms = max(timestamp_ms, parent.timestamp_ms)
    return Snapshot(
        snapshot_id=snapshot_id,
        parent_snapshot_id=parent.snapshot_id if parent is not None else None,
        sequence_number=sequence_number,
        timestamp_ms=timestamp_ms,
        manifest_list=manifest_list,
        summary=Summary(operation, dict(summary or {})),
        schema_id=schema_id,
        author=author,
        commit_message=commit_message,
    )


def manifests_of(io: Any, snapshot: Optional[Snapshot]) -> Iterable[ManifestFile]:
    if snapshot is None or not snapshot.manifest_list:
        return ()
    return read_manifest_list(io, snapshot.manifest_list)


def resolve_files_as_of(io: Any, snapshot: Optional[Snapshot], metadata: Any) -> Set[DataFile]:
    """The live data files (ADDED or EXISTING) reachable from `snapshot`."""
    files: Set[DataFile] = set()
    for manifest in manifests_of(io, snapshot):
        if manifest.live_files_count == 0 and manifest.has_deleted_files():
            continue
        partition_type = metadata.partition_type_for(manifest.partition_spec_id)
        for entry in read_manifest(io, manifest, partition_type, discard_deleted=True):
            if entry.status in (ManifestEntryStatus.ADDED, ManifestEntryStatus.EXISTING):
                files.add(entry.data_file)
    return files


def snapshot_as_of(
    metadata: Any, snapshot_id: Optional[int] = None, timestamp_ms: Optional[int] = None
) -> Snapshot:
    """Resolve a time-travel target.

    By id, or the latest snapshot-log entry at or before `timestamp_ms`.
    With neither, the current snapshot.
    """
    if snapshot_id is not None:
        snap = metadata.snapshot_by_id(snapshot_id)
        if snap is None:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        return snap

    if timestamp_ms is not None:
        log = metadata.snapshot_log
        timestamps = [e.timestamp_ms for e in log]
        idx = bisect.bisect_right(timestamps, timestamp_ms) - 1
        if idx < 0:
            raise SnapshotNotFoundError(f"No snapshot at or before {timestamp_ms}")
        snap = metadata.snapshot_by_id(log[idx].snapshot_id)
        if snap is None:
            raise SnapshotNotFoundError(
                f"Snapshot {log[idx].snapshot_id} as of {timestamp_ms} has been expired"
            )
        return snap

    snap = metadata.current_snapshot()
    if snap is None:
        raise SnapshotNotFoundError("Table has no current snapshot")
    return snap


def ancestors_of(snapshot: Optional[Snapshot], metadata: Any) -> Iterator[Snapshot]:
    """`snapshot` and its parents, newest first, while they are retained."""
    seen: Set[int] = set()
    while snapshot is not None and snapshot.snapshot_id not in seen:
        seen.add(snapshot.snapshot_id)
        yield snapshot
        if snapshot.parent_snapshot_id is None:
            return
        snapshot = metadata.snapshot_by_id(snapshot.parent_snapshot_id)


def snapshots_since(metadata: Any, base_snapshot_id: Optional[int]) -> list:
    """Snapshots committed on top of `base_snapshot_id`, oldest first."""
    out = []
    for snap in ancestors_of(metadata.current_snapshot(), metadata):
        if snap.snapshot_id == base_snapshot_id:
            break
        out.append(snap)
    out.reverse()
    return out
