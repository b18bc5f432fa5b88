"""Optimistic transactions.

A `Transaction` stages data and metadata changes against the table
metadata it was opened on, then publishes them by asking the catalog to
swap the table's metadata pointer from that base version to a new one.
When another writer wins the swap, the staged changes are validated
against the commits in between and, when compatible, replayed on the new
base and retried with backoff.
"""

from __future__ import annotations

import logging
import os
import time
from enum import Enum
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional
from typing import Set
from typing import Tuple
from typing import Union

from ..config import MANIFEST_TARGET_SIZE_BYTES
from ..config import MANIFEST_TARGET_SIZE_BYTES_DEFAULT
from ..config import METADATA_PREVIOUS_VERSIONS_MAX
from ..config import METADATA_PREVIOUS_VERSIONS_MAX_DEFAULT
from ..config import CommitRetryPolicy
from ..config import property_as_int
from ..deadline import Deadline
from ..exceptions import CommitConflictError
from ..exceptions import CommitStateUnknownError
from ..exceptions import CorruptMetadataError
from ..exceptions import IcefloeError
from ..exceptions import ValidationError
from .conversions import to_internal
from .manifest import DataFile
from .manifest import ManifestEntry
from .manifest import ManifestEntryStatus
from .manifest import ManifestFile
from .manifest import read_manifest
from .manifest import write_manifest
from .manifest import write_manifest_list
from .manifest import write_manifests
from .metadata import TableMetadata
from .metadata import holds_table_metadata
from .metadata import read_table_metadata
from .partitioning import evolve_partition_spec
from .schema import evolve_schema
from .schema import retired_field_ids
from .snapshots import SNAPSHOT_IDS
from .snapshots import Operation
from .snapshots import Snapshot
from .snapshots import SnapshotSummaryCollector
from .snapshots import ancestors_of
from .snapshots import append_snapshot
from .snapshots import manifests_of
from .snapshots import snapshots_since

logger = logging.getLogger(__name__)

PartitionValue = Union[Tuple[Any, ...], Mapping[str, Any]]


class TransactionState(str, Enum):
    OPEN = "open"
    STAGED = "staged"
    COMMITTING = "committing"
    COMMITTED = "committed"
    CONFLICT = "conflict"
    ABORTED = "aborted"


def _default_author() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


class Transaction:
    """A unit of change against one table.

    Staging calls only record intent; nothing is written until `commit()`.
    """

    def __init__(
        self,
        catalog: Any,
        identifier: str,
        base_metadata: TableMetadata,
        base_location: Optional[str],
        io: Any = None,
        author: Optional[str] = None,
        commit_message: Optional[str] = None,
    ):
        self.catalog = catalog
        self.identifier = identifier
        self.io = io if io is not None else catalog.io
        self.author = author or _default_author()
        self.commit_message = commit_message
        self.state = TransactionState.OPEN

        self._base = base_metadata
        self._base_location = base_location

        self._added: Dict[str, DataFile] = {}
        self._deleted_paths: Set[str] = set()
        self._overwritten_partitions: List[Tuple[Optional[int], PartitionValue]] = []
        self._schema_changes: List[Any] = []
        self._spec_changes: List[Any] = []
        self._property_updates: Dict[str, str] = {}
        self._property_removals: Set[str] = set()

        self._new_manifests: Optional[List[ManifestFile]] = None
        self._snapshot_id: Optional[int] = None
        self._removed_in_attempt: Set[str] = set()
        self._attempt_files: List[str] = []
        self._committed_snapshot_id: Optional[int] = None
        self._committed_location: Optional[str] = None
        self._unconfirmed: List[Tuple[Optional[str], Optional[int], Optional[TableMetadata]]] = []

    def __repr__(self) -> str:
        return f"Transaction({self.identifier!r}, state={self.state.value})"

    # -- staging -----------------------------------------------------------------

    @property
    def base_metadata(self) -> TableMetadata:
        return self._base

    def _stage(self) -> None:
        if self.state in (TransactionState.COMMITTED, TransactionState.COMMITTING):
            raise ValidationError(f"Cannot stage changes on a {self.state.value} transaction")
        self.state = TransactionState.STAGED

    def _stage_files(self, files: Iterable[DataFile]) -> None:
        for data_file in files:
            if not isinstance(data_file, DataFile):
                raise ValidationError(f"Expected a DataFile, got {type(data_file).__name__}")
            if data_file.file_path in self._added:
                raise ValidationError(f"Data file staged twice: {data_file.file_path}")
            if data_file.record_count < 0 or data_file.file_size_in_bytes < 0:
                raise ValidationError(f"Negative counts on {data_file.file_path}")
            self._added[data_file.file_path] = data_file

    def append(self, files: Iterable[DataFile]) -> "Transaction":
        self._stage()
        self._stage_files(files)
        return self

    def overwrite(self, delete_paths: Iterable[str], add_files: Iterable[DataFile] = ()) -> "Transaction":
        self._stage()
        self._deleted_paths.update(delete_paths)
        self._stage_files(add_files)
        return self

    def overwrite_partition(
        self, partition: PartitionValue, add_files: Iterable[DataFile] = (), spec_id: Optional[int] = None
    ) -> "Transaction":
        """Replace every live file of one partition with `add_files`.

        `partition` is a tuple in spec field order or a mapping of partition
        field name to value, under `spec_id` (the default spec when omitted).
        """
        self._stage()
        add_files = list(add_files)
        self._overwritten_partitions.append((spec_id, partition))
        self._stage_files(add_files)
        return self

    def delete_files(self, paths: Iterable[str]) -> "Transaction":
        self._stage()
        self._deleted_paths.update(paths)
        return self

    def update_schema(self, changes: Iterable[Any]) -> "Transaction":
        changes = list(changes)
        # validated now so callers see errors at the call site
        base = self._apply_metadata_changes(self._base)
        evolve_schema(base.schema(), changes, base.last_column_id, [base.spec()])
        self._stage()
        self._schema_changes.extend(changes)
        return self

    def update_spec(self, changes: Iterable[Any]) -> "Transaction":
        changes = list(changes)
        base = self._apply_metadata_changes(self._base)
        evolve_partition_spec(base.spec(), base.schema(), changes, base.last_partition_id, base.partition_specs)
        self._stage()
        self._spec_changes.extend(changes)
        return self

    def set_properties(self, properties: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "Transaction":
        self._stage()
        updates = {**(properties or {}), **kwargs}
        for key, value in updates.items():
            self._property_updates[key] = str(value)
            self._property_removals.discard(key)
        return self

    def remove_properties(self, *keys: str) -> "Transaction":
        self._stage()
        for key in keys:
            self._property_removals.add(key)
            self._property_updates.pop(key, None)
        return self

    @property
    def has_data_changes(self) -> bool:
        return bool(self._added or self._deleted_paths or self._overwritten_partitions)

    # -- building ------------------------------------------------------------------

    def _apply_metadata_changes(self, metadata: TableMetadata) -> TableMetadata:
        if self._schema_changes:
            result = evolve_schema(
                metadata.schema(), self._schema_changes, metadata.last_column_id, [metadata.spec()]
            )
            metadata = metadata.with_schema(result.schema, result.last_column_id)
        if self._spec_changes:
            result = evolve_partition_spec(
                metadata.spec(),
                metadata.schema(),
                self._spec_changes,
                metadata.last_partition_id,
                metadata.partition_specs,
            )
            metadata = metadata.with_spec(result.spec, result.last_partition_id)
        if self._property_updates or self._property_removals:
            metadata = metadata.with_properties(self._property_updates, self._property_removals)
        return metadata

    def _resolve_partition(self, metadata: TableMetadata, spec_id: Optional[int], partition: PartitionValue):
        spec = metadata.spec() if spec_id is None else metadata.spec_by_id(spec_id)
        partition_type = metadata.partition_type_for(spec.spec_id)
        if isinstance(partition, Mapping):
            unknown = set(partition) - {pf.name for pf in spec.fields}
            if unknown:
                raise ValidationError(f"Unknown partition fields: {sorted(unknown)}")
            values = [partition.get(pf.name) for pf in spec.fields]
        else:
            values = list(partition)
        if len(values) != len(spec.fields):
            raise ValidationError(f"Partition {partition!r} does not match spec {spec.spec_id}")
        return spec.spec_id, tuple(
            None if v is None else to_internal(f.field_type, v) for f, v in zip(partition_type.fields, values)
        )

    def _validate_new_files(self, metadata: TableMetadata) -> None:
        specs = metadata.specs()
        for data_file in self._added.values():
            spec = specs.get(data_file.spec_id)
            if spec is None:
                raise ValidationError(f"{data_file.file_path} uses unknown partition spec {data_file.spec_id}")
            if len(data_file.partition) != len(spec.fields):
                raise ValidationError(
                    f"{data_file.file_path} has {len(data_file.partition)} partition values, "
                    f"spec {spec.spec_id} has {len(spec.fields)} fields"
                )

    def _write_new_manifests(self, metadata: TableMetadata) -> List[ManifestFile]:
        # written once; entries inherit snapshot id and sequence number from the list
        if self._new_manifests is not None:
            return self._new_manifests
        target = property_as_int(
            metadata.properties, MANIFEST_TARGET_SIZE_BYTES, MANIFEST_TARGET_SIZE_BYTES_DEFAULT
        )
        by_spec: Dict[int, List[ManifestEntry]] = {}
        for data_file in self._added.values():
            by_spec.setdefault(data_file.spec_id, []).append(
                ManifestEntry(ManifestEntryStatus.ADDED, None, data_file)
            )
        manifests: List[ManifestFile] = []
        for spec_id, entries in sorted(by_spec.items()):
            manifests.extend(
                write_manifests(
                    self.io,
                    metadata.location,
                    metadata.spec_by_id(spec_id),
                    metadata.schema(),
                    entries,
                    target_size_bytes=target,
                )
            )
        self._new_manifests = manifests
        return manifests

    def _rewrite_existing(
        self,
        metadata: TableMetadata,
        parent: Optional[Snapshot],
        collector: SnapshotSummaryCollector,
    ) -> List[ManifestFile]:
        """Carry the parent's manifests forward, marking removed files DELETED."""
        overwritten = {self._resolve_partition(metadata, s, p) for s, p in self._overwritten_partitions}
        removing = bool(self._deleted_paths or overwritten)
        found: Set[str] = set()
        removed: Set[str] = set()
        out: List[ManifestFile] = []

        for manifest in manifests_of(self.io, parent):
            if manifest.live_files_count == 0:
                continue
            if not removing:
                out.append(manifest)
                continue

            partition_type = metadata.partition_type_for(manifest.partition_spec_id)
            entries = list(read_manifest(self.io, manifest, partition_type, discard_deleted=True))
            rewritten: List[ManifestEntry] = []
            changed = False
            for entry in entries:
                data_file = entry.data_file
                drop = data_file.file_path in self._deleted_paths or (
                    (data_file.spec_id, data_file.partition) in overwritten
                )
                if drop:
                    found.add(data_file.file_path)
                    removed.add(data_file.file_path)
                    collector.remove_file(data_file)
                    rewritten.append(ManifestEntry(ManifestEntryStatus.DELETED, None, data_file,
                                                   entry.sequence_number, entry.file_sequence_number))
                    changed = True
                else:
                    rewritten.append(
                        ManifestEntry(ManifestEntryStatus.EXISTING, entry.snapshot_id, data_file,
                                      entry.sequence_number, entry.file_sequence_number)
                    )
            if not changed:
                out.append(manifest)
                continue
            rewritten_manifest = write_manifest(
                self.io,
                metadata.location,
                metadata.spec_by_id(manifest.partition_spec_id),
                metadata.schema(),
                rewritten,
            )
            self._attempt_files.append(rewritten_manifest.manifest_path)
            out.append(rewritten_manifest)

        missing = self._deleted_paths - found
        if missing:
            raise ValidationError(f"Cannot delete files that are not in the table: {sorted(missing)}")
        self._removed_in_attempt = removed
        return out

    def _operation(self) -> Operation:
        if self._removed_in_attempt:
            return Operation.OVERWRITE if self._added else Operation.DELETE
        return Operation.OVERWRITE if self._overwritten_partitions else Operation.APPEND

    def _next_snapshot_id(self, metadata: TableMetadata) -> int:
        current = metadata.current_snapshot()
        if (
            self._snapshot_id is None
            or metadata.snapshot_by_id(self._snapshot_id) is not None
            or (current is not None and self._snapshot_id <= current.snapshot_id)
        ):
            self._snapshot_id = SNAPSHOT_IDS.next_id(metadata)
        return self._snapshot_id

    def _apply(self) -> Tuple[TableMetadata, Optional[Snapshot]]:
        """The metadata this transaction would publish on the current base."""
        self._attempt_files = []
        metadata = self._apply_metadata_changes(self._base)
        if not self.has_data_changes:
            return metadata, None

        self._validate_new_files(metadata)
        parent = metadata.current_snapshot()
        collector = SnapshotSummaryCollector()
        existing = self._rewrite_existing(metadata, parent, collector)
        new_manifests = self._write_new_manifests(metadata)
        for data_file in self._added.values():
            collector.add_file(data_file)

        snapshot_id = self._next_snapshot_id(metadata)
        sequence_number = metadata.last_sequence_number + 1
        manifest_list = write_manifest_list(
            self.io,
            metadata.location,
            snapshot_id,
            parent.snapshot_id if parent is not None else None,
            sequence_number,
            new_manifests + existing,
        )
        self._attempt_files.append(manifest_list)
        snapshot = append_snapshot(
            parent,
            manifest_list,
            self._operation(),
            snapshot_id,
            sequence_number,
            summary=collector.build(parent),
            schema_id=metadata.current_schema_id,
            author=self.author,
            commit_message=self.commit_message,
        )
        return metadata.with_snapshot(snapshot), snapshot

    # -- conflict validation ------------------------------------------------------

    def _conflict(self, message: str) -> CommitConflictError:
        logger.debug("commit to %s conflicts: %s", self.identifier, message)
        return CommitConflictError(f"Commit to {self.identifier} conflicts with a concurrent commit: {message}")

    def _validate_against(self, current: TableMetadata) -> None:
        """Raise CommitConflictError unless staged changes still apply on `current`."""
        base = self._base

        if self._schema_changes and (
            current.current_schema_id != base.current_schema_id or len(current.schemas) != len(base.schemas)
        ):
            raise self._conflict("the schema was changed")
        if self._spec_changes and (
            current.default_spec_id != base.default_spec_id
            or len(current.partition_specs) != len(base.partition_specs)
        ):
            raise self._conflict("the partition spec was changed")
        if not self.has_data_changes:
            return

        retired = set(retired_field_ids(base.schema(), current.schema()))
        if retired:
            for data_file in self._added.values():
                referenced = set(data_file.referenced_field_ids())
                if data_file.spec_id in current.specs():
                    referenced.update(pf.source_id for pf in current.spec_by_id(data_file.spec_id).fields)
                if referenced & retired:
                    raise self._conflict(
                        f"{data_file.file_path} references dropped columns {sorted(referenced & retired)}"
                    )

        base_id = base.current_snapshot_id
        history = {s.snapshot_id for s in ancestors_of(current.current_snapshot(), current)}
        if base_id is not None and base_id not in history:
            raise self._conflict(f"snapshot {base_id} is no longer in the table history")

        removing = self._deleted_paths | self._removed_in_attempt
        overwritten = set()
        if self._overwritten_partitions:
            staged = self._apply_metadata_changes(base)
            overwritten = {self._resolve_partition(staged, s, p) for s, p in self._overwritten_partitions}
        for snapshot in snapshots_since(current, base_id):
            for manifest in manifests_of(self.io, snapshot):
                if manifest.added_snapshot_id != snapshot.snapshot_id:
                    continue
                partition_type = current.partition_type_for(manifest.partition_spec_id)
                for entry in read_manifest(self.io, manifest, partition_type):
                    if entry.snapshot_id != snapshot.snapshot_id:
                        continue
                    path = entry.data_file.file_path
                    if entry.status == ManifestEntryStatus.ADDED:
                        if path in self._added:
                            raise self._conflict(f"{path} was added by snapshot {snapshot.snapshot_id}")
                        key = (entry.data_file.spec_id, entry.data_file.partition)
                        if key in overwritten:
                            raise self._conflict(
                                f"snapshot {snapshot.snapshot_id} added files to partition {key[1]!r}"
                            )
                    elif entry.status == ManifestEntryStatus.DELETED and path in removing:
                        raise self._conflict(f"{path} was removed by snapshot {snapshot.snapshot_id}")

    # -- commit --------------------------------------------------------------------

    def _refresh(self) -> Tuple[TableMetadata, Optional[str]]:
        location = self.catalog.current_metadata_location(self.identifier)
        if location is None:
            raise CommitConflictError(f"Table {self.identifier} no longer exists")
        return read_table_metadata(self.io, location), location

    def _landed(self, current: TableMetadata, current_location: Optional[str]) -> Optional[Tuple[str, Optional[int]]]:
        """The unconfirmed attempt that `current` shows was published, if any."""
        published = {entry.metadata_file for entry in current.metadata_log} | {current_location}
        # attempts share a snapshot id, so prefer the one whose document was published
        for location, snapshot_id, metadata in sorted(self._unconfirmed, key=lambda u: u[0] not in published):
            if snapshot_id is not None:
                if current.snapshot_by_id(snapshot_id) is not None:
                    return location, snapshot_id
            elif location in published and holds_table_metadata(self.io, location, metadata):
                return location, None
        return None

    def _mark_committed(self, location: Optional[str], snapshot_id: Optional[int]) -> None:
        self.state = TransactionState.COMMITTED
        self._committed_location = location
        self._committed_snapshot_id = snapshot_id
        self._attempt_files = []
        self._unconfirmed = []
        logger.info("committed %s to %s (snapshot %s)", self.identifier, location, snapshot_id)

    def _rebase(self) -> bool:
        """Move onto the current table state; True when an earlier attempt turns out to have landed."""
        current, location = self._refresh()
        landed = self._landed(current, location)
        if landed is not None:
            self._mark_committed(*landed)
            return True
        self._validate_against(current)
        logger.debug("rebased %s onto %s", self.identifier, location)
        self._base, self._base_location = current, location
        return False

    def _cleanup_attempt(self) -> None:
        for path in self._attempt_files:
            try:
                self.io.delete(path)
            except (OSError, IcefloeError) as err:
                logger.warning("unable to remove uncommitted file %s: %s", path, err)
        self._attempt_files = []

    def _abort(self, err: Exception) -> None:
        self.state = TransactionState.ABORTED
        self._cleanup_attempt()
        logger.warning("commit to %s aborted: %s", self.identifier, err)

    def commit(self, deadline: Optional[Deadline] = None) -> Optional[int]:
        """Publish staged changes.

        Returns the new snapshot id, or None when only table metadata
        changed. Raises CommitConflictError when a concurrent commit makes
        the changes inapplicable or the retry budget runs out, and
        CommitStateUnknownError when the catalog never confirmed whether
        the last swap was applied.
        """
        if self.state == TransactionState.COMMITTED:
            return self._committed_snapshot_id
        if self.state == TransactionState.ABORTED:
            # another attempt is validated against everything committed since the base
            if self._rebase():
                return self._committed_snapshot_id

        deadline = deadline or Deadline.never()
        policy = CommitRetryPolicy.from_properties(self._base.properties)
        started = time.monotonic()
        attempt = 0

        while True:
            metadata = snapshot = None
            try:
                deadline.check(f"commit to {self.identifier}")
                self.state = TransactionState.COMMITTING
                metadata, snapshot = self._apply()
                metadata = metadata.with_previous_file(
                    self._base_location,
                    property_as_int(
                        metadata.properties, METADATA_PREVIOUS_VERSIONS_MAX, METADATA_PREVIOUS_VERSIONS_MAX_DEFAULT
                    ),
                )
                location = self.catalog.commit_metadata(self.identifier, self._base_location, metadata)
            except CommitStateUnknownError as err:
                # the files may back a published snapshot now
                logger.warning("commit to %s may have been applied: %s", self.identifier, err)
                self._unconfirmed.append(
                    (err.location, snapshot.snapshot_id if snapshot is not None else None, metadata)
                )
                self._attempt_files = []
                location = None
                reason: Exception = err
            except CorruptMetadataError as err:
                self._abort(err)
                raise
            except IcefloeError as err:
                if not err.retryable:
                    self._abort(err)
                    raise
                logger.warning("transient failure committing to %s: %s", self.identifier, err)
                self._cleanup_attempt()
                location = None
                reason = err
            except Exception as err:
                self._abort(err)
                raise
            else:
                if location is None:
                    self._cleanup_attempt()
                reason = CommitConflictError(f"metadata of {self.identifier} changed since {self._base_location}")

            if location is not None:
                self._mark_committed(location, snapshot.snapshot_id if snapshot is not None else None)
                return self._committed_snapshot_id

            self.state = TransactionState.CONFLICT
            attempt += 1
            elapsed_ms = (time.monotonic() - started) * 1000
            if attempt > policy.num_retries or elapsed_ms > policy.total_timeout_ms:
                if self._unconfirmed:
                    err = CommitStateUnknownError(
                        f"Commit to {self.identifier} gave up after {attempt} attempts "
                        f"without learning whether {self._unconfirmed[-1][0]} was applied",
                        self._unconfirmed[-1][0],
                    )
                else:
                    err = CommitConflictError(f"Commit to {self.identifier} failed after {attempt} attempts: {reason}")
                self._abort(err)
                raise err from reason

            wait = policy.backoff_ms(attempt) / 1000
            remaining = deadline.remaining()
            if remaining is not None:
                wait = min(wait, remaining)
            logger.warning("retrying commit to %s in %.3fs (attempt %d)", self.identifier, wait, attempt)
            time.sleep(wait)

            try:
                if self._rebase():
                    return self._committed_snapshot_id
            except CommitConflictError as err:
                self._abort(err)
                raise
            except IcefloeError as err:
                if not err.retryable:
                    self._abort(err)
                    raise
                logger.warning("transient failure refreshing %s: %s", self.identifier, err)

    def discard(self) -> None:
        """Abandon the transaction; files written for it are removed."""
        if self.state == TransactionState.COMMITTED:
            raise ValidationError("Cannot discard a committed transaction")
        if not self._unconfirmed:
            # otherwise they may back a snapshot that did get published
            self._attempt_files.extend(m.manifest_path for m in (self._new_manifests or []))
        self._new_manifests = None
        self._cleanup_attempt()
        self.state = TransactionState.ABORTED
        logger.info("discarded transaction on %s", self.identifier)

    @property
    def committed_metadata_location(self) -> Optional[str]:
        return self._committed_location
