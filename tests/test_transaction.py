import threading

import pytest

from conftest import FAST_RETRIES
from conftest import id_file
from conftest import plain_file
from icefloe.catalog.expressions import EqualTo
from icefloe.catalog.manifest import DataFile
from icefloe.catalog.metastore import InMemoryCatalog
from icefloe.catalog.partitioning import AddPartitionField
from icefloe.catalog.schema import AddColumn
from icefloe.catalog.schema import DeleteColumn
from icefloe.catalog.snapshots import Operation
from icefloe.catalog.transaction import TransactionState
from icefloe.catalog.transforms import BucketTransform
from icefloe.catalog.types import StringType
from icefloe.deadline import Deadline
from icefloe.exceptions import CommitConflictError
from icefloe.exceptions import CommitStateUnknownError
from icefloe.exceptions import OperationCancelled
from icefloe.exceptions import TransientIOError
from icefloe.exceptions import ValidationError


def _data(table, name, **kwargs):
    return plain_file(f"{table.location}/data/{name}.parquet", **kwargs)


def test_append_creates_a_snapshot(table):
    snapshot_id = table.append([_data(table, "a"), _data(table, "b")], commit_message="first load")
    snap = table.current_snapshot()
    assert snap.snapshot_id == snapshot_id
    assert snap.operation == Operation.APPEND
    assert snap.sequence_number == 1
    assert snap.commit_message == "first load"
    assert snap.summary.get("added-data-files") == 2
    assert {f.file_path for f in table.current_data_files()} == {
        f"{table.location}/data/a.parquet",
        f"{table.location}/data/b.parquet",
    }


def test_author_is_recorded(table):
    txn = table.new_transaction(author="etl")
    txn.append([_data(table, "a")]).commit()
    assert table.refresh().current_snapshot().author == "etl"


def test_overwrite_replaces_files(table):
    table.append([_data(table, "a"), _data(table, "b")])
    table.overwrite([f"{table.location}/data/a.parquet"], [_data(table, "c")])
    snap = table.current_snapshot()
    assert snap.operation == Operation.OVERWRITE
    assert snap.sequence_number == 2
    assert {table.rel_path(f.file_path) for f in table.current_data_files()} == {"data/b.parquet", "data/c.parquet"}


def test_staging_the_same_file_twice_is_rejected(table):
    txn = table.new_transaction()
    txn.append([_data(table, "a")])
    with pytest.raises(ValidationError):
        txn.append([_data(table, "a")])


def test_deleting_a_missing_file_is_rejected(table):
    table.append([_data(table, "a")])
    txn = table.new_transaction().delete_files([f"{table.location}/data/nope.parquet"])
    with pytest.raises(ValidationError):
        txn.commit()
    assert txn.state == TransactionState.ABORTED
    assert len(table.refresh().snapshots()) == 1


def test_files_must_match_a_known_spec(table):
    txn = table.new_transaction().append([_data(table, "a", spec_id=7)])
    with pytest.raises(ValidationError):
        txn.commit()
    txn = table.new_transaction().append([_data(table, "b", partition=("x",))])
    with pytest.raises(ValidationError):
        txn.commit()


def test_commit_is_idempotent(table):
    txn = table.new_transaction().append([_data(table, "a")])
    first = txn.commit()
    assert txn.commit() == first
    assert txn.state == TransactionState.COMMITTED
    assert len(table.refresh().snapshots()) == 1


def test_metadata_only_commit_returns_none(table):
    txn = table.new_transaction().set_properties({"owner": "analytics"}, retention="7d")
    assert txn.commit() is None
    table.refresh()
    assert table.properties["owner"] == "analytics"
    assert table.properties["retention"] == "7d"
    assert table.current_snapshot() is None
    table.new_transaction().remove_properties("owner").commit()
    assert "owner" not in table.refresh().properties


def test_discard(table):
    txn = table.new_transaction().append([_data(table, "a")])
    txn.discard()
    assert txn.state == TransactionState.ABORTED
    assert table.refresh().current_snapshot() is None

    committed = table.new_transaction().append([_data(table, "b")])
    committed.commit()
    with pytest.raises(ValidationError):
        committed.discard()


def test_discarded_transaction_can_commit_on_the_latest_state(catalog, table):
    txn = table.new_transaction().append([_data(table, "a")])
    txn.discard()
    catalog.load_table("db.items").append([_data(table, "b")])
    snapshot_id = txn.commit()
    table.refresh()
    assert table.current_snapshot().snapshot_id == snapshot_id
    assert table.current_snapshot().parent_snapshot_id == table.snapshots()[0].snapshot_id
    assert {table.rel_path(f.file_path) for f in table.current_data_files()} == {"data/a.parquet", "data/b.parquet"}


def test_snapshot_isolation(catalog, table):
    table.append([_data(table, "a")])
    reader = catalog.load_table("db.items")
    catalog.load_table("db.items").append([_data(table, "b")])
    assert reader.scan().plan_file_paths() == [f"{table.location}/data/a.parquet"]
    assert len(reader.refresh().scan().plan_file_paths()) == 2


def test_concurrent_appends_are_rebased(catalog, table):
    first = catalog.load_table("db.items").new_transaction().append([_data(table, "a")])
    second = catalog.load_table("db.items").new_transaction().append([_data(table, "b")])
    first.commit()
    second.commit()
    table.refresh()
    assert len(table.snapshots()) == 2
    assert table.current_snapshot().parent_snapshot_id == table.snapshots()[0].snapshot_id
    assert len(table.current_data_files()) == 2


def test_many_threads_appending(catalog, table):
    errors = []

    def worker(i):
        try:
            catalog.load_table("db.items").append([_data(table, f"part-{i}")])
        except Exception as err:  # surfaced by the assertion below
            errors.append(err)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    table.refresh()
    assert len(table.snapshots()) == 8
    assert len(table.current_data_files()) == 8
    sequence_numbers = [s.sequence_number for s in table.snapshots()]
    assert sequence_numbers == list(range(1, 9))


def test_concurrent_removal_of_the_same_file_conflicts(catalog, table):
    path = f"{table.location}/data/a.parquet"
    table.append([_data(table, "a")])
    first = catalog.load_table("db.items").new_transaction().overwrite([path], [_data(table, "b")])
    second = catalog.load_table("db.items").new_transaction().delete_files([path])
    first.commit()
    with pytest.raises(CommitConflictError):
        second.commit()
    assert second.state == TransactionState.ABORTED
    assert {table.rel_path(f.file_path) for f in table.refresh().current_data_files()} == {"data/b.parquet"}


def test_concurrent_overwrites_of_the_same_file_conflict(catalog, table):
    path = f"{table.location}/data/a.parquet"
    table.append([_data(table, "a")])
    first = catalog.load_table("db.items").new_transaction().overwrite([path], [_data(table, "b")])
    second = catalog.load_table("db.items").new_transaction().overwrite([path], [_data(table, "c")])
    first.commit()
    with pytest.raises(CommitConflictError):
        second.commit()
    assert {table.rel_path(f.file_path) for f in table.refresh().current_data_files()} == {"data/b.parquet"}
    assert len(table.snapshots()) == 2


def test_concurrent_add_of_the_same_file_conflicts(catalog, table):
    first = catalog.load_table("db.items").new_transaction().append([_data(table, "a")])
    second = catalog.load_table("db.items").new_transaction().append([_data(table, "a")])
    first.commit()
    with pytest.raises(CommitConflictError):
        second.commit()


def test_overwrite_partition(catalog, events):
    events.append([_data(events, "a1", partition=("a",)), _data(events, "b1", partition=("b",))])
    txn = events.new_transaction().overwrite_partition({"category": "a"}, [_data(events, "a2", partition=("a",))])
    catalog.load_table("db.events").append([_data(events, "b2", partition=("b",))])
    txn.commit()
    files = {events.rel_path(f.file_path) for f in events.refresh().current_data_files()}
    assert files == {"data/a2.parquet", "data/b1.parquet", "data/b2.parquet"}


def test_overwrite_partition_conflicts_with_new_files_in_that_partition(catalog, events):
    events.append([_data(events, "a1", partition=("a",))])
    txn = events.new_transaction().overwrite_partition(("a",), [_data(events, "a2", partition=("a",))])
    catalog.load_table("db.events").append([_data(events, "a3", partition=("a",))])
    with pytest.raises(CommitConflictError):
        txn.commit()
    assert txn.state == TransactionState.ABORTED
    # committing again still checks the files that landed in the meantime
    with pytest.raises(CommitConflictError):
        txn.commit()
    files = {events.rel_path(f.file_path) for f in events.refresh().current_data_files()}
    assert files == {"data/a1.parquet", "data/a3.parquet"}


def test_overwrite_partition_rejects_unknown_fields(events):
    txn = events.new_transaction().overwrite_partition({"colour": "red"})
    with pytest.raises(ValidationError):
        txn.commit()


def test_schema_evolution_commit(table):
    table.append([_data(table, "a")])
    assert table.new_transaction().update_schema([AddColumn("note", StringType())]).commit() is None
    table.refresh()
    assert table.schema().schema_id == 1
    assert table.schema().find_field("note").field_id == 4
    # invalid changes fail at the call site
    with pytest.raises(ValidationError):
        table.new_transaction().update_schema([DeleteColumn("missing")])


def test_concurrent_schema_changes_conflict(catalog, table):
    first = catalog.load_table("db.items").new_transaction().update_schema([AddColumn("a1", StringType())])
    second = catalog.load_table("db.items").new_transaction().update_schema([AddColumn("a2", StringType())])
    first.commit()
    with pytest.raises(CommitConflictError):
        second.commit()


def test_appending_stats_for_a_dropped_column_conflicts(catalog, table):
    data_file = DataFile(f"{table.location}/data/s.parquet", record_count=5, file_size_in_bytes=10, value_counts={3: 5})
    txn = catalog.load_table("db.items").new_transaction().append([data_file])
    catalog.load_table("db.items").new_transaction().update_schema([DeleteColumn("score")]).commit()
    with pytest.raises(CommitConflictError):
        txn.commit()


def test_partition_evolution_keeps_old_files_scannable(events):
    events.append([_data(events, "old", partition=("a",))])
    events.new_transaction().update_spec([AddPartitionField("id", BucketTransform(4))]).commit()
    events.refresh()
    spec = events.spec()
    assert spec.spec_id == 1
    assert [f.name for f in spec.fields] == ["category", "id_bucket_4"]

    events.append(
        [
            id_file(f"{events.location}/data/hit.parquet", 30, 40, spec_id=1, partition=("a", 3)),
            id_file(f"{events.location}/data/miss.parquet", 30, 40, spec_id=1, partition=("a", 0)),
        ]
    )
    paths = {events.rel_path(p) for p in events.scan(EqualTo("id", 34)).plan_file_paths()}
    assert paths == {"data/old.parquet", "data/hit.parquet"}


class _StubbornCatalog(InMemoryCatalog):
    def swap_metadata_location(self, identifier, expected, new):
        return False


class _FlakyCatalog(InMemoryCatalog):
    def __init__(self):
        super().__init__()
        self.failures = 1

    def swap_metadata_location(self, identifier, expected, new):
        if self.failures:
            self.failures -= 1
            raise TransientIOError("catalog unavailable")
        return super().swap_metadata_location(identifier, expected, new)


class _LostReplyCatalog(InMemoryCatalog):
    """Applies the first swap, lets another writer commit on top, then loses the reply."""

    def __init__(self):
        super().__init__()
        self.interleave = True

    def swap_metadata_location(self, identifier, expected, new):
        swapped = super().swap_metadata_location(identifier, expected, new)
        if swapped and self.interleave:
            self.interleave = False
            other = self.load_table(identifier)
            other.append([_data(other, "other")])
            raise TransientIOError("connection reset")
        return swapped


class _UnreachableCatalog(InMemoryCatalog):
    def swap_metadata_location(self, identifier, expected, new):
        raise TransientIOError("catalog unavailable")


def test_retry_budget_is_bounded(schema):
    catalog = _StubbornCatalog()
    catalog.create_namespace("db")
    props = {**FAST_RETRIES, "commit.retry.num-retries": "2"}
    table = catalog.create_table("db.items", schema, properties=props)
    txn = table.new_transaction().append([_data(table, "a")])
    with pytest.raises(CommitConflictError):
        txn.commit()
    assert txn.state == TransactionState.ABORTED


def test_transient_catalog_failures_are_retried(schema):
    catalog = _FlakyCatalog()
    catalog.create_namespace("db")
    table = catalog.create_table("db.items", schema, properties=FAST_RETRIES)
    assert table.append([_data(table, "a")]) is not None
    assert catalog.failures == 0
    assert len(table.snapshots()) == 1


def test_cancelled_commit(table):
    deadline = Deadline()
    deadline.cancel()
    txn = table.new_transaction().append([_data(table, "a")])
    with pytest.raises(OperationCancelled):
        txn.commit(deadline)
    assert table.refresh().current_snapshot() is None


def test_swap_applied_before_a_lost_reply_counts_as_committed(schema):
    catalog = _LostReplyCatalog()
    catalog.create_namespace("db")
    table = catalog.create_table("db.items", schema, properties=FAST_RETRIES)
    txn = table.new_transaction().append([_data(table, "a")])
    snapshot_id = txn.commit()
    assert txn.state == TransactionState.COMMITTED
    assert not catalog.interleave

    table.refresh()
    assert [s.snapshot_id for s in table.snapshots()][0] == snapshot_id
    assert len(table.snapshots()) == 2
    # nothing the published snapshot references was cleaned up
    for snapshot in table.snapshots():
        assert table.io.exists(snapshot.manifest_list)
    assert {table.rel_path(f.file_path) for f in table.current_data_files()} == {
        "data/a.parquet",
        "data/other.parquet",
    }


def test_unconfirmed_swaps_are_not_reported_as_conflicts(schema):
    catalog = _UnreachableCatalog()
    catalog.create_namespace("db")
    props = {**FAST_RETRIES, "commit.retry.num-retries": "2"}
    table = catalog.create_table("db.items", schema, properties=props)
    txn = table.new_transaction().append([_data(table, "a")])
    with pytest.raises(CommitStateUnknownError) as err:
        txn.commit()
    assert err.value.location is not None
    assert table.io.exists(err.value.location)
    assert txn.state == TransactionState.ABORTED
    assert table.refresh().current_snapshot() is None
