import threading

import pytest

from conftest import plain_file
from icefloe.catalog.metadata import new_table_metadata
from icefloe.catalog.snapshots import Operation
from icefloe.catalog.snapshots import Snapshot
from icefloe.catalog.snapshots import SnapshotIdGenerator
from icefloe.catalog.snapshots import SnapshotSummaryCollector
from icefloe.catalog.snapshots import ancestors_of
from icefloe.catalog.snapshots import append_snapshot
from icefloe.catalog.snapshots import snapshot_as_of
from icefloe.catalog.snapshots import snapshots_since
from icefloe.exceptions import CorruptMetadataError
from icefloe.exceptions import SnapshotNotFoundError


@pytest.fixture
def history(schema):
    """Metadata with three snapshots at timestamps 1000, 2000 and 3000."""
    metadata = new_table_metadata(schema, "memory://wh/db/t")
    parent = None
    for i, ts in enumerate((1000, 2000, 3000), start=1):
        parent = append_snapshot(parent, None, Operation.APPEND, i * 10, i, timestamp_ms=ts)
        metadata = metadata.with_snapshot(parent)
    return metadata


def test_append_snapshot_links_parent():
    first = append_snapshot(None, "memory://l1", Operation.APPEND, 5, 1, {"added-data-files": 1}, schema_id=0)
    second = append_snapshot(first, "memory://l2", Operation.OVERWRITE, 6, 2, author="ops")
    assert second.parent_snapshot_id == 5
    assert second.operation == Operation.OVERWRITE
    assert second.author == "ops"
    assert second.timestamp_ms >= first.timestamp_ms


def test_append_snapshot_rejects_going_backwards():
    first = append_snapshot(None, None, Operation.APPEND, 5, 3)
    with pytest.raises(ValueError):
        append_snapshot(first, None, Operation.APPEND, 5, 4)
    with pytest.raises(ValueError):
        append_snapshot(first, None, Operation.APPEND, 6, 3)


def test_timestamps_never_precede_the_parent():
    first = append_snapshot(None, None, Operation.APPEND, 5, 1, timestamp_ms=5000)
    second = append_snapshot(first, None, Operation.APPEND, 6, 2, timestamp_ms=4000)
    assert second.timestamp_ms == 5000


def test_snapshot_dict_round_trip():
    snap = append_snapshot(None, "memory://l1", Operation.DELETE, 5, 1, {"deleted-data-files": 2},
                           commit_message="cleanup")
    assert Snapshot.from_dict(snap.to_dict()) == snap
    with pytest.raises(CorruptMetadataError):
        Snapshot.from_dict({"snapshot-id": 1})
    with pytest.raises(CorruptMetadataError):
        Snapshot.from_dict({"snapshot-id": 1, "timestamp-ms": 1, "summary": {"operation": "merge"}})


def test_summary_collector_carries_totals():
    collector = SnapshotSummaryCollector()
    collector.add_file(plain_file("memory://a", record_count=10, size=100))
    collector.add_file(plain_file("memory://b", record_count=5, size=50))
    first = append_snapshot(None, None, Operation.APPEND, 1, 1, collector.build(None))
    assert first.summary.get("total-records") == 15
    assert first.summary.get("total-files-size") == 150

    collector = SnapshotSummaryCollector()
    collector.remove_file(plain_file("memory://a", record_count=10, size=100))
    summary = collector.build(first)
    assert summary["deleted-data-files"] == 1
    assert summary["total-data-files"] == 1
    assert summary["total-records"] == 5


def test_snapshot_as_of(history):
    assert snapshot_as_of(history, snapshot_id=20).snapshot_id == 20
    assert snapshot_as_of(history, timestamp_ms=2500).snapshot_id == 20
    assert snapshot_as_of(history, timestamp_ms=3000).snapshot_id == 30
    assert snapshot_as_of(history).snapshot_id == 30
    with pytest.raises(SnapshotNotFoundError):
        snapshot_as_of(history, timestamp_ms=999)
    with pytest.raises(SnapshotNotFoundError):
        snapshot_as_of(history, snapshot_id=99)


def test_snapshot_as_of_empty_table(schema):
    with pytest.raises(SnapshotNotFoundError):
        snapshot_as_of(new_table_metadata(schema, "memory://wh/db/empty"))


def test_ancestry(history):
    assert [s.snapshot_id for s in ancestors_of(history.current_snapshot(), history)] == [30, 20, 10]
    assert [s.snapshot_id for s in snapshots_since(history, 10)] == [20, 30]
    assert [s.snapshot_id for s in snapshots_since(history, None)] == [10, 20, 30]
    assert snapshots_since(history, 30) == []


def test_snapshot_ids_increase_across_threads(history):
    generator = SnapshotIdGenerator()
    ids = []
    lock = threading.Lock()

    def take():
        for _ in range(50):
            value = generator.next_id(history)
            with lock:
                ids.append(value)

    threads = [threading.Thread(target=take) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(set(ids)) == 200
    assert min(ids) > 30
