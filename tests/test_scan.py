import pytest

from conftest import id_file
from conftest import plain_file
from icefloe.catalog.expressions import EqualTo
from icefloe.catalog.expressions import GreaterThan
from icefloe.catalog.expressions import LessThan
from icefloe.catalog.manifest import DataFile
from icefloe.catalog.manifest import FileFormat
from icefloe.catalog.scan import split_file
from icefloe.catalog.schema import AddColumn
from icefloe.catalog.types import StringType
from icefloe.deadline import Deadline
from icefloe.exceptions import CorruptMetadataError
from icefloe.exceptions import DeadlineExceeded
from icefloe.exceptions import OperationCancelled
from icefloe.exceptions import SnapshotNotFoundError


def _append_two(table):
    a = id_file(f"{table.location}/data/a.parquet", 1, 10)
    b = id_file(f"{table.location}/data/b.parquet", 11, 20)
    table.append([a, b])
    return a, b


def test_empty_table_plans_nothing(table):
    assert list(table.scan().plan_files()) == []


def test_metrics_prune_files(table):
    a, b = _append_two(table)
    assert table.scan(LessThan("id", 5)).plan_file_paths() == [a.file_path]
    assert table.scan().filter(GreaterThan("id", 15)).plan_file_paths() == [b.file_path]
    assert sorted(table.scan().plan_file_paths()) == sorted([a.file_path, b.file_path])


def test_partition_pruning(events):
    a = plain_file(f"{events.location}/data/category=a/1.parquet", partition=("a",))
    b = plain_file(f"{events.location}/data/category=b/2.parquet", partition=("b",))
    events.append([a, b])
    assert events.scan(EqualTo("category", "a")).plan_file_paths() == [a.file_path]
    assert events.scan(EqualTo("category", "z")).plan_file_paths() == []


def test_projection(table):
    assert [f.name for f in table.scan(selected_fields=("id", "score")).projection().fields] == ["id", "score"]
    assert table.scan().select("name").projection().field_ids == [2]


def test_deleted_files_disappear_but_time_travel_sees_them(table):
    a, b = _append_two(table)
    first = table.current_snapshot().snapshot_id
    table.overwrite([a.file_path])
    assert table.scan().plan_file_paths() == [b.file_path]
    assert sorted(table.scan(snapshot_id=first).plan_file_paths()) == sorted([a.file_path, b.file_path])
    assert table.current_snapshot().summary.get("total-data-files") == 1


def test_time_travel_uses_the_snapshot_schema(table):
    _append_two(table)
    first = table.current_snapshot().snapshot_id
    table.new_transaction().update_schema([AddColumn("note", StringType())]).commit()
    table.refresh()
    table.append([plain_file(f"{table.location}/data/c.parquet")])
    assert "note" in [f.name for f in table.scan().projection().fields]
    assert "note" not in [f.name for f in table.scan(snapshot_id=first).projection().fields]


def test_unknown_snapshot(table):
    _append_two(table)
    with pytest.raises(SnapshotNotFoundError):
        list(table.scan(snapshot_id=1).plan_files())


def test_split_file_merges_row_groups():
    data_file = DataFile("memory://f", record_count=1, file_size_in_bytes=1000, split_offsets=[4, 300, 600, 900])
    assert list(split_file(data_file, 400)) == [(4, 296), (300, 300), (600, 400)]


def test_split_file_fixed_cuts_and_small_files():
    assert list(split_file(DataFile("memory://f", file_size_in_bytes=1000), 400)) == [(0, 400), (400, 400), (800, 200)]
    assert list(split_file(DataFile("memory://g", file_size_in_bytes=10), 400)) == [(0, 10)]
    # offsets past the end of the file are ignored
    bad = DataFile("memory://h", file_size_in_bytes=1000, split_offsets=[4, 2000])
    assert list(split_file(bad, 600)) == [(0, 600), (600, 400)]


def test_scan_tasks_follow_split_options(table):
    table.append([plain_file(f"{table.location}/data/big.parquet", size=1000)])
    tasks = list(table.scan(split_target_size=400).plan_files())
    assert [(t.start, t.length) for t in tasks] == [(0, 400), (400, 400), (800, 200)]
    assert table.scan(split_target_size=400).plan_file_paths() == [f"{table.location}/data/big.parquet"]
    assert len(list(table.scan(split_enabled=False, split_target_size=400).plan_files())) == 1


def test_planning_can_be_cancelled(table):
    _append_two(table)
    deadline = Deadline()
    deadline.cancel()
    with pytest.raises(OperationCancelled):
        list(table.scan().plan_files(deadline))
    with pytest.raises(DeadlineExceeded):
        list(table.scan().plan_files(Deadline(timeout_seconds=0)))


def test_truncated_bounds_are_reported_as_corrupt(table):
    truncated = DataFile(
        f"{table.location}/data/short.parquet",
        record_count=5,
        file_size_in_bytes=512,
        value_counts={1: 5},
        null_value_counts={1: 0},
        lower_bounds={1: b"\x01\x00\x00"},
        upper_bounds={1: b"\x09\x00\x00"},
    )
    table.append([truncated])
    with pytest.raises(CorruptMetadataError):
        list(table.scan(LessThan("id", 5)).plan_files())


def test_every_file_format_is_split(table):
    orc = DataFile(f"{table.location}/data/big.orc", FileFormat.ORC, record_count=10, file_size_in_bytes=1000)
    table.append([orc])
    tasks = list(table.scan(split_target_size=600).plan_files())
    assert [(t.start, t.length) for t in tasks] == [(0, 600), (600, 400)]
