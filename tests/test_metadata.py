import json

import pytest

from icefloe.catalog.metadata import new_metadata_path
from icefloe.catalog.metadata import new_table_metadata
from icefloe.catalog.metadata import parse_metadata_version
from icefloe.catalog.metadata import read_table_metadata
from icefloe.catalog.metadata import table_metadata_from_dict
from icefloe.catalog.metadata import table_metadata_from_json
from icefloe.catalog.metadata import table_metadata_to_dict
from icefloe.catalog.metadata import table_metadata_to_json
from icefloe.catalog.metadata import write_table_metadata
from icefloe.catalog.partitioning import PartitionField
from icefloe.catalog.partitioning import PartitionSpec
from icefloe.catalog.schema import AddColumn
from icefloe.catalog.schema import evolve_schema
from icefloe.catalog.snapshots import Operation
from icefloe.catalog.snapshots import append_snapshot
from icefloe.catalog.transforms import BucketTransform
from icefloe.catalog.types import StringType
from icefloe.exceptions import CorruptMetadataError
from icefloe.exceptions import FileAlreadyExists
from icefloe.exceptions import ValidationError
from icefloe.iops.base import MemoryFileIO


@pytest.fixture
def metadata(events_schema, events_spec):
    return new_table_metadata(events_schema, "memory://wh/db/events/", events_spec, {"owner": "tests"})


def test_new_table_metadata(metadata, events_schema):
    assert metadata.location == "memory://wh/db/events"
    assert metadata.schema() == events_schema
    assert metadata.last_column_id == 3
    assert metadata.last_partition_id == 1000
    assert metadata.current_snapshot() is None
    assert metadata.last_sequence_number == 0


def test_json_round_trip(metadata):
    snapshot = append_snapshot(None, "memory://wh/snap-1.parquet", Operation.APPEND, 1, 1, {"added-data-files": 1})
    metadata = metadata.with_snapshot(snapshot)
    text = table_metadata_to_json(metadata)
    assert table_metadata_from_json(text) == metadata
    data = json.loads(text)
    assert data["current-snapshot-id"] == 1
    assert data["snapshots"][0]["summary"]["operation"] == "append"


def test_empty_table_serializes_current_snapshot_as_minus_one(metadata):
    data = table_metadata_to_dict(metadata)
    assert data["current-snapshot-id"] == -1
    assert table_metadata_from_dict(data).current_snapshot_id is None


def test_with_schema_reuses_identical_schema(metadata):
    result = evolve_schema(metadata.schema(), [AddColumn("note", StringType())], metadata.last_column_id)
    evolved = metadata.with_schema(result.schema, result.last_column_id)
    assert evolved.current_schema_id == 1
    assert len(evolved.schemas) == 2
    back = evolved.with_schema(metadata.schema(), evolved.last_column_id)
    assert back.current_schema_id == 0
    assert len(back.schemas) == 2
    assert back.last_column_id == 4


def test_with_spec_adds_and_switches(metadata):
    spec = PartitionSpec(PartitionField(1, 1001, BucketTransform(4), "id_bucket_4"), spec_id=1)
    updated = metadata.with_spec(spec, 1001)
    assert updated.default_spec_id == 1
    assert set(updated.specs()) == {0, 1}
    # retired specs stay resolvable
    assert len(updated.partition_type_for(0).fields) == 1


def test_with_snapshot_enforces_lineage(metadata):
    first = append_snapshot(None, None, Operation.APPEND, 10, 1)
    metadata = metadata.with_snapshot(first)
    orphan = append_snapshot(None, None, Operation.APPEND, 11, 2)
    with pytest.raises(ValidationError):
        metadata.with_snapshot(orphan)
    with pytest.raises(ValidationError):
        metadata.with_snapshot(first)


def test_properties_are_strings(metadata):
    updated = metadata.with_properties({"commit.retry.num-retries": 3}, removals=["owner"])
    assert updated.properties == {"commit.retry.num-retries": "3"}


def test_previous_files_are_capped(metadata):
    for i in range(5):
        metadata = metadata.with_previous_file(f"memory://wh/v{i}.metadata.json", max_entries=3)
    assert [e.metadata_file for e in metadata.metadata_log] == [
        "memory://wh/v2.metadata.json",
        "memory://wh/v3.metadata.json",
        "memory://wh/v4.metadata.json",
    ]


def test_metadata_paths_and_versions():
    path = new_metadata_path("memory://wh/t", 7)
    assert path.startswith("memory://wh/t/metadata/00007-")
    assert parse_metadata_version(path) == 7
    assert parse_metadata_version("file:///wh/t/metadata/v3.metadata.json") == 3
    assert parse_metadata_version("garbage.json") == -1


def test_metadata_files_are_write_once(metadata):
    io = MemoryFileIO()
    path = write_table_metadata(io, "memory://wh/m.json", metadata)
    assert read_table_metadata(io, path) == metadata
    with pytest.raises(FileAlreadyExists):
        write_table_metadata(io, path, metadata)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.update({"last-updated-ms": 0}),
        lambda d: d.update({"format-version": 9}),
        lambda d: d.update({"current-schema-id": 42}),
        lambda d: d.update({"current-snapshot-id": 12345}),
        lambda d: d.pop("schemas"),
    ],
)
def test_corrupt_metadata_is_rejected(metadata, mutate):
    data = table_metadata_to_dict(metadata)
    mutate(data)
    with pytest.raises(CorruptMetadataError):
        table_metadata_from_dict(data)


def test_invalid_json_is_corrupt():
    with pytest.raises(CorruptMetadataError):
        table_metadata_from_json("{not json")


def test_format_version_1_is_upgraded(events_schema):
    v1 = {
        "format-version": 1,
        "location": "memory://wh/old",
        "last-updated-ms": 1600000000000,
        "last-column-id": 3,
        "schema": events_schema.to_dict(),
        "partition-spec": [{"source-id": 2, "transform": "identity", "name": "category"}],
    }
    metadata = table_metadata_from_dict(v1)
    assert metadata.format_version == 1
    assert metadata.spec().fields[0].field_id == 1000
    assert metadata.last_partition_id == 1000
    assert metadata.schema() == events_schema
