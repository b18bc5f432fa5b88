import datetime
import json

import pytest

from conftest import id_file
from conftest import plain_file
from icefloe.catalog.conversions import from_bytes
from icefloe.catalog.manifest import DataFile
from icefloe.catalog.manifest import FileFormat
from icefloe.catalog.manifest import ManifestEntry
from icefloe.catalog.manifest import ManifestEntryStatus
from icefloe.catalog.manifest import decode_entry
from icefloe.catalog.manifest import encode_entry
from icefloe.catalog.manifest import entry_schema
from icefloe.catalog.manifest import read_manifest
from icefloe.catalog.manifest import read_manifest_list
from icefloe.catalog.manifest import read_manifest_metadata
from icefloe.catalog.manifest import write_manifest
from icefloe.catalog.manifest import write_manifest_list
from icefloe.catalog.manifest import write_manifests
from icefloe.catalog.partitioning import UNPARTITIONED_PARTITION_SPEC
from icefloe.catalog.schema import Schema
from icefloe.catalog.types import DateType
from icefloe.catalog.types import StringType
from icefloe.exceptions import CorruptMetadataError
from icefloe.exceptions import IncompatibleSchemaError
from icefloe.iops.base import MemoryFileIO

LOCATION = "memory://wh/db/t"


@pytest.fixture
def io():
    return MemoryFileIO()


def test_manifest_round_trip_unpartitioned(io, schema):
    entries = [
        ManifestEntry(ManifestEntryStatus.ADDED, None, id_file(f"{LOCATION}/data/a.parquet", 1, 10)),
        ManifestEntry(ManifestEntryStatus.EXISTING, 7, plain_file(f"{LOCATION}/data/b.parquet"), 3, 3),
    ]
    manifest = write_manifest(io, LOCATION, UNPARTITIONED_PARTITION_SPEC, schema, entries)
    assert manifest.added_files_count == 1
    assert manifest.existing_files_count == 1
    assert manifest.added_rows_count == 10
    assert manifest.partitions == ()

    listed = write_manifest_list(io, LOCATION, 42, None, 5, [manifest])
    (stored,) = list(read_manifest_list(io, listed))
    assert stored.added_snapshot_id == 42
    assert stored.sequence_number == 5

    read = list(read_manifest(io, stored, UNPARTITIONED_PARTITION_SPEC.partition_type(schema)))
    assert [e.data_file.file_path for e in read] == [e.data_file.file_path for e in entries]
    added, existing = read
    # ADDED entries inherit from the manifest list; EXISTING ones keep theirs
    assert (added.snapshot_id, added.sequence_number, added.file_sequence_number) == (42, 5, 5)
    assert (existing.snapshot_id, existing.sequence_number) == (7, 3)
    assert added.data_file == entries[0].data_file
    assert added.data_file.lower_bounds == entries[0].data_file.lower_bounds


def test_partitioned_manifest_summaries(io, events_schema, events_spec):
    files = [
        plain_file(f"{LOCATION}/data/category=a/1.parquet", partition=("a",)),
        plain_file(f"{LOCATION}/data/category=c/2.parquet", partition=("c",)),
        plain_file(f"{LOCATION}/data/category=null/3.parquet", partition=(None,)),
    ]
    manifest = write_manifest(
        io, LOCATION, events_spec, events_schema, [ManifestEntry(ManifestEntryStatus.ADDED, None, f) for f in files]
    )
    (summary,) = manifest.partitions
    assert summary.contains_null is True
    assert from_bytes(StringType(), summary.lower_bound) == "a"
    assert from_bytes(StringType(), summary.upper_bound) == "c"

    partition_type = events_spec.partition_type(events_schema)
    partitions = [e.data_file.partition for e in read_manifest(io, manifest, partition_type)]
    assert partitions == [("a",), ("c",), (None,)]


def test_date_partition_values_round_trip(io, events_schema, daily_spec):
    days = (datetime.date(2024, 3, 1) - datetime.date(1970, 1, 1)).days
    data_file = plain_file(f"{LOCATION}/data/d.parquet", partition=(days,))
    manifest = write_manifest(
        io, LOCATION, daily_spec, events_schema, [ManifestEntry(ManifestEntryStatus.ADDED, None, data_file)]
    )
    partition_type = daily_spec.partition_type(events_schema)
    assert partition_type.fields[0].field_type == DateType()
    (entry,) = list(read_manifest(io, manifest, partition_type))
    assert entry.data_file.partition == (days,)


def test_discard_deleted_and_live(io, schema):
    entries = [
        ManifestEntry(ManifestEntryStatus.DELETED, 3, plain_file(f"{LOCATION}/data/gone.parquet"), 1, 1),
        ManifestEntry(ManifestEntryStatus.EXISTING, 3, plain_file(f"{LOCATION}/data/kept.parquet"), 1, 1),
    ]
    manifest = write_manifest(io, LOCATION, UNPARTITIONED_PARTITION_SPEC, schema, entries, snapshot_id=3)
    partition_type = UNPARTITIONED_PARTITION_SPEC.partition_type(schema)
    assert [e.data_file.file_path for e in read_manifest(io, manifest, partition_type, discard_deleted=True)] == [
        f"{LOCATION}/data/kept.parquet"
    ]
    assert len(list(read_manifest(io, manifest, partition_type).live())) == 1
    assert manifest.deleted_files_count == 1


def test_manifest_records_its_schema_and_spec(io, events_schema, events_spec):
    manifest = write_manifest(io, LOCATION, events_spec, events_schema, [])
    meta = read_manifest_metadata(io, manifest.manifest_path)
    assert meta["partition-spec-id"] == "0"
    assert Schema.from_dict(json.loads(meta["schema"])) == events_schema


def test_wrong_spec_is_rejected(io, schema):
    data_file = plain_file(f"{LOCATION}/data/x.parquet", spec_id=3)
    with pytest.raises(IncompatibleSchemaError):
        write_manifest(
            io, LOCATION, UNPARTITIONED_PARTITION_SPEC, schema, [ManifestEntry(ManifestEntryStatus.ADDED, None, data_file)]
        )


def test_write_manifests_splits_by_size(io, schema):
    entries = [
        ManifestEntry(ManifestEntryStatus.ADDED, None, id_file(f"{LOCATION}/data/{i}.parquet", i, i + 1))
        for i in range(20)
    ]
    manifests = write_manifests(io, LOCATION, UNPARTITIONED_PARTITION_SPEC, schema, entries, target_size_bytes=500)
    assert len(manifests) > 1
    assert sum(m.added_files_count for m in manifests) == 20
    partition_type = UNPARTITIONED_PARTITION_SPEC.partition_type(schema)
    paths = [e.data_file.file_path for m in manifests for e in read_manifest(io, m, partition_type)]
    assert sorted(paths) == sorted(e.data_file.file_path for e in entries)


def test_single_entry_codec(events_schema, events_spec):
    partition_type = events_spec.partition_type(events_schema)
    data_file = DataFile(
        file_path=f"{LOCATION}/data/e.parquet",
        file_format=FileFormat.PARQUET,
        partition=("a",),
        record_count=3,
        file_size_in_bytes=99,
        split_offsets=[4],
    )
    payload = encode_entry(data_file, ManifestEntryStatus.ADDED, 11, partition_type)
    entry = decode_entry(payload, partition_type)
    assert entry.status == ManifestEntryStatus.ADDED
    assert entry.snapshot_id == 11
    assert entry.data_file == data_file
    assert entry.data_file.split_offsets == [4]


def test_decode_leaves_unset_optional_fields_null(events_schema, events_spec):
    partition_type = events_spec.partition_type(events_schema)
    payload = encode_entry(plain_file("memory://f", partition=("a",)), ManifestEntryStatus.EXISTING, 1, partition_type)
    entry = decode_entry(payload, partition_type, read_schema=entry_schema(partition_type))
    assert entry.sequence_number is None
    assert entry.data_file.lower_bounds is None


def test_garbage_is_corrupt(io, schema):
    with pytest.raises(CorruptMetadataError):
        decode_entry(b"not arrow", UNPARTITIONED_PARTITION_SPEC.partition_type(schema))
    io.write(f"{LOCATION}/metadata/broken.parquet", b"PAR1 nonsense")
    with pytest.raises(CorruptMetadataError):
        list(read_manifest_list(io, f"{LOCATION}/metadata/broken.parquet"))
