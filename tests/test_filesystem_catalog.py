import json

import pytest

from conftest import FAST_RETRIES
from conftest import plain_file
from icefloe.catalog.filesystem_catalog import FilesystemCatalog
from icefloe.catalog.metadata import table_metadata_to_dict
from icefloe.exceptions import CorruptMetadataError
from icefloe.exceptions import NamespaceAlreadyExists
from icefloe.exceptions import NamespaceNotFound
from icefloe.exceptions import TableAlreadyExists
from icefloe.exceptions import TableNotFound
from icefloe.exceptions import TransientIOError
from icefloe.exceptions import ValidationError
from icefloe.iops.base import LocalFileIO
from icefloe.iops.base import MemoryFileIO


@pytest.fixture
def catalog():
    cat = FilesystemCatalog("memory://wh", io=MemoryFileIO())
    cat.create_namespace("db", {"owner": "data-eng"})
    return cat


@pytest.fixture
def table(catalog, schema):
    return catalog.create_table("db.items", schema, properties=FAST_RETRIES)


def test_versions_are_numbered(catalog, table):
    assert table.metadata_location == "memory://wh/db/items/metadata/v1.metadata.json"
    table.append([plain_file(f"{table.location}/data/a.parquet")])
    assert table.metadata_location == "memory://wh/db/items/metadata/v2.metadata.json"
    assert catalog.io.read("memory://wh/db/items/metadata/version-hint.text") == b"2"
    assert catalog.current_version("db.items") == 2


def test_reader_walks_past_a_stale_hint(catalog, table):
    table.append([plain_file(f"{table.location}/data/a.parquet")])
    catalog.io.write("memory://wh/db/items/metadata/version-hint.text", b"1", overwrite=True)
    assert catalog.current_version("db.items") == 2


def test_missing_or_garbled_hint_falls_back_to_listing(catalog, table):
    table.append([plain_file(f"{table.location}/data/a.parquet")])
    hint = "memory://wh/db/items/metadata/version-hint.text"
    catalog.io.delete(hint)
    assert catalog.current_metadata_location("db.items").endswith("/v2.metadata.json")
    catalog.io.write(hint, b"not a number", overwrite=True)
    assert catalog.current_version("db.items") == 2


def test_concurrent_writers_both_land(catalog, table):
    first = catalog.load_table("db.items").new_transaction().append([plain_file(f"{table.location}/data/a.parquet")])
    second = catalog.load_table("db.items").new_transaction().append([plain_file(f"{table.location}/data/b.parquet")])
    first.commit()
    second.commit()
    assert second.committed_metadata_location.endswith("/v3.metadata.json")
    assert len(catalog.load_table("db.items").current_data_files()) == 2


class _LateAckIO(MemoryFileIO):
    """Stores the next metadata version, then reports the write as failed."""

    def __init__(self):
        super().__init__()
        self.fail_on = None

    def _publish(self, location, data, overwrite):
        super()._publish(location, data, overwrite)
        if location == self.fail_on:
            self.fail_on = None
            raise TransientIOError(f"timed out writing {location}")


def test_a_version_written_despite_an_error_is_kept(schema):
    io = _LateAckIO()
    catalog = FilesystemCatalog("memory://wh", io=io)
    catalog.create_namespace("db")
    table = catalog.create_table("db.items", schema, properties=FAST_RETRIES)
    io.fail_on = "memory://wh/db/items/metadata/v2.metadata.json"
    snapshot_id = table.append([plain_file(f"{table.location}/data/a.parquet")])
    assert io.fail_on is None
    assert table.metadata_location.endswith("/v2.metadata.json")
    assert [s.snapshot_id for s in table.snapshots()] == [snapshot_id]
    assert len(table.current_data_files()) == 1


def test_corrupt_metadata_is_reported(catalog, table):
    data = table_metadata_to_dict(table.metadata)
    data["last-updated-ms"] = 0
    catalog.io.write("memory://wh/db/items/metadata/v2.metadata.json", json.dumps(data).encode())
    with pytest.raises(CorruptMetadataError):
        catalog.load_table("db.items")


def test_table_management(catalog, table, schema):
    assert catalog.list_tables("db") == ["items"]
    assert catalog.table_exists("db.items")
    with pytest.raises(TableAlreadyExists):
        catalog.create_table("db.items", schema)
    with pytest.raises(NamespaceNotFound):
        catalog.create_table("nope.items", schema)
    with pytest.raises(ValidationError):
        catalog.create_table("db.elsewhere", schema, location="memory://other/place")

    catalog.drop_table("db.items")
    assert not catalog.table_exists("db.items")
    with pytest.raises(TableNotFound):
        catalog.load_table("db.items")
    with pytest.raises(TableNotFound):
        catalog.drop_table("db.items")


def test_namespaces(catalog):
    catalog.create_namespace("staging")
    assert catalog.list_namespaces() == ["db", "staging"]
    assert catalog.namespace_properties("db") == {"owner": "data-eng"}
    with pytest.raises(NamespaceAlreadyExists):
        catalog.create_namespace("db")
    catalog.create_namespace_if_not_exists("db")
    with pytest.raises(NamespaceNotFound):
        catalog.namespace_properties("missing")
    with pytest.raises(ValidationError):
        catalog.create_namespace("a/b")


def test_identifiers_are_validated(catalog):
    with pytest.raises(ValidationError):
        catalog.table_exists("no_namespace")


def test_local_filesystem(tmp_path, schema):
    catalog = FilesystemCatalog(str(tmp_path / "warehouse"), io=LocalFileIO())
    catalog.create_namespace("db")
    table = catalog.create_table("db.items", schema)
    table.append([plain_file(f"{table.location}/data/a.parquet")])

    reloaded = catalog.load_table("db.items")
    assert reloaded.metadata_location.endswith("/v2.metadata.json")
    assert reloaded.current_snapshot().snapshot_id == table.current_snapshot().snapshot_id
    assert catalog.list_tables("db") == ["items"]
    assert catalog.list_namespaces() == ["db"]
