import pyarrow as pa

from conftest import plain_file
from icefloe.config import catalog_from_env
from scripts.validate_manifests import validate_namespace
from scripts.validate_manifests import validate_table


def test_written_tables_validate_cleanly(table):
    table.append(pa.table({"id": pa.array([1, 2, 3], type=pa.int64())}))
    assert validate_table(table) == 0


def test_missing_files_are_counted(table):
    table.append([plain_file(f"{table.location}/data/ghost.parquet")])
    assert validate_table(table) == 1

    manifest_list = table.current_snapshot().manifest_list
    table.io.delete(manifest_list)
    assert validate_table(table, current_only=True) == 1


def test_validate_namespace_uses_the_configured_catalog(tmp_path, monkeypatch, schema):
    monkeypatch.setenv("ICEFLOE_CATALOG", "filesystem")
    monkeypatch.setenv("ICEFLOE_WAREHOUSE", str(tmp_path))
    catalog = catalog_from_env()
    catalog.create_namespace("db")
    table = catalog.create_table("db.items", schema)
    table.append([plain_file(f"{table.location}/data/ghost.parquet")])
    assert validate_namespace("db") == 1
