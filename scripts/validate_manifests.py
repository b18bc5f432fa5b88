"""Validate manifests and referenced data files across a catalog namespace.

Walks every table in a namespace and reports manifest lists, manifests and
data files that are referenced by a retained snapshot but missing from
storage. Useful for bulk validation and triage.

Usage:
    python scripts/validate_manifests.py [namespace] [--current-only]

Env:
    ICEFLOE_CATALOG, ICEFLOE_WAREHOUSE, ICEFLOE_WORKSPACE,
    GCP_PROJECT_ID, FIRESTORE_DATABASE, GCS_BUCKET
"""

import logging
import sys

from icefloe.catalog.manifest import read_manifest
from icefloe.catalog.snapshots import manifests_of
from icefloe.config import catalog_from_env
from icefloe.exceptions import CorruptMetadataError
from icefloe.exceptions import IcefloeError

logger = logging.getLogger("validate_manifests")


def validate_table(table, current_only: bool = False) -> int:
    metadata = table.metadata
    io_impl = table.io
    snapshots = [metadata.current_snapshot()] if current_only else list(metadata.snapshots)

    missing = 0
    checked_manifests = set()
    checked_files = set()
    for snap in snapshots:
        if snap is None:
            continue
        if not snap.manifest_list:
            print(f"  Snapshot {snap.snapshot_id}: no manifest list recorded")
            continue
        if not io_impl.exists(snap.manifest_list):
            print(f"  Snapshot {snap.snapshot_id}: manifest list missing -> {snap.manifest_list}")
            missing += 1
            continue

        try:
            manifests = list(manifests_of(io_impl, snap))
        except CorruptMetadataError as e:
            print(f"  Snapshot {snap.snapshot_id}: unreadable manifest list {snap.manifest_list}: {e}")
            missing += 1
            continue

        for manifest in manifests:
            if manifest.manifest_path in checked_manifests:
                continue
            checked_manifests.add(manifest.manifest_path)
            if not io_impl.exists(manifest.manifest_path):
                print(f"    Missing manifest: {manifest.manifest_path}")
                missing += 1
                continue

            partition_type = metadata.partition_type_for(manifest.partition_spec_id)
            try:
                entries = list(read_manifest(io_impl, manifest, partition_type, discard_deleted=True))
            except CorruptMetadataError as e:
                print(f"    Unreadable manifest {manifest.manifest_path}: {e}")
                missing += 1
                continue

            for entry in entries:
                file_path = entry.data_file.file_path
                if file_path in checked_files:
                    continue
                checked_files.add(file_path)
                if not io_impl.exists(file_path):
                    print(f"    Missing data file: {table.rel_path(file_path)}")
                    missing += 1

    return missing


def validate_namespace(namespace: str = "tests_temp", current_only: bool = False) -> int:
    catalog = catalog_from_env()

    tables = catalog.list_tables(namespace)
    if not tables:
        print(f"No tables found in namespace {namespace}")
        return 0

    total_missing = 0
    for table_name in tables:
        table_id = f"{namespace}.{table_name}"
        try:
            table = catalog.load_table(table_id)
        except IcefloeError as e:
            print(f"[ERROR] failed to load {table_id}: {e}")
            total_missing += 1
            continue

        print(f"Checking {table_id}")
        total_missing += validate_table(table, current_only)

    print(f"Validation complete. Missing/errored items: {total_missing}")
    return total_missing


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    ns = args[0] if args else "tests_temp"
    sys.exit(0 if validate_namespace(ns, "--current-only" in sys.argv) == 0 else 2)
