from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from typing import Any
from typing import Iterable
from typing import List
from typing import Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from .catalog.metadata import TableMetadata
from .catalog.metadata import write_table_metadata
from .catalog.metastore import Metastore
from .catalog.metastore import parse_identifier
from .exceptions import NamespaceAlreadyExists
from .exceptions import NamespaceNotFound
from .exceptions import TableAlreadyExists
from .exceptions import TableNotFound
from .exceptions import TransientIOError
from .exceptions import ValidationError
from .iops.base import FileIO

logger = logging.getLogger(__name__)

_TRANSIENT = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.TooManyRequests,
    google_exceptions.InternalServerError,
    google_exceptions.Aborted,
)


@contextmanager
def _transient(action: str):
    """Report Firestore throttling and outages as TransientIOError."""
    try:
        yield
    except _TRANSIENT as err:
        raise TransientIOError(f"{action}: {err}") from err


def _now_ms() -> int:
    return int(time.time() * 1000)


def _author() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


class FirestoreCatalog(Metastore):
    """Firestore-backed Metastore implementation.

    Stores table documents under: /<workspace>/<namespace>/tables/<table>.
    The `metadata-location` field of the table document is the table's
    current pointer; commits swap it inside a Firestore transaction and
    record the new snapshot in the table's `snapshots` subcollection in the
    same transaction. Metadata, manifests and data live in GCS under
    gs://<bucket>/<workspace>/<namespace>/<table>.
    """

    def __init__(
        self,
        workspace: str,
        firestore_project: Optional[str] = None,
        firestore_database: Optional[str] = None,
        gcs_bucket: Optional[str] = None,
        io: Optional[FileIO] = None,
        warehouse: Optional[str] = None,
        firestore_client: Any = None,
    ):
        self.workspace = workspace
        self.gcs_bucket = gcs_bucket
        self.firestore_client = firestore_client or firestore.Client(
            project=firestore_project, database=firestore_database
        )
        self._catalog_ref = self.firestore_client.collection(workspace)

        if warehouse is None:
            if not gcs_bucket:
                raise ValidationError("FirestoreCatalog needs a gcs_bucket or an explicit warehouse")
            warehouse = f"gs://{gcs_bucket}/{workspace}"
        self.warehouse = warehouse.rstrip("/")

        if io is not None:
            self.io = io
        else:
            from .iops.gcs import GcsFileIO

            self.io = GcsFileIO()

    def _namespace_ref(self, namespace: str):
        return self._catalog_ref.document(namespace)

    def _tables_collection(self, namespace: str):
        return self._namespace_ref(namespace).collection("tables")

    def _table_doc_ref(self, namespace: str, table_name: str):
        return self._tables_collection(namespace).document(table_name)

    def _snapshots_collection(self, namespace: str, table_name: str):
        return self._table_doc_ref(namespace, table_name).collection("snapshots")

    def _table_ref(self, identifier: str):
        namespace, table_name = parse_identifier(identifier)
        return self._table_doc_ref(namespace, table_name)

    # -- pointer -----------------------------------------------------------------

    def current_metadata_location(self, identifier: str) -> Optional[str]:
        with _transient(f"Unable to read table document {identifier}"):
            doc = self._table_ref(identifier).get()
        if not doc.exists:
            return None
        return (doc.to_dict() or {}).get("metadata-location")

    def _swap(
        self,
        identifier: str,
        expected: Optional[str],
        new: str,
        metadata: Optional[TableMetadata] = None,
    ) -> bool:
        namespace, table_name = parse_identifier(identifier)
        doc_ref = self._table_doc_ref(namespace, table_name)
        snapshot = metadata.current_snapshot() if metadata is not None else None

        @firestore.transactional
        def swap_in_transaction(transaction) -> bool:
            doc = doc_ref.get(transaction=transaction)
            if not doc.exists:
                raise TableNotFound(f"Table not found: {identifier}")
            if (doc.to_dict() or {}).get("metadata-location") != expected:
                return False
            update = {
                "metadata-location": new,
                "previous-metadata-location": expected,
                "timestamp-ms": _now_ms(),
            }
            if metadata is not None:
                update["current-snapshot-id"] = metadata.current_snapshot_id
                update["current-schema-id"] = metadata.current_schema_id
                update["properties"] = metadata.properties
            transaction.update(doc_ref, update)
            if snapshot is not None:
                transaction.set(
                    self._snapshots_collection(namespace, table_name).document(str(snapshot.snapshot_id)),
                    {
                        **snapshot.to_dict(),
                        "metadata-location": new,
                    },
                )
            return True

        with _transient(f"Unable to swap metadata of {identifier}"):
            return swap_in_transaction(self.firestore_client.transaction())

    def swap_metadata_location(self, identifier: str, expected: Optional[str], new: str) -> bool:
        return self._swap(identifier, expected, new)

    def commit_metadata(
        self, identifier: str, expected: Optional[str], metadata: TableMetadata
    ) -> Optional[str]:
        location = self.new_metadata_location(metadata, expected)
        write_table_metadata(self.io, location, metadata)
        try:
            swapped = self._swap(identifier, expected, location, metadata)
        except TransientIOError as err:
            return self._confirm_swap(identifier, location, err)
        if swapped:
            logger.info("swapped %s to %s", identifier, location)
            return location
        return None

    def _register_table(self, identifier: str, metadata_location: str, metadata: TableMetadata) -> None:
        namespace, table_name = parse_identifier(identifier)
        try:
            with _transient(f"Unable to create table document {identifier}"):
                self._table_doc_ref(namespace, table_name).create(
                    {
                        "name": table_name,
                        "collection": namespace,
                        "workspace": self.workspace,
                        "location": metadata.location,
                        "metadata-location": metadata_location,
                        "properties": metadata.properties,
                        "format-version": metadata.format_version,
                        "current-schema-id": metadata.current_schema_id,
                        "timestamp-ms": _now_ms(),
                        "author": _author(),
                    }
                )
        except google_exceptions.Conflict as err:
            raise TableAlreadyExists(f"Table already exists: {identifier}") from err

    # -- tables --------------------------------------------------------------------

    def drop_table(self, identifier: str) -> None:
        namespace, table_name = parse_identifier(identifier)
        doc_ref = self._table_doc_ref(namespace, table_name)
        with _transient(f"Unable to drop table {identifier}"):
            if not doc_ref.get().exists:
                raise TableNotFound(f"Table not found: {identifier}")
            snaps_coll = self._snapshots_collection(namespace, table_name)
            for doc in snaps_coll.stream():
                snaps_coll.document(doc.id).delete()
            doc_ref.delete()
        logger.info("dropped table %s", identifier)

    def list_tables(self, namespace: str) -> Iterable[str]:
        coll = self._tables_collection(namespace)
        with _transient(f"Unable to list tables in {namespace}"):
            return sorted(doc.id for doc in coll.stream())

    def table_exists(self, identifier_or_namespace: str, table_name: Optional[str] = None) -> bool:
        """Return True if the table exists.

        Supports two call forms:
        - table_exists("namespace.table")
        - table_exists("namespace", "table")
        """
        if table_name is None:
            namespace, table_name = parse_identifier(identifier_or_namespace)
        else:
            namespace = identifier_or_namespace
        with _transient(f"Unable to read table document {namespace}.{table_name}"):
            return self._table_doc_ref(namespace, table_name).get().exists

    def snapshot_documents(self, identifier: str) -> List[dict]:
        """The snapshot records mirrored into Firestore, oldest first."""
        namespace, table_name = parse_identifier(identifier)
        with _transient(f"Unable to read snapshots of {identifier}"):
            docs = [d.to_dict() or {} for d in self._snapshots_collection(namespace, table_name).stream()]
        return sorted(docs, key=lambda d: (d.get("sequence-number", 0), d.get("snapshot-id", 0)))

    # -- namespaces --------------------------------------------------------------

    def create_namespace(self, namespace: str, properties: Optional[dict] = None, exists_ok: bool = False) -> None:
        """Create a namespace document under the workspace."""
        doc_ref = self._namespace_ref(namespace)
        with _transient(f"Unable to create namespace {namespace}"):
            if doc_ref.get().exists:
                if exists_ok:
                    return
                raise NamespaceAlreadyExists(f"Namespace already exists: {namespace}")

            doc_ref.set(
                {
                    "name": namespace,
                    "properties": properties or {},
                    "timestamp-ms": _now_ms(),
                    "author": _author(),
                }
            )

    def list_namespaces(self) -> List[str]:
        with _transient(f"Unable to list namespaces in {self.workspace}"):
            return sorted(doc.id for doc in self._catalog_ref.stream())

    def namespace_exists(self, namespace: str) -> bool:
        with _transient(f"Unable to read namespace {namespace}"):
            return self._namespace_ref(namespace).get().exists

    def namespace_properties(self, namespace: str) -> dict:
        with _transient(f"Unable to read namespace {namespace}"):
            doc = self._namespace_ref(namespace).get()
        if not doc.exists:
            raise NamespaceNotFound(f"Namespace not found: {namespace}")
        return (doc.to_dict() or {}).get("properties", {})
