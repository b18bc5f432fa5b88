from __future__ import annotations

import logging
import threading
from abc import ABC
from abc import abstractmethod
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple

from ..exceptions import CommitStateUnknownError
from ..exceptions import FileAlreadyExists
from ..exceptions import NamespaceAlreadyExists
from ..exceptions import NamespaceNotFound
from ..exceptions import TableAlreadyExists
from ..exceptions import TableNotFound
from ..exceptions import TransientIOError
from ..exceptions import ValidationError
from ..iops.base import FileIO
from ..iops.base import MemoryFileIO
from .metadata import TableMetadata
from .metadata import new_metadata_path
from .metadata import new_table_metadata
from .metadata import parse_metadata_version
from .metadata import read_table_metadata
from .metadata import write_table_metadata
from .partitioning import UNPARTITIONED_PARTITION_SPEC
from .partitioning import PartitionSpec
from .schema import Schema

logger = logging.getLogger(__name__)


def parse_identifier(identifier: str) -> Tuple[str, str]:
    """Split 'namespace.table' into its parts."""
    if not isinstance(identifier, str) or "." not in identifier:
        raise ValidationError(f"identifier must be 'namespace.table', got {identifier!r}")
    namespace, table_name = identifier.rsplit(".", 1)
    if not namespace or not table_name:
        raise ValidationError(f"identifier must be 'namespace.table', got {identifier!r}")
    return namespace, table_name


class Metastore(ABC):
    """Abstract catalog interface (Iceberg-like).

    A catalog maps table identifiers to the location of their current
    metadata document. The commit engine depends only on
    `current_metadata_location` and the compare-and-swap
    `swap_metadata_location`; everything else is table management built on
    those two.
    """

    io: FileIO
    warehouse: str

    # -- pointer ---------------------------------------------------------------

    @abstractmethod
    def current_metadata_location(self, identifier: str) -> Optional[str]:
        """Location of the current metadata document, or None if the table does not exist."""
        raise NotImplementedError()

    @abstractmethod
    def swap_metadata_location(self, identifier: str, expected: Optional[str], new: str) -> bool:
        """Atomically point `identifier` at `new` if it still points at `expected`."""
        raise NotImplementedError()

    @abstractmethod
    def _register_table(self, identifier: str, metadata_location: str, metadata: TableMetadata) -> None:
        """Create the pointer for a new table, raising TableAlreadyExists if taken."""
        raise NotImplementedError()

    @abstractmethod
    def drop_table(self, identifier: str) -> None:
        raise NotImplementedError()

    @abstractmethod
    def list_tables(self, namespace: str) -> Iterable[str]:
        raise NotImplementedError()

    # -- namespaces ------------------------------------------------------------

    @abstractmethod
    def create_namespace(self, namespace: str, properties: Optional[dict] = None, exists_ok: bool = False) -> None:
        raise NotImplementedError()

    @abstractmethod
    def list_namespaces(self) -> List[str]:
        raise NotImplementedError()

    def namespace_exists(self, namespace: str) -> bool:
        return namespace in self.list_namespaces()

    def create_namespace_if_not_exists(self, namespace: str, properties: Optional[dict] = None) -> None:
        self.create_namespace(namespace, properties=properties, exists_ok=True)

    # -- tables ----------------------------------------------------------------

    def table_location(self, identifier: str) -> str:
        namespace, table_name = parse_identifier(identifier)
        return f"{self.warehouse.rstrip('/')}/{namespace}/{table_name}"

    def new_metadata_location(self, metadata: TableMetadata, base_location: Optional[str]) -> str:
        version = parse_metadata_version(base_location) + 1 if base_location else 0
        return new_metadata_path(metadata.location, max(version, 0))

    def commit_metadata(
        self, identifier: str, expected: Optional[str], metadata: TableMetadata
    ) -> Optional[str]:
        """Write `metadata` and swap the pointer to it.

        Returns the new location, or None when another writer moved the
        pointer first.
        """
        location = self.new_metadata_location(metadata, expected)
        write_table_metadata(self.io, location, metadata)
        try:
            swapped = self.swap_metadata_location(identifier, expected, location)
        except TransientIOError as err:
            return self._confirm_swap(identifier, location, err)
        return location if swapped else None

    def _confirm_swap(self, identifier: str, location: str, err: Exception) -> str:
        """Settle a swap whose reply was lost.

        Returns `location` when the pointer is seen on it, otherwise raises
        CommitStateUnknownError: the swap may still have landed underneath a
        later commit.
        """
        try:
            current = self.current_metadata_location(identifier)
        except TransientIOError:
            current = None
        if current == location:
            return location
        raise CommitStateUnknownError(
            f"Unable to confirm the swap of {identifier} to {location}: {err}", location
        ) from err

    def create_table(
        self,
        identifier: str,
        schema: Schema,
        spec: Optional[PartitionSpec] = None,
        properties: Optional[dict] = None,
        location: Optional[str] = None,
    ):
        from .table import SimpleTable

        namespace, _ = parse_identifier(identifier)
        if not self.namespace_exists(namespace):
            raise NamespaceNotFound(f"Namespace not found: {namespace}")
        if self.current_metadata_location(identifier) is not None:
            raise TableAlreadyExists(f"Table already exists: {identifier}")

        metadata = new_table_metadata(
            schema,
            location or self.table_location(identifier),
            spec or UNPARTITIONED_PARTITION_SPEC,
            properties,
        )
        metadata_location = self.new_metadata_location(metadata, None)
        try:
            write_table_metadata(self.io, metadata_location, metadata)
        except FileAlreadyExists as err:
            raise TableAlreadyExists(f"Table already exists: {identifier}") from err
        self._register_table(identifier, metadata_location, metadata)
        logger.info("created table %s at %s", identifier, metadata.location)
        return SimpleTable(identifier, metadata, metadata_location, io=self.io, catalog=self)

    def load_table(self, identifier: str):
        from .table import SimpleTable

        parse_identifier(identifier)
        metadata_location = self.current_metadata_location(identifier)
        if metadata_location is None:
            raise TableNotFound(f"Table not found: {identifier}")
        metadata = read_table_metadata(self.io, metadata_location)
        return SimpleTable(identifier, metadata, metadata_location, io=self.io, catalog=self)

    def open_table(self, identifier: str):
        return self.load_table(identifier)

    def table_exists(self, identifier: str) -> bool:
        return self.current_metadata_location(identifier) is not None


class InMemoryCatalog(Metastore):
    """Catalog whose pointers live in a dict; the swap is a locked compare."""

    def __init__(self, warehouse: str = "memory://warehouse", io: Optional[FileIO] = None):
        self.warehouse = warehouse
        self.io = io if io is not None else MemoryFileIO()
        self._lock = threading.Lock()
        self._namespaces: Dict[str, dict] = {}
        self._pointers: Dict[str, str] = {}

    def current_metadata_location(self, identifier: str) -> Optional[str]:
        with self._lock:
            return self._pointers.get(identifier)

    def swap_metadata_location(self, identifier: str, expected: Optional[str], new: str) -> bool:
        with self._lock:
            if identifier not in self._pointers:
                raise TableNotFound(f"Table not found: {identifier}")
            if self._pointers[identifier] != expected:
                logger.debug("lost swap on %s: expected %s", identifier, expected)
                return False
            self._pointers[identifier] = new
            return True

    def _register_table(self, identifier: str, metadata_location: str, metadata: TableMetadata) -> None:
        with self._lock:
            if identifier in self._pointers:
                raise TableAlreadyExists(f"Table already exists: {identifier}")
            self._pointers[identifier] = metadata_location

    def drop_table(self, identifier: str) -> None:
        with self._lock:
            if self._pointers.pop(identifier, None) is None:
                raise TableNotFound(f"Table not found: {identifier}")

    def list_tables(self, namespace: str) -> List[str]:
        if not self.namespace_exists(namespace):
            raise NamespaceNotFound(f"Namespace not found: {namespace}")
        with self._lock:
            return sorted(
                ident.rsplit(".", 1)[1] for ident in self._pointers if ident.rsplit(".", 1)[0] == namespace
            )

    def create_namespace(self, namespace: str, properties: Optional[dict] = None, exists_ok: bool = False) -> None:
        with self._lock:
            if namespace in self._namespaces:
                if exists_ok:
                    return
                raise NamespaceAlreadyExists(f"Namespace already exists: {namespace}")
            self._namespaces[namespace] = dict(properties or {})

    def list_namespaces(self) -> List[str]:
        with self._lock:
            return sorted(self._namespaces)

    def namespace_properties(self, namespace: str) -> Dict[str, Any]:
        with self._lock:
            if namespace not in self._namespaces:
                raise NamespaceNotFound(f"Namespace not found: {namespace}")
            return dict(self._namespaces[namespace])
