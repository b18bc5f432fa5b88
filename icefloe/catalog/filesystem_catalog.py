"""A catalog that needs nothing but a FileIO.

Each table keeps numbered metadata files next to its data:

    <warehouse>/<namespace>/<table>/metadata/v<N>.metadata.json
    <warehouse>/<namespace>/<table>/metadata/version-hint.text

Committing version N+1 is an exclusive create of `v<N+1>.metadata.json`;
whoever creates it first wins. The hint file only speeds up lookups and may
lag behind, so readers walk forward from it.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Dict
from typing import List
from typing import Optional

from ..exceptions import CommitStateUnknownError
from ..exceptions import FileAlreadyExists
from ..exceptions import IcefloeError
from ..exceptions import NamespaceAlreadyExists
from ..exceptions import NamespaceNotFound
from ..exceptions import TableNotFound
from ..exceptions import TransientIOError
from ..exceptions import ValidationError
from ..iops.base import FileIO
from ..iops.base import LocalFileIO
from .metadata import TableMetadata
from .metadata import holds_table_metadata
from .metadata import parse_metadata_version
from .metadata import write_table_metadata
from .metastore import Metastore
from .metastore import parse_identifier

logger = logging.getLogger(__name__)

VERSION_HINT = "version-hint.text"
NAMESPACE_MARKER = ".namespace.json"
_VERSION_FILE = re.compile(r"/metadata/v(\d+)\.metadata\.json$")


class FilesystemCatalog(Metastore):
    def __init__(self, warehouse: str, io: Optional[FileIO] = None):
        self.warehouse = warehouse.rstrip("/")
        self.io = io if io is not None else LocalFileIO()

    # -- layout ------------------------------------------------------------------

    def _metadata_dir(self, identifier: str) -> str:
        return f"{self.table_location(identifier)}/metadata"

    def _version_path(self, identifier: str, version: int) -> str:
        return f"{self._metadata_dir(identifier)}/v{version}.metadata.json"

    def _hint_path(self, identifier: str) -> str:
        return f"{self._metadata_dir(identifier)}/{VERSION_HINT}"

    def _namespace_marker(self, namespace: str) -> str:
        return f"{self.warehouse}/{namespace}/{NAMESPACE_MARKER}"

    def _read_hint(self, identifier: str) -> Optional[int]:
        hint = self.io.new_input(self._hint_path(identifier))
        if not hint.exists():
            return None
        try:
            return int(hint.read().decode("utf-8").strip())
        except ValueError:
            logger.warning("ignoring unreadable version hint for %s", identifier)
            return None

    def _list_versions(self, identifier: str) -> List[int]:
        versions = []
        for path in self.io.list_prefix(f"{self._metadata_dir(identifier)}/"):
            match = _VERSION_FILE.search(path)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def _write_hint(self, identifier: str, version: int) -> None:
        self.io.write(self._hint_path(identifier), str(version).encode("utf-8"), overwrite=True)

    def current_version(self, identifier: str) -> Optional[int]:
        version = self._read_hint(identifier)
        if version is None:
            versions = self._list_versions(identifier)
            if not versions:
                return None
            return versions[-1]
        while self.io.exists(self._version_path(identifier, version + 1)):
            version += 1
        if not self.io.exists(self._version_path(identifier, version)):
            versions = self._list_versions(identifier)
            return versions[-1] if versions else None
        return version

    # -- pointer -------------------------------------------------------------------

    def current_metadata_location(self, identifier: str) -> Optional[str]:
        version = self.current_version(identifier)
        if version is None:
            return None
        return self._version_path(identifier, version)

    def new_metadata_location(self, metadata: TableMetadata, base_location: Optional[str]) -> str:
        version = parse_metadata_version(base_location) + 1 if base_location else 1
        return f"{metadata.location}/metadata/v{version}.metadata.json"

    def commit_metadata(
        self, identifier: str, expected: Optional[str], metadata: TableMetadata
    ) -> Optional[str]:
        if metadata.location != self.table_location(identifier):
            raise ValidationError(f"Table {identifier} must live at {self.table_location(identifier)}")
        location = self.new_metadata_location(metadata, expected)
        try:
            write_table_metadata(self.io, location, metadata)
        except FileAlreadyExists:
            logger.debug("lost commit race on %s for %s", identifier, location)
            return None
        except TransientIOError as err:
            if not self._holds(location, metadata, err):
                logger.debug("lost commit race on %s for %s", identifier, location)
                return None
        try:
            self._write_hint(identifier, parse_metadata_version(location))
        except (OSError, TransientIOError) as err:
            # readers walk forward past a stale hint
            logger.warning("committed %s but could not update its version hint: %s", location, err)
        return location

    def _holds(self, location: str, metadata: TableMetadata, err: Exception) -> bool:
        """Whether an exclusive create reported as failed left our document at `location`.

        Another writer's document there means the race was lost; no document
        yet leaves the outcome open, since the create may still land.
        """
        unknown = f"Unable to confirm the commit of {location}: {err}"
        try:
            present = self.io.exists(location)
            ours = present and holds_table_metadata(self.io, location, metadata)
        except (OSError, IcefloeError) as read_err:
            raise CommitStateUnknownError(unknown, location) from read_err
        if not present:
            raise CommitStateUnknownError(unknown, location) from err
        return ours

    def swap_metadata_location(self, identifier: str, expected: Optional[str], new: str) -> bool:
        if self.current_metadata_location(identifier) != expected:
            return False
        version = parse_metadata_version(expected) + 1 if expected else 1
        target = self._version_path(identifier, version)
        if new != target:
            try:
                self.io.write(target, self.io.read(new))
            except FileAlreadyExists:
                return False
        self._write_hint(identifier, version)
        return True

    def _register_table(self, identifier: str, metadata_location: str, metadata: TableMetadata) -> None:
        self._write_hint(identifier, parse_metadata_version(metadata_location))

    def create_table(self, identifier: str, schema, spec=None, properties=None, location=None):
        if location is not None and location.rstrip("/") != self.table_location(identifier):
            raise ValidationError("Tables in a filesystem catalog live under the warehouse")
        return super().create_table(identifier, schema, spec, properties)

    def drop_table(self, identifier: str) -> None:
        """Remove the table's metadata. Data files are left in place."""
        paths = self.io.list_prefix(f"{self._metadata_dir(identifier)}/")
        if not paths:
            raise TableNotFound(f"Table not found: {identifier}")
        for path in paths:
            self.io.delete(path)
        logger.info("dropped table %s", identifier)

    def list_tables(self, namespace: str) -> List[str]:
        if not self.namespace_exists(namespace):
            raise NamespaceNotFound(f"Namespace not found: {namespace}")
        prefix = f"{self.warehouse}/{namespace}/"
        tables = set()
        for path in self.io.list_prefix(prefix):
            rest = path[len(prefix) :] if path.startswith(prefix) else path.split(prefix, 1)[-1]
            parts = rest.split("/")
            if len(parts) == 3 and parts[1] == "metadata" and (
                parts[2] == VERSION_HINT or _VERSION_FILE.search(path)
            ):
                tables.add(parts[0])
        return sorted(tables)

    # -- namespaces --------------------------------------------------------------

    def create_namespace(self, namespace: str, properties: Optional[dict] = None, exists_ok: bool = False) -> None:
        if "/" in namespace:
            raise ValidationError(f"Invalid namespace: {namespace}")
        try:
            self.io.write(self._namespace_marker(namespace), json.dumps(properties or {}).encode("utf-8"))
        except FileAlreadyExists as err:
            if exists_ok:
                return
            raise NamespaceAlreadyExists(f"Namespace already exists: {namespace}") from err

    def list_namespaces(self) -> List[str]:
        found = []
        for path in self.io.list_prefix(f"{self.warehouse}/"):
            if path.endswith(f"/{NAMESPACE_MARKER}"):
                found.append(path[: -len(NAMESPACE_MARKER) - 1].rsplit("/", 1)[-1])
        return sorted(found)

    def namespace_exists(self, namespace: str) -> bool:
        return self.io.exists(self._namespace_marker(namespace))

    def namespace_properties(self, namespace: str) -> Dict[str, str]:
        marker = self.io.new_input(self._namespace_marker(namespace))
        if not marker.exists():
            raise NamespaceNotFound(f"Namespace not found: {namespace}")
        return json.loads(marker.read().decode("utf-8"))

    def table_exists(self, identifier: str) -> bool:
        parse_identifier(identifier)
        return super().table_exists(identifier)
