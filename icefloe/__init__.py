"""icefloe: the metadata and commit core of an Iceberg-style table format.

Tables are immutable data files tracked by manifests, grouped into
snapshots and published by swapping a catalog pointer to a new metadata
document. Catalogs are pluggable: in memory, on a filesystem or object
store, or in Firestore with metadata kept in GCS.
"""

from .catalog.expressions import And
from .catalog.expressions import EqualTo
from .catalog.expressions import GreaterThan
from .catalog.expressions import GreaterThanOrEqual
from .catalog.expressions import In
from .catalog.expressions import IsNull
from .catalog.expressions import LessThan
from .catalog.expressions import LessThanOrEqual
from .catalog.expressions import Not
from .catalog.expressions import NotEqualTo
from .catalog.expressions import NotIn
from .catalog.expressions import NotNull
from .catalog.expressions import Or
from .catalog.filesystem_catalog import FilesystemCatalog
from .catalog.manifest import DataFile
from .catalog.manifest import FileFormat
from .catalog.manifest import ManifestEntry
from .catalog.metadata import TableMetadata
from .catalog.metastore import InMemoryCatalog
from .catalog.metastore import Metastore
from .catalog.partitioning import PartitionField
from .catalog.partitioning import PartitionSpec
from .catalog.scan import DataScan
from .catalog.scan import FileScanTask
from .catalog.schema import Schema
from .catalog.snapshots import Snapshot
from .catalog.table import SimpleTable
from .catalog.transaction import Transaction
from .catalog.transaction import TransactionState
from .catalog.types import NestedField
from .config import catalog_from_env
from .deadline import Deadline

__all__ = [
    "Metastore",
    "InMemoryCatalog",
    "FilesystemCatalog",
    "SimpleTable",
    "TableMetadata",
    "Snapshot",
    "Schema",
    "NestedField",
    "PartitionSpec",
    "PartitionField",
    "DataFile",
    "FileFormat",
    "ManifestEntry",
    "DataScan",
    "FileScanTask",
    "Transaction",
    "TransactionState",
    "Deadline",
    "catalog_from_env",
    "And",
    "Or",
    "Not",
    "EqualTo",
    "NotEqualTo",
    "LessThan",
    "LessThanOrEqual",
    "GreaterThan",
    "GreaterThanOrEqual",
    "In",
    "NotIn",
    "IsNull",
    "NotNull",
]
