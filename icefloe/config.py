"""Policy knobs and catalog wiring.

Tuning lives in table properties (so every writer of a table agrees on it)
with the defaults below; catalog wiring comes from the environment, the way
the scripts and tests configure a catalog.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any
from typing import Mapping
from typing import Optional

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

COMMIT_NUM_RETRIES = "commit.retry.num-retries"
COMMIT_NUM_RETRIES_DEFAULT = 4
COMMIT_MIN_RETRY_WAIT_MS = "commit.retry.min-wait-ms"
COMMIT_MIN_RETRY_WAIT_MS_DEFAULT = 100
COMMIT_MAX_RETRY_WAIT_MS = "commit.retry.max-wait-ms"
COMMIT_MAX_RETRY_WAIT_MS_DEFAULT = 60 * 1000
COMMIT_TOTAL_RETRY_TIME_MS = "commit.retry.total-timeout-ms"
COMMIT_TOTAL_RETRY_TIME_MS_DEFAULT = 30 * 60 * 1000

MANIFEST_TARGET_SIZE_BYTES = "commit.manifest.target-size-bytes"
MANIFEST_TARGET_SIZE_BYTES_DEFAULT = 8 * 1024 * 1024

SPLIT_ENABLED = "read.split.enabled"
SPLIT_ENABLED_DEFAULT = True
SPLIT_SIZE = "read.split.target-size"
SPLIT_SIZE_DEFAULT = 128 * 1024 * 1024

METADATA_PREVIOUS_VERSIONS_MAX = "write.metadata.previous-versions-max"
METADATA_PREVIOUS_VERSIONS_MAX_DEFAULT = 100


def property_as_int(properties: Mapping[str, Any], key: str, default: int) -> int:
    value = properties.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as err:
        raise ValidationError(f"Property {key} must be an integer, got {value!r}") from err


def property_as_bool(properties: Mapping[str, Any], key: str, default: bool) -> bool:
    value = properties.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValidationError(f"Property {key} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class CommitRetryPolicy:
    num_retries: int = COMMIT_NUM_RETRIES_DEFAULT
    min_wait_ms: int = COMMIT_MIN_RETRY_WAIT_MS_DEFAULT
    max_wait_ms: int = COMMIT_MAX_RETRY_WAIT_MS_DEFAULT
    total_timeout_ms: int = COMMIT_TOTAL_RETRY_TIME_MS_DEFAULT

    @classmethod
    def from_properties(cls, properties: Mapping[str, Any]) -> "CommitRetryPolicy":
        return cls(
            num_retries=property_as_int(properties, COMMIT_NUM_RETRIES, COMMIT_NUM_RETRIES_DEFAULT),
            min_wait_ms=property_as_int(properties, COMMIT_MIN_RETRY_WAIT_MS, COMMIT_MIN_RETRY_WAIT_MS_DEFAULT),
            max_wait_ms=property_as_int(properties, COMMIT_MAX_RETRY_WAIT_MS, COMMIT_MAX_RETRY_WAIT_MS_DEFAULT),
            total_timeout_ms=property_as_int(
                properties, COMMIT_TOTAL_RETRY_TIME_MS, COMMIT_TOTAL_RETRY_TIME_MS_DEFAULT
            ),
        )

    def backoff_ms(self, attempt: int) -> int:
        """Exponential wait before retry number `attempt` (1-based)."""
        return min(self.max_wait_ms, self.min_wait_ms * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class ScanOptions:
    split_enabled: bool = SPLIT_ENABLED_DEFAULT
    split_target_size: int = SPLIT_SIZE_DEFAULT
    case_sensitive: bool = True

    @classmethod
    def from_properties(cls, properties: Mapping[str, Any], **overrides: Any) -> "ScanOptions":
        options = cls(
            split_enabled=property_as_bool(properties, SPLIT_ENABLED, SPLIT_ENABLED_DEFAULT),
            split_target_size=property_as_int(properties, SPLIT_SIZE, SPLIT_SIZE_DEFAULT),
        )
        if overrides:
            options = cls(**{**options.__dict__, **overrides})
        if options.split_target_size <= 0:
            raise ValidationError("read.split.target-size must be positive")
        return options


def catalog_from_env(environ: Optional[Mapping[str, str]] = None):
    """Build the catalog named by ICEFLOE_CATALOG ('filesystem' or 'firestore')."""
    env = os.environ if environ is None else environ
    kind = env.get("ICEFLOE_CATALOG", "filesystem").lower()
    workspace = env.get("ICEFLOE_WORKSPACE", "icefloe")
    if kind == "filesystem":
        from .catalog.filesystem_catalog import FilesystemCatalog

        warehouse = env.get("ICEFLOE_WAREHOUSE")
        if not warehouse:
            raise ValidationError("ICEFLOE_WAREHOUSE must be set for the filesystem catalog")
        logger.debug("using filesystem catalog at %s", warehouse)
        return FilesystemCatalog(warehouse)
    if kind == "firestore":
        from .firestore_catalog import FirestoreCatalog

        logger.debug("using firestore catalog for workspace %s", workspace)
        return FirestoreCatalog(
            workspace,
            firestore_project=env.get("GCP_PROJECT_ID"),
            firestore_database=env.get("FIRESTORE_DATABASE"),
            gcs_bucket=env.get("GCS_BUCKET"),
        )
    raise ValidationError(f"Unknown ICEFLOE_CATALOG: {kind}")
