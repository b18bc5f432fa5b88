import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from icefloe.catalog.conversions import to_bytes
from icefloe.catalog.manifest import DataFile
from icefloe.catalog.metastore import InMemoryCatalog
from icefloe.catalog.partitioning import PartitionField
from icefloe.catalog.partitioning import PartitionSpec
from icefloe.catalog.schema import Schema
from icefloe.catalog.transforms import DayTransform
from icefloe.catalog.transforms import IdentityTransform
from icefloe.catalog.types import DateType
from icefloe.catalog.types import DoubleType
from icefloe.catalog.types import LongType
from icefloe.catalog.types import NestedField
from icefloe.catalog.types import StringType

# fast retries so contended commits do not slow the suite down
FAST_RETRIES = {
    "commit.retry.num-retries": "20",
    "commit.retry.min-wait-ms": "1",
    "commit.retry.max-wait-ms": "10",
}


@pytest.fixture
def schema():
    return Schema(
        NestedField(1, "id", LongType(), required=True),
        NestedField(2, "name", StringType()),
        NestedField(3, "score", DoubleType()),
    )


@pytest.fixture
def events_schema():
    return Schema(
        NestedField(1, "id", LongType(), required=True),
        NestedField(2, "category", StringType()),
        NestedField(3, "event_date", DateType()),
    )


@pytest.fixture
def events_spec():
    return PartitionSpec(
        PartitionField(2, 1000, IdentityTransform(), "category"),
        spec_id=0,
    )


@pytest.fixture
def daily_spec():
    return PartitionSpec(PartitionField(3, 1000, DayTransform(), "event_date_day"), spec_id=0)


@pytest.fixture
def catalog():
    cat = InMemoryCatalog()
    cat.create_namespace("db")
    return cat


@pytest.fixture
def table(catalog, schema):
    return catalog.create_table("db.items", schema, properties=FAST_RETRIES)


@pytest.fixture
def events(catalog, events_schema, events_spec):
    return catalog.create_table("db.events", events_schema, events_spec, properties=FAST_RETRIES)


def id_file(path, low, high, record_count=None, spec_id=0, partition=()):
    """A data file whose `id` column spans [low, high]."""
    count = record_count if record_count is not None else high - low + 1
    return DataFile(
        file_path=path,
        partition=partition,
        record_count=count,
        file_size_in_bytes=1024,
        spec_id=spec_id,
        value_counts={1: count},
        null_value_counts={1: 0},
        lower_bounds={1: to_bytes(LongType(), low)},
        upper_bounds={1: to_bytes(LongType(), high)},
    )


def plain_file(path, spec_id=0, partition=(), record_count=10, size=1024):
    return DataFile(
        file_path=path,
        partition=partition,
        record_count=record_count,
        file_size_in_bytes=size,
        spec_id=spec_id,
    )
