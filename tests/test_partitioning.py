import datetime

import pytest

from icefloe.catalog.partitioning import UNPARTITIONED_PARTITION_SPEC
from icefloe.catalog.partitioning import AddPartitionField
from icefloe.catalog.partitioning import PartitionField
from icefloe.catalog.partitioning import PartitionSpec
from icefloe.catalog.partitioning import RemovePartitionField
from icefloe.catalog.partitioning import RenamePartitionField
from icefloe.catalog.partitioning import evolve_partition_spec
from icefloe.catalog.transforms import BucketTransform
from icefloe.catalog.transforms import DayTransform
from icefloe.catalog.transforms import IdentityTransform
from icefloe.catalog.types import DateType
from icefloe.catalog.types import IntegerType
from icefloe.catalog.types import StringType
from icefloe.exceptions import PartitionEvolutionError


def test_partition_type_follows_transforms(events_schema, daily_spec):
    spec = PartitionSpec(
        PartitionField(2, 1000, IdentityTransform(), "category"),
        PartitionField(1, 1001, BucketTransform(8), "id_bucket"),
        PartitionField(3, 1002, DayTransform(), "event_date_day"),
    )
    partition_type = spec.partition_type(events_schema)
    assert [f.field_id for f in partition_type.fields] == [1000, 1001, 1002]
    assert [f.field_type for f in partition_type.fields] == [StringType(), IntegerType(), DateType()]
    assert all(not f.required for f in partition_type.fields)


def test_partition_for_row(events_schema, daily_spec):
    row = {"id": 1, "category": "a", "event_date": datetime.date(2017, 11, 16)}
    assert daily_spec.partition_for_row(events_schema, row) == (17486,)
    assert daily_spec.partition_to_path((17486,)) == "event_date_day=17486"


def test_unpartitioned_spec(events_schema):
    assert UNPARTITIONED_PARTITION_SPEC.is_unpartitioned()
    assert UNPARTITIONED_PARTITION_SPEC.partition_type(events_schema).fields == ()


def test_spec_dict_round_trip(events_spec):
    assert PartitionSpec.from_dict(events_spec.to_dict()) == events_spec


def test_add_field_assigns_ids_above_last(events_schema, events_spec):
    result = evolve_partition_spec(
        events_spec, events_schema, [AddPartitionField("id", BucketTransform(4))], last_partition_id=1000
    )
    assert result.spec.spec_id == 1
    added = result.spec.fields[-1]
    assert (added.field_id, added.name) == (1001, "id_bucket_4")
    assert result.last_partition_id == 1001


def test_readding_a_field_reuses_its_historical_id(events_schema, events_spec):
    removed = evolve_partition_spec(events_spec, events_schema, [RemovePartitionField("category")], 1000)
    assert removed.spec.fields == ()
    readded = evolve_partition_spec(
        removed.spec,
        events_schema,
        [AddPartitionField("category", IdentityTransform())],
        removed.last_partition_id,
        existing_specs=[events_spec, removed.spec],
    )
    # same fields as the original spec, so the original is reused
    assert readded.spec is events_spec


def test_rename_field(events_schema, events_spec):
    result = evolve_partition_spec(
        events_spec, events_schema, [RenamePartitionField("category", "cat")], 1000
    )
    assert result.spec.fields[0].name == "cat"
    assert result.spec.fields[0].field_id == 1000


def test_invalid_partition_changes(events_schema, events_spec):
    with pytest.raises(PartitionEvolutionError):
        evolve_partition_spec(events_spec, events_schema, [AddPartitionField("missing", IdentityTransform())], 1000)
    with pytest.raises(PartitionEvolutionError):
        evolve_partition_spec(events_spec, events_schema, [AddPartitionField("category", IdentityTransform())], 1000)
    with pytest.raises(PartitionEvolutionError):
        evolve_partition_spec(events_spec, events_schema, [AddPartitionField("category", DayTransform())], 1000)
    with pytest.raises(PartitionEvolutionError):
        evolve_partition_spec(events_spec, events_schema, [RemovePartitionField("nope")], 1000)


def test_partition_name_cannot_shadow_another_column(events_schema, events_spec):
    with pytest.raises(PartitionEvolutionError):
        evolve_partition_spec(
            events_spec,
            events_schema,
            [AddPartitionField("id", BucketTransform(4), name="category_x"), RenamePartitionField("category", "id")],
            1000,
        )
