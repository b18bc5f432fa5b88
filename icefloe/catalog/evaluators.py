"""Pruning evaluators.

All three answer "might rows match?" and err towards True: a missing
statistic, summary or bound never excludes a manifest or file.
"""

from __future__ import annotations

import logging
import math
from typing import Any
from typing import Callable
from typing import Dict
from typing import Optional
from typing import Sequence

from .conversions import from_bytes
from .expressions import AlwaysFalse
from .expressions import AlwaysTrue
from .expressions import BooleanExpression
from .expressions import BoundExpressionVisitor
from .expressions import BoundPredicate
from .expressions import and_
from .expressions import bind
from .expressions import or_
from .expressions import rewrite_not
from .expressions import visit
from .manifest import DataFile
from .manifest import ManifestFile
from .manifest import PartitionFieldSummary
from .partitioning import PartitionSpec
from .schema import Schema
from .types import IcebergType
from .types import StructType

logger = logging.getLogger(__name__)

ROWS_MIGHT_MATCH = True
ROWS_CANNOT_MATCH = False
IN_PREDICATE_LIMIT = 200


class _ProjectionVisitor(BoundExpressionVisitor):
    def __init__(self, spec: PartitionSpec):
        self.spec = spec

    def visit_true(self) -> BooleanExpression:
        return AlwaysTrue()

    def visit_false(self) -> BooleanExpression:
        return AlwaysFalse()

    def visit_and(self, left: BooleanExpression, right: BooleanExpression) -> BooleanExpression:
        return and_(left, right)

    def visit_or(self, left: BooleanExpression, right: BooleanExpression) -> BooleanExpression:
        return or_(left, right)

    def visit_predicate(self, pred: BoundPredicate) -> BooleanExpression:
        projected = []
        for pf in self.spec.fields_by_source_id(pred.field_id):
            result = pf.transform.project(pf.name, pred)
            if result is not None:
                projected.append(result)
        return and_(*projected)


def inclusive_projection(spec: PartitionSpec, bound_filter: BooleanExpression) -> BooleanExpression:
    """Project a bound, NOT-free row filter onto `spec`'s partition fields.

    Any row matching the filter has a partition matching the projection.
    """
    return visit(bound_filter, _ProjectionVisitor(spec))


def _partition_schema(spec: PartitionSpec, schema: Schema) -> Schema:
    return Schema(*spec.partition_type(schema).fields)


def _is_nan(value: Any) -> bool:
    return isinstance(value, float) and math.isnan(value)


def _bind_partition_filter(
    spec: PartitionSpec,
    schema: Schema,
    row_filter: BooleanExpression,
    case_sensitive: bool,
    partition_type: Optional[StructType],
):
    bound = rewrite_not(bind(schema, row_filter, case_sensitive))
    projected = inclusive_projection(spec, bound)
    if partition_type is None:
        partition_schema = _partition_schema(spec, schema)
    else:
        partition_schema = Schema(*partition_type.fields)
    return partition_schema, rewrite_not(bind(partition_schema, projected, True))


class _SummaryVisitor(BoundExpressionVisitor):
    def __init__(self, positions: Dict[int, int], types: Dict[int, IcebergType]):
        self.positions = positions
        self.types = types
        self.summaries: Sequence[PartitionFieldSummary] = ()

    def visit_true(self) -> bool:
        return ROWS_MIGHT_MATCH

    def visit_false(self) -> bool:
        return ROWS_CANNOT_MATCH

    def visit_and(self, left: bool, right: bool) -> bool:
        return left and right

    def visit_or(self, left: bool, right: bool) -> bool:
        return left or right

    def _summary(self, field_id: int) -> Optional[PartitionFieldSummary]:
        pos = self.positions.get(field_id)
        if pos is None or pos >= len(self.summaries):
            return None
        return self.summaries[pos]

    def visit_predicate(self, pred: BoundPredicate) -> bool:
        summary = self._summary(pred.field_id)
        if summary is None:
            return ROWS_MIGHT_MATCH
        field_type = self.types[pred.field_id]
        lower = from_bytes(field_type, summary.lower_bound)
        upper = from_bytes(field_type, summary.upper_bound)
        op = pred.op

        if op == "is_null":
            return summary.contains_null is not False
        if op == "not_null":
            all_null = summary.contains_null and lower is None and not summary.contains_nan
            return ROWS_CANNOT_MATCH if all_null else ROWS_MIGHT_MATCH
        if op in ("ne", "not_in"):
            return ROWS_MIGHT_MATCH
        if lower is None or upper is None:
            # only nulls or NaNs in this manifest for the field
            return ROWS_CANNOT_MATCH

        v = pred.literal
        if op == "lt":
            return ROWS_CANNOT_MATCH if lower >= v else ROWS_MIGHT_MATCH
        if op == "lt_eq":
            return ROWS_CANNOT_MATCH if lower > v else ROWS_MIGHT_MATCH
        if op == "gt":
            return ROWS_CANNOT_MATCH if upper <= v else ROWS_MIGHT_MATCH
        if op == "gt_eq":
            return ROWS_CANNOT_MATCH if upper < v else ROWS_MIGHT_MATCH
        if op == "eq":
            return ROWS_CANNOT_MATCH if v < lower or v > upper else ROWS_MIGHT_MATCH
        if op == "in":
            literals = pred.literals or frozenset()
            if len(literals) > IN_PREDICATE_LIMIT:
                return ROWS_MIGHT_MATCH
            return ROWS_MIGHT_MATCH if any(lower <= x <= upper for x in literals) else ROWS_CANNOT_MATCH
        return ROWS_MIGHT_MATCH


class ManifestEvaluator:
    """Prunes manifests using the partition summaries in the manifest list."""

    def __init__(
        self,
        spec: PartitionSpec,
        schema: Schema,
        row_filter: BooleanExpression,
        case_sensitive: bool = True,
        partition_type: Optional[StructType] = None,
    ):
        partition_schema, self.expr = _bind_partition_filter(spec, schema, row_filter, case_sensitive, partition_type)
        self.spec_id = spec.spec_id
        self._positions = {f.field_id: i for i, f in enumerate(partition_schema.fields)}
        self._types = {f.field_id: f.field_type for f in partition_schema.fields}

    def eval(self, manifest: ManifestFile) -> bool:
        if not manifest.partitions:
            return ROWS_MIGHT_MATCH
        visitor = _SummaryVisitor(self._positions, self._types)
        visitor.summaries = manifest.partitions
        result = visit(self.expr, visitor)
        if not result:
            logger.debug("pruned manifest %s", manifest.manifest_path)
        return result


class _PartitionValueVisitor(BoundExpressionVisitor):
    def __init__(self, positions: Dict[int, int], values: Sequence[Any]):
        self.positions = positions
        self.values = values

    def visit_true(self) -> bool:
        return True

    def visit_false(self) -> bool:
        return False

    def visit_and(self, left: bool, right: bool) -> bool:
        return left and right

    def visit_or(self, left: bool, right: bool) -> bool:
        return left or right

    def visit_predicate(self, pred: BoundPredicate) -> bool:
        pos = self.positions.get(pred.field_id)
        if pos is None or pos >= len(self.values):
            return True
        value = self.values[pos]
        op = pred.op
        if op == "is_null":
            return value is None
        if op == "not_null":
            return value is not None
        if value is None:
            return op in ("ne", "not_in")
        if _is_nan(value):
            return op in ("ne", "not_in")
        compare: Dict[str, Callable[[Any], bool]] = {
            "eq": lambda lit: value == lit,
            "ne": lambda lit: value != lit,
            "lt": lambda lit: value < lit,
            "lt_eq": lambda lit: value <= lit,
            "gt": lambda lit: value > lit,
            "gt_eq": lambda lit: value >= lit,
        }
        if op == "in":
            return value in (pred.literals or ())
        if op == "not_in":
            return value not in (pred.literals or ())
        return compare[op](pred.literal)


class PartitionEvaluator:
    """Evaluates the partition projection of a row filter on a file's partition tuple."""

    def __init__(
        self,
        spec: PartitionSpec,
        schema: Schema,
        row_filter: BooleanExpression,
        case_sensitive: bool = True,
        partition_type: Optional[StructType] = None,
    ):
        partition_schema, self.expr = _bind_partition_filter(spec, schema, row_filter, case_sensitive, partition_type)
        self.positions = {f.field_id: i for i, f in enumerate(partition_schema.fields)}

    def eval(self, data_file: DataFile) -> bool:
        return visit(self.expr, _PartitionValueVisitor(self.positions, data_file.partition))


class _MetricsVisitor(BoundExpressionVisitor):
    def __init__(self, data_file: DataFile):
        self.f = data_file

    def visit_true(self) -> bool:
        return ROWS_MIGHT_MATCH

    def visit_false(self) -> bool:
        return ROWS_CANNOT_MATCH

    def visit_and(self, left: bool, right: bool) -> bool:
        return left and right

    def visit_or(self, left: bool, right: bool) -> bool:
        return left or right

    @staticmethod
    def _get(stats: Optional[Dict[int, Any]], field_id: int) -> Any:
        if stats is None:
            return None
        return stats.get(field_id)

    def _nulls_only(self, field_id: int) -> bool:
        values = self._get(self.f.value_counts, field_id)
        nulls = self._get(self.f.null_value_counts, field_id)
        return values is not None and nulls is not None and values == nulls

    def _nans_only(self, field_id: int) -> bool:
        values = self._get(self.f.value_counts, field_id)
        nans = self._get(self.f.nan_value_counts, field_id)
        return values is not None and nans is not None and values == nans

    def _bound(self, bounds: Optional[Dict[int, bytes]], pred: BoundPredicate) -> Any:
        raw = self._get(bounds, pred.field_id)
        if raw is None:
            return None
        value = from_bytes(pred.term.field.field_type, raw)
        return None if _is_nan(value) else value

    def visit_predicate(self, pred: BoundPredicate) -> bool:
        field_id = pred.field_id
        op = pred.op

        if op == "is_null":
            nulls = self._get(self.f.null_value_counts, field_id)
            return ROWS_CANNOT_MATCH if nulls == 0 else ROWS_MIGHT_MATCH
        if op == "not_null":
            return ROWS_CANNOT_MATCH if self._nulls_only(field_id) else ROWS_MIGHT_MATCH
        if op in ("ne", "not_in"):
            return ROWS_MIGHT_MATCH
        if self._nulls_only(field_id) or self._nans_only(field_id):
            return ROWS_CANNOT_MATCH

        # NaN bounds decode to None and so never prune
        lower = self._bound(self.f.lower_bounds, pred)
        upper = self._bound(self.f.upper_bounds, pred)
        v = pred.literal

        if op == "lt":
            return ROWS_CANNOT_MATCH if lower is not None and lower >= v else ROWS_MIGHT_MATCH
        if op == "lt_eq":
            return ROWS_CANNOT_MATCH if lower is not None and lower > v else ROWS_MIGHT_MATCH
        if op == "gt":
            return ROWS_CANNOT_MATCH if upper is not None and upper <= v else ROWS_MIGHT_MATCH
        if op == "gt_eq":
            return ROWS_CANNOT_MATCH if upper is not None and upper < v else ROWS_MIGHT_MATCH
        if op == "eq":
            if lower is not None and lower > v:
                return ROWS_CANNOT_MATCH
            if upper is not None and upper < v:
                return ROWS_CANNOT_MATCH
            return ROWS_MIGHT_MATCH
        if op == "in":
            literals = pred.literals or frozenset()
            if len(literals) > IN_PREDICATE_LIMIT:
                return ROWS_MIGHT_MATCH
            candidates = [x for x in literals if (lower is None or x >= lower) and (upper is None or x <= upper)]
            return ROWS_MIGHT_MATCH if candidates else ROWS_CANNOT_MATCH
        return ROWS_MIGHT_MATCH


class InclusiveMetricsEvaluator:
    """Prunes data files using column bounds and value/null/NaN counts."""

    def __init__(self, schema: Schema, row_filter: BooleanExpression, case_sensitive: bool = True):
        self.expr = rewrite_not(bind(schema, row_filter, case_sensitive))

    def eval(self, data_file: DataFile) -> bool:
        if data_file.record_count == 0:
            return ROWS_CANNOT_MATCH
        result = visit(self.expr, _MetricsVisitor(data_file))
        if not result:
            logger.debug("pruned data file %s by column metrics", data_file.file_path)
        return result
