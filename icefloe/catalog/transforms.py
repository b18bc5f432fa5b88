"""Partition transforms.

Transforms operate on internal values (see `conversions`): dates are days
since the epoch, timestamps are microseconds since the epoch.
"""

from __future__ import annotations

import re
import struct
from decimal import Decimal
from typing import Any
from typing import Optional

import mmh3

from ..exceptions import PartitionEvolutionError
from .conversions import MICROS_PER_DAY
from .conversions import days_to_date
from .conversions import decimal_to_unscaled
from .conversions import micros_to_datetime
from .conversions import unscaled_to_decimal
from .expressions import BoundPredicate
from .expressions import UnboundPredicate
from .types import BinaryType
from .types import DateType
from .types import DecimalType
from .types import FixedType
from .types import IcebergType
from .types import IntegerType
from .types import LongType
from .types import PrimitiveType
from .types import StringType
from .types import TimestampType
from .types import TimestamptzType
from .types import TimeType
from .types import UUIDType

BUCKET_REGEX = re.compile(r"^bucket\[\s*(\d+)\s*\]$")
TRUNCATE_REGEX = re.compile(r"^truncate\[\s*(\d+)\s*\]$")

MICROS_PER_HOUR = 3_600_000_000
INT_MAX = 0x7FFFFFFF

_ORDERED_OPS = {"lt", "lt_eq", "gt", "gt_eq", "eq", "in"}


class Transform:
    """Base of the closed set of partition transforms."""

    preserves_order = False

    def can_transform(self, source: IcebergType) -> bool:
        raise NotImplementedError()

    def result_type(self, source: IcebergType) -> IcebergType:
        return source

    def apply(self, value: Any) -> Any:
        raise NotImplementedError()

    def project(self, name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
        """Inclusive projection of `pred` onto the partition field `name`.

        Returns None when the transform cannot narrow the predicate (every
        partition might match).
        """
        raise NotImplementedError()

    def __str__(self) -> str:
        raise NotImplementedError()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Transform) and str(self) == str(other)

    def __hash__(self) -> int:
        return hash(str(self))


def _project_unary(name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
    if pred.op in ("is_null", "not_null"):
        return pred.as_unbound(name)
    return None


def _project_ordered(transform: Transform, name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
    """Projection for order-preserving (monotonic) transforms.

    Strict bounds are tightened by one unit of the source domain before the
    transform is applied, so `x < 5` becomes `t(x) <= t(4)`.
    """
    unary = _project_unary(name, pred)
    if unary is not None:
        return unary
    if pred.op not in _ORDERED_OPS:
        return None
    if pred.op == "in":
        return BoundPredicate(
            "in", pred.term, literals=frozenset(transform.apply(v) for v in pred.literals or ())
        ).as_unbound(name)
    value = pred.literal
    op = pred.op
    if op == "lt":
        stepped = _step(value, -1)
        if stepped is not None:
            op, value = "lt_eq", stepped
    elif op == "gt":
        stepped = _step(value, 1)
        if stepped is not None:
            op, value = "gt_eq", stepped
    if op == "lt":
        op = "lt_eq"
    elif op == "gt":
        op = "gt_eq"
    return BoundPredicate(op, pred.term, transform.apply(value)).as_unbound(name)


def _step(value: Any, delta: int) -> Any:
    """Adjacent value in a discrete domain, or None for non-discrete ones."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value + delta
    if isinstance(value, Decimal):
        exponent = value.as_tuple().exponent
        scale = -exponent if isinstance(exponent, int) else 0
        return unscaled_to_decimal(decimal_to_unscaled(value) + delta, scale)
    return None


class IdentityTransform(Transform):
    preserves_order = True

    def can_transform(self, source: IcebergType) -> bool:
        return isinstance(source, PrimitiveType)

    def apply(self, value: Any) -> Any:
        return value

    def project(self, name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
        return pred.as_unbound(name)

    def __str__(self) -> str:
        return "identity"


class VoidTransform(Transform):
    def can_transform(self, source: IcebergType) -> bool:
        return True

    def apply(self, value: Any) -> Any:
        return None

    def project(self, name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
        return None

    def __str__(self) -> str:
        return "void"


def _hash_value(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("Cannot bucket a boolean")
    if isinstance(value, int):
        return mmh3.hash(struct.pack("<q", value))
    if isinstance(value, str):
        return mmh3.hash(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        return mmh3.hash(bytes(value))
    if isinstance(value, Decimal):
        unscaled = decimal_to_unscaled(value)
        length = max(1, (unscaled + (unscaled < 0)).bit_length() // 8 + 1)
        return mmh3.hash(unscaled.to_bytes(length, byteorder="big", signed=True))
    if hasattr(value, "bytes"):  # uuid.UUID
        return mmh3.hash(value.bytes)
    raise TypeError(f"Cannot bucket value {value!r}")


class BucketTransform(Transform):
    def __init__(self, num_buckets: int):
        if num_buckets <= 0:
            raise PartitionEvolutionError(f"Invalid bucket count: {num_buckets}")
        self.num_buckets = num_buckets

    def can_transform(self, source: IcebergType) -> bool:
        return isinstance(
            source,
            (
                IntegerType,
                LongType,
                DecimalType,
                DateType,
                TimeType,
                TimestampType,
                TimestamptzType,
                StringType,
                UUIDType,
                FixedType,
                BinaryType,
            ),
        )

    def result_type(self, source: IcebergType) -> IcebergType:
        return IntegerType()

    def apply(self, value: Any) -> Any:
        if value is None:
            return None
        return (_hash_value(value) & INT_MAX) % self.num_buckets

    def project(self, name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
        unary = _project_unary(name, pred)
        if unary is not None:
            return unary
        if pred.op == "eq":
            return BoundPredicate("eq", pred.term, self.apply(pred.literal)).as_unbound(name)
        if pred.op == "in":
            buckets = frozenset(self.apply(v) for v in pred.literals or ())
            return BoundPredicate("in", pred.term, literals=buckets).as_unbound(name)
        return None

    def __str__(self) -> str:
        return f"bucket[{self.num_buckets}]"


class TruncateTransform(Transform):
    preserves_order = True

    def __init__(self, width: int):
        if width <= 0:
            raise PartitionEvolutionError(f"Invalid truncate width: {width}")
        self.width = width

    def can_transform(self, source: IcebergType) -> bool:
        return isinstance(source, (IntegerType, LongType, DecimalType, StringType, BinaryType))

    def apply(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, Decimal):
            exponent = value.as_tuple().exponent
            scale = -exponent if isinstance(exponent, int) else 0
            unscaled = decimal_to_unscaled(value)
            return unscaled_to_decimal(unscaled - (unscaled % self.width), scale)
        if isinstance(value, int):
            return value - (value % self.width)
        if isinstance(value, (str, bytes)):
            return value[: self.width]
        raise TypeError(f"Cannot truncate value {value!r}")

    def project(self, name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
        return _project_ordered(self, name, pred)

    def __str__(self) -> str:
        return f"truncate[{self.width}]"


class TimeTransform(Transform):
    """Shared behaviour of year, month, day and hour."""

    preserves_order = True
    granularity = ""
    _source: IcebergType = TimestampType()

    def can_transform(self, source: IcebergType) -> bool:
        return isinstance(source, (DateType, TimestampType, TimestamptzType))

    def result_type(self, source: IcebergType) -> IcebergType:
        return IntegerType()

    def project(self, name: str, pred: BoundPredicate) -> Optional[UnboundPredicate]:
        return _project_ordered(self.bind(pred.term.field.field_type), name, pred)

    def apply_to(self, source: IcebergType, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(source, DateType):
            return self._from_days(value)
        return self._from_micros(value)

    def apply(self, value: Any) -> Any:
        return self.apply_to(self._source, value)

    def bind(self, source: IcebergType) -> "TimeTransform":
        """Return a copy that knows whether its input is days or microseconds."""
        bound = type(self)()
        bound._source = source
        return bound

    def _from_days(self, days: int) -> int:
        raise NotImplementedError()

    def _from_micros(self, micros: int) -> int:
        raise NotImplementedError()

    def __str__(self) -> str:
        return self.granularity


class YearTransform(TimeTransform):
    granularity = "year"

    def _from_days(self, days: int) -> int:
        return days_to_date(days).year - 1970

    def _from_micros(self, micros: int) -> int:
        return micros_to_datetime(micros).year - 1970


class MonthTransform(TimeTransform):
    granularity = "month"

    def _from_days(self, days: int) -> int:
        d = days_to_date(days)
        return (d.year - 1970) * 12 + d.month - 1

    def _from_micros(self, micros: int) -> int:
        d = micros_to_datetime(micros)
        return (d.year - 1970) * 12 + d.month - 1


class DayTransform(TimeTransform):
    granularity = "day"

    def result_type(self, source: IcebergType) -> IcebergType:
        return DateType()

    def _from_days(self, days: int) -> int:
        return days

    def _from_micros(self, micros: int) -> int:
        return micros // MICROS_PER_DAY


class HourTransform(TimeTransform):
    granularity = "hour"

    def can_transform(self, source: IcebergType) -> bool:
        return isinstance(source, (TimestampType, TimestamptzType))

    def _from_days(self, days: int) -> int:
        return days * 24

    def _from_micros(self, micros: int) -> int:
        return micros // MICROS_PER_HOUR


def parse_transform(text: str) -> Transform:
    """Parse the string form used in table metadata ('bucket[16]', 'day', ...)."""
    text = text.strip().lower()
    simple = {
        "identity": IdentityTransform,
        "void": VoidTransform,
        "year": YearTransform,
        "month": MonthTransform,
        "day": DayTransform,
        "hour": HourTransform,
    }
    if text in simple:
        return simple[text]()
    m = BUCKET_REGEX.match(text)
    if m:
        return BucketTransform(int(m.group(1)))
    m = TRUNCATE_REGEX.match(text)
    if m:
        return TruncateTransform(int(m.group(1)))
    raise PartitionEvolutionError(f"Unknown transform: {text}")


def bind_transform(transform: Transform, source: IcebergType) -> Transform:
    """Attach the source type to transforms whose input encoding depends on it."""
    if isinstance(transform, TimeTransform):
        return transform.bind(source)
    return transform
