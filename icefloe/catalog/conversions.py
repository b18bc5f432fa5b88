"""Value conversions between Python literals, internal values and bytes.

Internal representation per type:

- date: days since 1970-01-01 (int)
- time: microseconds since midnight (int)
- timestamp / timestamptz: microseconds since the epoch (int)
- decimal: `decimal.Decimal`
- uuid: `uuid.UUID`
- everything else: the natural Python value

Bytes use the single-value serialization of the table format: little-endian
for numbers and temporal values, UTF-8 for strings, big-endian two's
complement unscaled value for decimals and big-endian 16 bytes for uuids.
"""

from __future__ import annotations

import datetime
import struct
import uuid
from decimal import Decimal
from typing import Any
from typing import Optional

from ..exceptions import CorruptMetadataError
from .types import BinaryType
from .types import BooleanType
from .types import DateType
from .types import DecimalType
from .types import DoubleType
from .types import FixedType
from .types import FloatType
from .types import IcebergType
from .types import IntegerType
from .types import LongType
from .types import StringType
from .types import TimestampType
from .types import TimestamptzType
from .types import TimeType
from .types import UUIDType

EPOCH_DATE = datetime.date(1970, 1, 1)
EPOCH_TIMESTAMP = datetime.datetime(1970, 1, 1)
EPOCH_TIMESTAMPTZ = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
MICROS_PER_SECOND = 1_000_000
MICROS_PER_DAY = 86_400 * MICROS_PER_SECOND

INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1


def date_to_days(value: datetime.date) -> int:
    return (value - EPOCH_DATE).days


def days_to_date(days: int) -> datetime.date:
    return EPOCH_DATE + datetime.timedelta(days=days)


def datetime_to_micros(value: datetime.datetime) -> int:
    if value.tzinfo is not None:
        delta = value - EPOCH_TIMESTAMPTZ
    else:
        delta = value - EPOCH_TIMESTAMP
    return (delta.days * 86_400 + delta.seconds) * MICROS_PER_SECOND + delta.microseconds


def micros_to_datetime(micros: int) -> datetime.datetime:
    return EPOCH_TIMESTAMP + datetime.timedelta(microseconds=micros)


def time_to_micros(value: datetime.time) -> int:
    return (
        (value.hour * 3600 + value.minute * 60 + value.second) * MICROS_PER_SECOND
        + value.microsecond
    )


def decimal_to_unscaled(value: Decimal) -> int:
    sign, digits, exponent = value.as_tuple()
    unscaled = int("".join(str(d) for d in digits) or "0")
    if exponent > 0:  # type: ignore[operator]
        unscaled *= 10**exponent  # type: ignore[operator]
    return -unscaled if sign else unscaled


def unscaled_to_decimal(unscaled: int, scale: int) -> Decimal:
    return Decimal(unscaled).scaleb(-scale)


def to_internal(field_type: IcebergType, value: Any) -> Any:
    """Normalize a user-facing literal to the internal value for `field_type`."""
    if value is None:
        return None
    if isinstance(field_type, DateType):
        if isinstance(value, datetime.datetime):
            return date_to_days(value.date())
        if isinstance(value, datetime.date):
            return date_to_days(value)
        if isinstance(value, str):
            return date_to_days(datetime.date.fromisoformat(value))
        return int(value)
    if isinstance(field_type, (TimestampType, TimestamptzType)):
        if isinstance(value, datetime.datetime):
            return datetime_to_micros(value)
        if isinstance(value, datetime.date):
            return date_to_days(value) * MICROS_PER_DAY
        if isinstance(value, str):
            return datetime_to_micros(datetime.datetime.fromisoformat(value))
        return int(value)
    if isinstance(field_type, TimeType):
        if isinstance(value, datetime.time):
            return time_to_micros(value)
        return int(value)
    if isinstance(field_type, DecimalType):
        if isinstance(value, Decimal):
            return value.quantize(Decimal(1).scaleb(-field_type.scale))
        return Decimal(str(value)).quantize(Decimal(1).scaleb(-field_type.scale))
    if isinstance(field_type, UUIDType):
        if isinstance(value, uuid.UUID):
            return value
        if isinstance(value, bytes):
            return uuid.UUID(bytes=value)
        return uuid.UUID(str(value))
    if isinstance(field_type, (IntegerType, LongType)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Expected an integer for {field_type}, got {value!r}")
        if isinstance(field_type, IntegerType) and not INT32_MIN <= value <= INT32_MAX:
            raise ValueError(f"Value out of range for int: {value}")
        return value
    if isinstance(field_type, (FloatType, DoubleType)):
        return float(value)
    if isinstance(field_type, StringType):
        return str(value)
    if isinstance(field_type, BooleanType):
        return bool(value)
    if isinstance(field_type, (BinaryType, FixedType)):
        return bytes(value)
    return value


def to_bytes(field_type: IcebergType, value: Any) -> bytes:
    """Serialize an internal value. Inverse of `from_bytes`."""
    if isinstance(field_type, BooleanType):
        return b"\x01" if value else b"\x00"
    if isinstance(field_type, (IntegerType, DateType)):
        return struct.pack("<i", value)
    if isinstance(field_type, (LongType, TimeType, TimestampType, TimestamptzType)):
        return struct.pack("<q", value)
    if isinstance(field_type, FloatType):
        return struct.pack("<f", value)
    if isinstance(field_type, DoubleType):
        return struct.pack("<d", value)
    if isinstance(field_type, StringType):
        return value.encode("utf-8")
    if isinstance(field_type, UUIDType):
        return value.bytes
    if isinstance(field_type, (BinaryType, FixedType)):
        return bytes(value)
    if isinstance(field_type, DecimalType):
        unscaled = decimal_to_unscaled(value)
        length = max(1, (unscaled + (unscaled < 0)).bit_length() // 8 + 1)
        return unscaled.to_bytes(length, byteorder="big", signed=True)
    raise TypeError(f"Cannot serialize a value of type {field_type}")


def from_bytes(field_type: IcebergType, data: Optional[bytes]) -> Any:
    if data is None:
        return None
    try:
        return _from_bytes(field_type, data)
    except (struct.error, ValueError) as err:
        raise CorruptMetadataError(f"Malformed {field_type} bound {bytes(data)!r}: {err}") from err


def _from_bytes(field_type: IcebergType, data: bytes) -> Any:
    if isinstance(field_type, BooleanType):
        return data != b"\x00"
    if isinstance(field_type, (IntegerType, DateType)):
        return struct.unpack("<i", data)[0]
    if isinstance(field_type, (LongType, TimeType, TimestampType, TimestamptzType)):
        # int values promoted to long keep their 4-byte encoding
        if len(data) == 4:
            return struct.unpack("<i", data)[0]
        return struct.unpack("<q", data)[0]
    if isinstance(field_type, FloatType):
        return struct.unpack("<f", data)[0]
    if isinstance(field_type, DoubleType):
        if len(data) == 4:
            return struct.unpack("<f", data)[0]
        return struct.unpack("<d", data)[0]
    if isinstance(field_type, StringType):
        return data.decode("utf-8")
    if isinstance(field_type, UUIDType):
        return uuid.UUID(bytes=bytes(data))
    if isinstance(field_type, (BinaryType, FixedType)):
        return bytes(data)
    if isinstance(field_type, DecimalType):
        unscaled = int.from_bytes(data, byteorder="big", signed=True)
        return unscaled_to_decimal(unscaled, field_type.scale)
    raise TypeError(f"Cannot deserialize a value of type {field_type}")
