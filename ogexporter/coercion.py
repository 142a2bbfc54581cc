"""Coercion of driver column values into metric samples and label strings."""

from __future__ import annotations

import ipaddress
import math
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum


class ValueKind(str, Enum):
    """Closed set of value shapes handed back by the driver."""

    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    TEXT = "text"
    BYTES = "bytes"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    NULL = "null"
    OTHER = "other"


_TEXT_LIKE = (
    uuid.UUID,
    ipaddress.IPv4Address,
    ipaddress.IPv6Address,
    ipaddress.IPv4Network,
    ipaddress.IPv6Network,
    ipaddress.IPv4Interface,
    ipaddress.IPv6Interface,
)


def classify(value: object) -> ValueKind:
    """Map a raw column value onto its ``ValueKind``."""

    if value is None:
        return ValueKind.NULL
    # bool is a subclass of int
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        return ValueKind.FLOAT
    if isinstance(value, Decimal):
        return ValueKind.DECIMAL
    if isinstance(value, (datetime, date)):
        return ValueKind.TIMESTAMP
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueKind.BYTES
    if isinstance(value, str) or isinstance(value, _TEXT_LIKE):
        return ValueKind.TEXT
    return ValueKind.OTHER


def to_numeric(value: object) -> tuple[float, bool]:
    """Convert a column value into a metric sample.

    Returns ``(nan, False)`` instead of raising when the value has no numeric
    representation, so callers can drop the sample and keep the row.
    """

    kind = classify(value)
    if kind is ValueKind.BOOL:
        return (1.0 if value else 0.0), True
    try:
        if kind in (ValueKind.INTEGER, ValueKind.FLOAT, ValueKind.DECIMAL):
            return float(value), True  # type: ignore[arg-type]
        if kind is ValueKind.TIMESTAMP:
            return float(_epoch_seconds(value)), True  # type: ignore[arg-type]
    except (OverflowError, ValueError):
        # ints beyond double range, signalling NaN decimals
        return math.nan, False
    if kind is ValueKind.BYTES:
        try:
            text = bytes(value).decode("utf-8")  # type: ignore[arg-type]
        except UnicodeDecodeError:
            return math.nan, False
        return _parse_float(text)
    if kind is ValueKind.TEXT and isinstance(value, str):
        return _parse_float(value)
    return math.nan, False


def to_label_string(value: object) -> tuple[str, bool]:
    """Render a column value as a label; ``None`` renders as an empty label."""

    kind = classify(value)
    if kind is ValueKind.NULL:
        return "", True
    if kind is ValueKind.BOOL:
        return ("true" if value else "false"), True
    if kind is ValueKind.INTEGER:
        return str(value), True
    if kind is ValueKind.FLOAT:
        return _format_float(value), True  # type: ignore[arg-type]
    if kind is ValueKind.DECIMAL:
        return _format_decimal(value), True  # type: ignore[arg-type]
    if kind is ValueKind.TIMESTAMP:
        return str(_epoch_seconds(value)), True  # type: ignore[arg-type]
    if kind is ValueKind.BYTES:
        try:
            return bytes(value).decode("utf-8"), True  # type: ignore[arg-type]
        except UnicodeDecodeError:
            return "", False
    if kind is ValueKind.TEXT:
        return str(value), True
    return "", False


def _parse_float(text: str) -> tuple[float, bool]:
    # float() also accepts digit separators, which are not valid SQL numerals
    if "_" in text:
        return math.nan, False
    try:
        return float(text), True
    except ValueError:
        return math.nan, False


def _epoch_seconds(value: date) -> int:
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return math.floor(value.timestamp())


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _format_decimal(value: Decimal) -> str:
    if value.is_nan():
        return "NaN"
    if value.is_infinite():
        return "-Inf" if value.is_signed() else "+Inf"
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


__all__ = ["ValueKind", "classify", "to_label_string", "to_numeric"]
