"""Error taxonomy shared by the collection engine and its collaborators."""

from __future__ import annotations


class ExporterError(RuntimeError):
    """Base error for exporter failures."""


class InvalidConnectionString(ExporterError, ValueError):
    """Raised when a DSN is neither URL nor keyword/value form."""


class NotConnectedError(ExporterError):
    """Raised when an operation needs a database handle and none is held."""


class QueryExecutionError(ExporterError):
    """Raised when a query group fails at the driver or SQL level."""

    def __init__(self, group: str, message: str) -> None:
        super().__init__(f"Query group '{group}' failed: {message}")
        self.group = group


class QueryTimeout(QueryExecutionError):
    """Raised when a query group exceeds its timeout."""

    def __init__(self, group: str, timeout: float) -> None:
        super().__init__(group, f"timed out after {timeout:g}s")
        self.timeout = timeout


class RowConversionError(ExporterError):
    """A column value that could not be coerced; reported, never raised."""

    def __init__(self, group: str, column: str, value: object, reason: str) -> None:
        super().__init__(f"Unexpected value for {group}.{column}: {value!r} ({reason})")
        self.group = group
        self.column = column
        self.value = value
        self.reason = reason


class ConfigError(ExporterError):
    """Raised when a query definition file is invalid."""


__all__ = [
    "ConfigError",
    "ExporterError",
    "InvalidConnectionString",
    "NotConnectedError",
    "QueryExecutionError",
    "QueryTimeout",
    "RowConversionError",
]
