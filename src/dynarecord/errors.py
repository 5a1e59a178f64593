"""Exception taxonomy shared by the registry, accessor and backends."""

from typing import Any


class DynaRecordError(Exception):
    """Base class for every error raised by dynarecord."""


class SchemaInvalid(DynaRecordError):
    """A table definition failed meta-schema validation."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ColumnExists(DynaRecordError):
    def __init__(self, columns: list[str]) -> None:
        super().__init__(f"Column names already exist: {', '.join(columns)}")
        self.columns = columns


class ColumnNotFound(DynaRecordError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Column '{name}' does not exist")
        self.name = name


class ValidationFailed(DynaRecordError):
    """A row did not satisfy its table's compiled schema.

    Attributes:
        table: Slug of the table the row was written to.
        violations: Field-level violations reported by the validator.
    """

    def __init__(self, table: str, violations: list[Any]) -> None:
        summary = "; ".join(f"{v.path or '/'}: {v.rule}" for v in violations)
        super().__init__(f"Row rejected by schema '{table}': {summary}")
        self.table = table
        self.violations = violations


class NotPersisted(DynaRecordError):
    """The model has no persisted row to act on."""


class NotFound(DynaRecordError):
    pass


class TableNotFound(NotFound):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Table '{slug}' does not exist")
        self.slug = slug


class BackendError(DynaRecordError):
    """Failure reported by the storage backend."""


class DuplicateKey(BackendError):
    def __init__(self, table: str, column: str | None = None) -> None:
        target = f"{table}.{column}" if column else table
        super().__init__(f"Unique index violated on {target}")
        self.table = table
        self.column = column


class TableExists(BackendError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Table '{slug}' already exists")
        self.slug = slug


class IndexNotFound(BackendError):
    def __init__(self, table: str, column: str) -> None:
        super().__init__(f"No index on {table}.{column}")
        self.table = table
        self.column = column


class CompensationFailed(DynaRecordError):
    """Undoing a partial write failed after the write itself failed.

    The compensation error is chained as ``__cause__``; the error that
    triggered the compensation is kept on ``original_error``.
    """

    def __init__(self, message: str, original_error: BaseException) -> None:
        super().__init__(message)
        self.original_error = original_error


# Errors that mean "there was nothing to undo" during compensation.
NOTHING_TO_CLEAN_UP = (TableNotFound, IndexNotFound)
