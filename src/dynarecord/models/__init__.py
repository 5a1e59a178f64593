from dynarecord.models.enums import ColumnType, ModelState, SortDirection
from dynarecord.models.query import QueryOptions
from dynarecord.models.schema import ColumnDef, CounterRecord, IndexOptions, TableSchema
from dynarecord.models.transfer import ExportDocument

__all__ = [
    "ColumnDef",
    "ColumnType",
    "CounterRecord",
    "ExportDocument",
    "IndexOptions",
    "ModelState",
    "QueryOptions",
    "SortDirection",
    "TableSchema",
]
