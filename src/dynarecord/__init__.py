"""dynarecord - ActiveRecord-style persistence over schemaless stores."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("dynarecord")
except PackageNotFoundError:
    __version__ = "unknown"

from dynarecord.services.collection import RecordCollection
from dynarecord.services.connection import Connection
from dynarecord.services.factory import create_connection
from dynarecord.services.record import Model, RecordAccessor
from dynarecord.services.schema_registry import SchemaRegistry

__all__ = [
    "Connection",
    "Model",
    "RecordAccessor",
    "RecordCollection",
    "SchemaRegistry",
    "__version__",
    "create_connection",
]
