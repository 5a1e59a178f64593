"""Export a database to a portable document and import it back."""

import structlog

from dynarecord.errors import TableExists
from dynarecord.models.schema import CounterRecord, TableSchema
from dynarecord.models.transfer import ExportDocument
from dynarecord.services.connection import Connection
from dynarecord.services.schema_registry import COUNTERS_TABLE, METADATA_KEY, SCHEMA_TABLE, SchemaRegistry


async def export_database(
    connection: Connection,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> ExportDocument:
    """Snapshot every table that has a stored schema, with all of its rows."""
    log = logger or structlog.get_logger(__name__)
    backend = await connection.interface()

    schemas = [TableSchema.from_document(document) for document in await backend.find(SCHEMA_TABLE)]
    tables = {}
    for schema in schemas:
        tables[schema.slug] = await backend.find(schema.slug)

    log.info("database_exported", tables=len(schemas), rows=sum(len(rows) for rows in tables.values()))
    return ExportDocument(schemas=schemas, tables=tables)


async def import_database(
    connection: Connection,
    document: ExportDocument,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> None:
    """Recreate the tables of an export document in an empty target.

    Each auto-increment sequence is seeded with the largest value found in
    the imported rows, or 0 when the table is empty.

    Raises:
        TableExists: If a target table, schema or counter document already
            exists. Nothing is written in that case.
    """
    log = logger or structlog.get_logger(__name__)
    backend = await connection.interface()

    registry = SchemaRegistry(connection, logger=logger)
    await registry.initialize_schema()
    for schema in document.schemas:
        if await backend.table_exists(schema.slug):
            raise TableExists(schema.slug)
        if await backend.find_one(SCHEMA_TABLE, {METADATA_KEY: schema.slug}) is not None:
            raise TableExists(schema.slug)
        if await backend.find_one(COUNTERS_TABLE, {METADATA_KEY: schema.slug}) is not None:
            raise TableExists(schema.slug)

    for schema in document.schemas:
        await backend.insert_one(SCHEMA_TABLE, schema.to_document())

    for schema in document.schemas:
        rows = document.rows_for(schema.slug)
        await backend.create_table(schema.slug)
        for name, column in schema.columns.items():
            if column.is_index:
                await backend.create_index(schema.slug, name, unique=column.is_unique)
        for row in rows:
            await backend.insert_one(schema.slug, row)

        sequences = {}
        for column in schema.auto_increment_columns:
            values = [row[column] for row in rows if type(row.get(column)) is int]
            sequences[column] = max(values, default=0)
        await backend.insert_one(COUNTERS_TABLE, CounterRecord(table_slug=schema.slug, sequences=sequences).to_record())
        log.info("table_imported", table=schema.slug, rows=len(rows), sequences=sequences)
