"""dynarecord database tooling CLI.

Provides commands to initialise the metadata tables of a database and to
export or import a whole database as a JSON document.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Coroutine, Optional, TypeVar

import structlog
import typer
from pydantic import ValidationError

from dynarecord.config import get_settings
from dynarecord.errors import DynaRecordError
from dynarecord.models.transfer import ExportDocument
from dynarecord.services.factory import create_connection
from dynarecord.services.schema_registry import SchemaRegistry
from dynarecord.services.transfer import export_database, import_database

T = TypeVar("T")

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="dynarecord",
    help="""Manage dynarecord databases.

Examples:

  # Create the _schema and _counters metadata tables
  dynarecord init --database-url sqlite+aiosqlite:///app.db

  # Dump every table and its schema to a file
  dynarecord export backup.json

  # Load a dump into an empty database
  dynarecord import backup.json""",
    rich_markup_mode="markdown",
)

DatabaseUrlOption = typer.Option(
    None,
    "--database-url",
    "-d",
    help="Database URL (default: DYNARECORD_DATABASE_URL or settings)",
)


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=lambda *args: structlog.PrintLogger(file=sys.stderr),
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        context_class=dict,
        cache_logger_on_first_use=False,
    )


@app.callback()
def main() -> None:
    configure_logging(get_settings().log_level)


@app.command()
def init(database_url: Optional[str] = DatabaseUrlOption) -> None:
    """Create the metadata tables and their unique indexes."""

    async def run_init() -> None:
        async with create_connection(database_url) as connection:
            await SchemaRegistry(connection).initialize_schema()

    _run(run_init())
    typer.echo("Metadata tables ready")


@app.command("export")
def export_command(
    output: Path = typer.Argument(..., help="File to write the export document to"),
    database_url: Optional[str] = DatabaseUrlOption,
) -> None:
    """Export every table and its schema to a JSON file."""

    async def run_export() -> ExportDocument:
        async with create_connection(database_url) as connection:
            return await export_database(connection)

    document = _run(run_export())
    output.write_text(json.dumps(document.to_record(), indent=2), encoding="utf-8")
    typer.echo(f"Exported {len(document.schemas)} tables to {output}")


@app.command("import")
def import_command(
    input_path: Path = typer.Argument(..., metavar="INPUT", help="Export document to load"),
    database_url: Optional[str] = DatabaseUrlOption,
) -> None:
    """Import an export document into a database without those tables."""
    if not input_path.exists():
        logger.error("input_not_found", path=str(input_path))
        raise typer.Exit(1)

    try:
        document = ExportDocument.model_validate_json(input_path.read_text(encoding="utf-8"))
    except ValidationError as e:
        logger.error("invalid_export_document", path=str(input_path), errors=e.error_count())
        raise typer.Exit(1) from e

    async def run_import() -> None:
        async with create_connection(database_url) as connection:
            await import_database(connection, document)

    _run(run_import())
    typer.echo(f"Imported {len(document.schemas)} tables from {input_path}")


@app.command()
def version() -> None:
    """Show version information."""
    from dynarecord import __version__

    typer.echo(f"dynarecord {__version__}")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except DynaRecordError as e:
        logger.error("command_failed", error=str(e), error_type=type(e).__name__)
        raise typer.Exit(1) from e
