"""
Command line entry point for the WBS MCP server.

    wbs-mcp serve                 run the stdio server
    wbs-mcp import tasks.yaml     bulk import a YAML/JSON task file
    wbs-mcp init-db [--fresh]     create (or recreate) the database
    wbs-mcp info                  print server metadata

Logging always goes to stderr; stdout carries the protocol.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .database import WBSDatabase, resolve_database_path
from .exceptions import WBSError
from .importer import import_tasks_from_file
from .mcp_server import create_mcp_server, run_stdio_server

logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        event = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            event["exception"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False)


def configure_logging(level: str = "info", json_format: bool = False) -> None:
    """Send all package logging to stderr at the given level."""
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def _resolve_db_path(ctx: click.Context) -> Path:
    db_path: Optional[str] = ctx.obj.get("db_path")
    if db_path:
        return Path(db_path)
    return resolve_database_path(ctx.obj.get("data_dir"))


@click.group()
@click.option("--data-dir", envvar="WBS_MCP_DATA_DIR", type=click.Path(file_okay=False),
              help="Directory holding data/wbs.db (default: current directory)")
@click.option("--db-path", envvar="WBS_MCP_DB_PATH", type=click.Path(dir_okay=False),
              help="Explicit database file; overrides --data-dir")
@click.option("--log-level", envvar="WBS_MCP_LOG_LEVEL", default="info", show_default=True,
              type=click.Choice(LOG_LEVELS, case_sensitive=False),
              help="Logging level (logs go to stderr)")
@click.option("--log-json", envvar="WBS_MCP_LOG_JSON", is_flag=True, default=False,
              help="Emit one JSON object per log record")
@click.version_option(__version__, prog_name="wbs-mcp")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str], db_path: Optional[str],
         log_level: str, log_json: bool) -> None:
    """Work Breakdown Structure MCP server."""
    configure_logging(log_level, log_json)
    ctx.ensure_object(dict)
    ctx.obj.update({"data_dir": data_dir, "db_path": db_path})


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Serve JSON-RPC on stdin/stdout until stdin closes."""
    db_path = _resolve_db_path(ctx)
    try:
        database = WBSDatabase(db_path)
    except RuntimeError as e:
        raise click.ClickException(str(e))

    logger.info(f"WBS MCP server {__version__} using {db_path}")
    try:
        run_stdio_server(database)
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        database.close()


@main.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--parent-id", default=None, help="Attach top-level tasks under this existing task")
@click.pass_context
def import_command(ctx: click.Context, file: str, parent_id: Optional[str]) -> None:
    """Bulk import tasks (and artifacts) from a YAML or JSON FILE."""
    with WBSDatabase(_resolve_db_path(ctx)) as database:
        try:
            stats = import_tasks_from_file(database, file, parent_id=parent_id)
        except (ValueError, WBSError) as e:
            raise click.ClickException(f"Import failed: {e}")

    click.echo(
        f"Imported {stats['tasks_created']} tasks and {stats['artifacts_created']} artifacts "
        f"({stats['artifacts_reused']} existing artifacts reused)"
    )


@main.command("init-db")
@click.option("--fresh", is_flag=True, default=False, help="Drop all existing data first")
@click.pass_context
def init_db(ctx: click.Context, fresh: bool) -> None:
    """Create the database schema if it does not exist."""
    db_path = _resolve_db_path(ctx)
    with WBSDatabase(db_path) as database:
        if fresh:
            database.initialize_fresh()
            click.echo(f"Recreated empty database at {db_path}")
        else:
            click.echo(f"Database ready at {db_path} ({len(database.table_names())} tables)")


@main.command()
@click.pass_context
def info(ctx: click.Context) -> None:
    """Print server metadata and the tool catalog as JSON."""
    with WBSDatabase(_resolve_db_path(ctx)) as database:
        click.echo(json.dumps(create_mcp_server(database).get_server_info(), indent=2))


if __name__ == "__main__":
    main()
