"""CLI entry point for sessync.

Provides commands:
  - upload: Upload records from a JSONL file to BigQuery
  - status: Show the persisted upload state
  - config show: Display the effective configuration
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, AsyncIterator

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sessync.constants import DEFAULT_CONFIG_PATH, DEFAULT_STATE_PATH
from sessync.upload.exceptions import SessyncError

if TYPE_CHECKING:
    from sessync.upload.state import StateStore

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="sessync - Upload session logs to BigQuery with resilient batching",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Inspect configuration")
app.add_typer(config_app, name="config")


@app.callback()
def app_callback(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )


@contextlib.asynccontextmanager
async def _open_state_store(sqlite_path: Path | None) -> AsyncIterator[StateStore]:
    from sessync.upload.state import JsonStateStore, SqliteStateStore

    if sqlite_path is None:
        yield JsonStateStore()
        return
    async with SqliteStateStore(str(sqlite_path)) as store:
        yield store


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(code=1)


@app.command()
def upload(
    records_path: Annotated[
        Path,
        typer.Option("--records", "-r", help="JSONL file of records to upload"),
    ],
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Path to the JSON config file"),
    ] = Path(DEFAULT_CONFIG_PATH),
    state: Annotated[
        str | None,
        typer.Option(
            "--state",
            help="State key: JSON file path, or a key name with --sqlite "
            "(default: state_path from config)",
        ),
    ] = None,
    batch_size: Annotated[
        int | None,
        typer.Option("--batch-size", "-b", help="Records per batch (0 = one batch)"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be uploaded without uploading"),
    ] = False,
    no_dedup: Annotated[
        bool,
        typer.Option("--no-dedup", help="Upload records even if already recorded"),
    ] = False,
    sqlite_path: Annotated[
        Path | None,
        typer.Option("--sqlite", help="Keep upload state in this SQLite database"),
    ] = None,
) -> None:
    """Upload records to the configured BigQuery table.

    Records already recorded in the upload state are skipped. Credentials
    come from ``service_account_key_path`` in the config, or
    GOOGLE_APPLICATION_CREDENTIALS, or application default credentials.
    """
    # Import upload modules here to keep CLI startup fast for status
    import asyncio
    import socket
    import uuid
    from datetime import datetime, timezone

    from sessync.config import load_upload_config
    from sessync.models import RecordMetadata
    from sessync.sources import read_records
    from sessync.upload.batch_uploader import ResilientBatchUploader
    from sessync.upload.bigquery import BigQuerySinkFactory
    from sessync.upload.orchestrator import UploadOrchestrator
    from sessync.upload.sink import Destination

    try:
        config = load_upload_config(config_path)
    except SessyncError as e:
        raise _fail(str(e))

    if batch_size is not None:
        if batch_size < 0:
            raise _fail("--batch-size must be >= 0")
        config.batch_size = batch_size
    if no_dedup:
        config.enable_deduplication = False
    state_key = state or config.state_path

    batch_id = str(uuid.uuid4())
    metadata = RecordMetadata(
        developer_id=config.developer_id,
        hostname=socket.gethostname(),
        user_email=config.user_email,
        project_name=config.project_name,
        source_file=str(records_path),
        upload_batch_id=batch_id,
        uploaded_at=datetime.now(timezone.utc),
    )

    try:
        records = read_records(records_path, metadata)
    except SessyncError as e:
        raise _fail(str(e))

    if not records:
        console.print("[green]No records to upload.[/green]")
        return

    destination = Destination(config.project_id, config.dataset, config.table)
    console.print(
        Panel(
            f"Uploading up to [bold]{len(records)}[/bold] records to "
            f"[bold]{destination.table_id}[/bold]\n"
            f"Batch size: {config.batch_size or 'unlimited'} | "
            f"Dedup: {'on' if config.enable_deduplication else 'off'} | "
            f"State: {state_key}",
            title="Dry Run" if dry_run else "Upload Pipeline",
        )
    )

    factory = BigQuerySinkFactory(
        project_id=config.project_id,
        location=config.location,
        service_account_key_path=config.service_account_key_path,
    )
    uploader = ResilientBatchUploader(
        factory, destination, config.limits(), dry_run=dry_run
    )

    async def _run_upload():
        try:
            async with _open_state_store(sqlite_path) as store:
                orchestrator = UploadOrchestrator(uploader, store)
                return await orchestrator.run(records, config, state_key, batch_id)
        finally:
            factory.close()

    try:
        summary = asyncio.run(_run_upload())
    except SessyncError as e:
        raise _fail(str(e))

    summary_table = Table(title="Upload Summary")
    summary_table.add_column("Metric", style="bold")
    summary_table.add_column("Count", justify="right")

    summary_table.add_row("Candidate records", str(len(records)))
    summary_table.add_row("Uploaded", f"[green]{summary.uploaded_count}[/green]")
    summary_table.add_row("Failed", f"[red]{summary.failed_count}[/red]")
    summary_table.add_row(
        "Skipped",
        f"[yellow]{len(records) - summary.uploaded_count - summary.failed_count}[/yellow]",
    )

    console.print(
        Panel(summary_table, title="Dry Run Complete" if dry_run else "Upload Complete")
    )


@app.command()
def status(
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Path to the JSON config file"),
    ] = Path(DEFAULT_CONFIG_PATH),
    state: Annotated[
        str | None,
        typer.Option(
            "--state",
            help="State key: JSON file path, or a key name with --sqlite "
            "(default: state_path from config)",
        ),
    ] = None,
    sqlite_path: Annotated[
        Path | None,
        typer.Option("--sqlite", help="Read upload state from this SQLite database"),
    ] = None,
) -> None:
    """Display the persisted upload state.

    Without ``--state`` the key comes from the config file, or the
    built-in default when no config file exists.
    """
    import asyncio

    from sessync.config import load_upload_config

    if state is None:
        if config_path.exists():
            try:
                state = load_upload_config(config_path).state_path
            except SessyncError as e:
                raise _fail(str(e))
        else:
            state = DEFAULT_STATE_PATH

    async def _load():
        async with _open_state_store(sqlite_path) as store:
            return await store.load(state)

    try:
        upload_state = asyncio.run(_load())
    except SessyncError as e:
        raise _fail(str(e))

    table = Table(title="Upload State")
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Total uploaded", str(upload_state.total_uploaded))
    table.add_row("Known ids", str(len(upload_state.uploaded_ids)))
    table.add_row("Last batch", upload_state.last_batch_id or "[dim]never[/dim]")
    table.add_row(
        "Last upload", upload_state.last_upload_timestamp or "[dim]never[/dim]"
    )

    source = f"{sqlite_path} ({state})" if sqlite_path else state
    console.print(Panel(table, title=f"State: {source}"))


@config_app.command("show")
def config_show(
    config_path: Annotated[
        Path,
        typer.Option("--config", "-c", help="Path to the JSON config file"),
    ] = Path(DEFAULT_CONFIG_PATH),
) -> None:
    """Display the effective configuration after defaults are applied."""
    from sessync.config import load_upload_config

    try:
        config = load_upload_config(config_path)
    except SessyncError as e:
        raise _fail(str(e))

    table = Table(title=f"Configuration ({config_path})")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for name, value in dataclasses.asdict(config).items():
        table.add_row(name, "[dim]unset[/dim]" if value in (None, "") else str(value))

    console.print(table)
