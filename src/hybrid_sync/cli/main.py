import asyncio
import json
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hybrid_sync.config import EngineSettings
from hybrid_sync.errors import ConfigurationError
from hybrid_sync.facade import create_engine
from hybrid_sync.metrics import configure_logging, get_registry
from hybrid_sync.scheduler import tombstone_key
from hybrid_sync.schema import DEFAULT_SCHEMAS
from hybrid_sync.store.sqlite_store import SQLiteStore

app = typer.Typer(help="Hybrid Sync CLI")
console = Console()

COLLECTION_KEYS = [schema.key for schema in DEFAULT_SCHEMAS]


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines")
):
    """Inspect and synchronize a local hybrid-sync store."""
    configure_logging(level=log_level, json_format=json_logs)


def open_store(store_path: str) -> SQLiteStore:
    if not Path(store_path).exists():
        console.print(f"[red]No local store at {store_path}[/red]")
        raise typer.Exit(code=1)
    return SQLiteStore(store_path)


@app.command()
def stats(store_path: str = typer.Argument(..., help="Path to the local store database")):
    """Show item counts and sizes per collection."""
    with open_store(store_path) as store:
        table = Table(title="Local Collections")
        table.add_column("Collection", style="cyan")
        table.add_column("Items", style="magenta", justify="right")
        table.add_column("Synced", style="green", justify="right")
        table.add_column("Pending deletes", style="yellow", justify="right")
        table.add_column("Bytes", style="dim", justify="right")

        total = 0
        for key in COLLECTION_KEYS:
            records = store.read_list(key)
            synced = sum(1 for r in records if r.get("remote_id"))
            tombstones = store.read(tombstone_key(key)) or {}
            pending_deletes = sum(1 for done in tombstones.values() if not done) if isinstance(tombstones, dict) else 0
            size = len(json.dumps(records, ensure_ascii=False).encode("utf-8")) if records else 0
            total += size
            table.add_row(key, str(len(records)), str(synced), str(pending_deletes), str(size))

        console.print(table)
        console.print(f"Total size: {total} bytes")


@app.command()
def export(
    store_path: str = typer.Argument(..., help="Path to the local store database"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file")
):
    """Write every collection to a JSON backup file."""
    with open_store(store_path) as store:
        data = {
            "exported_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "collections": {key: store.read_list(key) for key in COLLECTION_KEYS},
        }

    target = Path(output or f"hybrid-sync-backup-{int(time.time())}.json")
    target.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    count = sum(len(records) for records in data["collections"].values())
    console.print(f"[green]Exported {count} records to {target}[/green]")


@app.command()
def clear(
    store_path: str = typer.Argument(..., help="Path to the local store database"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")
):
    """Remove all collections (and pending deletes) from the local store."""
    if not yes:
        typer.confirm("Delete all local collection data?", abort=True)

    with open_store(store_path) as store:
        removed = 0
        for key in COLLECTION_KEYS:
            for stored_key in (key, tombstone_key(key)):
                if store.read(stored_key) is not None and store.remove(stored_key):
                    removed += 1
    console.print(f"[green]Cleared {removed} key(s)[/green]")


@app.command()
def sync(
    store_path: str = typer.Argument(..., help="Path to the local store database"),
    remote_url: str = typer.Argument(..., help="Base URL of the remote record service"),
    principal: str = typer.Option(..., "--principal", "-p", help="Principal (user) id"),
    auth_token: Optional[str] = typer.Option(None, help="Bearer token"),
    show_metrics: bool = typer.Option(False, "--show-metrics", help="Print Prometheus metrics afterwards")
):
    """Pull, merge and push every collection once."""
    try:
        settings = EngineSettings(remote_url=remote_url, store_path=store_path)
        engine = create_engine(settings=settings, token_provider=lambda: auth_token)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    async def run():
        try:
            await engine.initialize_for_principal(principal)
            return await engine.force_sync(), engine.get_status()
        finally:
            await engine.shutdown()

    console.print(f"Syncing {store_path} with {remote_url}...")
    outcomes, report = asyncio.run(run())

    table = Table(title="Sync Result")
    table.add_column("Collection", style="cyan")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Rejected", justify="right")
    table.add_column("Status")
    for outcome in outcomes:
        status = "[green]ok[/green]" if outcome.ok else f"[red]{escape(str(outcome.error or 'skipped'))}[/red]"
        table.add_row(
            outcome.collection,
            str(outcome.created),
            str(outcome.updated),
            str(outcome.deleted),
            str(outcome.rejected),
            status,
        )
    console.print(table)

    if show_metrics:
        console.print(get_registry().export_prometheus())

    if report.auth_failed or not outcomes or not all(o.ok for o in outcomes):
        console.print(f"[red]Sync incomplete: {escape(report.last_error or 'remote unavailable')}[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Sync completed successfully[/green]")


if __name__ == "__main__":
    app()
