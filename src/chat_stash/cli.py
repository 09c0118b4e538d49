"""Command line interface for chat-stash."""

import signal
import sys
from datetime import datetime
from pathlib import Path
from types import FrameType
from typing import Any

import click

from chat_stash.config import Config, load_config
from chat_stash.errors import ConfigError, OrchestrationHaltError
from chat_stash.logging import setup_logging
from chat_stash.models import SyncStatus
from chat_stash.pipeline.daemon import request_shutdown, run_daemon, run_sync
from chat_stash.pipeline.indexer import TypesenseIndexer
from chat_stash.storage.backend import LocalStorage
from chat_stash.storage.store import ConversationStore
from chat_stash.sync.ledger import SyncLedger


def format_timestamp(ts: int | None) -> str:
    """Format timestamp for display."""
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to config.yaml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Reconcile conversation batches from many machines into one store."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    setup_logging("cli", log_dir=config.paths.log_dir)


@cli.command()
@click.option(
    "--workflow",
    "workflow_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Workflow YAML overriding the built-in step table",
)
@click.pass_context
def run(ctx: click.Context, workflow_path: Path | None) -> None:
    """Run the sync workflow once. Exit status 0 on success."""
    try:
        result, exit_code = run_sync(_config(ctx), workflow_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    try:
        result.raise_for_status()
    except OrchestrationHaltError as e:
        click.echo(str(e), err=True)
        sys.exit(exit_code)

    click.echo(result.format_trace())
    sys.exit(exit_code)


@cli.command()
@click.option("--interval", "-i", default=3600, show_default=True, help="Seconds between runs")
@click.option(
    "--workflow",
    "workflow_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Workflow YAML overriding the built-in step table",
)
@click.pass_context
def daemon(ctx: click.Context, interval: int, workflow_path: Path | None) -> None:
    """Run the sync workflow on an interval until interrupted."""

    def handle_signal(signum: int, frame: FrameType | None) -> None:
        click.echo(f"Received {signal.Signals(signum).name}, shutting down", err=True)
        request_shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    run_daemon(_config(ctx), interval_seconds=interval, workflow_path=workflow_path)


@cli.command()
@click.option("--machine", "machine_id", help="Only entries for this machine")
@click.option("--review", is_flag=True, help="Only entries flagged for manual resolution")
@click.option("--limit", "-n", default=50, show_default=True, help="Number of most recent entries")
@click.pass_context
def log(ctx: click.Context, machine_id: str | None, review: bool, limit: int) -> None:
    """Show the sync log."""
    status = SyncStatus.NEEDS_REVIEW if review else None
    with SyncLedger(_config(ctx).paths.ledger_db) as ledger:
        entries = ledger.list_entries(machine_id=machine_id, status=status, limit=limit)

    if not entries:
        click.echo("No sync log entries.")
        return

    for entry in entries:
        click.echo(
            f"#{entry.id} [{format_timestamp(entry.timestamp)}] {entry.machine_id} "
            f"{entry.operation.value} {entry.status.value} {', '.join(entry.conversation_ids)}"
        )
        if entry.detail:
            click.echo(f"    {entry.detail}")


@cli.command()
@click.pass_context
def machines(ctx: click.Context) -> None:
    """List machines and their sync cursors."""
    with SyncLedger(_config(ctx).paths.ledger_db) as ledger:
        known = ledger.list_machines()

    if not known:
        click.echo("No machines registered.")
        return

    for machine in known:
        click.echo(f"{machine.machine_id} ({machine.hostname}) last_cursor={format_timestamp(machine.last_cursor)}")


@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Include superseded versions")
@click.pass_context
def conversations(ctx: click.Context, show_all: bool) -> None:
    """List conversations in the canonical store."""
    store = ConversationStore(LocalStorage(_config(ctx).paths.store))
    count = 0
    for record in store.iter_records(active_only=not show_all):
        conversation = record.conversation
        flags = []
        if not record.active:
            flags.append(f"superseded by {record.superseded_by}")
        if record.needs_review:
            flags.append("needs review")
        suffix = f" ({'; '.join(flags)})" if flags else ""
        click.echo(
            f"[{format_timestamp(conversation.updated_at)}] {conversation.title or '(untitled)'} "
            f"messages={len(conversation.messages)} id={record.id}{suffix}"
        )
        count += 1

    click.echo(f"\n{count} conversations")


def print_hit(hit: dict[str, Any]) -> None:
    """Print a conversation search hit."""
    doc = hit["document"]
    click.echo(f"\033[36m[{format_timestamp(doc['updated_at'])}]\033[0m \033[1m{doc['title']}\033[0m")
    click.echo(f"Machines: {', '.join(doc['machine_ids'])} | Messages: {doc['message_count']}")
    click.echo(f"ID: {doc['id']}")
    click.echo(f"Preview: {doc['preview']}")
    click.echo("-" * 40)


@cli.command()
@click.argument("query")
@click.option("--machine", "machine_id", help="Only conversations this machine contributed to")
@click.option("--limit", "-n", default=10, help="Number of results")
@click.pass_context
def search(ctx: click.Context, query: str, machine_id: str | None, limit: int) -> None:
    """Search indexed conversations."""
    indexer = TypesenseIndexer(_config(ctx).typesense)
    try:
        results = indexer.search_conversations(query, per_page=limit, machine_id=machine_id)
    except Exception as e:
        click.echo(f"Error searching conversations: {e}", err=True)
        sys.exit(1)

    hits = results.get("hits", [])
    click.echo(f"Found {results.get('found', 0)} conversations (showing {len(hits)}):\n")
    for hit in hits:
        print_hit(hit)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
