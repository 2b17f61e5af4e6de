#!/usr/bin/env python3
"""
Operator commands for the relay.

    relay-admin serve --port 5000
    relay-admin history alice bob
    relay-admin set-status <messageId> read
    relay-admin issue-token alice
"""

from __future__ import annotations
import asyncio
from contextlib import suppress
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from server.config import ConfigError, RelayConfig, load_config
from server.core.MessageRecord import MessageStatus
from server.core.errors import NotFound, PersistenceError
from server.server import RelayServer
from server.storage import JsonMessageLedger
from shared.crypto.tokens import is_asymmetric, issue_token, load_private_key
from shared.log import configure_root_logging, get_logger

app = typer.Typer(help="Chat relay administration")
console = Console()
logger = get_logger(__name__)


def _load(config_path: Optional[Path], **overrides) -> RelayConfig:
    try:
        return load_config(config_path, **overrides)
    except ConfigError as e:
        console.print(f"[red]Configuration error[/]: {e}")
        raise typer.Exit(code=2)


def _open_ledger(config: RelayConfig) -> JsonMessageLedger:
    if config.ledger_backend != "json":
        console.print("[red]Only the json ledger can be inspected from the command line[/]")
        raise typer.Exit(code=2)
    try:
        return JsonMessageLedger(config.storage_path)
    except PersistenceError as e:
        console.print(f"[red]Cannot open ledger[/]: {e}")
        raise typer.Exit(code=1)


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    ledger: Optional[str] = typer.Option(None, help="Ledger backend: json or memory"),
):
    """Run the relay in the foreground."""
    config = _load(config_path, host=host, port=port, ledger_backend=ledger)
    configure_root_logging(config.log_level)
    with suppress(KeyboardInterrupt):
        asyncio.run(RelayServer(config).start_server())


@app.command()
def history(
    user_a: str = typer.Argument(..., help="First participant"),
    user_b: str = typer.Argument(..., help="Second participant"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
):
    """Show the conversation between two users, oldest first."""
    ledger = _open_ledger(_load(config_path))
    messages = asyncio.run(ledger.find_conversation(user_a, user_b))

    table = Table(title=f"{user_a} <-> {user_b} ({len(messages)} messages)")
    for column in ("Id", "Created", "From", "To", "Status", "Content"):
        table.add_column(column)
    for m in messages:
        record = m.to_dict()
        table.add_row(m.id, record["createdAt"], m.sender, m.receiver, m.status.value, m.content)
    console.print(table)


@app.command("set-status")
def set_status(
    message_id: str = typer.Argument(..., help="Message id"),
    status: MessageStatus = typer.Argument(..., help="New status"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
):
    """Apply a status update to one stored message (forward-only)."""
    ledger = _open_ledger(_load(config_path))
    try:
        message = asyncio.run(ledger.update_status(message_id, status))
    except NotFound as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(code=1)
    except PersistenceError as e:
        console.print(f"[red]Update failed[/]: {e}")
        raise typer.Exit(code=1)

    if message.status is not status:
        console.print(f"[yellow]Status stays {message.status.value}; statuses never move backwards[/]")
    else:
        console.print(f"[green]{message.id}[/] is now {message.status.value}")
    logger.info("Status set from command line", extra={"message_id": message.id})


@app.command("issue-token")
def issue_token_cmd(
    user_id: str = typer.Argument(..., help="Value of the userId claim"),
    days: int = typer.Option(7, help="Validity in days"),
    private_key: Optional[Path] = typer.Option(None, help="PEM private key for RS*/ES* algorithms"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
):
    """Mint a development token the relay will accept."""
    config = _load(config_path)
    if is_asymmetric(config.jwt_algorithm):
        if private_key is None:
            console.print(f"[red]{config.jwt_algorithm} needs --private-key[/]")
            raise typer.Exit(code=2)
        key = load_private_key(private_key.expanduser().read_bytes())
    else:
        key = config.jwt_secret
    typer.echo(issue_token(user_id, key, algorithm=config.jwt_algorithm, expires_in=days * 24 * 3600))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
