#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import os

import typer
from aioconsole import ainput
from rich.console import Console
from rich.table import Table

from shared.crypto.tokens import issue_token
from shared.frame import Frame
from shared.log import get_logger
from .state import ChatState, IncomingCall
from .ws_client import CHANNELS, ClientSession, HandshakeRejected

app = typer.Typer(help="Chat relay client CLI")
console = Console()
logger = get_logger(__name__)

HELP_TEXT = (
    "/msg <user> <text>, /read [user], /call <user> [voice|video], "
    "/accept, /reject, /end [user], /status, /quit"
)


def _default_server() -> str:
    return os.getenv("RELAY_SERVER", "ws://localhost:5000")


def _default_secret() -> str:
    return os.getenv("JWT_SECRET", "your-secret-key")


@app.command()
def token(
    user_id: str = typer.Argument(..., help="User id to put in the userId claim"),
    secret: str = typer.Option(_default_secret(), help="HS256 signing secret"),
    days: int = typer.Option(7, help="Validity in days"),
):
    """Print a development token for USER_ID."""
    typer.echo(issue_token(user_id, secret, expires_in=days * 24 * 3600))


def _render(state: ChatState, frame: Frame) -> None:
    data = frame.data
    if frame.event == "new_message":
        state.record(data)
        sender = data.get("sender", {}).get("_id", "?")
        state.active_peer = sender
        console.print(f"[bold cyan]{sender}[/]: {data.get('content')} [dim]({data.get('_id')})[/]")
    elif frame.event == "message_sent":
        state.record(data)
        console.print(f"[dim]sent {data.get('_id')} -> {data.get('receiver')} [{data.get('status')}][/]")
    elif frame.event == "message_status":
        state.set_status(data.get("messageId"), data.get("status"))
        console.print(f"[dim]{data.get('messageId')} is now {data.get('status')}[/]")
    elif frame.event in ("message_error", "error"):
        console.print(f"[red]{data.get('error')}[/]: {data.get('details')}")
    elif frame.event == "incoming_call":
        state.incoming_call = IncomingCall(caller_id=data.get("callerId"), mode=data.get("mode"))
        console.print(f"[bold yellow]Incoming {data.get('mode')} call[/] from {data.get('callerId')} (/accept or /reject)")
    elif frame.event == "call_accepted":
        console.print(f"[green]{data.get('accepterId')} accepted the call[/]")
    elif frame.event == "call_rejected":
        console.print(f"[yellow]{data.get('rejecterId')} rejected the call[/]")
    elif frame.event == "call_ended":
        console.print(f"[yellow]{data.get('enderId')} ended the call[/]")
    elif frame.event == "session_replaced":
        console.print("[red]Signed in elsewhere; this session was closed[/]")
    else:
        console.print(f"[dim]recv {frame.event}[/]")


def _status_table(state: ChatState) -> Table:
    table = Table(title=f"Messages for {state.user_id}")
    table.add_column("Id")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Status")
    table.add_column("Content")
    for message in sorted(state.messages.values(), key=lambda m: m.get("createdAt", "")):
        sender = message.get("sender")
        sender_id = sender.get("_id") if isinstance(sender, dict) else sender
        table.add_row(
            message.get("_id", "")[:8], str(sender_id), str(message.get("receiver")),
            str(message.get("status")), str(message.get("content")),
        )
    return table


async def _command_loop(session: ClientSession, state: ChatState) -> None:
    while True:
        line = (await ainput(": ")).strip()
        if not line:
            continue
        if line in {"/quit", "/exit"}:
            return
        if line == "/help":
            console.print(HELP_TEXT)
            continue
        if line.startswith("/msg "):
            parts = line.split(" ", 2)
            if len(parts) < 3:
                console.print("Usage: /msg <user> <text>")
                continue
            await session.send_message(parts[1], parts[2])
            continue
        if line == "/read" or line.startswith("/read "):
            peer = line[len("/read"):].strip() or None
            unread = state.unread_from(peer)
            for message_id in unread:
                await session.mark_read(message_id)
                state.set_status(message_id, "read")
            console.print(f"Marked {len(unread)} message(s) read")
            continue
        if line.startswith("/call "):
            parts = line.split()
            mode = parts[2] if len(parts) > 2 else "voice"
            if mode not in ("voice", "video"):
                console.print("Usage: /call <user> [voice|video]")
                continue
            state.active_peer = parts[1]
            await session.request_call(parts[1], mode)
            continue
        if line in {"/accept", "/reject"}:
            call = state.take_call()
            if call is None:
                console.print("No incoming call")
                continue
            accepted = line == "/accept"
            if accepted:
                state.active_peer = call.caller_id
            await session.answer_call(call.caller_id, accept=accepted)
            continue
        if line == "/end" or line.startswith("/end "):
            peer = line[len("/end"):].strip() or state.active_peer
            if not peer:
                console.print("Usage: /end <user>")
                continue
            await session.end_call(peer)
            continue
        if line == "/status":
            console.print(_status_table(state))
            continue
        console.print(f"Unknown command. {HELP_TEXT}")


@app.command()
def run(
    token: str = typer.Option(..., envvar="RELAY_TOKEN", help="Bearer token for the relay"),
    server: str = typer.Option(_default_server(), help="WebSocket URL of the relay"),
    channel: str = typer.Option("handshake", help=f"How to present the token: {', '.join(CHANNELS)}"),
):
    """Start the interactive chat client."""

    async def main_loop() -> None:
        session = ClientSession(server, token, channel=channel)
        try:
            user_id = await session.connect()
        except HandshakeRejected as e:
            console.print(f"[red]Connection refused[/]: {e.reason}")
            raise typer.Exit(code=1)
        console.print(f"[bold green]Connected[/] as {user_id} on {server}. {HELP_TEXT}")

        state = ChatState(user_id=user_id)

        async def default_handler(frame: Frame) -> None:
            _render(state, frame)

        recv_task = asyncio.create_task(session.listen(default_handler))
        command_task = asyncio.create_task(_command_loop(session, state))
        try:
            # Either the user quits or the session ends for good
            done, _ = await asyncio.wait({recv_task, command_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (recv_task, command_task):
                task.cancel()
            await session.close()
        if recv_task in done:
            console.print("[red]Disconnected from relay[/]")

    asyncio.run(main_loop())


if __name__ == "__main__":
    app()
