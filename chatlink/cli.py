"""Command-line interface for chatlink."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from chatlink.config import load_config
from chatlink.models import ConnectionState, Message, MessageStatus
from chatlink.session import ChatSession
from chatlink.transport.exceptions import ChatLinkError
from chatlink.transport.http import HTTPChatService
from chatlink.window import MessageWindow

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

config_option = click.option(
    "--config",
    type=click.Path(path_type=Path),
    default="config.yaml",
    help="Path to config YAML file",
)
token_option = click.option(
    "--token",
    envvar="CHATLINK_TOKEN",
    required=True,
    help="Bearer token for the websocket (or set CHATLINK_TOKEN)",
)


def format_message(message: Message) -> str:
    """Render one message as a single terminal line."""
    stamp = message.timestamp.strftime("%H:%M:%S")
    status = f" [{message.status.value}]" if message.status else ""
    return f"{stamp} {message.sender.name}: {message.content}{status}"


def _token_getter(token: str):
    async def get_auth_token() -> Optional[str]:
        return token

    return get_auth_token


async def _wait_until_settled(session: ChatSession, poll_sec: float = 1.0) -> None:
    """Return once the transport is disconnected or failed for good."""
    while session.transport.state not in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
        await asyncio.sleep(poll_sec)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """chatlink - realtime chat client with a bounded message window."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@config_option
@token_option
def tail(config: Path, token: str):
    """Connect and print incoming messages until interrupted."""
    cfg = load_config(config)

    async def run():
        session = ChatSession.from_config(cfg, _token_getter(token))
        session.transport.on_connection_change(
            lambda state: click.echo(f"-- {state.value}", err=True)
        )
        session.transport.on_error(lambda error: click.echo(f"!! {error}", err=True))
        session.on_message(lambda message: click.echo(format_message(message)))

        try:
            await session.start()
            for message in session.window:
                click.echo(format_message(message))
            await _wait_until_settled(session)
        finally:
            await session.stop()

    logger.info(f"Tailing {cfg.ws_url}")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, stopping")


@cli.command()
@config_option
@click.option("--limit", type=int, default=50, help="Number of messages to fetch")
def history(config: Path, limit: int):
    """Fetch recent history over HTTP and print it."""
    cfg = load_config(config)
    if not cfg.http_url:
        logger.error("http_url is not configured")
        sys.exit(1)

    async def run() -> MessageWindow:
        http = HTTPChatService.from_config(cfg)
        window = MessageWindow(
            window_size=max(limit, 1),
            on_initial_load=http.load_initial,
        )
        await window.load_initial_messages()
        return window

    try:
        window = asyncio.run(run())
    except ChatLinkError as e:
        logger.error(f"Failed to load history: {e}")
        sys.exit(1)

    for message in window:
        click.echo(format_message(message))

    state = window.pagination
    click.echo(f"\n{len(window)} messages (total: {state.total_count}, more older: {state.has_more_older})")


@cli.command()
@config_option
@token_option
@click.argument("text")
def send(config: Path, token: str, text: str):
    """Connect, send one message and disconnect."""
    cfg = load_config(config)

    async def run() -> Optional[Message]:
        session = ChatSession.from_config(cfg, _token_getter(token))
        try:
            await session.transport.connect()
            waited = 0.0
            while (
                session.transport.state == ConnectionState.CONNECTING
                and waited < cfg.connect_timeout_sec
            ):
                await asyncio.sleep(0.1)
                waited += 0.1
            return await session.send_text(text)
        finally:
            await session.stop()

    message = asyncio.run(run())
    if message is None:
        click.echo("Nothing to send")
        return

    click.echo(format_message(message))
    if message.status != MessageStatus.SENT:
        sys.exit(1)


if __name__ == "__main__":
    cli()
