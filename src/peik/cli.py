"""Terminal front-end for Peik: interactive chat plus chat/settings commands."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from datetime import datetime
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from peik import __version__
from peik.config import (
    CUSTOM_PROVIDER,
    HOSTED_PROVIDERS,
    CustomProviderSettings,
    EngineConfig,
    Settings,
    load_config,
)
from peik.core.engine import SessionEngine
from peik.llm import create_provider_handlers, make_http_client
from peik.storage import create_storage
from peik.sync import ChannelFactory, sqlite_channel_factory
from peik.types import Chat, EngineEvent, EventType, Role

_logger = logging.getLogger(__name__)

console = Console()


def _format_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _mask(secret: str) -> str:
    if not secret:
        return "[dim]-[/dim]"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"


def _ordered(chats: list[Chat]) -> list[Chat]:
    return sorted(chats, key=lambda c: c.updated_at, reverse=True)


def _chat_table(chats: list[Chat], active_id: str | None = None, title: str = "Chats") -> Table:
    table = Table(title=title, show_lines=False, border_style="dim")
    table.add_column("#", style="bold", width=4)
    table.add_column("Title", max_width=40)
    table.add_column("Model", max_width=30)
    table.add_column("Updated", width=16)
    for i, chat in enumerate(_ordered(chats), 1):
        marker = "[green]*[/green]" if chat.id == active_id else ""
        model = f"{chat.provider}/{chat.model}" if chat.provider else "[dim]-[/dim]"
        table.add_row(f"{i}{marker}", chat.title, model, _format_time(chat.updated_at))
    return table


# ---------------------------------------------------------------------------
# Streaming display
# ---------------------------------------------------------------------------

class StreamingDisplay:
    """Renders engine events to the terminal in real time."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False

    def handle(self, event: EngineEvent):
        data = event.data
        if event.type == EventType.MESSAGE:
            message = data["message"]
            if message.role == Role.MODEL and message.is_placeholder:
                self._streaming = True
                self.con.print("[bold cyan]peik[/bold cyan] ", end="")

        elif event.type == EventType.CHUNK:
            self.con.print(data["chunk"], end="", highlight=False, markup=False)

        elif event.type == EventType.STREAM_END:
            if self._streaming:
                self.con.print()
                self._streaming = False
            if data.get("status") == "cancelled":
                self.con.print("[dim](cancelled)[/dim]")

        elif event.type == EventType.ERROR:
            self._flush()
            self.con.print(f"[red]Error: {data.get('message', '')}[/red]")

        elif event.type == EventType.WARNING:
            self._flush()
            self.con.print(f"[yellow]{data.get('message', '')}[/yellow]")

        elif event.type == EventType.SUCCESS:
            self._flush()
            self.con.print(f"[green]{data.get('message', '')}[/green]")

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


def show_chat(engine: SessionEngine, chat: Chat | None) -> None:
    if chat is None:
        return
    info = engine.model_display_info(chat)
    console.print(
        f"\n[bold]{chat.title}[/bold]  "
        f"[dim]{info['display_name']} ({info['model_name'] or '-'})[/dim]"
    )
    for message in chat.messages or []:
        if message.role == Role.USER:
            console.print(f"[bold green]you[/bold green] {message.content}", highlight=False)
        else:
            console.print("[bold cyan]peik[/bold cyan]")
            console.print(Markdown(message.content))
    console.print()


# ---------------------------------------------------------------------------
# Slash commands
# ---------------------------------------------------------------------------

async def handle_command(cmd: str, engine: SessionEngine) -> bool | str:
    """Handle /commands. Returns True if handled, 'quit' to exit."""
    parts = cmd.strip().split(maxsplit=1)
    command = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""

    if command in ("/quit", "/exit", "/q"):
        return "quit"

    elif command == "/new":
        chat = await engine.start_new_chat()
        if chat is not None:
            console.print("[dim]Started a new chat.[/dim]")
        return True

    elif command == "/list":
        console.print(_chat_table(engine.chats, engine.active_chat_id))
        return True

    elif command == "/switch":
        chats = _ordered(engine.chats)
        if not arg.isdigit() or not 1 <= int(arg) <= len(chats):
            console.print(f"[red]Usage: /switch <1-{len(chats)}>[/red]")
            return True
        if await engine.switch_active_chat(chats[int(arg) - 1].id):
            show_chat(engine, engine.get_active_chat())
        return True

    elif command == "/rename":
        if not arg:
            console.print("[red]Usage: /rename <title>[/red]")
            return True
        if engine.active_chat_id and await engine.rename_chat(engine.active_chat_id, arg):
            console.print(f"[dim]Renamed to: {engine.get_active_chat().title}[/dim]")
        return True

    elif command == "/delete":
        if engine.active_chat_id and await engine.delete_chat(engine.active_chat_id):
            console.print("[dim]Chat deleted.[/dim]")
            show_chat(engine, engine.get_active_chat())
        return True

    elif command == "/model":
        chat = engine.get_active_chat()
        if not arg:
            if chat is not None:
                info = engine.model_display_info(chat)
                console.print(
                    f"[bold]Model:[/bold] {info['display_name']} "
                    f"[dim]({info['model_name'] or '-'})[/dim]"
                )
            ids = list(HOSTED_PROVIDERS) + [c.id for c in engine.settings.providers.custom]
            console.print(f"[dim]Providers: {', '.join(ids)}[/dim]")
            return True
        if chat is not None and await engine.change_chat_model(chat.id, arg):
            info = engine.model_display_info(chat)
            console.print(f"[green]Model switched to: {info['display_name']}[/green]")
        return True

    elif command == "/help":
        console.print("""
[bold]Chats:[/bold]
  /new             - Start a new chat
  /list            - List chats
  /switch <n>      - Switch to chat number n (from /list)
  /rename <title>  - Rename the current chat
  /delete          - Delete the current chat

[bold]Settings:[/bold]
  /model [id]      - Show or change the current chat's provider
  /quit            - Exit

[dim]Ctrl-C while a reply is streaming cancels it.[/dim]
        """)
        return True

    return False


# ---------------------------------------------------------------------------
# Interactive session
# ---------------------------------------------------------------------------

async def _send(engine: SessionEngine, text: str) -> None:
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, engine.cancel_sending)
        installed = True
    except (NotImplementedError, RuntimeError):
        _logger.debug("SIGINT handler unavailable; Ctrl-C will not cancel streams")
    try:
        await engine.send_message(text)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def make_channel_factory(config: EngineConfig) -> ChannelFactory | None:
    """Sync with other `peik` processes that use the same SQLite file."""
    storage = config.storage
    if storage.backend != "sqlite" or storage.db_path == ":memory:":
        return None
    return sqlite_channel_factory(storage.db_path, config.sync.poll_interval)


async def run_chat(config: EngineConfig) -> None:
    storage = create_storage(config.storage)
    client = make_http_client(config.fetch)
    engine = SessionEngine(
        storage, config, create_provider_handlers(config, client),
        channel_factory=make_channel_factory(config),
    )
    display = StreamingDisplay(console)
    engine.subscribe("*", display.handle)

    try:
        await engine.init()
        if not engine.is_settings_valid():
            console.print(
                "[yellow]No usable provider is configured. "
                "Run `peik settings set-provider` first.[/yellow]"
            )
        show_chat(engine, engine.get_active_chat())

        history_path = Path(os.path.expanduser("~/.peik/history"))
        history_path.parent.mkdir(parents=True, exist_ok=True)
        session: PromptSession = PromptSession(history=FileHistory(str(history_path)))

        while True:
            try:
                user_input = (await session.prompt_async(
                    HTML("<ansigreen><b>❯ </b></ansigreen>"))).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                result = await handle_command(user_input, engine)
                if result == "quit":
                    console.print("[dim]Goodbye![/dim]")
                    break
                if result:
                    continue

            await _send(engine, user_input)
    finally:
        engine.destroy()
        await client.aclose()
        storage.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@click.group(invoke_without_command=True)
@click.option("--config", "-c", "config_path", default=None,
              help="Path to peik.yaml (auto-detected from CWD or ~/.peik/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="peik")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """Peik - chat with LLM providers from the terminal."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config, config_file = load_config(config_path)
    except FileNotFoundError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e
    ctx.obj = config
    if config_file:
        _logger.info("Config: %s", config_file)

    if ctx.invoked_subcommand is None:
        ctx.invoke(chat)


@main.command()
@click.pass_obj
def chat(config: EngineConfig):
    """Interactive chat session (default)."""
    console.print(f"[bold bright_cyan]Peik[/bold bright_cyan] [dim]v{__version__}[/dim]")
    console.print("[dim]Type /help for commands[/dim]\n")
    asyncio.run(run_chat(config))


@main.command("chats")
@click.pass_obj
def list_chats(config: EngineConfig):
    """List stored chats."""

    async def _load() -> list[Chat]:
        storage = create_storage(config.storage)
        try:
            return await storage.load_chat_list()
        finally:
            storage.close()

    chats = asyncio.run(_load())
    if not chats:
        console.print("[dim]No chats yet.[/dim]")
        return
    console.print(_chat_table(chats))


@main.group()
def settings():
    """Show or change provider settings."""


async def _load_settings(config: EngineConfig) -> Settings:
    storage = create_storage(config.storage)
    try:
        return Settings.from_storage(await storage.load_settings())
    finally:
        storage.close()


async def _store_settings(config: EngineConfig, value: Settings) -> None:
    storage = create_storage(config.storage)
    try:
        await storage.save_settings(value.to_storage())
    finally:
        storage.close()


@settings.command("show")
@click.pass_obj
def settings_show(config: EngineConfig):
    """Show the configured providers."""
    current = asyncio.run(_load_settings(config))
    table = Table(title="Providers", border_style="dim")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Model")
    table.add_column("API key")
    table.add_column("Endpoint", max_width=40)

    for pid in HOSTED_PROVIDERS:
        resolved = current.resolve(pid)
        marker = " [green]*[/green]" if pid == current.active_provider_id else ""
        table.add_row(pid + marker, resolved.display_name, resolved.model_name or "-",
                      _mask(resolved.api_key), "")
    for custom in current.providers.custom:
        marker = " [green]*[/green]" if custom.id == current.active_provider_id else ""
        table.add_row(custom.id + marker, custom.name or "Custom", custom.model_name or "-",
                      _mask(custom.api_key), custom.endpoint_url)
    console.print(table)
    if current.is_valid():
        console.print("[green]Settings are valid.[/green]")
    else:
        console.print("[yellow]The active provider is missing or incomplete.[/yellow]")


@settings.command("set-provider")
@click.argument("provider_id")
@click.option("--model", "-m", "model_name", default=None, help="Model name")
@click.option("--api-key", "-k", default=None, help="API key")
@click.option("--endpoint", "-e", "endpoint_url", default=None,
              help="Endpoint URL (custom providers)")
@click.option("--name", "-n", default=None, help="Display name (custom providers)")
@click.option("--no-activate", is_flag=True, help="Do not make this the active provider")
@click.pass_obj
def settings_set_provider(config: EngineConfig, provider_id: str, model_name: str | None,
                          api_key: str | None, endpoint_url: str | None, name: str | None,
                          no_activate: bool):
    """Configure PROVIDER_ID (gemini, openai or a custom id) and activate it."""
    current = asyncio.run(_load_settings(config))
    providers = current.providers

    if provider_id in HOSTED_PROVIDERS:
        entry = getattr(providers, provider_id)
        if model_name is not None:
            entry.model_name = model_name
        if api_key is not None:
            entry.api_key = api_key
    else:
        if provider_id == CUSTOM_PROVIDER:
            raise click.BadParameter("choose an id for the custom provider",
                                     param_hint="PROVIDER_ID")
        custom = next((c for c in providers.custom if c.id == provider_id), None)
        if custom is None:
            custom = CustomProviderSettings(id=provider_id)
            providers.custom.append(custom)
        for field, value in (("model_name", model_name), ("api_key", api_key),
                             ("endpoint_url", endpoint_url), ("name", name)):
            if value is not None:
                setattr(custom, field, value)

    if not no_activate:
        current.active_provider_id = provider_id

    asyncio.run(_store_settings(config, current))
    resolved = current.resolve(provider_id)
    console.print(f"[green]Saved provider {provider_id}.[/green]")
    if resolved is not None and not resolved.is_complete():
        console.print("[yellow]This provider is still missing required fields.[/yellow]")


if __name__ == "__main__":
    main()
