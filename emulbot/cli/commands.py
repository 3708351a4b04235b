"""CLI commands for emulbot."""

from __future__ import annotations

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from emulbot import __logo__, __version__
from emulbot.config.schema import Config

app = typer.Typer(
    name="emulbot",
    help=f"{__logo__} emulbot - IRC chat bot",
    no_args_is_help=True,
)
admins_app = typer.Typer(help="Manage bot admins")
channels_app = typer.Typer(help="Manage auto-join channels")
app.add_typer(admins_app, name="admins")
app.add_typer(channels_app, name="channels")

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} emulbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """emulbot - IRC chat bot."""
    pass


def _setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _make_provider(config: Config):
    from emulbot.providers.litellm_provider import LiteLLMProvider

    return LiteLLMProvider(
        api_key=config.agent.api_key,
        api_base=config.agent.api_base,
        default_model=config.agent.model,
    )


async def _open_store(config: Config):
    from emulbot.store.admin import AdminStore
    from emulbot.store.backend import SQLiteBackend

    backend = SQLiteBackend(config.db_path)
    store = await AdminStore.open(backend, config.admin.initial)
    return backend, store


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """Initialize emulbot configuration and prompt file."""
    from emulbot.config.loader import get_config_path, load_config, save_config
    from emulbot.agent.context import DEFAULT_PROMPT

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        console.print("  [bold]y[/bold] = overwrite with defaults (existing values will be lost)")
        console.print("  [bold]N[/bold] = refresh config, keeping existing values and adding new fields")
        if typer.confirm("Overwrite?"):
            config = Config()
            save_config(config)
            console.print(f"[green]✓[/green] Config reset to defaults at {config_path}")
        else:
            config = load_config()
            save_config(config)
            console.print(f"[green]✓[/green] Config refreshed at {config_path} (existing values preserved)")
    else:
        config = Config()
        save_config(config)
        console.print(f"[green]✓[/green] Created config at {config_path}")

    prompt_path = config.prompt_path
    if not prompt_path.exists():
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path.write_text(DEFAULT_PROMPT.format(nickname=config.irc.nickname) + "\n", encoding="utf-8")
        console.print(f"  [dim]Created {prompt_path}[/dim]")

    console.print(f"\n{__logo__} emulbot is ready!")
    console.print("\nNext steps:")
    console.print(f"  1. Set the IRC server and nickname in [cyan]{config_path}[/cyan]")
    console.print("  2. Add your model API key (agent.apiKey) or export it in the environment")
    console.print("  3. Start the bot: [cyan]emulbot run[/cyan]")


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Connect to IRC and start chatting."""
    from emulbot.agent.loop import AgentLoop
    from emulbot.bus.queue import MessageBus
    from emulbot.channels.manager import ChannelManager
    from emulbot.config.loader import load_config

    _setup_logging(verbose)
    config = load_config()
    console.print(f"{__logo__} Starting emulbot as {config.irc.nickname} on {config.irc.server}:{config.irc.port}...")

    async def _run():
        backend, store = await _open_store(config)
        bus = MessageBus()
        agent = AgentLoop(
            bus=bus,
            provider=_make_provider(config),
            store=store,
            nickname=config.irc.nickname,
            model=config.agent.model,
            prompt_path=config.prompt_path,
            max_rounds=config.agent.max_rounds,
            history_turns=config.agent.history_turns,
            buffer_capacity=config.agent.buffer_capacity,
            temperature=config.agent.temperature,
            max_tokens=config.agent.max_tokens,
            api_timeout=config.agent.api_timeout,
            transport_retries=config.agent.transport_retries,
            interjection_config=config.interjection,
            tools_config=config.tools,
        )
        channels = ChannelManager(config, bus, store)
        irc_channel = channels.get_channel("irc")
        if irc_channel is not None:
            agent.set_control(irc_channel)

        console.print(f"[green]✓[/green] Admins: {', '.join(sorted(store.list_admins())) or 'none'}")
        console.print(f"[green]✓[/green] Auto-join: {', '.join(sorted(store.list_channels())) or 'none'}")
        try:
            await asyncio.gather(agent.run(), channels.start_all())
        finally:
            agent.stop()
            await channels.stop_all()
            backend.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """Show emulbot status."""
    from emulbot.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} emulbot Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Database: {config.db_path} {'[green]✓[/green]' if config.db_path.exists() else '[dim]not created[/dim]'}")
    console.print(f"Prompt: {config.prompt_path} {'[green]✓[/green]' if config.prompt_path.exists() else '[dim]default[/dim]'}")
    console.print(f"Server: {config.irc.server}:{config.irc.port} ({'TLS' if config.irc.use_tls else 'plain'})")
    console.print(f"Nickname: {config.irc.nickname}")
    console.print(f"Model: {config.agent.model}")
    has_key = bool(config.agent.api_key)
    console.print(f"API key: {'[green]✓[/green]' if has_key else '[dim]from environment[/dim]'}")
    console.print(f"Interjection chance: {config.interjection.chance_per_message:.2%} per message")


# ============================================================================
# Admin / channel management
# ============================================================================


def _with_store(action):
    """Run ``action(store)`` against the configured database."""
    from emulbot.config.loader import load_config

    config = load_config()

    async def _go():
        backend, store = await _open_store(config)
        try:
            return await action(store)
        finally:
            backend.close()

    return asyncio.run(_go())


def _mutate(action, ok: str, noop: str) -> None:
    from emulbot.errors import StoreError, ValidationError

    try:
        changed = _with_store(action)
    except (ValidationError, StoreError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {ok}" if changed else f"[dim]{noop}[/dim]")


@admins_app.command("list")
def admins_list():
    """List registered admins."""
    async def _list(store):
        return store.admin_entries()

    entries = _with_store(_list)
    if not entries:
        console.print("No admins registered.")
        return

    from datetime import datetime

    table = Table(title="Admins")
    table.add_column("Nickname", style="cyan")
    table.add_column("Granted")
    for entry in entries:
        table.add_row(entry.nickname, datetime.fromtimestamp(entry.granted_at).strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@admins_app.command("add")
def admins_add(nickname: str = typer.Argument(..., help="Nickname to grant admin")):
    """Add an admin."""
    async def _add(store):
        return await store.add_admin(nickname)

    _mutate(_add, f"Added admin {nickname}", f"{nickname} is already an admin")


@admins_app.command("remove")
def admins_remove(nickname: str = typer.Argument(..., help="Nickname to revoke")):
    """Remove an admin."""
    async def _remove(store):
        return await store.remove_admin(nickname)

    _mutate(_remove, f"Removed admin {nickname}", f"{nickname} was not an admin")


@channels_app.command("list")
def channels_list():
    """List auto-join channels."""
    async def _list(store):
        return sorted(store.list_channels())

    channels = _with_store(_list)
    if not channels:
        console.print("No auto-join channels.")
        return
    for channel in channels:
        console.print(f"  {channel}")


@channels_app.command("add")
def channels_add(channel: str = typer.Argument(..., help="Channel to auto-join, e.g. #emul")):
    """Add an auto-join channel."""
    name = channel if channel.startswith(("#", "&")) else f"#{channel}"

    async def _add(store):
        return await store.add_channel(name)

    _mutate(_add, f"Added {name}", f"{name} is already an auto-join channel")


@channels_app.command("remove")
def channels_remove(channel: str = typer.Argument(..., help="Channel to stop auto-joining")):
    """Remove an auto-join channel."""
    name = channel if channel.startswith(("#", "&")) else f"#{channel}"

    async def _remove(store):
        return await store.remove_channel(name)

    _mutate(_remove, f"Removed {name}", f"{name} was not an auto-join channel")


# ============================================================================
# Dice
# ============================================================================


@app.command()
def roll(notation: str = typer.Argument(..., help="Dice notation, e.g. 3d6+2")):
    """Roll dice locally, the same way the bot does."""
    from emulbot.agent.tools.dice import roll_dice
    from emulbot.config.loader import load_config
    from emulbot.errors import ValidationError

    cfg = load_config().tools
    try:
        result = roll_dice(notation, max_dice=cfg.max_dice, max_sides=cfg.max_sides, max_modifier=cfg.max_modifier)
    except ValidationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(result.describe())


if __name__ == "__main__":
    app()
