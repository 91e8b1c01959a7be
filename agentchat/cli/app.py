"""
Main CLI application for agentchat.

Usage:
    agentchat serve [--host HOST] [--port PORT]
    agentchat sessions list|create|delete
    agentchat tools list
    agentchat config show|validate
    agentchat version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from agentchat import __version__
from agentchat.cli.output import OutputFormatter
from agentchat.config import AppConfig, find_config_path, load_config
from agentchat.errors import NotFoundError
from agentchat.log_config import configure_logging
from agentchat.session.store import SessionStore
from agentchat.session.titles import derive_title

app = typer.Typer(name="agentchat", help="Per-session chat agent service")
sessions_app = typer.Typer(help="Session directory management")
tools_app = typer.Typer(help="Tool management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(sessions_app, name="sessions")
app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Path to a YAML config file")


def _load(config_path: Optional[Path], **overrides) -> AppConfig:
    return load_config(config_path or find_config_path(), cli_overrides=overrides)


async def _with_store(cfg: AppConfig, fn):
    store = SessionStore(cfg.session.db_path)
    await store.init()
    try:
        return await fn(store)
    finally:
        await store.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    db: Optional[str] = typer.Option(None, "--db", help="Session database path"),
    config: Optional[Path] = ConfigOption,
):
    """Run the HTTP service."""
    import uvicorn

    from agentchat.server.app import create_app

    cfg = _load(config, **{"server.host": host, "server.port": port, "session.db_path": db})
    configure_logging(cfg.server.log_level, console=console)
    console.print(
        f"[bold]agentchat[/bold] v{__version__} on http://{cfg.server.host}:{cfg.server.port}"
    )
    uvicorn.run(
        create_app(cfg),
        host=cfg.server.host,
        port=cfg.server.port,
        log_config=None,
    )


@sessions_app.command("list")
def sessions_list(config: Optional[Path] = ConfigOption):
    """List all sessions."""
    cfg = _load(config)
    sessions = asyncio.run(_with_store(cfg, lambda store: store.list_sessions()))
    OutputFormatter(console).format_session_list(sessions)


@sessions_app.command("create")
def sessions_create(
    title: Optional[str] = typer.Option(None, help="Session title"),
    first_message: Optional[str] = typer.Option(None, "--first-message", help="Derive the title from this message"),
    session_id: Optional[str] = typer.Option(None, "--id", help="Explicit session id"),
    config: Optional[Path] = ConfigOption,
):
    """Register a new session."""
    import uuid

    cfg = _load(config)
    sid = session_id or str(uuid.uuid4())
    entry = asyncio.run(
        _with_store(cfg, lambda store: store.create_session(sid, derive_title(title, first_message)))
    )
    console.print(f"Created session: [cyan]{entry.session_id}[/cyan] ({entry.title})")


@sessions_app.command("delete")
def sessions_delete(
    session_id: str = typer.Argument(..., help="Session ID"),
    config: Optional[Path] = ConfigOption,
):
    """Delete a session and its stored conversation."""
    cfg = _load(config)
    deleted = asyncio.run(_with_store(cfg, lambda store: store.delete_session(session_id)))
    if not deleted:
        console.print(f"[red]{NotFoundError('Session', session_id).message}:[/red] {session_id}")
        raise typer.Exit(1)
    console.print(f"Deleted session: {session_id}")


@tools_app.command("list")
def tools_list(config: Optional[Path] = ConfigOption):
    """List the tools offered to the model."""
    from agentchat.tools.builtin import build_registry

    cfg = _load(config)
    registry = build_registry(
        cfg.tools.builtin, cfg.tools.disabled, plugins_enabled=cfg.tools.plugins_enabled
    )
    OutputFormatter(console).format_tool_list(registry.list())


@config_app.command("show")
def config_show(config: Optional[Path] = ConfigOption):
    """Show effective config."""
    cfg = _load(config)
    OutputFormatter(console).format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(config: Optional[Path] = ConfigOption):
    """Validate config and show the key settings."""
    config_path = config or find_config_path()
    try:
        cfg = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Default endpoint: {cfg.llm.api_base} ({cfg.llm.model})")
    console.print(f"  Session store: {cfg.session.db_path}")


@app.command()
def version():
    """Show version."""
    console.print(f"agentchat v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
