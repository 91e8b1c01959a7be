"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from datetime import datetime

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from agentchat.tools.base import Tool
from agentchat.types import SessionDirectoryEntry


class OutputFormatter:
    """Rich-based output formatting for the agentchat CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_session_list(self, sessions: list[SessionDirectoryEntry]) -> None:
        if not sessions:
            self.console.print("[dim]No sessions.[/dim]")
            return
        table = Table(title="Sessions")
        table.add_column("Session ID", style="cyan", no_wrap=True)
        table.add_column("Title")
        table.add_column("Created", no_wrap=True)
        for s in sessions:
            created = datetime.fromtimestamp(s.created_at / 1000).strftime("%Y-%m-%d %H:%M")
            table.add_row(s.session_id, s.title, created)
        self.console.print(table)

    def format_tool_list(self, tools: list[Tool]) -> None:
        table = Table(title="Registered Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Description")
        for t in tools:
            table.add_row(t.name, t.description)
        self.console.print(table)

    def format_config(self, config: dict) -> None:
        self.console.print(Syntax(json.dumps(config, indent=2), "json", theme="monokai"))
