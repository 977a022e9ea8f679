# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Log command for macro.

Reads and clears the periodic and poll logs written by addLog().
"""

from typing import Optional

import typer

from macro.commands._common import call

app = typer.Typer(help="Read and clear job logs")


@app.command("show")
def show_command(
    source: str = typer.Option("periodical", "--source", "-s", help="Log to read: periodical, poll"),
    name: Optional[str] = typer.Option(None, "--name", help="Only entries written under this name"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of entries"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Print log entries, newest first.

    Examples:
        macro log show
        macro log show --source poll --name tick
    """
    args = {"source": source, "limit": limit}
    if name is not None:
        args["name"] = name
    call(config_path, "GET", "log", args)


@app.command("clear")
def clear_command(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Clear the periodic and poll logs."""
    call(config_path, "DELETE", "log")
