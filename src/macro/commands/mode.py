# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Mode command for macro.

Checks, sets and lists the mode through the same request surface the
host uses.
"""

from typing import List, Optional

import typer

from macro.commands._common import call, parse_kv_args

app = typer.Typer(help="Check, set and review the current mode")


@app.command("get")
def get_command(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Run the check script and print the observed mode.

    Examples:
        macro mode get
    """
    call(config_path, "GET", "mode")


@app.command("set")
def set_command(
    mode: str = typer.Argument(..., help="Mode name (a key of mode.actions)"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value arguments for getArgs()"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Run the action script for MODE.

    Examples:
        macro mode set away
        macro mode set away delay=30
    """
    payload = parse_kv_args(args)
    payload["mode"] = mode
    call(config_path, "PUT", "mode", payload)


@app.command("history")
def history_command(
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Only entries for this mode"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of entries"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List mode changes, newest first.

    Examples:
        macro mode history
        macro mode history --mode away --limit 5
    """
    args = {"limit": limit}
    if mode is not None:
        args["mode"] = mode
    call(config_path, "GET", "modeHistory", args)
