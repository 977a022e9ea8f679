# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for macro.

`macro serve` runs the scheduler until interrupted. Every other command is
a one-shot request against the same surface the host routes to.
"""

import asyncio
import logging
import signal
from typing import List, Optional

import typer

from macro import __version__
from macro.commands._common import build_service, call, parse_kv_args
from macro.service import AutomationService


logger = logging.getLogger(__name__)

app = typer.Typer(
    name="macro",
    help="Run operator scripts on demand, on mode changes and on a schedule",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def serve_forever(service: AutomationService) -> None:
    """Start the service and run until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    service.start()
    try:
        await stop.wait()
    finally:
        await service.shutdown()


@app.command()
def serve(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Run mode polling and the periodic and poll jobs until interrupted."""
    service = build_service(config_path)
    try:
        asyncio.run(serve_forever(service))
    except KeyboardInterrupt:
        logger.info("interrupted")


@app.command()
def run(
    name: str = typer.Argument(..., help="Macro name (a key of macros)"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value arguments for getArgs()"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Run an on-demand macro and print its resolved value."""
    payload = parse_kv_args(args)
    payload["name"] = name
    call(config_path, "POST", "run", payload)


@app.command()
def clear(
    target: str = typer.Argument("all", help="What to clear: all, modeHistory, log"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Clear mode history and/or job logs."""
    path = "" if target == "all" else target
    call(config_path, "DELETE", path)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"macro version {__version__}")


# Static commands (mode, log, config)
from macro.commands import config, log, mode

app.add_typer(mode.app, name="mode")
app.add_typer(log.app, name="log")
app.add_typer(config.app, name="config")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
