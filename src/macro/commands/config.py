# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for macro.

Validates the settings file: YAML shape, script sections, intervals and
log sizes. Script bodies are compiled under the sandbox policy.
"""

import typer

from macro.config import ConfigError, get_config_path, load_config
from macro.scripts import SandboxFault, ScriptSandbox

app = typer.Typer(help="Manage and validate configuration")


@app.command()
def validate(
    config_path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the config file exists, is valid YAML, has well-formed
    intervals and sizes, and that every script compiles.
    """
    typer.echo(f"Validating configuration: {get_config_path(config_path)}")
    typer.echo()

    try:
        settings = load_config(config_path)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)

    scripts = {"mode.check": settings.mode.check}
    scripts.update({f"mode.actions.{k}": v for k, v in settings.mode.actions.items()})
    scripts["periodical.script"] = settings.periodical.script
    scripts["poll.script"] = settings.poll.script
    scripts.update({f"macros.{k}": v for k, v in settings.macros.items()})

    sandbox = ScriptSandbox(bridge=None)
    failed = False
    for name, body in scripts.items():
        if not body.strip():
            continue
        try:
            sandbox.compile(body, name)
            typer.echo(f"  {name}: ok")
        except SandboxFault as e:
            typer.echo(f"  {name}: {e}", err=True)
            failed = True

    typer.echo()
    typer.echo(f"Mode polling interval: {settings.mode.interval_ms or 'disabled'} ms")
    typer.echo(f"Periodical interval: {settings.periodical.interval_ms or 'disabled'} ms")
    typer.echo(f"Poll interval: {settings.poll.interval_ms or 'disabled'} ms")
    typer.echo(f"State directory: {settings.state_dir}")
    typer.echo()

    if failed:
        typer.echo("Validation failed: some scripts do not compile", err=True)
        raise typer.Exit(1)
    typer.echo("Configuration validation complete!")
