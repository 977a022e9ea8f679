# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Helpers shared by the CLI commands."""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from macro.bridge import EventClient, LocalBridge
from macro.config import ConfigError, load_config
from macro.service import AutomationService
from macro.store import JsonFileStore


def parse_kv_args(args: Optional[List[str]]) -> Dict[str, Any]:
    """Parse key=value arguments into a dict.

    Supports:
    - Booleans: true, false
    - Nulls: null, none
    - Numbers: integers and floats
    - JSON: values starting with { or [ are parsed as JSON
    - Strings: everything else
    """
    if not args:
        return {}
    result = {}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"expected key=value, got: {arg}")
        key, value = arg.split("=", 1)
        if value.lower() == "true":
            result[key] = True
        elif value.lower() == "false":
            result[key] = False
        elif value.lower() in ("null", "none"):
            result[key] = None
        elif value.startswith("{") or value.startswith("["):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value
        else:
            try:
                result[key] = int(value)
            except ValueError:
                try:
                    result[key] = float(value)
                except ValueError:
                    result[key] = value
    return result


def build_service(config_path: Optional[str]) -> AutomationService:
    """Load settings and wire a service backed by the state directory.

    Exits with code 1 if the settings cannot be loaded.
    """
    try:
        settings = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    store = JsonFileStore(Path(settings.state_dir))
    bridge = LocalBridge(EventClient(Path(settings.events_path)))
    return AutomationService(settings, store, bridge)


def call(config_path: Optional[str], method: str, path: str, args: Optional[Dict[str, Any]] = None) -> Any:
    """Issue one request against a freshly wired service and echo the result.

    Exits with 1 for engine errors and 2 for script rejections.
    """
    service = build_service(config_path)
    result = asyncio.run(service.on_call(method, path, args or {}))
    typer.echo(json.dumps(result, indent=2, ensure_ascii=False, default=str))

    if isinstance(result, dict) and result.get("errors"):
        first = result["errors"][0]
        engine_error = isinstance(first, dict) and "type" in first
        raise typer.Exit(1 if engine_error else 2)
    return result
