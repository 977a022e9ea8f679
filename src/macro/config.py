# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Settings for the macro engine.

Loads the operator's YAML settings (script bodies, intervals, log sizes)
and validates their shape. Intervals accept a plain number (minutes) or a
string with an explicit unit suffix:

    "500ms" -> 500 ms
    "2s"    -> 2000 ms
    "3"     -> 180000 ms (bare numbers are minutes)
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml


DEFAULT_CONFIG_PATH = "~/.macro/config.yaml"
DEFAULT_STATE_DIR = "~/.macro/state"
DEFAULT_EVENTS_PATH = "~/.macro/events.jsonl"
DEFAULT_LOG_SIZE = 100
DEFAULT_SCRIPT_TIMEOUT = "60s"

# Signed number with an optional unit: "500ms", "2s", "1.5", "3", "-5"
INTERVAL_PATTERN = re.compile(r"^([+-]?\d+(?:\.\d+)?)\s*(ms|s)?$")

DISABLED_SENTINELS = {"", "off", "disabled", "none", "null"}

MS_PER_UNIT = {"ms": 1, "s": 1000, None: 60 * 1000}


class ConfigError(Exception):
    """Raised when settings are malformed."""

    pass


def parse_interval(value: Any) -> Optional[int]:
    """Parse an interval setting into milliseconds.

    Args:
        value: Number of minutes, a unit-suffixed string, or a disabled
            sentinel (None, "", "off", "disabled", False, {"disabled": true}).

    Returns:
        Interval in milliseconds, or None when the job should stay unarmed.

    Raises:
        ConfigError: If the value is not a recognizable interval.
    """
    if value is None or value is False:
        return None

    if isinstance(value, dict):
        if value.get("disabled"):
            return None
        raise ConfigError(f"interval mapping must be {{disabled: true}}, got: {value}")

    if isinstance(value, bool):
        raise ConfigError(f"interval must be a number or a string, got: {value}")

    if isinstance(value, (int, float)):
        ms = int(value * MS_PER_UNIT[None])
        return ms if ms > 0 else None

    if not isinstance(value, str):
        raise ConfigError(f"interval must be a number or a string, got: {value!r}")

    text = value.strip().lower()
    if text in DISABLED_SENTINELS:
        return None

    match = INTERVAL_PATTERN.match(text)
    if not match:
        raise ConfigError(
            f"malformed interval {value!r}: expected a number of minutes, "
            f"or a number suffixed with 'ms' or 's'"
        )

    number, unit = match.groups()
    ms = int(float(number) * MS_PER_UNIT[unit])
    return ms if ms > 0 else None


def _parse_size(value: Any, what: str) -> int:
    if value is None:
        return DEFAULT_LOG_SIZE
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{what} must be a positive integer, got: {value!r}")
    return value


def _parse_script(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{what} must be script text, got: {type(value).__name__}")
    return value


def _parse_scripts(value: Any, what: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{what} must be a mapping of name to script text")
    return {str(k): _parse_script(v, f"{what}.{k}") for k, v in value.items()}


@dataclass
class ModeSettings:
    """Mode check/set scripts and polling cadence."""

    check: str = ""
    actions: Dict[str, str] = field(default_factory=dict)
    interval: Union[int, str, None] = None
    log_result: bool = True
    history_size: int = DEFAULT_LOG_SIZE

    @property
    def interval_ms(self) -> Optional[int]:
        return parse_interval(self.interval)


@dataclass
class JobSettings:
    """A recurring script and the size of the log it writes to."""

    script: str = ""
    interval: Union[int, str, None] = None
    log_size: int = DEFAULT_LOG_SIZE

    @property
    def interval_ms(self) -> Optional[int]:
        return parse_interval(self.interval)


@dataclass
class Settings:
    """Everything the engine reads from the operator's settings file."""

    mode: ModeSettings = field(default_factory=ModeSettings)
    periodical: JobSettings = field(default_factory=JobSettings)
    poll: JobSettings = field(default_factory=JobSettings)
    macros: Dict[str, str] = field(default_factory=dict)
    script_timeout: Union[int, str, None] = DEFAULT_SCRIPT_TIMEOUT
    state_dir: str = DEFAULT_STATE_DIR
    events_path: str = DEFAULT_EVENTS_PATH

    @property
    def script_timeout_s(self) -> Optional[float]:
        """Per-invocation timeout in seconds, None when disabled."""
        ms = parse_interval(self.script_timeout)
        return ms / 1000 if ms else None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        """Build and validate settings from a parsed YAML mapping.

        Raises:
            ConfigError: If any section is malformed.
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("settings must be a YAML mapping")

        mode_data = data.get("mode") or {}
        if not isinstance(mode_data, dict):
            raise ConfigError("mode must be a mapping")
        mode = ModeSettings(
            check=_parse_script(mode_data.get("check"), "mode.check"),
            actions=_parse_scripts(mode_data.get("actions"), "mode.actions"),
            interval=mode_data.get("interval"),
            log_result=bool(mode_data.get("log_result", True)),
            history_size=_parse_size(mode_data.get("history_size"), "mode.history_size"),
        )

        jobs = {}
        for section in ("periodical", "poll"):
            job_data = data.get(section) or {}
            if not isinstance(job_data, dict):
                raise ConfigError(f"{section} must be a mapping")
            jobs[section] = JobSettings(
                script=_parse_script(job_data.get("script"), f"{section}.script"),
                interval=job_data.get("interval"),
                log_size=_parse_size(job_data.get("log_size"), f"{section}.log_size"),
            )

        settings = cls(
            mode=mode,
            periodical=jobs["periodical"],
            poll=jobs["poll"],
            macros=_parse_scripts(data.get("macros"), "macros"),
            script_timeout=data.get("script_timeout", DEFAULT_SCRIPT_TIMEOUT),
            state_dir=str(data.get("state_dir") or DEFAULT_STATE_DIR),
            events_path=str(data.get("events_path") or DEFAULT_EVENTS_PATH),
        )

        # Malformed intervals fail at load time, not when a job is armed
        for interval in (
            settings.mode.interval,
            settings.periodical.interval,
            settings.poll.interval,
            settings.script_timeout,
        ):
            parse_interval(interval)

        return settings


def get_config_path(config_path: Optional[str] = None) -> Path:
    """Resolve the settings file location.

    Order:
    1. Explicit path (--config)
    2. $MACRO_CONFIG (if set)
    3. ~/.macro/config.yaml
    """
    if config_path:
        return Path(config_path).expanduser()
    env_path = os.environ.get("MACRO_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return Path(DEFAULT_CONFIG_PATH).expanduser()


def load_config(config_path: Optional[str] = None) -> Settings:
    """Load and validate the settings file.

    Raises:
        FileNotFoundError: If the settings file does not exist.
        ConfigError: If the file is not valid YAML or fails validation.
    """
    path = get_config_path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}")

    return Settings.from_dict(data)
