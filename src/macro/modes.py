# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Mode controller.

The current mode is not stored on its own: it is the `mode` field of the
newest modeHistory entry. A check script observes the mode, an action
script (looked up by mode name) changes it. Repeating the current mode
publishes again but does not add another history entry.
"""

import logging
from typing import Any, Callable, Dict, Optional

from macro.config import ConfigError, ModeSettings
from macro.ringlog import RingLog
from macro.scripts import (
    CapabilityEnvironment,
    Completion,
    ScriptRejection,
    ScriptSandbox,
    make_add_log,
    make_get_args,
    wait,
)


logger = logging.getLogger(__name__)

MODE_TOPIC = "mode"


class ModeNotFound(ConfigError):
    """Raised when no action script exists for a requested mode."""

    pass


def error_report(error: Any) -> Dict[str, Any]:
    """Shape a script error as a failure report."""
    if isinstance(error, dict) and "message" in error:
        return {"errors": [error]}
    return {"errors": [{"message": str(error)}]}


class ModeController:
    """Runs mode check/set scripts and keeps the mode history."""

    def __init__(
        self,
        sandbox: ScriptSandbox,
        history: RingLog,
        bridge: Any,
        settings: ModeSettings,
        check_log: Optional[RingLog] = None,
        on_success: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            sandbox: Executes check/action scripts.
            history: The modeHistory ring log.
            bridge: Publishes "mode" events.
            settings: Check script, action scripts, history projection.
            check_log: Ring log behind addLog in check/action scripts.
            on_success: Called after every resolved check/set (re-arms polling).
        """
        self.sandbox = sandbox
        self.history = history
        self.bridge = bridge
        self.settings = settings
        self.check_log = check_log
        self.on_success = on_success

    def update(self, settings: ModeSettings) -> None:
        """Swap in new scripts and projection."""
        self.settings = settings

    @property
    def current_mode(self) -> Any:
        """Mode of the newest history entry, None when there is no history."""
        head = self.history.head
        return None if head is None else head.get("mode")

    def _environment(self, name: str, args: Optional[Dict[str, Any]] = None) -> CapabilityEnvironment:
        env = CapabilityEnvironment(name)
        env.grant("getArgs", make_get_args(args))
        env.grant("wait", wait)
        if self.check_log is not None:
            env.grant("addLog", make_add_log(self.check_log, self.bridge))
        return env

    def _record(self, mode: Any, result: Any) -> None:
        """Append to history unless mode is already current."""
        if mode == self.current_mode:
            logger.debug(f"mode {mode!r} unchanged, history not extended")
            return
        payload = {"mode": mode}
        if self.settings.log_result:
            payload["result"] = result
        self.history.append(payload)
        logger.info(f"mode changed to {mode!r}")

    def _succeeded(self) -> None:
        if self.on_success is not None:
            self.on_success()

    async def check_mode(self, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run the check script and report the observed mode.

        Returns:
            {"value": mode} on resolve, {"errors": [...]} on reject.

        Raises:
            ConfigError: If no check script is configured.
            SandboxFault: If the script cannot be run to an outcome.
        """
        if not self.settings.check.strip():
            raise ConfigError("no mode check script is configured")

        outcome = await self.sandbox.execute(
            self.settings.check,
            self._environment("mode.check", args),
            completion=Completion.RESOLVE,
        )
        if not outcome.ok:
            return error_report(outcome.error)

        value = outcome.value
        self._record(value, value)
        await self.bridge.publish(MODE_TOPIC, {"value": value})
        self._succeeded()
        return {"value": value}

    async def set_mode(self, requested: Any, args: Optional[Dict[str, Any]] = None) -> Any:
        """Run the action script for requested.

        Returns:
            The value the action script resolved with.

        Raises:
            ModeNotFound: If no action script exists for requested.
            ScriptRejection: If the script rejects or raises.
            SandboxFault: If the script cannot be run to an outcome.
        """
        body = self.settings.actions.get(requested) if isinstance(requested, str) else None
        if body is None:
            raise ModeNotFound(f'mode "{requested}" does not exist.')

        outcome = await self.sandbox.execute(
            body,
            self._environment(f"mode.set.{requested}", args),
            completion=Completion.RESOLVE,
        )
        if not outcome.ok:
            raise ScriptRejection(outcome.error)

        self._record(requested, outcome.value)
        await self.bridge.publish(MODE_TOPIC, {"value": requested})
        self._succeeded()
        return outcome.value
