# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Automation service - composition root and request surface.

Wires the ring logs, sandbox, mode controller and scheduler together from
Settings, and answers (method, path, args) requests:

    GET    mode         {type: "history", mode?, limit?} -> {data: [...]}
    GET    mode         -> {value} | {errors}
    GET    modeHistory  {mode?, limit?} -> {data: [...]}
    GET    log          {source?, name?, limit?} -> {data: [...]}
    PUT    mode         {mode} -> resolved value | {errors}
    POST   run          {name, ...} -> resolved value | {errors}
    DELETE "" | modeHistory | log -> {success, message} | {errors}
"""

import logging
from typing import Any, Dict, List, Optional

from macro.config import ConfigError, Settings
from macro.modes import ModeController, error_report
from macro.ringlog import DEFAULT_QUERY_LIMIT, RingLog, field_equals
from macro.schedule import ScheduleEngine
from macro.scripts import (
    CapabilityEnvironment,
    Completion,
    SandboxFault,
    ScriptRejection,
    ScriptSandbox,
    make_add_log,
    make_get_args,
    wait,
)
from macro.store import KeyValueStore, PersistenceError


logger = logging.getLogger(__name__)

MODE_HISTORY = "modeHistory"
PERIODICAL_LOG = "periodicalLog"
POLL_LOG = "pollLog"

MODE_POLLING_JOB = "modePolling"
PERIODICAL_JOB = "periodical"
POLL_JOB = "poll"

LOG_SOURCES = {"periodical": PERIODICAL_LOG, "poll": POLL_LOG}


class RequestError(Exception):
    """Raised for requests with missing or malformed arguments."""

    pass


def _errors(message: str, error_type: str = "request_error") -> Dict[str, Any]:
    return {"errors": [{"message": f"macro: {message}", "type": error_type}]}


def _limit(args: Dict[str, Any]) -> int:
    """Requested page size; missing or 0 means DEFAULT_QUERY_LIMIT."""
    raw = args.get("limit")
    if raw is None:
        return DEFAULT_QUERY_LIMIT
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise RequestError(f"limit must be an integer, got: {raw!r}")
    if limit < 0:
        raise RequestError(f"limit must not be negative, got: {limit}")
    return limit or DEFAULT_QUERY_LIMIT


class AutomationService:
    """Owns every runtime component for one settings file."""

    def __init__(self, settings: Settings, store: KeyValueStore, bridge: Any, scheduler: Optional[ScheduleEngine] = None):
        self.settings = settings
        self.store = store
        self.bridge = bridge

        self.logs: Dict[str, RingLog] = {
            MODE_HISTORY: RingLog(MODE_HISTORY, store, settings.mode.history_size),
            PERIODICAL_LOG: RingLog(PERIODICAL_LOG, store, settings.periodical.log_size),
            POLL_LOG: RingLog(POLL_LOG, store, settings.poll.log_size),
        }
        self.sandbox = ScriptSandbox(bridge, timeout=settings.script_timeout_s)
        self.scheduler = scheduler or ScheduleEngine()
        self.modes = ModeController(
            self.sandbox,
            self.logs[MODE_HISTORY],
            bridge,
            settings.mode,
            check_log=self.logs[POLL_LOG],
            on_success=self._rearm_mode_polling,
        )

        self.scheduler.add(MODE_POLLING_JOB, self._poll_mode)
        self.scheduler.add(PERIODICAL_JOB, self._run_periodical)
        self.scheduler.add(POLL_JOB, self._run_poll)
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Arm every configured job. Must be called from the event loop."""
        self._started = True
        self._apply_intervals()
        logger.info("automation service started")

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        self._started = False
        logger.info("automation service stopped")

    def apply_settings(self, settings: Settings) -> Settings:
        """Apply edited settings immediately and return them for saving.

        New scripts take effect on the next run, log sizes re-truncate at
        once, and job intervals are re-armed when the service is running.
        """
        self.settings = settings
        self.modes.update(settings.mode)
        self.sandbox.timeout = settings.script_timeout_s
        self.logs[MODE_HISTORY].resize(settings.mode.history_size)
        self.logs[PERIODICAL_LOG].resize(settings.periodical.log_size)
        self.logs[POLL_LOG].resize(settings.poll.log_size)
        if self._started:
            self._apply_intervals()
        logger.info("settings applied")
        return settings

    def _apply_intervals(self) -> None:
        intervals = {
            MODE_POLLING_JOB: self.settings.mode.interval if self.settings.mode.check.strip() else None,
            PERIODICAL_JOB: self.settings.periodical.interval if self.settings.periodical.script.strip() else None,
            POLL_JOB: self.settings.poll.interval if self.settings.poll.script.strip() else None,
        }
        for name, interval in intervals.items():
            self.scheduler.set_interval(name, interval)

    def _rearm_mode_polling(self) -> None:
        if self._started:
            self.scheduler.arm(MODE_POLLING_JOB)

    # =========================================================================
    # Scheduled jobs
    # =========================================================================

    async def _poll_mode(self) -> None:
        """Background mode check. Failures are logged, there is no caller."""
        try:
            report = await self.modes.check_mode()
        except (ConfigError, SandboxFault, PersistenceError) as e:
            logger.warning(f"mode polling failed: {e}")
            return
        if "errors" in report:
            logger.warning(f"mode check rejected: {report['errors']}")

    def _job_environment(self, job_name: str, log_name: str) -> CapabilityEnvironment:
        job = self.scheduler.get(job_name)
        env = CapabilityEnvironment(f"job.{job_name}")
        env.grant("addLog", make_add_log(self.logs[log_name], self.bridge))
        env.grant("getArgs", make_get_args({"job": job_name, "run": job.run_count}))
        env.grant("wait", wait)
        env.provide("shared", job.shared)
        return env

    async def _run_job_script(self, job_name: str, body: str, log_name: str, completion: Completion) -> None:
        if not body.strip():
            return
        outcome = await self.sandbox.execute(body, self._job_environment(job_name, log_name), completion=completion)
        if not outcome.ok:
            logger.warning(f"{job_name}: script failed: {outcome.error_message()}")

    async def _run_periodical(self) -> None:
        await self._run_job_script(PERIODICAL_JOB, self.settings.periodical.script, PERIODICAL_LOG, Completion.END)

    async def _run_poll(self) -> None:
        await self._run_job_script(POLL_JOB, self.settings.poll.script, POLL_LOG, Completion.RETURN)

    # =========================================================================
    # Request surface
    # =========================================================================

    async def on_call(self, method: str, path: str, args: Optional[Dict[str, Any]] = None) -> Any:
        """Answer one request.

        Never raises for request, script or persistence problems; they are
        returned as {"errors": [...]}.
        """
        args = args or {}
        method = (method or "").upper()
        path = (path or "").strip("/")
        handler = {
            "GET": self._on_get,
            "PUT": self._on_put,
            "POST": self._on_post,
            "DELETE": self._on_delete,
        }.get(method)
        if handler is None:
            return {"errors": [{"message": f"The specified method {method} is not implemented in this plugin."}]}

        try:
            return await handler(path, args)
        except ScriptRejection as e:
            return error_report(e.error)
        except (ConfigError, RequestError) as e:
            logger.info(f"{method} {path}: {e}")
            return _errors(str(e), "config_error" if isinstance(e, ConfigError) else "request_error")
        except SandboxFault as e:
            logger.error(f"{method} {path}: sandbox fault: {e}")
            return _errors(str(e), "sandbox_fault")
        except PersistenceError as e:
            logger.error(f"{method} {path}: persistence failed: {e}")
            return _errors(str(e), "persistence_error")

    def _not_defined(self, path: str) -> Dict[str, Any]:
        logger.info(f"{path} is not defined")
        return _errors(f"{path} is not defined")

    def _history(self, args: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
        predicate = field_equals("mode", args["mode"]) if args.get("mode") is not None else None
        entries = self.logs[MODE_HISTORY].query(predicate, _limit(args))
        return {"data": [entry.to_dict() for entry in entries]}

    async def _on_get(self, path: str, args: Dict[str, Any]) -> Any:
        if path == "mode":
            if args.get("type") == "history":
                return self._history(args)
            return await self.modes.check_mode(args)
        if path == MODE_HISTORY:
            return self._history(args)
        if path == "log":
            source = args.get("source", "periodical")
            if source not in LOG_SOURCES:
                raise RequestError(f"log source must be one of {sorted(LOG_SOURCES)}, got: {source!r}")
            predicate = field_equals("name", args["name"]) if args.get("name") is not None else None
            entries = self.logs[LOG_SOURCES[source]].query(predicate, _limit(args))
            return {"data": [entry.to_dict() for entry in entries]}
        return self._not_defined(path)

    async def _on_put(self, path: str, args: Dict[str, Any]) -> Any:
        if path != "mode":
            return self._not_defined(path)
        if "mode" not in args:
            raise RequestError("PUT mode requires a 'mode' argument")
        return await self.modes.set_mode(args["mode"], args)

    async def _on_post(self, path: str, args: Dict[str, Any]) -> Any:
        if path != "run":
            return self._not_defined(path)
        name = args.get("name")
        body = self.settings.macros.get(name) if isinstance(name, str) else None
        if body is None:
            raise ConfigError(f'macro "{name}" does not exist.')

        env = CapabilityEnvironment(f"macro.{name}")
        env.grant("getArgs", make_get_args(args))
        env.grant("wait", wait)
        env.grant("addLog", make_add_log(self.logs[PERIODICAL_LOG], self.bridge))
        outcome = await self.sandbox.execute(body, env, completion=Completion.RESOLVE)
        if not outcome.ok:
            raise ScriptRejection(outcome.error)
        return outcome.value

    async def _on_delete(self, path: str, args: Dict[str, Any]) -> Any:
        targets = {
            "": [MODE_HISTORY, PERIODICAL_LOG, POLL_LOG],
            MODE_HISTORY: [MODE_HISTORY],
            "log": [PERIODICAL_LOG, POLL_LOG],
        }.get(path)
        if targets is None:
            return self._not_defined(path)
        cleared = []
        for name in targets:
            try:
                self.logs[name].clear()
            except PersistenceError as e:
                done = ", ".join(cleared) or "none"
                raise PersistenceError(f"failed to clear {name} (already cleared: {done}): {e}")
            cleared.append(name)
        return {"success": True, "message": f"cleared {', '.join(targets)}"}
