"""Restricted script execution.

Script bodies are restricted Python compiled with RestrictedPython: no
imports, no file access, no underscore names, guarded attribute and item
access. A body sees only the standard capabilities (resolve, reject,
print, callProc) and whatever its CapabilityEnvironment grants.

Each body runs in its own daemon thread. Capability calls are marshalled
back onto the event loop, so a script blocked in callProc or wait never
blocks the host or other jobs. Once a run ends (settled or timed out) its
thread is stopped at the next line of script code.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import asyncio
import concurrent.futures
import inspect
import logging
import operator
import sys
import threading
import warnings
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from RestrictedPython import (
    compile_restricted,
    limited_builtins,
    safe_builtins,
    utility_builtins,
)
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

from macro.schemas import ScriptOutcome
from macro.scripts.capabilities import (
    END_CAPABILITY,
    CapabilityClosedError,
    CapabilityEnvironment,
)


logger = logging.getLogger(__name__)
script_logger = logging.getLogger("macro.script")

DEFAULT_TIMEOUT_S = 60.0

# Builtins on top of RestrictedPython's safe set that cannot reach the host
EXTRA_BUILTINS = {
    "dict": dict,
    "enumerate": enumerate,
    "sum": sum,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "map": map,
    "filter": filter,
    "reversed": reversed,
}

INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}

_UNSET = object()


class SandboxFault(Exception):
    """The sandbox could not run the script to an outcome.

    Raised for environment problems (body does not compile under the
    restricted compiler, run timed out), never for script-level failures.
    """

    pass


class ScriptRejection(Exception):
    """A script rejected, or raised an uncaught error."""

    def __init__(self, error: Any):
        self.error = error
        message = error.get("message") if isinstance(error, dict) else error
        super().__init__(str(message))


class ScriptCancelled(BaseException):
    """Raised inside a script thread whose run has already ended.

    A BaseException so that `except Exception` in script code cannot
    swallow it.
    """

    pass


class Completion(Enum):
    """What settles a run besides resolve/reject/uncaught errors.

    RESOLVE: nothing else; a body that returns without resolving stays
        pending until the timeout.
    RETURN: a plain return of the body settles with None.
    END: the script is granted end(), which settles with None.
    """

    RESOLVE = "resolve"
    RETURN = "return"
    END = "end"


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    try:
        return INPLACE_OPERATORS[op](x, y)
    except KeyError:
        raise SyntaxError(f"unsupported in-place operator {op}")


def _apply(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


class _OutcomeChannel:
    """Single-write outcome slot shared by the script thread and the loop.

    The first settle wins; later ones return False and change nothing.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._lock = threading.Lock()
        self._settled = False
        self.future: asyncio.Future = loop.create_future()

    def settle(self, outcome: ScriptOutcome) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
        try:
            self._loop.call_soon_threadsafe(self._deliver, outcome)
        except RuntimeError:
            # Loop already closed (host shut down under a runaway script)
            return False
        return True

    def _deliver(self, outcome: ScriptOutcome) -> None:
        if not self.future.done():
            self.future.set_result(outcome)


class _ScriptPrinter:
    """Target of restricted `print(...)` calls; routes text to logging.

    RestrictedPython rewrites `print(x)` to `_print._call_print(x)` with
    `_print = _print_(_getattr_)`, and `printed` to `_print()`.
    """

    def __init__(self, run_name: str):
        self.run_name = run_name
        self.lines = []

    def __call__(self) -> str:
        return "\n".join(self.lines)

    def _call_print(self, *objects: Any, **kwargs: Any) -> None:
        sep = kwargs.get("sep", " ")
        text = (sep if isinstance(sep, str) else " ").join(str(o) for o in objects)
        self.lines.append(text)
        script_logger.info(f"[{self.run_name}] {text}")


def _stop_when_closed(env: CapabilityEnvironment, filename: str) -> Callable[..., Any]:
    """sys.settrace hook that raises ScriptCancelled in script frames once env is closed.

    Frames from other files (capabilities, builtins) are not line-traced.
    """

    def trace_line(frame: Any, event: str, arg: Any) -> Any:
        if env.closed:
            raise ScriptCancelled(f"{env.name} already finished")
        return trace_line

    def trace_call(frame: Any, event: str, arg: Any) -> Any:
        if frame.f_code.co_filename != filename:
            return None
        return trace_line(frame, event, arg)

    return trace_call


async def _invoke(func: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class ScriptSandbox:
    """Runs script bodies against an explicit capability surface."""

    def __init__(self, bridge: Any, timeout: Optional[float] = DEFAULT_TIMEOUT_S):
        """
        Args:
            bridge: Target of callProc (anything with async call_proc).
            timeout: Seconds before a pending run becomes a SandboxFault;
                None waits forever.
        """
        self.bridge = bridge
        self.timeout = timeout
        self._workers: Set[threading.Thread] = set()

    def compile(self, body: str, name: str = "<macro>") -> Any:
        """Compile a body under the restricted policy.

        Raises:
            SandboxFault: If the body is not valid restricted Python.
        """
        if not isinstance(body, str):
            raise SandboxFault(f"{name}: script body must be text, got {type(body).__name__}")
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", SyntaxWarning)
            try:
                code = compile_restricted(body, filename=f"<{name}>", mode="exec")
            except SyntaxError as e:
                raise SandboxFault(f"{name}: script does not compile: {e}")
        for warning in caught:
            logger.debug(f"{name}: {warning.message}")
        return code

    def _marshal(
        self,
        loop: asyncio.AbstractEventLoop,
        env: CapabilityEnvironment,
        pending: Set[concurrent.futures.Future],
        name: str,
        func: Callable[..., Any],
    ) -> Callable[..., Any]:
        """Wrap func so the script thread runs it on the loop and blocks for the result.

        In-flight calls are tracked in pending so the run can cancel them
        when it ends.
        """

        def capability(*args: Any, **kwargs: Any) -> Any:
            if env.closed:
                raise CapabilityClosedError(f"{name}() called after {env.name} finished")
            future = asyncio.run_coroutine_threadsafe(_invoke(func, args, kwargs), loop)
            pending.add(future)
            try:
                if env.closed:
                    future.cancel()
                return future.result()
            finally:
                pending.discard(future)

        capability.__name__ = name
        return capability

    def _namespace(
        self,
        loop: asyncio.AbstractEventLoop,
        env: CapabilityEnvironment,
        pending: Set[concurrent.futures.Future],
        channel: _OutcomeChannel,
        completion: Completion,
    ) -> Dict[str, Any]:
        printer = _ScriptPrinter(env.name)

        def make_printer(_getattr_: Any = None) -> _ScriptPrinter:
            return printer

        def resolve(value: Any = None) -> None:
            channel.settle(ScriptOutcome.success(value))

        def reject(error: Any = None) -> None:
            channel.settle(ScriptOutcome.failure(error))

        namespace: Dict[str, Any] = {
            "__builtins__": {**safe_builtins, **limited_builtins, **utility_builtins, **EXTRA_BUILTINS},
            "__name__": env.name,
            "_getattr_": safer_getattr,
            "_getitem_": default_guarded_getitem,
            "_getiter_": default_guarded_getiter,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_write_": full_write_guard,
            "_inplacevar_": _inplacevar,
            "_apply_": _apply,
            "_print_": make_printer,
            "print": printer._call_print,
            "resolve": resolve,
            "reject": reject,
            "callProc": self._marshal(loop, env, pending, "callProc", self.bridge.call_proc),
        }
        if completion is Completion.END:
            namespace[END_CAPABILITY] = resolve

        for name, func in env.functions.items():
            namespace[name] = self._marshal(loop, env, pending, name, func)
        namespace.update(env.values)
        return namespace

    def _run_body(
        self,
        code: Any,
        namespace: Dict[str, Any],
        channel: _OutcomeChannel,
        completion: Completion,
        env: CapabilityEnvironment,
    ) -> None:
        """Script-thread half of a run."""
        sys.settrace(_stop_when_closed(env, code.co_filename))
        try:
            exec(code, namespace)
        except ScriptCancelled:
            logger.debug(f"{env.name}: script thread stopped after the run ended")
            return
        except Exception as e:
            if not channel.settle(ScriptOutcome.failure(f"{type(e).__name__}: {e}")):
                logger.debug(f"{env.name}: error after outcome was settled: {e}")
            return
        finally:
            sys.settrace(None)
            self._workers.discard(threading.current_thread())
        if completion is Completion.RETURN:
            channel.settle(ScriptOutcome.success(None))

    async def execute(
        self,
        body: str,
        env: CapabilityEnvironment,
        completion: Completion = Completion.RESOLVE,
        timeout: Any = _UNSET,
    ) -> ScriptOutcome:
        """Run one script body to its outcome.

        Args:
            body: Restricted Python source.
            env: Capabilities for this run; closed when the run ends.
            completion: What besides resolve/reject settles the run.
            timeout: Override of the sandbox timeout (None waits forever).

        Returns:
            ScriptOutcome: success value, or failure for reject/uncaught errors.

        Raises:
            SandboxFault: If the body does not compile or the run times out.
        """
        if env.closed:
            raise SandboxFault(f"{env.name}: capability environment was already used")
        timeout = self.timeout if timeout is _UNSET else timeout
        pending: Set[concurrent.futures.Future] = set()

        try:
            code = self.compile(body, env.name)
            loop = asyncio.get_running_loop()
            channel = _OutcomeChannel(loop)
            namespace = self._namespace(loop, env, pending, channel, completion)

            # Daemon: a script that never yields must not keep the process alive
            worker = threading.Thread(
                target=self._run_body,
                args=(code, namespace, channel, completion, env),
                name=f"macro-script-{env.name}",
                daemon=True,
            )
            self._workers.add(worker)
            worker.start()

            logger.debug(f"{env.name}: started with capabilities {env.names()}")
            try:
                outcome = await asyncio.wait_for(channel.future, timeout)
            except asyncio.TimeoutError:
                raise SandboxFault(f"{env.name}: no outcome within {timeout}s")
        finally:
            env.close()
            for future in list(pending):
                future.cancel()

        if outcome.ok:
            logger.debug(f"{env.name}: resolved")
        else:
            logger.info(f"{env.name}: rejected: {outcome.error_message()}")
        return outcome
