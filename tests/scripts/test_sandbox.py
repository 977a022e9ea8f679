"""Tests for restricted script execution."""

import asyncio
import logging

import pytest

from macro.bridge import LocalBridge
from macro.scripts import (
    CapabilityEnvironment,
    Completion,
    SandboxFault,
    ScriptSandbox,
    make_get_args,
    wait,
)


def run(sandbox, body, env=None, **kwargs):
    return sandbox.execute(body, env or CapabilityEnvironment("test"), **kwargs)


@pytest.fixture
def sandbox(bridge):
    return ScriptSandbox(bridge, timeout=2.0)


class TestOutcomes:
    """Tests for resolve, reject and uncaught errors."""

    @pytest.mark.asyncio
    async def test_resolve(self, sandbox):
        outcome = await run(sandbox, 'resolve({"state": "ok", "n": 1 + 2})')

        assert outcome.ok
        assert outcome.value == {"state": "ok", "n": 3}

    @pytest.mark.asyncio
    async def test_reject(self, sandbox):
        outcome = await run(sandbox, 'reject({"message": "door open"})')

        assert not outcome.ok
        assert outcome.error == {"message": "door open"}
        assert outcome.error_message() == "door open"

    @pytest.mark.asyncio
    async def test_first_settle_wins(self, sandbox):
        outcome = await run(sandbox, 'resolve(1)\nresolve(2)\nreject("late")\n')

        assert outcome.ok
        assert outcome.value == 1

    @pytest.mark.asyncio
    async def test_error_after_resolve_ignored(self, sandbox):
        outcome = await run(sandbox, 'resolve("done")\nraise ValueError("late")\n')

        assert outcome.value == "done"

    @pytest.mark.asyncio
    async def test_uncaught_error_is_rejection(self, sandbox):
        outcome = await run(sandbox, 'raise ValueError("boom")')

        assert not outcome.ok
        assert outcome.error == "ValueError: boom"

    @pytest.mark.asyncio
    async def test_functions_and_loops(self, sandbox):
        body = (
            "def double(x):\n"
            "    return x * 2\n"
            "total = 0\n"
            "for i in range(5):\n"
            "    total += double(i)\n"
            "items = []\n"
            "items.append(total)\n"
            "resolve(items)\n"
        )
        outcome = await run(sandbox, body)

        assert outcome.value == [20]


class TestRestrictions:
    """Tests for what script code cannot reach."""

    @pytest.mark.asyncio
    async def test_syntax_error_is_fault(self, sandbox):
        with pytest.raises(SandboxFault, match="does not compile"):
            await run(sandbox, "def (:\n")

    @pytest.mark.asyncio
    async def test_underscore_attribute_is_fault(self, sandbox):
        with pytest.raises(SandboxFault):
            await run(sandbox, "resolve(resolve.__globals__)")

    @pytest.mark.asyncio
    async def test_no_open(self, sandbox):
        outcome = await run(sandbox, 'open("/etc/passwd")')

        assert not outcome.ok
        assert outcome.error.startswith("NameError")

    @pytest.mark.asyncio
    async def test_no_import(self, sandbox):
        outcome = await run(sandbox, "import os\nresolve(os.getcwd())")

        assert not outcome.ok

    @pytest.mark.asyncio
    async def test_non_text_body_is_fault(self, sandbox):
        with pytest.raises(SandboxFault, match="must be text"):
            await run(sandbox, None)

    @pytest.mark.asyncio
    async def test_ungranted_capability_missing(self, sandbox):
        outcome = await run(sandbox, "getArgs()")

        assert outcome.error.startswith("NameError")

    def test_compile_only(self):
        ScriptSandbox(bridge=None).compile("resolve(1)", "check")


class TestCapabilities:
    """Tests for capability calls made from script code."""

    @pytest.mark.asyncio
    async def test_call_proc(self, sandbox, bridge):
        calls = []

        def thermostat(method, *args):
            calls.append((method, args))
            return 21.5

        bridge.register_service("thermostat", thermostat)

        outcome = await run(sandbox, 'resolve(callProc("thermostat", "GET", "living"))')

        assert outcome.value == 21.5
        assert calls == [("GET", ("living",))]

    @pytest.mark.asyncio
    async def test_call_proc_error_reaches_script(self, sandbox):
        body = (
            "try:\n"
            '    callProc("missing", "GET")\n'
            "except Exception as e:\n"
            '    resolve("caught")\n'
        )
        outcome = await run(sandbox, body)

        assert outcome.value == "caught"

    @pytest.mark.asyncio
    async def test_print_goes_to_log(self, sandbox, caplog):
        with caplog.at_level(logging.INFO, logger="macro.script"):
            outcome = await run(sandbox, 'print("hello", 42)\nresolve(None)')

        assert outcome.ok
        assert "[test] hello 42" in caplog.text

    @pytest.mark.asyncio
    async def test_granted_function(self, sandbox):
        env = CapabilityEnvironment("macro.test")
        env.grant("getArgs", make_get_args({"room": "hall"}))

        outcome = await run(sandbox, 'resolve(getArgs()["room"])', env)

        assert outcome.value == "hall"

    @pytest.mark.asyncio
    async def test_provided_value_is_shared(self, sandbox):
        shared = {}
        body = (
            'count = shared.get("count", 0) + 1\n'
            'shared["count"] = count\n'
            "resolve(count)\n"
        )

        for _ in range(3):
            env = CapabilityEnvironment("job.test").provide("shared", shared)
            outcome = await run(sandbox, body, env)

        assert outcome.value == 3
        assert shared == {"count": 3}

    @pytest.mark.asyncio
    async def test_wait_does_not_block_loop(self, sandbox):
        ticks = []

        async def ticker():
            for _ in range(5):
                ticks.append(1)
                await asyncio.sleep(0.01)

        env = CapabilityEnvironment("test").grant("wait", wait)
        outcome, _ = await asyncio.gather(run(sandbox, "wait(100)\nresolve(True)", env), ticker())

        assert outcome.value is True
        assert len(ticks) == 5

    @pytest.mark.asyncio
    async def test_environment_closed_after_run(self, sandbox):
        env = CapabilityEnvironment("test")
        await run(sandbox, "resolve(1)", env)

        assert env.closed
        with pytest.raises(SandboxFault, match="already used"):
            await run(sandbox, "resolve(2)", env)


class TestCompletion:
    """Tests for completion modes and the run timeout."""

    @pytest.mark.asyncio
    async def test_resolve_mode_needs_explicit_resolve(self, sandbox):
        with pytest.raises(SandboxFault, match="no outcome"):
            await run(sandbox, "x = 1", timeout=0.1)

    @pytest.mark.asyncio
    async def test_return_mode_settles_on_return(self, sandbox):
        outcome = await run(sandbox, "x = 1", completion=Completion.RETURN)

        assert outcome.ok
        assert outcome.value is None

    @pytest.mark.asyncio
    async def test_return_mode_still_reports_errors(self, sandbox):
        outcome = await run(sandbox, 'reject("bad")', completion=Completion.RETURN)

        assert outcome.error == "bad"

    @pytest.mark.asyncio
    async def test_end_mode(self, sandbox):
        outcome = await run(sandbox, "end()", completion=Completion.END)

        assert outcome.ok
        assert outcome.value is None

    @pytest.mark.asyncio
    async def test_end_only_granted_in_end_mode(self, sandbox):
        outcome = await run(sandbox, "end()")

        assert outcome.error.startswith("NameError")

    @pytest.mark.asyncio
    async def test_end_mode_waits_for_end(self, sandbox):
        with pytest.raises(SandboxFault):
            await run(sandbox, "x = 1", completion=Completion.END, timeout=0.1)

    @pytest.mark.asyncio
    async def test_timeout_closes_capabilities(self):
        sandbox = ScriptSandbox(LocalBridge(), timeout=0.1)
        env = CapabilityEnvironment("slow").grant("wait", wait)

        with pytest.raises(SandboxFault, match="no outcome within"):
            await run(sandbox, "while True:\n    wait(20)\n", env)

        assert env.closed
        # The runaway loop hits the closed wait() and stops
        await wait_for_workers(sandbox)
        assert not sandbox._workers


async def wait_for_workers(sandbox, seconds=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + seconds
    while sandbox._workers and loop.time() < deadline:
        await asyncio.sleep(0.02)


class TestRunawayScripts:
    """Tests for scripts that never settle on their own."""

    @pytest.mark.asyncio
    async def test_busy_loops_do_not_starve_later_runs(self):
        """More spinning scripts than a default thread pool has workers."""
        sandbox = ScriptSandbox(LocalBridge(), timeout=0.2)
        spinning = [
            run(sandbox, "while True:\n    pass\n", CapabilityEnvironment(f"spin{i}"))
            for i in range(40)
        ]

        results = await asyncio.gather(*spinning, return_exceptions=True)
        assert all(isinstance(result, SandboxFault) for result in results)

        outcome = await run(sandbox, 'resolve("ok")', CapabilityEnvironment("healthy"), timeout=5.0)
        assert outcome.value == "ok"

        await wait_for_workers(sandbox)
        assert not sandbox._workers

    @pytest.mark.asyncio
    async def test_busy_loop_stops_writing_shared_state(self):
        sandbox = ScriptSandbox(LocalBridge(), timeout=0.1)
        shared = {"n": 0}
        env = CapabilityEnvironment("counter").provide("shared", shared)

        with pytest.raises(SandboxFault):
            await run(sandbox, 'while True:\n    shared["n"] = shared["n"] + 1\n', env)
        await wait_for_workers(sandbox)

        count = shared["n"]
        await asyncio.sleep(0.1)
        assert shared["n"] == count
        assert not sandbox._workers

    @pytest.mark.asyncio
    async def test_blocked_capability_call_is_cancelled(self):
        sandbox = ScriptSandbox(LocalBridge(), timeout=0.1)
        env = CapabilityEnvironment("sleepy").grant("wait", wait)

        with pytest.raises(SandboxFault):
            await run(sandbox, "wait(600000)\nresolve(1)", env)
        await wait_for_workers(sandbox, seconds=1.0)

        assert not sandbox._workers

    @pytest.mark.asyncio
    async def test_script_cannot_catch_the_stop(self):
        sandbox = ScriptSandbox(LocalBridge(), timeout=0.1)
        body = (
            "while True:\n"
            "    try:\n"
            "        x = 1\n"
            "    except Exception:\n"
            "        pass\n"
        )

        with pytest.raises(SandboxFault):
            await run(sandbox, body, CapabilityEnvironment("stubborn"))
        await wait_for_workers(sandbox)

        assert not sandbox._workers
