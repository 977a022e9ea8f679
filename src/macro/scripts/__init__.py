"""Sandboxed script execution for operator-authored macros.

Scripts are restricted Python that can only reach the host through the
capabilities granted to each run.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

from macro.scripts.capabilities import (
    CapabilityClosedError,
    CapabilityEnvironment,
    make_add_log,
    make_get_args,
    wait,
)
from macro.scripts.sandbox import (
    Completion,
    SandboxFault,
    ScriptRejection,
    ScriptSandbox,
)

__all__ = [
    "CapabilityEnvironment",
    "CapabilityClosedError",
    "make_add_log",
    "make_get_args",
    "wait",
    "Completion",
    "ScriptSandbox",
    "SandboxFault",
    "ScriptRejection",
]
