# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Macro record schemas."""

from macro.schemas.records import (
    RingLogEntry,
    ScriptOutcome,
)

__all__ = [
    "RingLogEntry",
    "ScriptOutcome",
]
