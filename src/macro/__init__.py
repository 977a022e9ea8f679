# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Macro: sandboxed operator scripts driven by requests, mode polling and schedules."""

__version__ = "0.3.0"
