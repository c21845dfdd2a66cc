"""Runtime module for subprocess management.

This module provides isolated process execution, the immutable command
description, and the per-process lifecycle handle used by the supervisor.
"""

from __future__ import annotations

from .command import Command
from .handle import ProcessHandle, ProcessResult, ProcessState
from .process_runner import ProcessRunner

__all__ = [
    "Command",
    "ProcessHandle",
    "ProcessResult",
    "ProcessRunner",
    "ProcessState",
]
