"""Runtime module for subprocess management.

This module provides isolated process execution with a controlled
environment and reliable termination for the agent CLI.
"""

from __future__ import annotations

from .process_runner import ProcessRunner, ProcessSpec, build_environment

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
    "build_environment",
]
