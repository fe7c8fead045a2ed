"""Runtime module for subprocess management.

This module provides isolated process execution with proper signal handling
and reliable termination of whole process groups.
"""

from __future__ import annotations

from .process_runner import IS_WINDOWS, ProcessRunner, ProcessSpec

__all__ = [
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
]
