"""Runtime module for spawning and draining child processes.

This module provides the single-process handle used by the orchestrator:
non-blocking output draining, timeout detection and reliable termination.
"""

from __future__ import annotations

from .process_handle import ProcessHandle, ProcessStatus

__all__ = [
    "ProcessHandle",
    "ProcessStatus",
]
