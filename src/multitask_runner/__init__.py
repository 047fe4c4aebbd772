"""multitask-runner - run shell commands concurrently and collect their output.

Environment variables:
    MTR_TIMEOUT: default per-command timeout in seconds (unset = none)
    MTR_POLL_INTERVAL: idle sleep between polling passes (default 0.01s)
    MTR_LOG_DEBUG: write debug logs to a temp file (default false)

Usage:
    from multitask_runner import Orchestrator

    orchestrator = Orchestrator({"a": "echo hello", "b": "echo world"}, timeout=5)
    outputs = orchestrator.run()
"""

__version__ = "0.1.0"

from .errors import MultitaskError, ProcessClosedError, SpawnError, WriteError
from .orchestrator import CommandResult, Orchestrator, Outcome, run_commands
from .runtime import ProcessHandle, ProcessStatus

__all__ = [
    "__version__",
    "CommandResult",
    "MultitaskError",
    "Orchestrator",
    "Outcome",
    "ProcessClosedError",
    "ProcessHandle",
    "ProcessStatus",
    "SpawnError",
    "WriteError",
    "run_commands",
]
