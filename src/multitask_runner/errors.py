"""Exception types for multitask-runner.

A timed-out command is not an error: it is reported through
``Outcome.TIMED_OUT`` on its result instead.
"""

from __future__ import annotations

__all__ = [
    "MultitaskError",
    "SpawnError",
    "WriteError",
    "ProcessClosedError",
]


class MultitaskError(Exception):
    """Base exception for multitask-runner."""
    pass


class SpawnError(MultitaskError):
    """The OS could not create the process or its pipes.

    Attributes:
        command: Shell command that failed to start
        reason: Underlying error message
    """

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn {command!r}: {reason}")


class WriteError(MultitaskError):
    """Writing to a child's stdin failed.

    Attributes:
        command: Shell command whose stdin was written
        reason: Underlying error message
    """

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to write to {command!r}: {reason}")


class ProcessClosedError(MultitaskError):
    """Operation attempted on a handle that was already closed."""
    pass
