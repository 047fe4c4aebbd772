"""Concurrent command orchestration.

Runs several shell commands at once and collects their output, including:
- Orchestrator: one ProcessHandle per key, a polling loop over the active set
- CommandResult: per-key output, error text, exit code and outcome
- run_commands: construct, run and close in one call

All child processes start when the orchestrator is constructed. ``run``
then polls the active handles round-robin from the calling thread; no
internal threads are used (``arun`` reaps in a worker thread only to keep
the event loop responsive).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Hashable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

import anyio

from .config import get_config
from .errors import SpawnError, WriteError
from .runtime import ProcessHandle

__all__ = ["Orchestrator", "CommandResult", "Outcome", "run_commands"]

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """How a command left the active set.

    - PENDING: still active
    - COMPLETED: stdout reached end-of-stream, process reaped
    - TIMED_OUT: ran longer than the timeout and was terminated
    - FAILED: draining or reaping raised an OS error, process terminated
    - CANCELLED: terminated by Orchestrator.close before finishing
    - SPAWN_FAILED: the process could not be started
    """

    PENDING = "pending"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SPAWN_FAILED = "spawn_failed"


@dataclass
class CommandResult:
    """Collected result of one command.

    Attributes:
        key: Caller-supplied key
        command: Shell command string
        outcome: How the command finished
        output: Accumulated stdout text
        error: Accumulated stderr text
        exit_code: Exit code once reaped
        duration: Seconds from spawn to reap
        reason: Spawn, drain or reap failure message
    """

    key: Hashable
    command: str
    outcome: Outcome = Outcome.PENDING
    output: str = ""
    error: str = ""
    exit_code: int | None = None
    duration: float | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the command completed with exit code 0."""
        return self.outcome is Outcome.COMPLETED and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "duration": self.duration,
            "reason": self.reason,
        }


class Orchestrator:
    """Run shell commands concurrently and collect their output per key.

    Every command is spawned by the constructor. A command whose process
    cannot be created is recorded as ``Outcome.SPAWN_FAILED`` and the others
    still run.

    Not thread safe: ``run`` must not be called concurrently on one instance.

    Example:
        ```python
        orchestrator = Orchestrator(
            {"a": "echo hello", "b": "echo world"},
            timeout=5,
        )
        outputs = orchestrator.run()
        # {"a": "hello\\n", "b": "world\\n"}
        orchestrator.errors
        # {"a": "", "b": ""}
        ```
    """

    def __init__(
        self,
        commands: Mapping[Hashable, str],
        timeout: float | None = None,
        *,
        poll_interval: float | None = None,
        encoding: str | None = None,
        term_timeout: float | None = None,
    ) -> None:
        """Spawn one process per command.

        Args:
            commands: Mapping from key to shell command string
            timeout: Per-command timeout in seconds; None uses the configured
                default, 0 or negative disables the timeout
            poll_interval: Sleep after a polling pass that read nothing
            encoding: Text encoding of child output
            term_timeout: Seconds between terminate and kill
        """
        config = get_config()
        if timeout is None:
            timeout = config.timeout
        self._timeout = timeout if timeout is not None and timeout > 0 else None
        self._poll_interval = config.poll_interval if poll_interval is None else max(0.0, poll_interval)
        encoding = encoding or config.encoding
        term_timeout = config.term_timeout if term_timeout is None else term_timeout

        self._commands: dict[Hashable, str] = dict(commands)
        self._handles: dict[Hashable, ProcessHandle] = {}
        self._results: dict[Hashable, CommandResult] = {}

        try:
            for key, command in self._commands.items():
                result = CommandResult(key=key, command=command)
                self._results[key] = result
                try:
                    self._handles[key] = ProcessHandle.spawn(
                        command,
                        self._timeout,
                        encoding=encoding,
                        term_timeout=term_timeout,
                    )
                except SpawnError as e:
                    logger.warning(f"Command {key!r} failed to spawn: {e.reason}")
                    result.outcome = Outcome.SPAWN_FAILED
                    result.reason = e.reason
        except BaseException:
            # Nobody gets a reference to a half-built orchestrator
            self.close()
            raise

        if self._timeout is None and self._handles:
            logger.debug("No timeout set; commands run until their stdout closes")
        logger.debug(f"Spawned {len(self._handles)}/{len(self._commands)} command(s)")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def commands(self) -> dict[Hashable, str]:
        return dict(self._commands)

    @property
    def outputs(self) -> dict[Hashable, str]:
        """Accumulated stdout text per key."""
        return {key: result.output for key, result in self._results.items()}

    @property
    def errors(self) -> dict[Hashable, str]:
        """Accumulated stderr text per key."""
        return {key: result.error for key, result in self._results.items()}

    @property
    def results(self) -> dict[Hashable, CommandResult]:
        return dict(self._results)

    @property
    def active_keys(self) -> list[Hashable]:
        """Keys whose commands have neither finished nor been terminated."""
        return list(self._handles)

    @property
    def timeout(self) -> float | None:
        return self._timeout

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def run(self) -> dict[Hashable, str]:
        """Poll every active command until all have finished or timed out.

        Blocks the calling thread. After a pass that read nothing the loop
        sleeps ``poll_interval`` seconds.

        Returns:
            Mapping from key to accumulated stdout text
        """
        while self._handles:
            progressed, finished = self._poll_all()
            for key, outcome in finished:
                self._finish(key, outcome)
            if not progressed and self._poll_interval > 0:
                time.sleep(self._poll_interval)

        self._log_summary()
        return self.outputs

    async def arun(
        self,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> dict[Hashable, str]:
        """Async variant of :meth:`run`.

        Yields to the event loop between passes and reaps processes in a
        worker thread. If ``cancel_scope`` is cancelled, or the calling task
        is cancelled, every still-active command is terminated before
        returning or re-raising.

        Args:
            cancel_scope: Optional anyio.CancelScope checked once per pass

        Returns:
            Mapping from key to accumulated stdout text
        """
        try:
            while self._handles:
                if cancel_scope is not None and cancel_scope.cancel_called:
                    logger.info(f"Cancelled with {len(self._handles)} command(s) active")
                    break
                progressed, finished = self._poll_all()
                for key, outcome in finished:
                    await anyio.to_thread.run_sync(self._finish, key, outcome)
                await anyio.sleep(0 if progressed else self._poll_interval)
        finally:
            if self._handles:
                # Shield cleanup so the children are reaped even when cancelled
                with anyio.CancelScope(shield=True):
                    await anyio.to_thread.run_sync(self.close)

        self._log_summary()
        return self.outputs

    def _poll_all(self) -> tuple[bool, list[tuple[Hashable, Outcome]]]:
        """Run one pass over a snapshot of the active keys.

        Returns:
            Tuple of (any data read or command finished, finished commands)
        """
        progressed = False
        finished: list[tuple[Hashable, Outcome]] = []
        for key in list(self._handles):
            moved, outcome = self._poll(key)
            progressed = progressed or moved
            if outcome is not None:
                finished.append((key, outcome))
        return progressed or bool(finished), finished

    def _poll(self, key: Hashable) -> tuple[bool, Outcome | None]:
        """Drain one handle and decide whether it leaves the active set."""
        handle = self._handles[key]
        result = self._results[key]

        try:
            active = handle.is_active()
            output = handle.listen()
            error = handle.get_error()
        except OSError as e:
            logger.error(f"Reading output of {key!r} failed: {e}")
            result.reason = str(e)
            return False, Outcome.FAILED

        result.output += output
        result.error += error
        progressed = bool(output or error)

        if not active:
            return progressed, Outcome.COMPLETED
        if handle.is_busy():
            logger.info(
                f"Command {key!r} exceeded its {handle.timeout}s timeout "
                f"pid={handle.pid}"
            )
            return progressed, Outcome.TIMED_OUT
        return progressed, None

    def _finish(self, key: Hashable, outcome: Outcome, *, terminate: bool = False) -> None:
        """Close a handle and remove it from the active set."""
        handle = self._handles.pop(key)
        result = self._results[key]

        terminate = terminate or outcome is not Outcome.COMPLETED
        try:
            result.exit_code = handle.close(terminate=terminate)
        except OSError as e:
            logger.error(f"Reaping {key!r} failed: {e}")
            result.reason = str(e)
            outcome = Outcome.FAILED

        output, error = handle.take_remainder()
        result.output += output
        result.error += error
        result.outcome = outcome
        result.duration = handle.elapsed
        logger.debug(
            f"Command {key!r} {outcome.value} exit_code={result.exit_code} "
            f"duration={result.duration:.2f}s"
        )

    def _log_summary(self) -> None:
        counts: dict[str, int] = {}
        for result in self._results.values():
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        summary = ", ".join(f"{count} {name}" for name, count in sorted(counts.items()))
        logger.info(f"Finished {len(self._results)} command(s): {summary}")

    # ------------------------------------------------------------------
    # Input and cleanup
    # ------------------------------------------------------------------

    def tell(self, key: Hashable, text: str, *, eof: bool = False, strict: bool = False) -> bool:
        """Write text to the stdin of an active command.

        Args:
            key: Command key
            text: Text to write
            eof: Close the command's stdin afterwards
            strict: Raise WriteError instead of returning False

        Returns:
            Whether the text was written

        Raises:
            KeyError: If the key was never passed to the constructor
            WriteError: If strict and the write failed
        """
        command = self._commands[key]
        handle = self._handles.get(key)
        if handle is None:
            logger.warning(f"Cannot write to {key!r}: command is not active")
            if strict:
                raise WriteError(command, "command is not active")
            return False
        return handle.tell(text, eof=eof, strict=strict)

    def close(self) -> None:
        """Terminate every command that is still active.

        Output available at this point is still collected. Commands whose
        stdout had already closed are recorded as completed, the rest as
        cancelled.
        """
        for key in list(self._handles):
            _, outcome = self._poll(key)
            if outcome is None or outcome is Outcome.TIMED_OUT:
                outcome = Outcome.CANCELLED
            self._finish(key, outcome, terminate=True)

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Orchestrator(commands={len(self._commands)}, "
            f"active={len(self._handles)}, "
            f"timeout={self._timeout})"
        )


def run_commands(
    commands: Mapping[Hashable, str],
    timeout: float | None = None,
    **kwargs: Any,
) -> Orchestrator:
    """Run commands to completion and return the finished orchestrator.

    Args:
        commands: Mapping from key to shell command string
        timeout: Per-command timeout in seconds
        **kwargs: Passed to Orchestrator

    Returns:
        The orchestrator, with outputs, errors and results filled in
    """
    with Orchestrator(commands, timeout, **kwargs) as orchestrator:
        orchestrator.run()
    return orchestrator
