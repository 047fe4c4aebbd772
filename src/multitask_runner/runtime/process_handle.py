"""Single-process handle with non-blocking pipe draining.

multitask-runner runtime module v0.1.0

This module provides:
- Shell command spawning with stdin/stdout/stderr pipes
- Non-blocking stdout/stderr draining (never waits for more data)
- Wall-clock timeout detection
- Reliable termination (terminate -> timeout -> kill) and reaping

Key design points:
- stdout is the liveness channel: it is drained on every liveness check and
  buffered, so no output is lost between polls
- stdout end-of-stream marks the command as finished, not its exit status
- stderr is drained only on request and is not buffered across calls,
  except while close() waits for the process (see take_remainder)
- Output is decoded incrementally, so a multi-byte character split across
  two reads is decoded intact
"""

from __future__ import annotations

import codecs
import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import IO

from ..config import DEFAULT_ENCODING, DEFAULT_TERM_TIMEOUT
from ..errors import ProcessClosedError, SpawnError, WriteError

__all__ = [
    "ProcessHandle",
    "ProcessStatus",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Bytes per os.read call
READ_CHUNK = 65536

# Upper bound for a single drain, so one chatty child cannot starve the others
MAX_DRAIN_BYTES = 1024 * 1024

# Sleep between pipe drains while close() waits for the process to exit
CLOSE_POLL_INTERVAL = 0.01


@dataclass(frozen=True)
class ProcessStatus:
    """OS-level status of a spawned process.

    Attributes:
        command: Shell command the process runs
        pid: Process ID
        running: Whether the process has not exited yet
        exit_code: Exit code, None while running
        signaled: Whether the process was killed by a signal
        term_signal: Signal number that killed the process
    """

    command: str
    pid: int
    running: bool
    exit_code: int | None = None
    signaled: bool = False
    term_signal: int | None = None


class ProcessHandle:
    """Owned handle to one spawned shell command and its three pipes.

    Create handles with :meth:`spawn`. Once :meth:`close` has run the handle
    is terminal: reads, status queries and a second close raise
    :class:`ProcessClosedError`, and :meth:`tell` reports failure.

    Example:
        handle = ProcessHandle.spawn("ffmpeg -i in.mkv out.mp4", timeout=120)
        output = ""
        while handle.is_active() and not handle.is_busy():
            output += handle.listen()
        output += handle.listen()
        exit_code = handle.close(terminate=handle.is_busy())
        output += handle.take_remainder()[0]
    """

    def __init__(
        self,
        command: str,
        process: subprocess.Popen,
        timeout: float | None = None,
        *,
        encoding: str = DEFAULT_ENCODING,
        errors: str = "replace",
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
    ) -> None:
        self._command = command
        self._process: subprocess.Popen | None = process
        self._pid = process.pid
        self._timeout = timeout if timeout is not None and timeout > 0 else None
        self._encoding = encoding
        self._term_timeout = term_timeout

        self._pending = ""
        self._error_tail = ""
        self._stdout_eof = False
        self._stderr_eof = False
        self._stdout_decoder = codecs.getincrementaldecoder(encoding)(errors=errors)
        self._stderr_decoder = codecs.getincrementaldecoder(encoding)(errors=errors)

        self.started_at = datetime.now()
        self._start = time.monotonic()

    @classmethod
    def spawn(
        cls,
        command: str,
        timeout: float | None = None,
        *,
        encoding: str = DEFAULT_ENCODING,
        errors: str = "replace",
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
    ) -> ProcessHandle:
        """Start a shell command with stdin, stdout and stderr pipes.

        Args:
            command: Shell command string
            timeout: Seconds before the handle reports busy (None or <= 0 = never)
            encoding: Encoding used to decode stdout/stderr and encode stdin
            errors: Decoding error handler
            term_timeout: Seconds to wait after terminate before killing

        Returns:
            A handle whose stdout and stderr are non-blocking

        Raises:
            SpawnError: If the encoding is unknown, or the OS cannot create
                the process or its pipes
        """
        # Checked before Popen so no child is left behind
        try:
            codecs.getincrementaldecoder(encoding)
        except LookupError as e:
            raise SpawnError(command, f"unknown encoding {encoding!r}") from e

        try:
            # bufsize=0: the pipes are raw files read with os.read
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(command, str(e)) from e

        try:
            os.set_blocking(process.stdout.fileno(), False)
            os.set_blocking(process.stderr.fileno(), False)
        except OSError as e:
            process.kill()
            process.wait()
            _close_quietly(process.stdin, process.stdout, process.stderr)
            raise SpawnError(command, f"cannot make pipes non-blocking: {e}") from e

        logger.debug(f"Spawned pid={process.pid} timeout={timeout} command={command!r}")
        return cls(
            command,
            process,
            timeout,
            encoding=encoding,
            errors=errors,
            term_timeout=term_timeout,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def command(self) -> str:
        return self._command

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has run."""
        return self._process is None

    @property
    def elapsed(self) -> float:
        """Seconds since the process was spawned."""
        return time.monotonic() - self._start

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def is_active(self) -> bool:
        """Check whether stdout is still open.

        Drains any available stdout into the pending buffer first, so a
        liveness check never drops data. One drain reads at most
        ``MAX_DRAIN_BYTES``; end-of-stream is only seen once the pipe is
        empty, so a chatty child can take several calls to report inactive.

        Returns:
            False once stdout reached end-of-stream, even if the process has
            not exited yet
        """
        self._require_process()
        self._pending += self._drain_stdout()
        return not self._stdout_eof

    def listen(self) -> str:
        """Return the stdout text produced so far and clear the buffer.

        Never waits for more data to arrive. At most ``MAX_DRAIN_BYTES`` are
        read from the pipe per call; the rest is returned by later calls.
        """
        self._require_process()
        text = self._pending + self._drain_stdout()
        self._pending = ""
        return text

    def get_error(self) -> str:
        """Return the stderr text currently available.

        Nothing is kept between calls. Reads at most ``MAX_DRAIN_BYTES``.
        """
        self._require_process()
        return self._drain_stderr()

    def take_remainder(self) -> tuple[str, str]:
        """Return and clear the text collected while closing.

        :meth:`close` drains both pipes while it waits for the process and
        flushes the decoders once it is reaped, so a trailing partial
        character comes back as a replacement character instead of being
        dropped. Callers that read through :meth:`listen` and
        :meth:`get_error` collect the rest here.

        Returns:
            Tuple of (stdout text, stderr text)
        """
        remainder = (self._pending, self._error_tail)
        self._pending = ""
        self._error_tail = ""
        return remainder

    def tell(self, text: str, *, eof: bool = False, strict: bool = False) -> bool:
        """Write text to the child's stdin.

        Best effort: the child may not have consumed the text on return.

        Args:
            text: Text to write
            eof: Close stdin after writing
            strict: Raise WriteError instead of returning False

        Returns:
            Whether the text was written

        Raises:
            WriteError: If strict and the write failed
        """
        try:
            if self._process is None:
                raise ProcessClosedError(f"Handle for {self._command!r} is closed")
            stdin = self._process.stdin
            if stdin is None or stdin.closed:
                raise ValueError("stdin is closed")
            view = memoryview(text.encode(self._encoding))
            while view:
                written = stdin.write(view)
                view = view[written:]
            if eof:
                stdin.close()
        except (OSError, ValueError, ProcessClosedError) as e:
            logger.warning(f"Write to pid={self._pid} failed: {e}")
            if strict:
                raise WriteError(self._command, str(e)) from e
            return False
        return True

    def _drain_stdout(self, final: bool = False) -> str:
        if self._stdout_eof:
            return ""
        data, eof = _read_available(self._process.stdout)
        self._stdout_eof = eof or final
        return self._stdout_decoder.decode(data, final=self._stdout_eof)

    def _drain_stderr(self, final: bool = False) -> str:
        if self._stderr_eof:
            return ""
        data, eof = _read_available(self._process.stderr)
        self._stderr_eof = eof or final
        return self._stderr_decoder.decode(data, final=self._stderr_eof)

    # ------------------------------------------------------------------
    # Timeout and status
    # ------------------------------------------------------------------

    def is_busy(self) -> bool:
        """Check whether the command has run longer than its timeout.

        Purely a clock check; the process state is not consulted.
        """
        return self._timeout is not None and self._start + self._timeout < time.monotonic()

    def remaining(self) -> float | None:
        """Seconds left in the timeout budget, None without a timeout."""
        if self._timeout is None:
            return None
        return max(0.0, self._start + self._timeout - time.monotonic())

    def get_status(self) -> ProcessStatus:
        """Query the OS status of the process without waiting."""
        process = self._require_process()
        code = process.poll()
        signaled = code is not None and code < 0 and not IS_WINDOWS
        return ProcessStatus(
            command=self._command,
            pid=self._pid,
            running=code is None,
            exit_code=code,
            signaled=signaled,
            term_signal=-code if signaled else None,
        )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def close(self, *, terminate: bool = False) -> int:
        """Stop the process, reap it and release the pipes.

        Without ``terminate`` the process is given the rest of its timeout
        budget to exit on its own (forever when there is no timeout) and is
        terminated afterwards. Both pipes are drained while waiting, so a
        child blocked on a full stderr pipe can still exit. With
        ``terminate`` it is terminated right away.

        Whatever is left in the pipes after the reap is decoded with the
        decoders flushed and kept for :meth:`take_remainder`.

        Termination strategy:
        1. Send SIGTERM (TerminateProcess on Windows)
        2. Wait up to term_timeout for exit
        3. If still running, send SIGKILL and wait

        Args:
            terminate: Terminate immediately instead of waiting

        Returns:
            The exit code (negative signal number if killed on POSIX)

        Raises:
            ProcessClosedError: If the handle was already closed
        """
        process = self._require_process()

        if terminate:
            self._terminate(process)
        elif not self._wait_draining(process):
            logger.debug(f"pid={self._pid} still running after stdout closed")
            self._terminate(process)

        self._pending += self._drain_stdout(final=True)
        self._error_tail += self._drain_stderr(final=True)
        _close_quietly(process.stdin, process.stdout, process.stderr)
        self._process = None

        logger.debug(
            f"Reaped pid={self._pid} returncode={process.returncode} "
            f"elapsed={self.elapsed:.2f}s"
        )
        return process.returncode

    def _wait_draining(self, process: subprocess.Popen) -> bool:
        """Wait for exit within the timeout budget, draining both pipes.

        Returns:
            Whether the process exited before the budget ran out
        """
        while process.poll() is None:
            self._pending += self._drain_stdout()
            self._error_tail += self._drain_stderr()
            remaining = self.remaining()
            if remaining is not None and remaining <= 0:
                return False
            time.sleep(CLOSE_POLL_INTERVAL)
        return True

    def _terminate(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return

        logger.debug(f"Terminating pid={self._pid}")
        try:
            process.terminate()
            try:
                process.wait(timeout=self._term_timeout)
                return
            except subprocess.TimeoutExpired:
                pass

            logger.debug(f"Force killing pid={self._pid}")
            process.kill()
        except ProcessLookupError:
            logger.debug(f"Process already exited pid={self._pid}")
        process.wait()

    def _require_process(self) -> subprocess.Popen:
        if self._process is None:
            raise ProcessClosedError(f"Handle for {self._command!r} is closed")
        return self._process

    def __enter__(self) -> ProcessHandle:
        return self

    def __exit__(self, *exc_info) -> None:
        if not self.closed:
            self.close(terminate=True)

    def __repr__(self) -> str:
        status = "closed" if self.closed else ("eof" if self._stdout_eof else "active")
        return (
            f"ProcessHandle(pid={self._pid}, "
            f"status={status}, "
            f"elapsed={self.elapsed:.1f}s, "
            f"command={self._command!r})"
        )


def _read_available(stream: IO[bytes]) -> tuple[bytes, bool]:
    """Read what a non-blocking pipe holds right now.

    Returns:
        Tuple of (data, reached_eof)
    """
    fd = stream.fileno()
    chunks: list[bytes] = []
    total = 0
    while total < MAX_DRAIN_BYTES:
        try:
            chunk = os.read(fd, READ_CHUNK)
        except BlockingIOError:
            break
        if not chunk:
            return b"".join(chunks), True
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks), False


def _close_quietly(*streams: IO[bytes] | None) -> None:
    for stream in streams:
        if stream is None:
            continue
        try:
            stream.close()
        except OSError:
            # stdin of an exited child may report a broken pipe on close
            pass
