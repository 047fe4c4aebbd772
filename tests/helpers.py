"""Polling helpers shared by the process tests."""

from __future__ import annotations

import time


def drain_until_eof(handle, timeout: float = 5.0) -> str:
    """Listen until the handle's stdout closes and return everything read."""
    deadline = time.monotonic() + timeout
    output = ""
    while handle.is_active():
        output += handle.listen()
        if time.monotonic() > deadline:
            raise AssertionError(f"stdout of {handle!r} did not close in {timeout}s")
        time.sleep(0.01)
    return output + handle.listen()


def wait_until_exited(handle, timeout: float = 5.0) -> None:
    """Wait until the OS reports the process as no longer running."""
    deadline = time.monotonic() + timeout
    while handle.get_status().running:
        if time.monotonic() > deadline:
            raise AssertionError(f"{handle!r} did not exit in {timeout}s")
        time.sleep(0.01)
