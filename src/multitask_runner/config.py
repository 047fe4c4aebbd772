"""multitask-runner environment configuration.

Environment variables:
    MTR_TIMEOUT: default per-command timeout in seconds
        - unset/empty/invalid = no timeout (default)
        - 0 or negative = no timeout
        - e.g. "120" or "2.5"

    MTR_POLL_INTERVAL: sleep between polling passes that read nothing
        - default 0.01 seconds
        - clamped to 0-1 seconds, 0 disables the sleep

    MTR_TERM_TIMEOUT: grace period between terminate and kill
        - default 2.0 seconds
        - clamped to 0.1-30 seconds

    MTR_ENCODING: text encoding of child output
        - default utf-8

    MTR_LOG_DEBUG: debug logging mode
        - true/1/yes/on = enabled (log written to a temp file)
        - false/0/no/off = disabled (default, log to stderr)
"""

from __future__ import annotations

import codecs
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_POLL_INTERVAL = 0.01
DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_ENCODING = "utf-8"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None) -> float | None:
    """Parse the default timeout; anything non-positive means no timeout."""
    if not value or not value.strip():
        return None
    try:
        timeout = float(value)
    except ValueError:
        return None
    return timeout if timeout > 0 else None


def _parse_clamped(value: str | None, default: float, low: float, high: float) -> float:
    """Parse a float and clamp it into [low, high]."""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    return max(low, min(number, high))


def _parse_encoding(value: str | None) -> str:
    """Parse the output encoding, falling back to utf-8 for unknown codecs."""
    if not value or not value.strip():
        return DEFAULT_ENCODING
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return DEFAULT_ENCODING


@dataclass
class Config:
    """multitask-runner configuration.

    Attributes:
        timeout: default per-command timeout in seconds, None = no timeout
        poll_interval: sleep after a polling pass that read nothing
        term_timeout: seconds to wait after terminate before killing
        encoding: text encoding used to decode child output
        log_debug: debug logging mode (log written to a temp file)
        log_file: log file path (set automatically when log_debug=True)
    """

    timeout: float | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    encoding: str = DEFAULT_ENCODING
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(timeout={self.timeout}, "
            f"poll_interval={self.poll_interval}, "
            f"term_timeout={self.term_timeout}, "
            f"encoding={self.encoding}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log file path in the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "multitask-runner"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"mtr_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("MTR_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        timeout=_parse_timeout(os.environ.get("MTR_TIMEOUT")),
        poll_interval=_parse_clamped(
            os.environ.get("MTR_POLL_INTERVAL"), DEFAULT_POLL_INTERVAL, 0.0, 1.0
        ),
        term_timeout=_parse_clamped(
            os.environ.get("MTR_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT, 0.1, 30.0
        ),
        encoding=_parse_encoding(os.environ.get("MTR_ENCODING")),
        log_debug=log_debug,
        log_file=log_file,
    )


# Global instance, loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
