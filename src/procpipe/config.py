"""procpipe environment configuration.

Environment variables:
    PROCPIPE_CHUNK_SIZE: Maximum bytes read per readiness notification
        - default 8192, clamped to 1..1048576
        - invalid values fall back to the default

    PROCPIPE_NEW_SESSION: Start children in a new session/process group
        - true/1/yes/on = enabled
        - false/0/no/off = disabled (default)

    PROCPIPE_REAP_TIMEOUT: Seconds to wait for the child to become reapable
        after its stdout closed
        - default 5.0, clamped to 0..60

    PROCPIPE_REAP_INTERVAL: Seconds between two status checks while waiting
        - default 0.01, clamped to 0.001..1

    PROCPIPE_LOG_DEBUG: Debug logging
        - true/1/yes/on = enabled (logs go to a temp file)
        - false/0/no/off = disabled (default, logs go to stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_CHUNK_SIZE = 8192
MAX_CHUNK_SIZE = 1024 * 1024
DEFAULT_REAP_TIMEOUT = 5.0
DEFAULT_REAP_INTERVAL = 0.01


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_chunk_size(value: str | None) -> int:
    if not value:
        return DEFAULT_CHUNK_SIZE
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_CHUNK_SIZE
    return max(1, min(size, MAX_CHUNK_SIZE))


def _parse_seconds(value: str | None, default: float, low: float, high: float) -> float:
    """Parse a float environment variable clamped to [low, high]."""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(low, min(seconds, high))


@dataclass
class Config:
    """procpipe runtime configuration.

    Attributes:
        chunk_size: Maximum bytes read per readiness notification
        new_session: Start children in their own session (signals hit the group)
        reap_timeout: Grace period for the child to become reapable after stdout EOF
        reap_interval: Delay between status checks during the grace period
        log_debug: Debug logging to a temp file
        log_file: Log file path (set automatically when log_debug=True)
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    new_session: bool = False
    reap_timeout: float = DEFAULT_REAP_TIMEOUT
    reap_interval: float = DEFAULT_REAP_INTERVAL
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(chunk_size={self.chunk_size}, "
            f"new_session={self.new_session}, "
            f"reap_timeout={self.reap_timeout}, "
            f"reap_interval={self.reap_interval}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the system temp dir."""
    log_dir = Path(tempfile.gettempdir()) / "procpipe"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procpipe_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load the configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("PROCPIPE_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        chunk_size=_parse_chunk_size(os.environ.get("PROCPIPE_CHUNK_SIZE")),
        new_session=_parse_bool(os.environ.get("PROCPIPE_NEW_SESSION"), default=False),
        reap_timeout=_parse_seconds(
            os.environ.get("PROCPIPE_REAP_TIMEOUT"), DEFAULT_REAP_TIMEOUT, 0.0, 60.0
        ),
        reap_interval=_parse_seconds(
            os.environ.get("PROCPIPE_REAP_INTERVAL"), DEFAULT_REAP_INTERVAL, 0.001, 1.0
        ),
        log_debug=log_debug,
        log_file=log_file,
    )


# Global configuration (lazily loaded)
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the global configuration (used by tests)."""
    global _config
    _config = load_config()
    return _config
