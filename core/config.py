"""
Configuration for the live session sync server.

An immutable config object decouples file locations, poll intervals and
limits from the components that use them. ``load_config()`` builds one from
environment variables (``.env`` supported via python-dotenv).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

EDITOR_FILE_NAME = "playground.strudel"
COMMAND_FILE_NAME = "playground.cmd"
ERRORS_FILE_NAME = "playground.errors"
DEBUG_FILE_NAME = "playground.debug"
COMPILED_FILE_NAME = "mix.strudel"


@dataclass(frozen=True)
class SyncConfig:
    """
    Configuration for the sync server.

    Attributes:
        host: Interface the HTTP/WebSocket server binds to.
        port: TCP port for both transports.
        db_path: SQLite file holding saved pieces and the live session.
        work_dir: Directory holding the side-channel files (editor mirror,
            command file, error/debug logs, compiled artifact).
        editor_poll_seconds: Poll interval for the editor mirror file.
        command_poll_seconds: Poll interval for the command file.
        debug_max_bytes: Debug log size above which it is trimmed at startup.
        debug_keep_lines: Lines kept when the debug log is trimmed.
        watch_files: Start the polling watchers in the app lifespan.
        log_level: Root logging level name.
        subscriber_queue_size: Outbound messages buffered per client before
            that client is dropped.

    Example:
        >>> config = SyncConfig(work_dir=Path("/tmp/mix"), watch_files=False)
        >>> config.compiled_path
        PosixPath('/tmp/mix/mix.strudel')
    """

    host: str = "127.0.0.1"
    port: int = 4322
    db_path: Path = Path("data/mix.db")
    work_dir: Path = Path(".")
    editor_poll_seconds: float = 0.3
    command_poll_seconds: float = 0.2
    debug_max_bytes: int = 1024 * 1024
    debug_keep_lines: int = 1000
    watch_files: bool = True
    log_level: str = "INFO"
    subscriber_queue_size: int = 256

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be in 1-65535, got {self.port}")
        if self.editor_poll_seconds <= 0:
            raise ValueError(
                f"editor_poll_seconds must be positive, got {self.editor_poll_seconds}"
            )
        if self.command_poll_seconds <= 0:
            raise ValueError(
                f"command_poll_seconds must be positive, got {self.command_poll_seconds}"
            )
        if self.debug_max_bytes <= 0:
            raise ValueError(f"debug_max_bytes must be positive, got {self.debug_max_bytes}")
        if self.debug_keep_lines <= 0:
            raise ValueError(f"debug_keep_lines must be positive, got {self.debug_keep_lines}")
        if self.subscriber_queue_size <= 0:
            raise ValueError(
                f"subscriber_queue_size must be positive, got {self.subscriber_queue_size}"
            )
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Unknown log_level {self.log_level!r}, "
                f"valid options: {sorted(VALID_LOG_LEVELS)}"
            )

    @property
    def editor_path(self) -> Path:
        return self.work_dir / EDITOR_FILE_NAME

    @property
    def command_path(self) -> Path:
        return self.work_dir / COMMAND_FILE_NAME

    @property
    def errors_path(self) -> Path:
        return self.work_dir / ERRORS_FILE_NAME

    @property
    def debug_path(self) -> Path:
        return self.work_dir / DEBUG_FILE_NAME

    @property
    def compiled_path(self) -> Path:
        return self.work_dir / COMPILED_FILE_NAME

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level.upper())


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> SyncConfig:
    """Build a SyncConfig from ``MIX_*`` environment variables.

    Reads a ``.env`` file first if present. Unset variables keep the
    dataclass defaults.

    Raises:
        ValueError: If a variable holds an unparseable or out-of-range value.
    """
    load_dotenv()
    defaults = SyncConfig()
    env = os.environ
    return SyncConfig(
        host=env.get("MIX_HOST", defaults.host),
        port=int(env.get("MIX_PORT", defaults.port)),
        db_path=Path(env.get("MIX_DB_PATH", str(defaults.db_path))),
        work_dir=Path(env.get("MIX_WORK_DIR", str(defaults.work_dir))),
        editor_poll_seconds=float(
            env.get("MIX_EDITOR_POLL_SECONDS", defaults.editor_poll_seconds)
        ),
        command_poll_seconds=float(
            env.get("MIX_COMMAND_POLL_SECONDS", defaults.command_poll_seconds)
        ),
        debug_max_bytes=int(env.get("MIX_DEBUG_MAX_BYTES", defaults.debug_max_bytes)),
        debug_keep_lines=int(env.get("MIX_DEBUG_KEEP_LINES", defaults.debug_keep_lines)),
        watch_files=_env_bool("MIX_WATCH_FILES", defaults.watch_files),
        log_level=env.get("MIX_LOG_LEVEL", defaults.log_level),
        subscriber_queue_size=int(
            env.get("MIX_SUBSCRIBER_QUEUE", defaults.subscriber_queue_size)
        ),
    )
