"""ingestion/side_channels.py — File-based command and telemetry channels.

Small text files in the work directory let an external tool drive the
session without speaking HTTP or WebSocket:

    playground.strudel  editor mirror: file <-> browser editor content
    playground.cmd      transport verbs (play, stop, toggle, play-once)
    playground.errors   latest browser error/warning (overwritten)
    playground.debug    browser debug lines (append-only, trimmed at startup)

Watchers poll file signatures (``st_mtime_ns``, ``st_size``) from the event
loop. A missing file means "no change", never an error. A read that fails
with ``OSError`` (file replaced mid-write) is retried once after a short
delay; if it fails again the file is treated as gone. Content that is not
UTF-8 text is ignored the same way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from infrastructure.retry import with_retry

logger = logging.getLogger(__name__)

COMMAND_VERBS: frozenset[str] = frozenset({"play", "stop", "toggle", "play-once"})

TRANSIENT_RETRY_SECONDS = 0.05

Publish = Callable[[dict[str, Any]], object]
Signature = tuple[int, int]
ProblemLevel = Literal["error", "warn"]


@with_retry(max_attempts=2, base_seconds=TRANSIENT_RETRY_SECONDS, exceptions=(OSError,))
async def _read_text_retrying(path: Path) -> str:
    return path.read_text(encoding="utf-8")


async def read_text_or_none(path: Path) -> str | None:
    """Read a side-channel file; None if it is absent or stays unreadable."""
    if not path.exists():
        return None
    try:
        return await _read_text_retrying(path)
    except RuntimeError as exc:
        logger.debug("Treating %s as deleted: %s", path, exc.__cause__)
        return None
    except UnicodeDecodeError as exc:
        logger.warning("Ignoring %s, not UTF-8 text: %s", path, exc)
        return None


def file_signature(path: Path) -> Signature | None:
    """(mtime_ns, size) of ``path``, or None if it does not exist."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return (stat.st_mtime_ns, stat.st_size)


class PolledFile:
    """Base class for a file watched by polling its signature.

    Subclasses implement ``on_change``; ``run`` drives ``poll_once`` forever
    at ``interval`` seconds.

    Args:
        path: File to watch.
        interval: Seconds between polls.
        publish: Callback receiving events to broadcast.
    """

    def __init__(self, path: Path, interval: float, publish: Publish) -> None:
        self.path = path
        self.interval = interval
        self._publish = publish
        self._signature: Signature | None = file_signature(path)

    async def poll_once(self) -> bool:
        """Check the file once. Returns True if a change was handled."""
        signature = file_signature(self.path)
        if signature == self._signature:
            return False
        self._signature = signature
        if signature is None:
            return False
        return await self.on_change(signature)

    async def on_change(self, signature: Signature) -> bool:
        raise NotImplementedError

    async def run(self) -> None:
        logger.info("Watching %s every %.2fs", self.path, self.interval)
        while True:
            try:
                await self.poll_once()
            except OSError as exc:
                logger.warning("Polling %s failed: %s", self.path, exc)
            except Exception:
                logger.exception("Unexpected error polling %s", self.path)
            await asyncio.sleep(self.interval)


class EditorMirror(PolledFile):
    """Two-way mirror between a text file and the browser editor.

    External edits to the file are broadcast as ``{"type": "code"}``
    events. Content received from a client is written to the file, and the
    file change caused by that write is not echoed back: each self-write
    records the file signature it produced, and a poll that sees one of
    those signatures is swallowed. Any other change is reported normally.
    """

    def __init__(self, path: Path, interval: float, publish: Publish) -> None:
        super().__init__(path, interval, publish)
        self._content = ""
        self._pending_writes: set[Signature] = set()

    @property
    def content(self) -> str:
        """Last known editor content."""
        return self._content

    async def load(self) -> str:
        """Read the current file content ('' if absent) as the baseline."""
        self._content = await read_text_or_none(self.path) or ""
        self._signature = file_signature(self.path)
        return self._content

    async def on_change(self, signature: Signature) -> bool:
        if signature in self._pending_writes:
            self._pending_writes.clear()
            return False
        content = await read_text_or_none(self.path)
        if content is None or content == self._content:
            return False
        self._content = content
        logger.info("Editor file changed, pushing %d chars", len(content))
        self._publish({"type": "code", "content": content})
        return True

    def write_from_client(self, content: str) -> bool:
        """Store editor content sent by a client.

        Returns:
            False if the content is unchanged (nothing written).
        """
        if content == self._content:
            return False
        self._content = content
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(content, encoding="utf-8")
        signature = file_signature(self.path)
        if signature is not None:
            self._pending_writes.add(signature)
        logger.info("Editor content saved from client (%d chars)", len(content))
        return True


class CommandWatcher(PolledFile):
    """Consumes transport verbs written to the command file.

    The file holds ``verb`` or ``verb:anything``; a recognised verb is
    broadcast as ``{"type": verb}`` and the file is truncated so the
    command fires at most once per write. Unrecognised content is left alone.
    """

    async def on_change(self, signature: Signature) -> bool:
        raw = await read_text_or_none(self.path)
        if raw is None:
            return False
        verb = raw.strip().split(":")[0]
        if verb not in COMMAND_VERBS:
            return False
        logger.info("Command: %s", verb)
        self._publish({"type": verb})
        self.path.write_text("", encoding="utf-8")
        self._signature = file_signature(self.path)
        return True


class SessionLog:
    """Appends browser-reported problems and debug lines to files.

    The errors file only ever holds the latest error or warning; the debug
    file is append-only.

    Args:
        errors_path: File overwritten with the latest error/warning.
        debug_path: File debug lines are appended to.
        clock: Returns the current time for line stamps.
    """

    def __init__(
        self,
        errors_path: Path,
        debug_path: Path,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.errors_path = errors_path
        self.debug_path = debug_path
        self._clock = clock

    def _stamp(self) -> str:
        return self._clock().strftime("%H:%M:%S")

    def record_problem(self, level: ProblemLevel, message: str) -> str:
        """Replace the errors file with one stamped line. Returns the line."""
        line = f"[{self._stamp()}] {level.upper()}: {message}\n"
        self.errors_path.parent.mkdir(parents=True, exist_ok=True)
        self.errors_path.write_text(line, encoding="utf-8")
        logger.warning("Client %s: %s", level, message)
        return line

    def append_debug(self, message: str) -> str:
        """Append one stamped line to the debug file. Returns the line."""
        line = f"[{self._stamp()}] {message}\n"
        self.debug_path.parent.mkdir(parents=True, exist_ok=True)
        with self.debug_path.open("a", encoding="utf-8") as fh:
            fh.write(line)
        return line

    def trim_debug(self, max_bytes: int, keep_lines: int) -> bool:
        """Keep only the last ``keep_lines`` lines if the file exceeds ``max_bytes``.

        Returns:
            True if the file was trimmed.
        """
        try:
            size = self.debug_path.stat().st_size
        except FileNotFoundError:
            return False
        if size <= max_bytes:
            return False
        lines = self.debug_path.read_text(encoding="utf-8", errors="replace").splitlines()
        kept = lines[-keep_lines:]
        self.debug_path.write_text("\n".join(kept) + "\n", encoding="utf-8")
        logger.info("Trimmed %s from %d bytes to %d lines", self.debug_path, size, len(kept))
        return True
