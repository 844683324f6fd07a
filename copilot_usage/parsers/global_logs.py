"""Scanner for Copilot Chat request logs across every VS Code session and window.

Layout: ``<logRoot>/<YYYYMMDDTHHMMSS>/window<N>/exthost/GitHub.copilot-chat/*.log``.
Files are read in full the first time they are seen and tail-read afterwards.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from copilot_usage import config, paths
from copilot_usage.errors import IOFailure
from copilot_usage.models import LogEntry, LogScanResult, LogScanStats
from copilot_usage.observability import record_scan, start_span
from copilot_usage.parsers.log_parsing import (
    parse_multi_line_requests,
    read_new_content,
    unmatched_tail,
)
from copilot_usage.watcher.file_watcher import FileWatcher

logger = logging.getLogger("copilot_usage.scanner")


@dataclass(frozen=True)
class LogFileRef:
    path: Path
    version: str
    session: str
    window: str


def is_copilot_log_dir(name: str) -> bool:
    lowered = name.lower()
    return "github" in lowered and "copilot-chat" in lowered


def describe_log_path(path: Path, root: Optional[Path] = None) -> LogFileRef:
    """Derive edition, session and window labels from a log file path."""
    parts = path.parts
    window = next((part for part in parts if part.startswith("window")), "unknown")
    session = "unknown"
    if window != "unknown":
        index = parts.index(window)
        if index > 0:
            session = parts[index - 1]
    return LogFileRef(
        path=path,
        version=paths.edition_label(root if root is not None else path),
        session=session,
        window=window,
    )


class GlobalLogScanner:
    """Discovers and reads request logs, tracking a byte offset per file."""

    source = "logs"

    def __init__(self, log_roots: Optional[list[Path]] = None):
        self.log_roots = list(log_roots) if log_roots is not None else paths.log_roots()
        self._offsets: dict[Path, int] = {}
        self._carry: dict[Path, str] = {}
        self._callbacks: list[Callable[[LogScanResult], Any]] = []
        self._watcher: Optional[FileWatcher] = None
        self._disposed = False

    # ── Discovery ──────────────────────────────────────────────────

    def find_all_log_files(self) -> list[LogFileRef]:
        refs: list[LogFileRef] = []
        for root in self.log_roots:
            try:
                session_dirs = sorted(p for p in root.iterdir() if p.is_dir())
            except OSError as exc:
                logger.warning("Cannot read log root %s: %s", root, exc)
                continue
            for session_dir in session_dirs:
                try:
                    windows = sorted(p for p in session_dir.iterdir() if p.name.startswith("window"))
                except OSError as exc:
                    logger.debug("Cannot read log session %s: %s", session_dir, exc)
                    continue
                for window_dir in windows:
                    exthost = window_dir / "exthost"
                    try:
                        copilot_dirs = sorted(
                            p for p in exthost.iterdir() if p.is_dir() and is_copilot_log_dir(p.name)
                        )
                        for copilot_dir in copilot_dirs:
                            for log_file in sorted(copilot_dir.glob("*.log")):
                                refs.append(describe_log_path(log_file, root))
                    except OSError as exc:
                        logger.debug("Cannot read exthost directory %s: %s", exthost, exc)
                        continue
        return refs

    def is_candidate(self, path: Path) -> bool:
        return path.suffix == ".log" and is_copilot_log_dir(path.parent.name) and path.parent.parent.name == "exthost"

    # ── Reading ────────────────────────────────────────────────────

    def _root_for(self, path: Path) -> Optional[Path]:
        for root in self.log_roots:
            if path.is_relative_to(root):
                return root
        return None

    def _read_ref(self, ref: LogFileRef) -> tuple[list[LogEntry], int]:
        """Read the unread part of one file and return (entries, bytes read)."""
        path = ref.path
        previous = self._offsets.get(path, 0)
        tail = read_new_content(path, previous)
        if tail.truncated:
            logger.info("Log file %s shrank; re-reading from start", path)
            self._carry.pop(path, None)
            previous = 0
        bytes_read = tail.new_position - previous
        self._offsets[path] = tail.new_position
        if not tail.content:
            return [], 0

        text = self._carry.pop(path, "") + tail.content
        entries = [
            entry.model_copy(update={"version": ref.version, "session": ref.session, "window": ref.window})
            for entry in parse_multi_line_requests(text, log_file_path=str(path))
        ]
        remainder = unmatched_tail(text)
        if remainder:
            self._carry[path] = remainder
        return entries, bytes_read

    def scan(self, full: bool = False) -> LogScanResult:
        """Read every discovered log file; ``full`` forgets offsets first."""
        started = time.monotonic()
        incremental = bool(self._offsets) and not full
        if full:
            self.reset()

        entries: list[LogEntry] = []
        error_files = 0
        bytes_read = 0
        with start_span("scan.logs", {"full": full}):
            refs = self.find_all_log_files()
            for ref in refs:
                try:
                    file_entries, read = self._read_ref(ref)
                except IOFailure as exc:
                    logger.warning("%s", exc)
                    error_files += 1
                    continue
                entries.extend(file_entries)
                bytes_read += read

        duration_ms = int((time.monotonic() - started) * 1000)
        record_scan(self.source, "error" if error_files else "success", duration_ms)
        logger.info(
            "Scanned %d log files (%d entries, %d bytes, %d errors) in %d ms",
            len(refs), len(entries), bytes_read, error_files, duration_ms,
        )
        return LogScanResult(
            logEntries=entries,
            stats=LogScanStats(
                totalFiles=len(refs),
                errorFiles=error_files,
                totalEntries=len(entries),
                bytesRead=bytes_read,
                scanDuration=duration_ms,
                incremental=incremental,
            ),
        )

    def read_changed_file(self, path: Path) -> LogScanResult:
        started = time.monotonic()
        ref = describe_log_path(path, self._root_for(path))
        try:
            entries, bytes_read = self._read_ref(ref)
            error_files = 0
        except IOFailure as exc:
            logger.warning("%s", exc)
            entries, bytes_read, error_files = [], 0, 1
        return LogScanResult(
            logEntries=entries,
            stats=LogScanStats(
                totalFiles=1,
                errorFiles=error_files,
                totalEntries=len(entries),
                bytesRead=bytes_read,
                scanDuration=int((time.monotonic() - started) * 1000),
                incremental=True,
            ),
        )

    def forget(self, path: Path) -> None:
        self._offsets.pop(path, None)
        self._carry.pop(path, None)

    def reset(self) -> None:
        self._offsets.clear()
        self._carry.clear()

    def get_offset(self, path: Path) -> int:
        return self._offsets.get(path, 0)

    # ── Watching ───────────────────────────────────────────────────

    async def start_watching(self, callback: Callable[[LogScanResult], Any]) -> None:
        if self._disposed:
            logger.warning("Log scanner is disposed; not starting a watcher")
            return
        self._callbacks.append(callback)
        if self._watcher is not None and self._watcher.is_running:
            return
        self._watcher = FileWatcher(
            self.source,
            path_filter=self.is_candidate,
            on_change=self.handle_change,
            on_delete=self.forget,
            debounce_ms=config.LOG_DEBOUNCE_MS,
        )
        try:
            await self._watcher.start(self.log_roots)
        except Exception:
            self._callbacks.remove(callback)
            raise

    async def stop_watching(self) -> None:
        self._callbacks.clear()
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None

    def cancel_watching(self) -> None:
        self._callbacks.clear()
        if self._watcher is not None:
            self._watcher.dispose()
            self._watcher = None

    def dispose(self) -> None:
        self._disposed = True
        self.cancel_watching()

    def handle_change(self, path: Path) -> LogScanResult:
        result = self.read_changed_file(path)
        if not result.logEntries:
            return result
        for callback in list(self._callbacks):
            try:
                callback(result)
            except Exception:
                logger.exception("Log watch callback failed for %s", path)
        return result

    def get_watcher_status(self) -> dict[str, Any]:
        return {
            "isWatching": bool(self._watcher and self._watcher.is_running),
            "callbackCount": len(self._callbacks),
            "failed": bool(self._watcher and self._watcher.failed),
            "trackedFiles": len(self._offsets),
        }
