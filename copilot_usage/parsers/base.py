"""Shared workspace-storage discovery and watch plumbing for JSON scanners."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

from copilot_usage import paths
from copilot_usage.observability import record_parser_failure
from copilot_usage.watcher.file_watcher import FileWatcher

logger = logging.getLogger("copilot_usage.scanner")

ResultT = TypeVar("ResultT")


def load_json_object(path: Path, parser: str) -> Optional[dict[str, Any]]:
    """Read ``path`` as a JSON object, or return None (logged and counted)."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Skipping unreadable %s file %s: %s", parser, path, exc)
        record_parser_failure(parser)
        return None
    if not isinstance(raw, dict):
        logger.warning("Skipping %s file %s: top-level JSON is not an object", parser, path)
        record_parser_failure(parser)
        return None
    return raw


class WatchedFileScanner(Generic[ResultT]):
    """Two-level walk of ``<storageRoot>/<workspaceHash>/<subdirectory>``.

    Subclasses provide the subdirectory name, how candidate files are found
    inside it, how one file is parsed, and how to recognise a candidate path
    reported by the file watcher.
    """

    subdirectory: str = ""
    source: str = ""
    debounce_ms: int = 500

    def __init__(self, storage_roots: Optional[list[Path]] = None):
        self.storage_roots = list(storage_roots) if storage_roots is not None else paths.storage_roots()
        self._callbacks: list[Callable[[ResultT], Any]] = []
        self._watcher: Optional[FileWatcher] = None
        self._disposed = False

    # ── Discovery ──────────────────────────────────────────────────

    def available_roots(self) -> list[Path]:
        return [root for root in self.storage_roots if root.is_dir()]

    def _workspace_dirs(self) -> list[tuple[Path, Path]]:
        """Return (root, subdirectory) pairs for every workspace holding the subdirectory."""
        found: list[tuple[Path, Path]] = []
        for root in self.storage_roots:
            try:
                workspaces = sorted(p for p in root.iterdir() if p.is_dir())
            except OSError as exc:
                logger.warning("Cannot enumerate storage root %s: %s", root, exc)
                continue
            for workspace in workspaces:
                subdir = workspace / self.subdirectory
                if subdir.is_dir():
                    found.append((root, subdir))
        return found

    def find_all_files(self) -> list[Path]:
        files: list[Path] = []
        for _root, subdir in self._workspace_dirs():
            try:
                files.extend(self.candidate_files(subdir))
            except OSError as exc:
                logger.warning("Cannot enumerate %s: %s", subdir, exc)
        return files

    def candidate_files(self, directory: Path) -> list[Path]:
        raise NotImplementedError

    def is_candidate(self, path: Path) -> bool:
        raise NotImplementedError

    def parse_file(self, path: Path) -> Optional[ResultT]:
        raise NotImplementedError

    def get_workspace_info(self) -> list[dict[str, Any]]:
        """List workspaces that hold candidate files, with edition and file count."""
        info: list[dict[str, Any]] = []
        for root, subdir in self._workspace_dirs():
            try:
                count = len(self.candidate_files(subdir))
            except OSError:
                count = 0
            if count == 0:
                continue
            info.append(
                {
                    "workspaceId": subdir.parent.name,
                    "path": str(subdir.parent),
                    "edition": paths.edition_label(root),
                    "fileCount": count,
                }
            )
        return info

    # ── Watching ───────────────────────────────────────────────────

    async def start_watching(self, callback: Callable[[ResultT], Any]) -> None:
        """Register ``callback``; the first registration starts the shared watcher."""
        if self._disposed:
            logger.warning("%s scanner is disposed; not starting a watcher", self.source)
            return
        self._callbacks.append(callback)
        if self._watcher is not None and self._watcher.is_running:
            return
        self._watcher = FileWatcher(
            self.source,
            path_filter=self.is_candidate,
            on_change=self.handle_change,
            debounce_ms=self.debounce_ms,
        )
        try:
            await self._watcher.start(self.storage_roots)
        except Exception:
            self._callbacks.remove(callback)
            raise

    async def stop_watching(self) -> None:
        self._callbacks.clear()
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None

    def cancel_watching(self) -> None:
        """Synchronously drop callbacks and tear the watcher down; restartable."""
        self._callbacks.clear()
        if self._watcher is not None:
            self._watcher.dispose()
            self._watcher = None

    def dispose(self) -> None:
        self._disposed = True
        self.cancel_watching()

    def handle_change(self, path: Path) -> Optional[ResultT]:
        """Re-parse one changed file and hand the result to every callback."""
        result = self.parse_file(path)
        if result is None:
            return None
        for callback in list(self._callbacks):
            try:
                callback(result)
            except Exception:
                logger.exception("%s watch callback failed for %s", self.source, path)
        return result

    def get_watcher_status(self) -> dict[str, Any]:
        return {
            "isWatching": bool(self._watcher and self._watcher.is_running),
            "callbackCount": len(self._callbacks),
            "failed": bool(self._watcher and self._watcher.failed),
        }
