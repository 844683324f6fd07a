"""File watcher service using watchfiles.

Monitors storage and log roots for real-time changes and hands each
relevant path to a debounced handler.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from watchfiles import awatch, Change

from copilot_usage import config
from copilot_usage.errors import WatcherSetupError
from copilot_usage.observability import record_watch_event
from copilot_usage.watcher.debounce import Debouncer

logger = logging.getLogger("copilot_usage.watcher")


class FileWatcher:
    """Background watcher over a set of root directories.

    Uses `watchfiles` (Rust-accelerated) for efficient recursive watching.
    Added and modified paths accepted by ``path_filter`` are debounced per
    path and then passed to ``on_change``; deleted paths go to ``on_delete``
    immediately when one is given.
    """

    def __init__(
        self,
        name: str,
        *,
        path_filter: Callable[[Path], bool],
        on_change: Callable[[Path], Any],
        on_delete: Optional[Callable[[Path], Any]] = None,
        debounce_ms: int = 500,
    ):
        self.name = name
        self._path_filter = path_filter
        self._on_change = on_change
        self._on_delete = on_delete
        self._debouncer = Debouncer(debounce_ms)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._failed = False
        self._roots: list[Path] = []

    async def start(self, roots: list[Path]) -> None:
        """Start watching ``roots`` in a background task.

        Raises WatcherSetupError when none of the roots exists.
        """
        if self._running:
            logger.warning("File watcher %s already running", self.name)
            return

        watch_paths = [p for p in roots if p.is_dir()]
        if not watch_paths:
            self._failed = True
            raise WatcherSetupError(f"No watchable directories for {self.name}: {[str(p) for p in roots]}")

        self._roots = watch_paths
        self._stop_event = asyncio.Event()
        self._running = True
        self._failed = False
        self._task = asyncio.create_task(self._watch_loop(watch_paths, self._stop_event))
        logger.info("File watcher %s started on %d roots", self.name, len(watch_paths))

    async def stop(self) -> None:
        """Stop the watcher and wait for its task to finish."""
        task = self._task
        self.dispose()
        if task:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("File watcher %s stopped", self.name)

    def dispose(self) -> None:
        """Synchronously cancel the watch task and every pending debounced run."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._debouncer.cancel_all()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def pending(self) -> int:
        return self._debouncer.pending

    async def _watch_loop(self, watch_paths: list[Path], stop_event: asyncio.Event) -> None:
        """Main watching loop. Watches all roots for changes."""
        try:
            async for changes in awatch(
                *watch_paths,
                stop_event=stop_event,
                step=config.WATCH_BATCH_MS,
                recursive=True,
            ):
                if not self._running:
                    break
                for change, path in self._classify_changes(changes):
                    self.dispatch(change, path)
        except asyncio.CancelledError:
            logger.info("File watcher %s task cancelled", self.name)
        except Exception as e:
            self._failed = True
            logger.error("File watcher %s error: %s", self.name, e)
        finally:
            self._running = False

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[tuple[str, Path]]:
        """Classify raw watchfiles changes into (change_type, path) pairs.

        Only returns paths accepted by the watcher's filter.
        """
        result = []
        for change_type, path_str in changes:
            path = Path(path_str)
            if not self._path_filter(path):
                continue

            if change_type == Change.deleted:
                result.append(("deleted", path))
            elif change_type in (Change.modified, Change.added):
                result.append(("modified", path))

        return result

    def dispatch(self, change: str, path: Path) -> None:
        """Route one classified change; must be called from the event loop."""
        record_watch_event(self.name, change)
        if change == "deleted":
            self._debouncer.cancel(path)
            if self._on_delete is not None:
                try:
                    self._on_delete(path)
                except Exception:
                    logger.exception("Delete handler for %s failed", path)
            return
        self._debouncer.schedule(path, lambda: self._on_change(path))
