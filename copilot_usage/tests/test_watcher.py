import asyncio
import tempfile
import unittest
from pathlib import Path

from watchfiles import Change

from copilot_usage.errors import WatcherSetupError
from copilot_usage.watcher.debounce import Debouncer
from copilot_usage.watcher.file_watcher import FileWatcher


class DebouncerTests(unittest.IsolatedAsyncioTestCase):
    async def test_only_last_call_in_burst_runs(self) -> None:
        calls: list[str] = []
        debouncer = Debouncer(20)

        debouncer.schedule("a.json", lambda: calls.append("first"))
        debouncer.schedule("a.json", lambda: calls.append("second"))
        debouncer.schedule("b.json", lambda: calls.append("other"))
        self.assertEqual(debouncer.pending, 2)

        await asyncio.sleep(0.1)

        self.assertEqual(sorted(calls), ["other", "second"])
        self.assertEqual(debouncer.pending, 0)

    async def test_async_callbacks_are_awaited(self) -> None:
        done = asyncio.Event()
        debouncer = Debouncer(0)

        async def handler() -> None:
            done.set()

        debouncer.schedule("k", handler)
        await asyncio.wait_for(done.wait(), timeout=1)

    async def test_cancel_all_prevents_runs(self) -> None:
        calls: list[int] = []
        debouncer = Debouncer(20)
        debouncer.schedule(1, lambda: calls.append(1))
        debouncer.schedule(2, lambda: calls.append(2))

        self.assertEqual(debouncer.cancel_all(), 2)
        await asyncio.sleep(0.06)

        self.assertEqual(calls, [])
        self.assertFalse(debouncer.cancel(1))

    async def test_handler_errors_are_logged(self) -> None:
        debouncer = Debouncer(0)

        def broken() -> None:
            raise ValueError("bad file")

        with self.assertLogs("copilot_usage.watcher", level="ERROR"):
            task = debouncer.schedule("k", broken)
            await task


class FileWatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.changed: list[Path] = []
        self.deleted: list[Path] = []
        self.watcher = FileWatcher(
            "sessions",
            path_filter=lambda p: p.suffix == ".json",
            on_change=self.changed.append,
            on_delete=self.deleted.append,
            debounce_ms=10,
        )

    async def test_classify_filters_paths(self) -> None:
        changes = {
            (Change.added, str(self.root / "a.json")),
            (Change.modified, str(self.root / "b.txt")),
            (Change.deleted, str(self.root / "c.json")),
        }
        classified = sorted(self.watcher._classify_changes(changes))
        self.assertEqual(classified, [("deleted", self.root / "c.json"), ("modified", self.root / "a.json")])

    async def test_dispatch_debounces_changes_and_forwards_deletes(self) -> None:
        path = self.root / "a.json"
        self.watcher.dispatch("modified", path)
        self.watcher.dispatch("modified", path)
        self.watcher.dispatch("deleted", self.root / "gone.json")

        self.assertEqual(self.deleted, [self.root / "gone.json"])
        await asyncio.sleep(0.08)
        self.assertEqual(self.changed, [path])

    async def test_delete_cancels_pending_change(self) -> None:
        path = self.root / "a.json"
        self.watcher.dispatch("modified", path)
        self.watcher.dispatch("deleted", path)

        await asyncio.sleep(0.05)
        self.assertEqual(self.changed, [])
        self.assertEqual(self.deleted, [path])

    async def test_start_without_existing_roots_fails(self) -> None:
        with self.assertRaises(WatcherSetupError):
            await self.watcher.start([self.root / "missing"])
        self.assertTrue(self.watcher.failed)
        self.assertFalse(self.watcher.is_running)

    async def test_start_and_stop(self) -> None:
        await self.watcher.start([self.root])
        self.assertTrue(self.watcher.is_running)

        await self.watcher.stop()
        self.assertFalse(self.watcher.is_running)

    async def test_dispose_cancels_pending_work(self) -> None:
        self.watcher.dispatch("modified", self.root / "a.json")
        self.watcher.dispose()

        await asyncio.sleep(0.05)
        self.assertEqual(self.changed, [])
        self.assertEqual(self.watcher.pending, 0)


if __name__ == "__main__":
    unittest.main()
