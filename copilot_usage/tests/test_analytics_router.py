import csv
import io
import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from fastapi import HTTPException

from copilot_usage.parsers.chat_sessions import ChatSessionScanner
from copilot_usage.parsers.edit_states import EditStateScanner
from copilot_usage.parsers.global_logs import GlobalLogScanner
from copilot_usage.parsers.transformer import SessionDataTransformer
from copilot_usage.routers import analytics as analytics_router
from copilot_usage.services.analytics import AnalyticsService
from copilot_usage.services.dashboard import UsageDashboard
from copilot_usage.services.unified_data import UnifiedSessionDataService

NOW = datetime(2025, 8, 13, 12, 0, tzinfo=timezone.utc)


def _dashboard(base: Path) -> UsageDashboard:
    storage = base / "workspaceStorage"
    unified = UnifiedSessionDataService(
        ChatSessionScanner([storage]),
        EditStateScanner([storage]),
        GlobalLogScanner([base / "logs"]),
        SessionDataTransformer(),
        watch_enabled=False,
    )
    return UsageDashboard(unified, AnalyticsService(clock=lambda: NOW))


def write_session(base: Path, session_id: str, requests: list[dict]) -> None:
    path = base / "workspaceStorage" / "ws-one" / "chatSessions" / f"{session_id}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"sessionId": session_id, "creationDate": 1755083277000, "requests": requests}),
        encoding="utf-8",
    )


class AnalyticsRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.base = Path(tmpdir.name)
        write_session(
            self.base,
            "s-1",
            [
                {"requestId": "r1", "timestamp": 1755083300000, "modelId": "gpt-4o", "result": {"timings": {"totalElapsed": 900}}},
                {"requestId": "r2", "timestamp": 1755083400000, "modelId": "gpt-4o", "result": {"timings": {"totalElapsed": 300}}},
                {"requestId": "r3", "timestamp": 1755083500000, "modelId": "claude", "message": {"text": "explain this"}},
            ],
        )
        self.dashboard = _dashboard(self.base)
        patcher = patch.object(analytics_router, "usage_dashboard", self.dashboard)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_scan_then_query_rollups(self) -> None:
        stats = await analytics_router.scan_all_data()
        self.assertEqual(stats["totalEvents"], 3)

        kpis = await analytics_router.get_kpis(time_range="7d")
        self.assertEqual(kpis.turns, 3)
        self.assertEqual(kpis.latencyMsMedian, 600)

        models = await analytics_router.get_models(time_range="7d")
        self.assertEqual([(m.id, m.count) for m in models], [("gpt-4o", 2), ("claude", 1)])

        activity = await analytics_router.get_activity(time_range="today", limit=2)
        self.assertEqual([a.requestId for a in activity], ["r3", "r2"])

        series = await analytics_router.get_timeseries(time_range="30d")
        self.assertEqual(len(series), 31)
        self.assertEqual(series[-1].total, 3)

    async def test_workspace_filter(self) -> None:
        await analytics_router.scan_all_data()

        self.assertEqual((await analytics_router.get_kpis(time_range="7d", workspace_id="ws-one")).turns, 3)
        self.assertEqual((await analytics_router.get_kpis(time_range="7d", workspace_id="other")).turns, 0)

    async def test_scan_without_storage_roots_returns_503(self) -> None:
        dashboard = _dashboard(self.base / "missing")
        with patch.object(analytics_router, "usage_dashboard", dashboard):
            with self.assertRaises(HTTPException) as ctx:
                await analytics_router.scan_all_data()
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_state_includes_views_and_watchers(self) -> None:
        await analytics_router.scan_all_data()

        state = await analytics_router.get_state(time_range="7d")

        self.assertEqual(state["kpis"]["turns"], 3)
        self.assertEqual(state["watchers"]["sessions"]["mode"], "stopped")
        self.assertEqual(state["lastScan"]["totalEvents"], 3)

    async def test_export_json_and_csv(self) -> None:
        await analytics_router.scan_all_data()

        exported = await analytics_router.get_export(time_range="7d")
        self.assertEqual(exported["metadata"]["eventCount"], 3)
        self.assertEqual(sorted(exported), ["analytics", "events", "metadata"])

        files = (await analytics_router.get_export(time_range="7d", format="csv"))["files"]
        activity = next(f["content"] for f in files if f["name"] == "activity.csv")
        rows = list(csv.reader(io.StringIO(activity)))
        self.assertEqual(len(rows), 4)

        with self.assertRaises(HTTPException) as ctx:
            await analytics_router.get_export(format="xml")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_clear_reports_deleted_events(self) -> None:
        await analytics_router.scan_all_data()

        self.assertEqual(await analytics_router.clear_data(), {"deletedFiles": 0, "deletedEvents": 3})
        self.assertEqual((await analytics_router.get_kpis(time_range="7d")).turns, 0)


if __name__ == "__main__":
    unittest.main()
