import csv
import io
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from copilot_usage.models import AnalyticsFilter, CopilotUsageEvent
from copilot_usage.services import analytics as analytics_module
from copilot_usage.services.analytics import AnalyticsService, median, percent, percentile, resolve_time_range

NOW = datetime(2025, 8, 13, 12, 0, tzinfo=timezone.utc)


def _event(event_id: str, timestamp: datetime, **fields) -> CopilotUsageEvent:
    payload = {
        "id": event_id,
        "timestamp": timestamp,
        "vscodeSessionId": "vscode-2025081312",
        "extensionHostSessionId": "exthost-s1",
        "sessionId": "s1",
        "requestId": f"req-{event_id}",
    }
    payload.update(fields)
    return CopilotUsageEvent(**payload)


def _filter(time_range: str = "7d", **fields) -> AnalyticsFilter:
    return AnalyticsFilter(timeRange=time_range, **fields)


class NumericHelperTests(unittest.TestCase):
    def test_median(self) -> None:
        self.assertEqual(median([10, 20, 30]), 20)
        self.assertEqual(median([10, 20]), 15)
        self.assertEqual(median([30, 10, 20]), 20)
        self.assertEqual(median([]), 0.0)

    def test_nearest_rank_percentile(self) -> None:
        self.assertEqual(percentile(list(range(1, 21)), 95), 19)
        self.assertEqual(percentile([5], 95), 5)
        self.assertEqual(percentile([], 95), 0.0)

    def test_percent(self) -> None:
        self.assertEqual(percent(0.1234), 12.3)
        self.assertEqual(percent(0), 0.0)
        self.assertEqual(percent(1), 100.0)

    def test_resolve_time_range(self) -> None:
        self.assertEqual(resolve_time_range("all"), "90d")
        self.assertEqual(resolve_time_range("7D"), "7d")
        self.assertEqual(resolve_time_range("today"), "today")
        self.assertEqual(resolve_time_range("forever"), "30d")
        self.assertEqual(resolve_time_range(None), "30d")
        with patch.object(analytics_module.config, "DEFAULT_TIME_RANGE", "7d"):
            self.assertEqual(resolve_time_range(""), "7d")


class AnalyticsServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = AnalyticsService(clock=lambda: NOW)

    def test_empty_index_yields_zero_kpis(self) -> None:
        kpis = self.service.get_kpis(_filter())

        self.assertEqual(kpis.turns, 0)
        self.assertEqual(kpis.editRatio, 0.0)
        self.assertEqual(kpis.editProductivity, 0.0)
        self.assertEqual(kpis.latencyMsMedian, 0.0)
        self.assertEqual(kpis.latencyMsP95, 0.0)
        self.assertEqual(self.service.get_agents(_filter()), [])
        self.assertEqual(self.service.get_activity(_filter()), [])

    def test_kpis(self) -> None:
        self.service.ingest(
            [
                _event("a", NOW - timedelta(hours=1), duration=10, firstProgress=2, modelRequests=3, agent="x",
                       model="gpt-4", filePath="a.py", type="edit", fileModifications=2),
                _event("b", NOW - timedelta(hours=2), duration=20, firstProgress=4, isInEdit=True, sessionId="s2",
                       model="gpt-4", filePath="a.py", fileModifications=1),
                _event("c", NOW - timedelta(hours=3), duration=30, agent="y", model="claude", filePath="b.ts",
                       fileModifications=5),
                _event("d", NOW - timedelta(hours=4)),
            ]
        )

        kpis = self.service.get_kpis(_filter())

        self.assertEqual(kpis.turns, 4)
        self.assertEqual(kpis.sessions, 2)
        self.assertEqual(kpis.requests, 6)
        self.assertEqual(kpis.files, 2)
        self.assertEqual(kpis.edits, 2)
        self.assertEqual(kpis.editRatio, 0.5)
        self.assertEqual(kpis.fileModifications, 3)
        self.assertEqual(kpis.editProductivity, 1.5)
        self.assertEqual(kpis.latencyMsMedian, 20)
        self.assertEqual(kpis.latencyMsMean, 20)
        self.assertEqual(kpis.latencyMsP95, 30)
        self.assertEqual(kpis.firstProgressMsMedian, 3)
        self.assertEqual(kpis.models, 2)
        self.assertEqual(kpis.agents, 2)

    def test_even_sample_median(self) -> None:
        self.service.ingest([_event("a", NOW, duration=10), _event("b", NOW, duration=20)])
        self.assertEqual(self.service.get_kpis(_filter()).latencyMsMedian, 15)

    def test_window_start_is_inclusive(self) -> None:
        start = NOW - timedelta(days=7)
        self.service.ingest(
            [
                _event("inside", start),
                _event("outside", start - timedelta(milliseconds=1)),
                _event("now", NOW),
                _event("future", NOW + timedelta(milliseconds=1)),
            ]
        )

        ids = [e.id for e in self.service.select(_filter("7d"))]

        self.assertEqual(ids, ["inside", "now"])

    def test_today_starts_at_utc_midnight(self) -> None:
        midnight = datetime(2025, 8, 13, tzinfo=timezone.utc)
        self.service.ingest([_event("a", midnight), _event("b", midnight - timedelta(milliseconds=1))])

        self.assertEqual([e.id for e in self.service.select(_filter("today"))], ["a"])

    def test_ingest_is_idempotent(self) -> None:
        events = [_event(str(i), NOW - timedelta(hours=i), duration=i * 10, agent=f"agent-{i % 2}") for i in range(6)]
        fresh = AnalyticsService(clock=lambda: NOW)
        fresh.ingest(events, replace=True)

        self.service.ingest(events)
        self.service.ingest(events, replace=True)

        for query in ("get_kpis", "get_time_series", "get_agents", "get_models", "get_languages", "get_activity"):
            self.assertEqual(getattr(self.service, query)(_filter()), getattr(fresh, query)(_filter()), query)

    def test_merge_ingest_replaces_by_id(self) -> None:
        self.service.ingest([_event("a", NOW, model="old"), _event("b", NOW)])
        self.service.ingest([_event("a", NOW, model="new")])

        self.assertEqual(self.service.event_count, 2)
        self.assertEqual(self.service.get_models(_filter())[0].id, "new")

        self.service.ingest([], replace=True)
        self.assertEqual(self.service.event_count, 0)

    def test_time_series_is_dense(self) -> None:
        self.service.ingest(
            [
                _event("a", NOW - timedelta(days=2)),
                _event("b", NOW - timedelta(days=2, hours=1)),
                _event("c", NOW),
            ]
        )

        series = self.service.get_time_series(_filter("7d"))

        self.assertEqual(len(series), 8)
        self.assertEqual(series[0].t, "2025-08-06")
        self.assertEqual(series[-1].t, "2025-08-13")
        self.assertEqual([p.total for p in series], [0, 0, 0, 0, 0, 2, 0, 1])

    def test_rollups_break_ties_by_id_and_group_unknown(self) -> None:
        self.service.ingest(
            [
                _event("1", NOW, agent="zeta", model="m1", language="python", duration=100),
                _event("2", NOW, agent="alpha", model="m1", language="python", tokensUsed=5),
                _event("3", NOW, agent=None, model=None, language="  ", tokensUsed=7),
                _event("4", NOW - timedelta(days=1), agent="zeta", type="edit", duration=300),
            ]
        )

        agents = self.service.get_agents(_filter())
        self.assertEqual([(a.id, a.count) for a in agents], [("zeta", 2), ("alpha", 1), ("unknown", 1)])
        self.assertEqual(agents[0].latencyMsMedian, 200)
        self.assertEqual(agents[0].editRatio, 0.5)
        self.assertEqual(agents[0].series7d, [0, 0, 0, 0, 0, 1, 1])

        models = self.service.get_models(_filter(), limit=2)
        self.assertEqual([(m.id, m.count) for m in models], [("m1", 2), ("unknown", 2)])
        self.assertEqual(models[0].tokensEst, 5)

        languages = self.service.get_languages(_filter())
        self.assertEqual([(lang.id, lang.count) for lang in languages], [("python", 2), ("unknown", 2)])

    def test_filters_narrow_by_workspace_agent_and_model(self) -> None:
        self.service.ingest(
            [
                _event("a", NOW, workspaceId="w1", agent="x", model="m1"),
                _event("b", NOW, workspaceId="w2", agent="x", model="m2"),
                _event("c", NOW, workspaceId="w1", agent="y", model="m1"),
            ]
        )

        self.assertEqual([e.id for e in self.service.select(_filter(workspaceId="w1"))], ["a", "c"])
        self.assertEqual([e.id for e in self.service.select(_filter(agentIds=["x"]))], ["a", "b"])
        self.assertEqual([e.id for e in self.service.select(_filter(agentIds=["x"], modelIds=["m1"]))], ["a"])

    def test_activity_is_newest_first_and_limited(self) -> None:
        self.service.ingest([_event(str(i), NOW - timedelta(minutes=i), isInEdit=i == 0) for i in range(5)])

        activity = self.service.get_activity(_filter(), limit=3)

        self.assertEqual([a.requestId for a in activity], ["req-0", "req-1", "req-2"])
        self.assertEqual(activity[0].timeISO, "2025-08-13T12:00:00.000Z")
        self.assertEqual(activity[0].agent, "unknown")
        self.assertTrue(activity[0].isInEdit)

    def test_update_subscribers_are_notified(self) -> None:
        counts: list[int] = []
        self.service.on_analytics_updated(counts.append)
        self.service.ingest([_event("a", NOW)])
        self.service.ingest([_event("b", NOW)])
        self.service.remove_analytics_callback(counts.append)
        self.service.ingest([], replace=True)

        self.assertEqual(counts, [1, 2])

    def test_export_csvs_quotes_cells(self) -> None:
        self.service.ingest([_event("a", NOW, agent='agent, "quoted"', filePath="a.py", duration=12)])

        files = {f["name"]: f["content"] for f in self.service.export_csvs(_filter())}

        self.assertEqual(sorted(files), ["activity.csv", "agents.csv", "kpis.csv", "models.csv"])
        self.assertIn('"agent, ""quoted"""', files["agents.csv"])
        rows = list(csv.reader(io.StringIO(files["activity.csv"])))
        self.assertEqual(rows[0][0], "timeISO")
        self.assertEqual(rows[1][2], 'agent, "quoted"')
        kpi_rows = dict(csv.reader(io.StringIO(files["kpis.csv"])))
        self.assertEqual(kpi_rows["turns"], "1")


if __name__ == "__main__":
    unittest.main()
