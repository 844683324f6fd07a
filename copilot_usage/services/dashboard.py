"""Dashboard facade wiring unified data, analytics and view state together."""
from __future__ import annotations

import logging
from typing import Any, Optional

from copilot_usage import config
from copilot_usage.date_utils import format_iso, utc_now
from copilot_usage.models import AnalyticsFilter, CopilotUsageEvent, UnifiedScanStats
from copilot_usage.services.analytics import AnalyticsService, resolve_time_range
from copilot_usage.services.unified_data import UnifiedSessionDataService
from copilot_usage.services.views import AnalyticsView

logger = logging.getLogger("copilot_usage.analytics")


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


class UsageDashboard:
    def __init__(
        self,
        unified: Optional[UnifiedSessionDataService] = None,
        analytics: Optional[AnalyticsService] = None,
    ):
        self.unified = unified or UnifiedSessionDataService()
        self.analytics = analytics or AnalyticsService()
        self.views: dict[str, AnalyticsView[Any]] = {
            "kpis": AnalyticsView("kpis", self.analytics.get_kpis),
            "timeSeries": AnalyticsView("timeSeries", self.analytics.get_time_series),
            "agents": AnalyticsView("agents", self.analytics.get_agents),
            "models": AnalyticsView("models", self.analytics.get_models),
            "languages": AnalyticsView("languages", self.analytics.get_languages),
            "activity": AnalyticsView("activity", self.analytics.get_activity),
        }
        self._filter = AnalyticsFilter(timeRange=resolve_time_range(None))
        self._wired = False

    def _wire(self) -> None:
        if self._wired:
            return
        self.unified.on_session_events_updated(self._on_session_events)
        self.analytics.on_analytics_updated(self._on_analytics_updated)
        self._wired = True

    def _on_session_events(self, events: list[CopilotUsageEvent]) -> None:
        self.analytics.ingest(events)

    def _on_analytics_updated(self, _count: int) -> None:
        self.refresh_views()

    def refresh_views(self, filter: Optional[AnalyticsFilter] = None) -> None:
        if filter is not None:
            self._filter = filter
        for view in self.views.values():
            view.refresh(self._filter)

    async def start(self) -> None:
        """Run the initial scan, seed analytics and start real-time updates."""
        self._wire()
        await self.unified.initialize()
        self.analytics.ingest(self.unified.get_session_events(), replace=True)

    async def stop(self) -> None:
        await self.unified.stop_watching()
        self.unified.dispose()

    async def scan_all_data(self) -> UnifiedScanStats:
        self._wire()
        scan = await self.unified.scan_all_data()
        self.analytics.ingest(scan.sessionEvents, replace=True)
        # Already initialized here, so this only starts watchers not yet running.
        await self.unified.initialize()
        return scan.stats

    def clear_data(self) -> dict[str, int]:
        deleted = self.analytics.event_count
        self.unified.reset_initialization()
        self.analytics.ingest([], replace=True)
        logger.info("Cleared %d indexed events", deleted)
        return {"deletedFiles": 0, "deletedEvents": deleted}

    def get_state(self, time_range: Optional[str] = None) -> dict[str, Any]:
        if time_range is not None:
            self.refresh_views(AnalyticsFilter(timeRange=resolve_time_range(time_range)))
        elif any(view.get_state() is None for view in self.views.values()):
            self.refresh_views()
        return {
            "timeRange": self._filter.timeRange,
            "initialized": self.unified.is_initialized,
            **{name: _dump(view.get_state()) for name, view in self.views.items()},
        }

    def get_export_data(self, time_range: Optional[str] = None) -> dict[str, Any]:
        filter = AnalyticsFilter(timeRange=resolve_time_range(time_range))
        events = self.analytics.select(filter)
        start, end = self.analytics.window(filter.timeRange)
        return {
            "metadata": {
                "exportedAt": format_iso(utc_now()),
                "timeRange": filter.timeRange,
                "windowStart": format_iso(start),
                "windowEnd": format_iso(end),
                "eventCount": len(events),
                "extensionVersion": config.EXTENSION_VERSION,
            },
            "events": _dump(events),
            "analytics": {
                "kpis": _dump(self.analytics.get_kpis(filter)),
                "agents": _dump(self.analytics.get_agents(filter, limit=100)),
                "models": _dump(self.analytics.get_models(filter, limit=100)),
                "languages": _dump(self.analytics.get_languages(filter, limit=100)),
                "timeSeries": _dump(self.analytics.get_time_series(filter)),
            },
        }


# Singleton instance
usage_dashboard = UsageDashboard()
