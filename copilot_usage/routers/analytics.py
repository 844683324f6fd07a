"""Analytics router for KPIs, rollups, activity, scans and exports."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException

from copilot_usage.errors import StorageRootsUnavailableError
from copilot_usage.models import (
    ActivityItem,
    AgentStat,
    AnalyticsFilter,
    Kpis,
    LanguageStat,
    ModelStat,
    TimeSeriesPoint,
)
from copilot_usage.services.analytics import resolve_time_range
from copilot_usage.services.dashboard import usage_dashboard

analytics_router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _filter(time_range: Optional[str], workspace_id: Optional[str] = None) -> AnalyticsFilter:
    return AnalyticsFilter(timeRange=resolve_time_range(time_range), workspaceId=workspace_id or None)


@analytics_router.get("/kpis", response_model=Kpis)
async def get_kpis(time_range: Optional[str] = None, workspace_id: Optional[str] = None):
    return usage_dashboard.analytics.get_kpis(_filter(time_range, workspace_id))


@analytics_router.get("/timeseries", response_model=list[TimeSeriesPoint])
async def get_timeseries(time_range: Optional[str] = None, workspace_id: Optional[str] = None):
    return usage_dashboard.analytics.get_time_series(_filter(time_range, workspace_id))


@analytics_router.get("/agents", response_model=list[AgentStat])
async def get_agents(time_range: Optional[str] = None, workspace_id: Optional[str] = None, limit: int = 5):
    return usage_dashboard.analytics.get_agents(_filter(time_range, workspace_id), limit=limit)


@analytics_router.get("/models", response_model=list[ModelStat])
async def get_models(time_range: Optional[str] = None, workspace_id: Optional[str] = None, limit: int = 5):
    return usage_dashboard.analytics.get_models(_filter(time_range, workspace_id), limit=limit)


@analytics_router.get("/languages", response_model=list[LanguageStat])
async def get_languages(time_range: Optional[str] = None, workspace_id: Optional[str] = None, limit: int = 10):
    return usage_dashboard.analytics.get_languages(_filter(time_range, workspace_id), limit=limit)


@analytics_router.get("/activity", response_model=list[ActivityItem])
async def get_activity(time_range: Optional[str] = None, workspace_id: Optional[str] = None, limit: int = 20):
    return usage_dashboard.analytics.get_activity(_filter(time_range, workspace_id), limit=limit)


@analytics_router.get("/state")
async def get_state(time_range: Optional[str] = None) -> dict[str, Any]:
    stats = usage_dashboard.unified.get_last_scan_stats()
    return {
        **usage_dashboard.get_state(time_range),
        "watchers": usage_dashboard.unified.get_watcher_status(),
        "lastScan": stats.model_dump(mode="json") if stats else None,
    }


@analytics_router.get("/export")
async def get_export(time_range: Optional[str] = None, format: str = "json") -> dict[str, Any]:
    if format == "csv":
        return {"files": usage_dashboard.analytics.export_csvs(_filter(time_range))}
    if format != "json":
        raise HTTPException(status_code=400, detail=f"Unsupported export format {format!r}")
    return usage_dashboard.get_export_data(time_range)


@analytics_router.post("/scan")
async def scan_all_data() -> dict[str, Any]:
    try:
        stats = await usage_dashboard.scan_all_data()
    except StorageRootsUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return stats.model_dump(mode="json")


@analytics_router.post("/clear")
async def clear_data() -> dict[str, int]:
    return usage_dashboard.clear_data()
