"""In-memory analytics over unified usage events.

The index is rebuilt as a whole and swapped in one assignment, so queries
always see either the old or the new event set. Events are frozen models and
are shared with the unified service by reference.
"""
from __future__ import annotations

import bisect
import csv
import io
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from statistics import mean
from typing import Any, Callable, Iterable, Optional

from copilot_usage import config
from copilot_usage.date_utils import day_key, enumerate_days, ensure_utc, format_iso, start_of_day, to_epoch_ms, utc_now
from copilot_usage.models import (
    ActivityItem,
    AgentStat,
    AnalyticsFilter,
    CopilotUsageEvent,
    Kpis,
    LanguageStat,
    ModelStat,
    TimeRange,
    TimeSeriesPoint,
)
from copilot_usage.observability import record_ingest, start_span
from copilot_usage.services.callbacks import CallbackRegistry

logger = logging.getLogger("copilot_usage.analytics")

TIME_RANGE_DAYS: dict[str, int] = {"7d": 7, "30d": 30, "90d": 90}
VALID_TIME_RANGES: tuple[str, ...] = ("today", "7d", "30d", "90d")
UNKNOWN = "unknown"


def resolve_time_range(raw: Optional[str]) -> TimeRange:
    """Translate a caller-supplied range into one the index supports.

    ``all`` maps to the widest bounded window; anything unrecognised falls
    back to the configured default.
    """
    value = (raw or "").strip().lower()
    if value == "all":
        return "90d"
    if value in VALID_TIME_RANGES:
        return value  # type: ignore[return-value]
    default = (config.DEFAULT_TIME_RANGE or "").strip().lower()
    return default if default in VALID_TIME_RANGES else "30d"  # type: ignore[return-value]


def median(values: list[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile; 0 for an empty sample."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return float(ordered[min(rank, len(ordered)) - 1])


def ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def percent(value: float) -> float:
    return round(max(0.0, min(1.0, value)) * 100.0, 1)


def is_edit(event: CopilotUsageEvent) -> bool:
    return event.isInEdit or event.type == "edit"


def _durations(events: Iterable[CopilotUsageEvent]) -> list[float]:
    return [e.duration for e in events if e.duration is not None and not math.isnan(e.duration)]


def _top(groups: dict[str, list[CopilotUsageEvent]], limit: int) -> list[tuple[str, list[CopilotUsageEvent]]]:
    ranked = sorted(groups.items(), key=lambda item: (-len(item[1]), item[0]))
    return ranked[: max(0, limit)]


@dataclass
class _Index:
    by_id: dict[str, CopilotUsageEvent] = field(default_factory=dict)
    ordered: list[CopilotUsageEvent] = field(default_factory=list)
    keys: list[float] = field(default_factory=list)

    @classmethod
    def build(cls, by_id: dict[str, CopilotUsageEvent]) -> "_Index":
        ordered = sorted(by_id.values(), key=lambda e: (e.timestamp, e.id))
        return cls(by_id=by_id, ordered=ordered, keys=[to_epoch_ms(e.timestamp) for e in ordered])


class AnalyticsService:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now
        self._index = _Index()
        self._callbacks: CallbackRegistry[int] = CallbackRegistry("analytics")

    # ── Ingest ─────────────────────────────────────────────────────

    def ingest(self, events: Iterable[CopilotUsageEvent], *, replace: bool = False) -> int:
        """Index ``events``; ``replace`` discards everything indexed before.

        Returns the number of indexed events.
        """
        incoming = list(events)
        with start_span("analytics.ingest", {"count": len(incoming), "replace": replace}):
            by_id = {} if replace else dict(self._index.by_id)
            for event in incoming:
                by_id[event.id] = event
            self._index = _Index.build(by_id)
        record_ingest(len(incoming), replace)
        logger.debug("Ingested %d events (replace=%s); index holds %d", len(incoming), replace, len(by_id))
        self._callbacks.emit(len(by_id))
        return len(by_id)

    @property
    def event_count(self) -> int:
        return len(self._index.ordered)

    def on_analytics_updated(self, callback: Callable[[int], Any]) -> None:
        self._callbacks.add(callback)

    def remove_analytics_callback(self, callback: Callable[[int], Any]) -> bool:
        return self._callbacks.remove(callback)

    # ── Windowing ──────────────────────────────────────────────────

    def window(self, time_range: str) -> tuple[datetime, datetime]:
        now = ensure_utc(self._clock())
        resolved = resolve_time_range(time_range)
        if resolved == "today":
            return start_of_day(now), now
        return now - timedelta(days=TIME_RANGE_DAYS[resolved]), now

    def select(self, filter: Optional[AnalyticsFilter] = None) -> list[CopilotUsageEvent]:
        """Events inside the filter's window, oldest first."""
        filter = filter or AnalyticsFilter(timeRange=resolve_time_range(None))
        start, end = self.window(filter.timeRange)
        index = self._index
        lo = bisect.bisect_left(index.keys, to_epoch_ms(start))
        hi = bisect.bisect_right(index.keys, to_epoch_ms(end))
        events = index.ordered[lo:hi]
        if filter.workspaceId:
            events = [e for e in events if e.workspaceId == filter.workspaceId]
        if filter.agentIds:
            agents = set(filter.agentIds)
            events = [e for e in events if e.agent in agents]
        if filter.modelIds:
            models = set(filter.modelIds)
            events = [e for e in events if e.model in models]
        return events

    # ── Queries ────────────────────────────────────────────────────

    def get_kpis(self, filter: Optional[AnalyticsFilter] = None) -> Kpis:
        events = self.select(filter)
        turns = len(events)
        edit_events = [e for e in events if is_edit(e)]
        file_modifications = sum(e.fileModifications for e in edit_events)
        latencies = _durations(events)
        first_progress = [e.firstProgress for e in events if e.firstProgress is not None]
        return Kpis(
            sessions=len({e.sessionId for e in events}),
            turns=turns,
            requests=sum(e.modelRequests for e in events),
            files=len({e.filePath for e in events if e.filePath}),
            edits=len(edit_events),
            editRatio=ratio(len(edit_events), turns),
            fileModifications=file_modifications,
            editProductivity=ratio(file_modifications, len(edit_events)),
            latencyMsMedian=median(latencies),
            latencyMsMean=mean(latencies) if latencies else 0.0,
            latencyMsP95=percentile(latencies, 95),
            firstProgressMsMedian=median(first_progress),
            models=len({e.model for e in events if e.model}),
            agents=len({e.agent for e in events if e.agent}),
        )

    def get_time_series(self, filter: Optional[AnalyticsFilter] = None) -> list[TimeSeriesPoint]:
        filter = filter or AnalyticsFilter(timeRange=resolve_time_range(None))
        start, end = self.window(filter.timeRange)
        counts: dict[str, int] = defaultdict(int)
        for event in self.select(filter):
            counts[day_key(event.timestamp)] += 1
        return [TimeSeriesPoint(t=day, total=counts.get(day, 0)) for day in enumerate_days(start, end)]

    def get_agents(self, filter: Optional[AnalyticsFilter] = None, limit: int = 5) -> list[AgentStat]:
        groups: dict[str, list[CopilotUsageEvent]] = defaultdict(list)
        for event in self.select(filter):
            groups[event.agent or UNKNOWN].append(event)
        now = ensure_utc(self._clock())
        days = enumerate_days(now - timedelta(days=6), now)
        stats: list[AgentStat] = []
        for agent_id, events in _top(groups, limit):
            per_day: dict[str, int] = defaultdict(int)
            for event in events:
                per_day[day_key(event.timestamp)] += 1
            stats.append(
                AgentStat(
                    id=agent_id,
                    count=len(events),
                    latencyMsMedian=median(_durations(events)),
                    editRatio=ratio(sum(1 for e in events if is_edit(e)), len(events)),
                    series7d=[per_day.get(day, 0) for day in days],
                )
            )
        return stats

    def get_models(self, filter: Optional[AnalyticsFilter] = None, limit: int = 5) -> list[ModelStat]:
        groups: dict[str, list[CopilotUsageEvent]] = defaultdict(list)
        for event in self.select(filter):
            groups[event.model or UNKNOWN].append(event)
        return [
            ModelStat(
                id=model_id,
                count=len(events),
                tokensEst=sum(e.tokensUsed or 0 for e in events),
                latencyMsMedian=median(_durations(events)),
            )
            for model_id, events in _top(groups, limit)
        ]

    def get_languages(self, filter: Optional[AnalyticsFilter] = None, limit: int = 10) -> list[LanguageStat]:
        groups: dict[str, list[CopilotUsageEvent]] = defaultdict(list)
        for event in self.select(filter):
            groups[(event.language or "").strip() or UNKNOWN].append(event)
        return [LanguageStat(id=lang, count=len(events)) for lang, events in _top(groups, limit)]

    def get_activity(self, filter: Optional[AnalyticsFilter] = None, limit: int = 20) -> list[ActivityItem]:
        events = self.select(filter)
        recent = events[-limit:] if limit > 0 else []
        return [
            ActivityItem(
                timeISO=format_iso(e.timestamp),
                type=e.type,
                agent=e.agent or UNKNOWN,
                model=e.model or UNKNOWN,
                file=e.filePath,
                latencyMs=e.duration,
                sessionId=e.sessionId,
                requestId=e.requestId or "",
                isInEdit=e.isInEdit,
            )
            for e in reversed(recent)
        ]

    # ── Export ─────────────────────────────────────────────────────

    def export_csvs(self, filter: Optional[AnalyticsFilter] = None) -> list[dict[str, str]]:
        """Render KPI, agent, model and activity tables as CSV documents."""
        kpis = self.get_kpis(filter)
        agents = self.get_agents(filter, limit=100)
        models = self.get_models(filter, limit=100)
        activity = self.get_activity(filter, limit=200)
        return [
            {"name": "kpis.csv", "content": _csv([["metric", "value"], *kpis.model_dump().items()])},
            {
                "name": "agents.csv",
                "content": _csv(
                    [["id", "count", "latencyMsMedian", "editRatio"]]
                    + [[a.id, a.count, a.latencyMsMedian, a.editRatio] for a in agents]
                ),
            },
            {
                "name": "models.csv",
                "content": _csv(
                    [["id", "count", "tokensEst", "latencyMsMedian"]]
                    + [[m.id, m.count, m.tokensEst, m.latencyMsMedian] for m in models]
                ),
            },
            {
                "name": "activity.csv",
                "content": _csv(
                    [["timeISO", "type", "agent", "model", "file", "latencyMs", "sessionId", "requestId"]]
                    + [
                        [a.timeISO, a.type, a.agent, a.model, a.file, a.latencyMs, a.sessionId, a.requestId]
                        for a in activity
                    ]
                ),
            },
        ]


def _csv(rows: Iterable[Iterable[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])
    return buffer.getvalue()
