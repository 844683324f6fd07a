"""Unified session data service.

Runs the three scanners, merges their output into one deduplicated event
store, correlates chat turns with edit timelines, and keeps the store current
from file-watch notifications without rescanning the disk.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Optional

from copilot_usage import config
from copilot_usage.errors import NotInitializedError, StorageRootsUnavailableError
from copilot_usage.models import (
    CopilotUsageEvent,
    EditStateScan,
    EditStateScanResult,
    LogEntry,
    LogScanResult,
    SessionScan,
    SessionScanResult,
    UnifiedScan,
    UnifiedScanStats,
)
from copilot_usage.observability import record_scan, start_span
from copilot_usage.parsers.chat_sessions import ChatSessionScanner
from copilot_usage.parsers.edit_states import EditStateScanner, session_requests
from copilot_usage.parsers.global_logs import GlobalLogScanner
from copilot_usage.parsers.transformer import SessionDataTransformer
from copilot_usage.services.callbacks import CallbackRegistry

logger = logging.getLogger("copilot_usage.unified")

SessionEventsCallback = Callable[[list[CopilotUsageEvent]], Any]
LogEntriesCallback = Callable[[list[LogEntry]], Any]


class UnifiedSessionDataService:
    def __init__(
        self,
        session_scanner: Optional[ChatSessionScanner] = None,
        edit_state_scanner: Optional[EditStateScanner] = None,
        log_scanner: Optional[GlobalLogScanner] = None,
        transformer: Optional[SessionDataTransformer] = None,
        *,
        watch_enabled: Optional[bool] = None,
        watch_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
    ):
        self.session_scanner = session_scanner or ChatSessionScanner()
        self.edit_state_scanner = edit_state_scanner or EditStateScanner()
        self.log_scanner = log_scanner or GlobalLogScanner()
        self.transformer = transformer or SessionDataTransformer()
        self.watch_enabled = config.WATCH_ENABLED if watch_enabled is None else watch_enabled
        self.watch_retries = max(1, config.WATCH_MAX_RETRIES if watch_retries is None else watch_retries)
        self.retry_delay_seconds = (
            config.WATCH_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        )

        self._lock = asyncio.Lock()
        self._initialized = False
        self._disposed = False
        self._watchers_started = False
        # Bumped by reset_initialization so in-flight watcher setup can tell it is stale.
        self._generation = 0

        self._events: dict[str, CopilotUsageEvent] = {}
        self._events_by_request: dict[str, set[str]] = {}
        self._ordered: Optional[list[CopilotUsageEvent]] = None
        self._log_entries: dict[tuple, LogEntry] = {}
        self._session_results: dict[Path, SessionScanResult] = {}
        # Request ids per edit-state file, plus how many files mention each id.
        self._edit_sequences: dict[Path, list[str]] = {}
        self._edit_index: Counter[str] = Counter()
        self._last_stats: Optional[UnifiedScanStats] = None
        self._watch_modes: dict[str, str] = {}

        self._session_callbacks: CallbackRegistry[list[CopilotUsageEvent]] = CallbackRegistry("session events")
        self._log_callbacks: CallbackRegistry[list[LogEntry]] = CallbackRegistry("log entries")

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Run the cold-start scan once, then start watchers when enabled.

        Watcher startup is tracked apart from the scan, so calling this after
        an explicit ``scan_all_data()`` still starts real-time updates.
        """
        if self._disposed:
            return
        generation = self._generation
        if not self._initialized:
            async with self._lock:
                if self._is_stale(generation):
                    return
                if not self._initialized:
                    self._run_full_scan()
                    self._initialized = True
        if self.watch_enabled and not self._watchers_started and not self._is_stale(generation):
            await self.start_watching()

    async def scan_all_data(self) -> UnifiedScan:
        async with self._lock:
            scan = self._run_full_scan()
            self._initialized = True
            return scan

    def _is_stale(self, generation: int) -> bool:
        return self._disposed or generation != self._generation

    def reset_initialization(self) -> None:
        """Stop watchers and drop all cached state, back to cold start."""
        self._generation += 1
        for scanner in (self.session_scanner, self.edit_state_scanner, self.log_scanner):
            scanner.cancel_watching()
        self._watchers_started = False
        self._watch_modes.clear()
        self._events.clear()
        self._events_by_request.clear()
        self._ordered = None
        self._log_entries.clear()
        self._session_results.clear()
        self._edit_sequences.clear()
        self._edit_index.clear()
        self.log_scanner.reset()
        self._last_stats = None
        self._initialized = False
        logger.info("Unified session data reset")

    def dispose(self) -> None:
        self._disposed = True
        self._watchers_started = False
        for scanner in (self.session_scanner, self.edit_state_scanner, self.log_scanner):
            scanner.dispose()
        self._session_callbacks.clear()
        self._log_callbacks.clear()
        self._watch_modes.clear()

    # ── Full scan ──────────────────────────────────────────────────

    def _run_full_scan(self) -> UnifiedScan:
        started = time.monotonic()
        if not self.session_scanner.available_roots():
            record_scan("unified", "error", 0)
            raise StorageRootsUnavailableError(self.session_scanner.storage_roots)

        failed: list[str] = []
        with start_span("scan.unified"):
            session_scan = self._scan_source("sessions", self.session_scanner.scan_all, SessionScan, failed)
            edit_scan = self._scan_source("edit_states", self.edit_state_scanner.scan_all, EditStateScan, failed)
            log_scan = self._scan_source(
                "logs",
                self.log_scanner.scan,
                LogScanResult,
                failed,
            )

            self._edit_sequences = {
                result.stateFilePath: session_requests(result).requests for result in edit_scan.results
            }
            self._rebuild_edit_index()

            ordered_results = sorted(session_scan.results, key=lambda r: r.lastModified)
            events: dict[str, CopilotUsageEvent] = {}
            duplicates = 0
            for event in self.transformer.transform_results(ordered_results, self._edit_index):
                if event.id in events:
                    duplicates += 1
                events[event.id] = event

            self._events = events
            self._events_by_request = {}
            for event in events.values():
                self._events_by_request.setdefault(event.requestId, set()).add(event.id)
            self._ordered = None
            self._session_results = {r.sessionFilePath: r for r in ordered_results}
            self._merge_log_entries(log_scan.logEntries)

        duration_ms = int((time.monotonic() - started) * 1000)
        stats = UnifiedScanStats(
            sessions=session_scan.stats,
            editStates=edit_scan.stats,
            logs=log_scan.stats,
            totalEvents=len(events),
            duplicateEvents=duplicates,
            editCorrelatedEvents=sum(1 for e in events.values() if e.isInEdit),
            failedSources=failed,
            scanDuration=duration_ms,
        )
        self._last_stats = stats
        record_scan("unified", "degraded" if failed else "success", duration_ms)
        logger.info(
            "Unified scan: %d events (%d duplicates, %d in edits), %d log entries in %d ms",
            stats.totalEvents, duplicates, stats.editCorrelatedEvents, len(self._log_entries), duration_ms,
        )
        return UnifiedScan(sessionEvents=self._sorted_events(), logEntries=self._sorted_log_entries(), stats=stats)

    def _scan_source(self, name: str, scan: Callable[[], Any], empty: type, failed: list[str]) -> Any:
        try:
            return scan()
        except Exception:
            logger.exception("%s scan failed; continuing without it", name)
            failed.append(name)
            return empty()

    def _rebuild_edit_index(self) -> None:
        index: Counter[str] = Counter()
        for requests in self._edit_sequences.values():
            index.update(set(requests))
        self._edit_index = index

    def _merge_log_entries(self, entries: list[LogEntry]) -> list[LogEntry]:
        added: list[LogEntry] = []
        for entry in entries:
            key = entry.dedup_key
            if key in self._log_entries:
                continue
            self._log_entries[key] = entry
            added.append(entry)
        return added

    def _upsert(self, events: list[CopilotUsageEvent]) -> None:
        for event in events:
            self._events[event.id] = event
            self._events_by_request.setdefault(event.requestId, set()).add(event.id)
        self._ordered = None

    # ── Queries ────────────────────────────────────────────────────

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("UnifiedSessionDataService.initialize() has not completed")

    def _sorted_events(self) -> list[CopilotUsageEvent]:
        if self._ordered is None:
            self._ordered = sorted(self._events.values(), key=lambda e: (e.timestamp, e.id))
        return list(self._ordered)

    def _sorted_log_entries(self) -> list[LogEntry]:
        return sorted(self._log_entries.values(), key=lambda e: (e.timestamp, e.requestId, e.ccreqId))

    def get_session_events(self) -> list[CopilotUsageEvent]:
        self._require_initialized()
        return self._sorted_events()

    def get_log_entries(self) -> list[LogEntry]:
        self._require_initialized()
        return self._sorted_log_entries()

    def get_session_scan_results(self) -> list[SessionScanResult]:
        self._require_initialized()
        return list(self._session_results.values())

    def get_last_scan_stats(self) -> Optional[UnifiedScanStats]:
        return self._last_stats

    def is_in_edit(self, request_id: Optional[str]) -> bool:
        return bool(request_id) and self._edit_index[request_id] > 0

    # ── Subscriptions ──────────────────────────────────────────────

    def on_session_events_updated(self, callback: SessionEventsCallback) -> None:
        self._session_callbacks.add(callback)

    def remove_session_events_callback(self, callback: SessionEventsCallback) -> bool:
        return self._session_callbacks.remove(callback)

    def on_log_entries_updated(self, callback: LogEntriesCallback) -> None:
        self._log_callbacks.add(callback)

    def remove_log_entries_callback(self, callback: LogEntriesCallback) -> bool:
        return self._log_callbacks.remove(callback)

    # ── Real-time updates ──────────────────────────────────────────

    async def start_watching(self) -> dict[str, str]:
        if self._disposed:
            return dict(self._watch_modes)
        generation = self._generation
        self._watchers_started = True
        sources = (
            ("sessions", self.session_scanner, self.handle_session_result),
            ("edit_states", self.edit_state_scanner, self.handle_edit_state_result),
            ("logs", self.log_scanner, self.handle_log_result),
        )
        for name, scanner, handler in sources:
            if self._is_stale(generation):
                logger.info("Watcher startup abandoned: service was reset or disposed")
                break
            if self._watch_modes.get(name) == "watching":
                continue
            await self._start_source(name, scanner, handler, generation)
        return dict(self._watch_modes)

    async def _start_source(
        self, name: str, scanner: Any, handler: Callable[[Any], Any], generation: int
    ) -> bool:
        for attempt in range(1, self.watch_retries + 1):
            if self._is_stale(generation):
                return False
            try:
                await scanner.start_watching(handler)
            except Exception as exc:
                logger.warning("Watcher setup for %s failed (attempt %d/%d): %s", name, attempt, self.watch_retries, exc)
                if attempt < self.watch_retries:
                    await asyncio.sleep(self.retry_delay_seconds)
                continue
            if self._is_stale(generation):
                # Reset or dispose ran while the watcher was starting.
                await scanner.stop_watching()
                return False
            self._watch_modes[name] = "watching"
            return True
        if self._is_stale(generation):
            return False
        logger.warning("Watcher for %s unavailable; source stays in pull mode", name)
        self._watch_modes[name] = "pull"
        return False

    async def stop_watching(self) -> None:
        self._watchers_started = False
        for scanner in (self.session_scanner, self.edit_state_scanner, self.log_scanner):
            await scanner.stop_watching()
        self._watch_modes.clear()

    def get_watcher_status(self) -> dict[str, dict[str, Any]]:
        return {
            "sessions": {"mode": self._watch_modes.get("sessions", "stopped"), **self.session_scanner.get_watcher_status()},
            "edit_states": {"mode": self._watch_modes.get("edit_states", "stopped"), **self.edit_state_scanner.get_watcher_status()},
            "logs": {"mode": self._watch_modes.get("logs", "stopped"), **self.log_scanner.get_watcher_status()},
        }

    def handle_session_result(self, result: SessionScanResult) -> list[CopilotUsageEvent]:
        """Upsert the events of one re-parsed session file."""
        if self._disposed:
            return []
        events = self.transformer.transform_session(result, self._edit_index)
        self._session_results[result.sessionFilePath] = result
        self._upsert(events)
        if events:
            logger.debug("Session %s updated %d events", result.session.sessionId, len(events))
            self._session_callbacks.emit(events)
        return events

    def handle_edit_state_result(self, result: EditStateScanResult) -> list[CopilotUsageEvent]:
        """Replace one timeline and re-flag only the events whose ids it touches."""
        if self._disposed:
            return []
        key = result.stateFilePath
        old_ids = set(self._edit_sequences.get(key, []))
        new_sequence = session_requests(result).requests
        new_ids = set(new_sequence)
        self._edit_sequences[key] = new_sequence
        self._edit_index.subtract(old_ids)
        self._edit_index.update(new_ids)
        self._edit_index += Counter()  # drop ids no longer referenced

        affected = old_ids | new_ids
        changed: list[CopilotUsageEvent] = []
        for request_id in sorted(affected):
            for event_id in self._events_by_request.get(request_id, ()):
                event = self._events[event_id]
                flag = self.is_in_edit(request_id)
                if flag != event.isInEdit:
                    changed.append(event.model_copy(update={"isInEdit": flag}))
        if changed:
            self._upsert(changed)
            self._session_callbacks.emit(changed)
        return changed

    def handle_log_result(self, result: LogScanResult) -> list[LogEntry]:
        if self._disposed:
            return []
        added = self._merge_log_entries(result.logEntries)
        if added:
            self._log_callbacks.emit(added)
        return added
