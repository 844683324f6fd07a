"""Scanner for chat editing-session timelines.

Layout: ``<storageRoot>/<workspaceHash>/chatEditingSessions/<id>/state.json``.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from copilot_usage import config
from copilot_usage.models import (
    EditStateFile,
    EditStateScan,
    EditStateScanResult,
    EditStateScanStats,
    EditStateSessionRequests,
)
from copilot_usage.observability import record_parser_failure, record_scan, start_span
from copilot_usage.parsers.base import WatchedFileScanner, load_json_object

logger = logging.getLogger("copilot_usage.scanner")

STATE_FILE_NAME = "state.json"


def session_requests(result: EditStateScanResult) -> EditStateSessionRequests:
    """Request ids of a timeline in history order, duplicates preserved."""
    ids = [rid for rid in (turn.effective_request_id for turn in result.state.linearHistory) if rid]
    return EditStateSessionRequests(sessionId=result.state.sessionId, requests=ids)


class EditStateScanner(WatchedFileScanner[EditStateScanResult]):
    subdirectory = "chatEditingSessions"
    source = "edit_states"

    def __init__(self, storage_roots: Optional[list[Path]] = None):
        super().__init__(storage_roots)
        self.debounce_ms = config.EDIT_STATE_DEBOUNCE_MS

    def candidate_files(self, directory: Path) -> list[Path]:
        files: list[Path] = []
        for entry in sorted(directory.iterdir()):
            state_file = entry / STATE_FILE_NAME
            if entry.is_dir() and state_file.is_file():
                files.append(state_file)
        return files

    def is_candidate(self, path: Path) -> bool:
        return path.name == STATE_FILE_NAME and path.parent.parent.name == self.subdirectory

    def parse_file(self, path: Path) -> Optional[EditStateScanResult]:
        raw = load_json_object(path, "edit_state")
        if raw is None:
            return None
        try:
            state = EditStateFile.model_validate(raw)
            stat = path.stat()
        except (ValidationError, OSError) as exc:
            logger.warning("Skipping malformed edit state %s: %s", path, exc)
            record_parser_failure("edit_state")
            return None
        if not state.sessionId:
            state = state.model_copy(update={"sessionId": path.parent.name})
        return EditStateScanResult(
            stateFilePath=path,
            state=state,
            lastModified=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
            fileSize=stat.st_size,
        )

    def scan_all(self) -> EditStateScan:
        started = time.monotonic()
        with start_span("scan.edit_states"):
            files = self.find_all_files()
            results: list[EditStateScanResult] = []
            error_files = 0
            for path in files:
                result = self.parse_file(path)
                if result is None:
                    error_files += 1
                else:
                    results.append(result)

        duration_ms = int((time.monotonic() - started) * 1000)
        stats = EditStateScanStats(
            totalStateFiles=len(results),
            totalTurns=sum(len(r.state.linearHistory) for r in results),
            scannedFiles=len(files),
            errorFiles=error_files,
            scanDuration=duration_ms,
        )
        record_scan(self.source, "error" if error_files else "success", duration_ms)
        logger.info(
            "Scanned %d edit state files (%d turns, %d errors) in %d ms",
            stats.scannedFiles, stats.totalTurns, stats.errorFiles, duration_ms,
        )
        return EditStateScan(
            results=results,
            stats=stats,
            sessionRequests=[session_requests(r) for r in results],
        )
