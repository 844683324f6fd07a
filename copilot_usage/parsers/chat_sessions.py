"""Scanner for Copilot Chat session documents.

Layout: ``<storageRoot>/<workspaceHash>/chatSessions/<sessionId>.json``.
"""
from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from copilot_usage import config
from copilot_usage.date_utils import format_iso, from_epoch
from copilot_usage.models import ChatRequest, ChatSessionFile, SessionScan, SessionScanResult, SessionScanStats
from copilot_usage.observability import record_parser_failure, record_scan, start_span
from copilot_usage.parsers.base import WatchedFileScanner, load_json_object

logger = logging.getLogger("copilot_usage.scanner")

SESSION_FILE_PATTERN = re.compile(r"^[A-Za-z0-9-]+\.json$")


def _parse_requests(raw_requests: object) -> tuple[list[ChatRequest], int]:
    if not isinstance(raw_requests, list):
        return [], 0
    requests: list[ChatRequest] = []
    dropped = 0
    for item in raw_requests:
        if not isinstance(item, dict):
            dropped += 1
            continue
        try:
            request = ChatRequest.model_validate(item)
        except ValidationError:
            dropped += 1
            continue
        if not request.key:
            dropped += 1
            continue
        requests.append(request)
    return requests, dropped


class ChatSessionScanner(WatchedFileScanner[SessionScanResult]):
    subdirectory = "chatSessions"
    source = "sessions"

    def __init__(self, storage_roots: Optional[list[Path]] = None):
        super().__init__(storage_roots)
        self.debounce_ms = config.SESSION_DEBOUNCE_MS
        self.max_file_bytes = config.MAX_SESSION_FILE_MB * 1024 * 1024

    def candidate_files(self, directory: Path) -> list[Path]:
        files: list[Path] = []
        for path in sorted(directory.iterdir()):
            if not SESSION_FILE_PATTERN.match(path.name) or not path.is_file():
                continue
            if self._oversized(path):
                continue
            files.append(path)
        return files

    def is_candidate(self, path: Path) -> bool:
        return path.parent.name == self.subdirectory and bool(SESSION_FILE_PATTERN.match(path.name))

    def _oversized(self, path: Path) -> bool:
        try:
            size = path.stat().st_size
        except OSError:
            return False
        if size > self.max_file_bytes:
            logger.warning("Skipping oversized session file %s (%d bytes)", path, size)
            return True
        return False

    def parse_file(self, path: Path) -> Optional[SessionScanResult]:
        if self._oversized(path):
            return None
        raw = load_json_object(path, "chat_session")
        if raw is None:
            return None
        requests, dropped = _parse_requests(raw.get("requests"))
        try:
            session = ChatSessionFile.model_validate({**raw, "requests": []})
            stat = path.stat()
        except (ValidationError, OSError) as exc:
            logger.warning("Skipping malformed session file %s: %s", path, exc)
            record_parser_failure("chat_session")
            return None
        session = session.model_copy(update={"requests": requests, "sessionId": session.sessionId or path.stem})
        if dropped:
            logger.debug("Dropped %d malformed requests from %s", dropped, path)
        return SessionScanResult(
            sessionFilePath=path,
            session=session,
            lastModified=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
            fileSize=stat.st_size,
            droppedRequests=dropped,
        )

    def scan_all(self) -> SessionScan:
        started = time.monotonic()
        with start_span("scan.sessions"):
            files = self.find_all_files()
            results: list[SessionScanResult] = []
            error_files = 0
            for path in files:
                result = self.parse_file(path)
                if result is None:
                    error_files += 1
                else:
                    results.append(result)

        created = [
            dt for dt in (from_epoch(r.session.creationDate) for r in results) if dt is not None
        ]
        duration_ms = int((time.monotonic() - started) * 1000)
        stats = SessionScanStats(
            totalSessions=len(results),
            totalRequests=sum(len(r.session.requests) for r in results),
            scannedFiles=len(files),
            errorFiles=error_files,
            scanDuration=duration_ms,
            oldestSession=format_iso(min(created)) if created else None,
            newestSession=format_iso(max(created)) if created else None,
        )
        record_scan(self.source, "error" if error_files else "success", duration_ms)
        logger.info(
            "Scanned %d session files (%d sessions, %d requests, %d errors) in %d ms",
            stats.scannedFiles, stats.totalSessions, stats.totalRequests, stats.errorFiles, duration_ms,
        )
        return SessionScan(results=results, stats=stats)
