"""Text-to-record extraction for Copilot Chat request logs.

Pure functions with no retained state; shared by the full historical scan and
the incremental (tail) reads driven by the file watcher.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from copilot_usage.errors import InvalidFormatError, IOFailure
from copilot_usage.models import LogEntry
from copilot_usage.observability import record_parser_failure

logger = logging.getLogger("copilot_usage.parsers.logs")

# Accepted producer timestamp layouts, tried in order. Add new layouts here.
TIMESTAMP_FORMATS: tuple[str, ...] = ("%Y-%m-%d %H:%M:%S.%f",)
_TIMESTAMP_SHAPE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3}$")

# Three contiguous lines describing one completed request:
#   <ts> [info] message 0 returned. finish reason: [stop]
#   <ts> [info] request done: requestId: [abc] model deployment ID: [dep]
#   <ts> [info] ccreq:xyz.copilotmd | success | gpt-4 | 500ms | [panel/editAgent]
MULTILINE_REQUEST_PATTERN = re.compile(
    r"([^\[\n]+?)\s*\[info\] message \d+ returned\. finish reason: \[([^\]]+)\]\s*"
    r"([^\[\n]+?)\s*\[info\] request done: requestId: \[([^\]]+)\] model deployment ID: \[([^\]]*)\]\s*"
    r"([^\[\n]+?)\s*\[info\] ccreq:([^|.\s]+)(?:\.copilotmd)?\s*\|\s*([^|]+?)\s*\|\s*([^|]+?)\s*\|\s*([^|]+?)\s*\|\s*\[([^\]]+)\]"
)
_DURATION_PATTERN = re.compile(r"(\d+)ms")


@dataclass(frozen=True)
class TailRead:
    content: str
    new_position: int
    truncated: bool = False


def parse_timestamp(text: str) -> datetime:
    """Parse ``YYYY-MM-DD HH:mm:ss.SSS`` as a UTC instant.

    Raises InvalidFormatError for anything else; windowing depends on these
    values so there is no silent fallback.
    """
    cleaned = (text or "").strip()
    if not _TIMESTAMP_SHAPE.match(cleaned):
        raise InvalidFormatError(cleaned, "YYYY-MM-DD HH:mm:ss.SSS")
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise InvalidFormatError(cleaned, "YYYY-MM-DD HH:mm:ss.SSS")


def _response_time(duration: str) -> int:
    match = _DURATION_PATTERN.search(duration)
    return int(match.group(1)) if match else 0


def parse_multi_line_requests(content: str, *, log_file_path: str | None = None) -> list[LogEntry]:
    """Extract one LogEntry per three-line request record in ``content``."""
    entries: list[LogEntry] = []
    for match in MULTILINE_REQUEST_PATTERN.finditer(content or ""):
        (
            _ts_finish, finish_reason,
            _ts_done, request_id, deployment_id,
            ts_ccreq, ccreq_id, status, model_name, duration, context,
        ) = match.groups()
        try:
            timestamp = parse_timestamp(ts_ccreq)
        except InvalidFormatError as exc:
            logger.debug("Dropping log record with bad timestamp: %s", exc)
            record_parser_failure("log_entry")
            continue
        entries.append(
            LogEntry(
                timestamp=timestamp,
                requestId=request_id.strip(),
                modelName=model_name.strip(),
                responseTime=_response_time(duration),
                status="error" if status.strip() == "error" else "success",
                finishReason=finish_reason.strip(),
                context=context.strip(),
                ccreqId=ccreq_id.strip(),
                modelDeploymentId=deployment_id.strip(),
                rawLine=match.group(0),
                logFilePath=log_file_path,
            )
        )
    return entries


def unmatched_tail(content: str, max_lines: int = 3) -> str:
    """Return the text after the last complete record, limited to ``max_lines`` lines.

    A record split across two incremental reads can only reuse lines that
    come after the last match, and never more than the record's own length.
    """
    last_end = 0
    for match in MULTILINE_REQUEST_PATTERN.finditer(content or ""):
        last_end = match.end()
    remainder = (content or "")[last_end:]
    lines = remainder.splitlines(keepends=True)
    return "".join(lines[-max_lines:])


def read_file_content(path: Path | str) -> str:
    try:
        return Path(path).read_bytes().decode("utf-8", errors="replace")
    except OSError as exc:
        raise IOFailure(path, str(exc)) from exc


def read_new_content(path: Path | str, last_position: int) -> TailRead:
    """Read bytes appended since ``last_position``.

    A file smaller than ``last_position`` was truncated or rotated and is read
    again from the start.
    """
    try:
        size = Path(path).stat().st_size
        truncated = size < last_position
        if truncated:
            last_position = 0
        if size <= last_position:
            return TailRead("", last_position, truncated)
        with open(path, "rb") as handle:
            handle.seek(last_position)
            data = handle.read(size - last_position)
    except OSError as exc:
        raise IOFailure(path, str(exc)) from exc
    return TailRead(data.decode("utf-8", errors="replace"), last_position + len(data), truncated)


def get_file_size(path: Path | str) -> int:
    try:
        return Path(path).stat().st_size
    except OSError as exc:
        raise IOFailure(path, str(exc)) from exc
