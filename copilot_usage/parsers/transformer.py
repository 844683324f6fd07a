"""Map scanned chat sessions into CopilotUsageEvent records.

Pure mapping: no filtering and no aggregation. Analytics applies its own
windowing and grouping on top of the produced events.
"""
from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterable
from datetime import datetime
from pathlib import PurePath, PurePosixPath, PureWindowsPath
from typing import Any, Optional

from copilot_usage import config
from copilot_usage.date_utils import ensure_utc, from_epoch
from copilot_usage.models import ChatRequest, ChatSessionFile, CopilotUsageEvent, EventSource, EventType, SessionScanResult

logger = logging.getLogger("copilot_usage.scanner")

_EDIT_KEYWORDS = ("/edit", "modify", "change", "update", "fix")
_EXPLAIN_KEYWORDS = ("/explain", "explain", "what does", "how does", "describe")
_COMPLETION_KEYWORDS = ("complete", "suggest", "autocomplete")
_EDIT_GROUP_KINDS = {"textEditGroup", "notebookEditGroup"}
_EXTENSION_PATTERN = re.compile(r"\.([A-Za-z0-9]+)$")


def event_id(session_id: str, request_id: str) -> str:
    return hashlib.sha256(f"{session_id}-{request_id}".encode("utf-8")).hexdigest()[:16]


def workspace_hash(session_file: PurePath) -> Optional[str]:
    """Return the ``<workspaceHash>`` segment of ``.../<hash>/chatSessions/<file>``."""
    parts = session_file.parts
    if "workspaceStorage" in parts:
        index = parts.index("workspaceStorage")
        if index < len(parts) - 2:
            return parts[index + 1]
    if len(parts) >= 3 and parts[-2] == "chatSessions":
        return parts[-3]
    return None


def _base_name(value: str) -> str:
    # URIs and Windows paths both show up in content references.
    name = PureWindowsPath(value).name if "\\" in value else PurePosixPath(value).name
    return name or value


def _uri_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    if isinstance(value, dict):
        for key in ("fsPath", "path", "external"):
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate
    return None


def first_file_path(request: ChatRequest) -> Optional[str]:
    for ref in request.contentReferences:
        if not isinstance(ref, dict):
            continue
        reference = ref.get("reference")
        if not isinstance(reference, dict):
            continue
        for key in ("uri", "fsPath", "path", "external"):
            value = _uri_string(reference.get(key))
            if value:
                return _base_name(value)
    return None


def infer_language(request: ChatRequest, file_path: Optional[str]) -> Optional[str]:
    metadata = (request.result or {}).get("metadata")
    blocks = metadata.get("codeBlocks") if isinstance(metadata, dict) else None
    if isinstance(blocks, list):
        for block in blocks:
            if not isinstance(block, dict):
                continue
            language = block.get("language") or block.get("lang")
            if language:
                return str(language)
    if file_path:
        match = _EXTENSION_PATTERN.search(file_path)
        if match:
            return match.group(1).lower()
    return None


def determine_type(request: ChatRequest) -> EventType:
    agent_id = request.agent_id or ""
    if "editsAgent" in agent_id:
        return "edit"
    if "explainAgent" in agent_id:
        return "explain"
    text = request.message_text.lower()
    if any(keyword in text for keyword in _EDIT_KEYWORDS):
        return "edit"
    if any(keyword in text for keyword in _EXPLAIN_KEYWORDS):
        return "explain"
    if any(keyword in text for keyword in _COMPLETION_KEYWORDS):
        return "completion"
    return "chat"


def _location_source(value: str) -> Optional[EventSource]:
    lowered = value.lower()
    if "inline" in lowered:
        return "inline-completion"
    if "sidebar" in lowered:
        return "sidebar"
    return None


def determine_source(session: ChatSessionFile, request: ChatRequest) -> EventSource:
    for mode in request.modes or []:
        source = _location_source(mode)
        if source:
            return source
    for hint in (request.agent_id, session.initialLocation):
        if hint:
            source = _location_source(hint)
            if source:
                return source
    return "chat-panel"


def normalize_modes(request: ChatRequest) -> list[str]:
    if request.modes:
        return list(request.modes)
    agent_id = (request.agent_id or "").lower()
    if "editsagent" in agent_id or "editing" in agent_id:
        return ["edit"]
    if "explain" in agent_id:
        return ["explain"]
    if "inline" in agent_id:
        return ["inline"]
    if "sidebar" in agent_id:
        return ["sidebar"]
    return ["ask"]


def _response_length(request: ChatRequest) -> int:
    total = 0
    for item in request.response:
        if isinstance(item, dict) and isinstance(item.get("value"), str):
            total += len(item["value"])
    return total


def estimate_tokens(request: ChatRequest) -> int:
    # Roughly four characters per token.
    return round((len(request.message_text) + _response_length(request)) / 4)


def count_file_modifications(request: ChatRequest) -> int:
    files: set[str] = set()
    for item in request.response:
        if isinstance(item, dict) and item.get("kind") in _EDIT_GROUP_KINDS:
            uri = _uri_string(item.get("uri"))
            if uri:
                files.add(uri)
    return len(files)


def _timing(request: ChatRequest, key: str) -> Optional[float]:
    timings = (request.result or {}).get("timings")
    if not isinstance(timings, dict):
        return None
    value = timings.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def count_model_requests(request: ChatRequest) -> int:
    metadata = (request.result or {}).get("metadata")
    rounds = metadata.get("toolCallRounds") if isinstance(metadata, dict) else None
    return max(1, len(rounds)) if isinstance(rounds, list) else 1


class SessionDataTransformer:
    def __init__(self, extension_version: Optional[str] = None, track_user_prompts: Optional[bool] = None):
        self.extension_version = extension_version or config.EXTENSION_VERSION
        self.track_user_prompts = config.TRACK_USER_PROMPTS if track_user_prompts is None else track_user_prompts

    def transform_results(
        self,
        results: Iterable[SessionScanResult],
        edit_request_ids: Optional[set[str] | dict[str, Any]] = None,
    ) -> list[CopilotUsageEvent]:
        events: list[CopilotUsageEvent] = []
        count = 0
        for result in results:
            count += 1
            events.extend(self.transform_session(result, edit_request_ids))
        logger.debug("Transformed %d sessions into %d events", count, len(events))
        return events

    def transform_session(
        self,
        result: SessionScanResult,
        edit_request_ids: Optional[set[str] | dict[str, Any]] = None,
    ) -> list[CopilotUsageEvent]:
        session = result.session
        workspace_id = workspace_hash(result.sessionFilePath)
        created = from_epoch(session.creationDate) or ensure_utc(result.lastModified)
        hierarchy = {
            "vscodeSessionId": f"vscode-{created.strftime('%Y%m%d%H')}",
            "windowId": f"window-{workspace_id[:8]}" if workspace_id else None,
            "extensionHostSessionId": f"exthost-{session.sessionId[:8]}",
        }
        events: list[CopilotUsageEvent] = []
        for request in session.requests:
            try:
                events.append(self._transform_request(session, request, created, workspace_id, hierarchy, edit_request_ids))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping request %s of session %s: %s", request.key, session.sessionId, exc)
        return events

    def _transform_request(
        self,
        session: ChatSessionFile,
        request: ChatRequest,
        created: datetime,
        workspace_id: Optional[str],
        hierarchy: dict[str, Any],
        edit_request_ids: Optional[set[str] | dict[str, Any]],
    ) -> CopilotUsageEvent:
        request_id = request.key or ""
        file_path = first_file_path(request)
        return CopilotUsageEvent(
            id=event_id(session.sessionId, request_id),
            timestamp=from_epoch(request.timestamp) or created,
            type=determine_type(request),
            source=determine_source(session, request),
            requestId=request_id,
            agent=request.agent_id,
            modes=normalize_modes(request),
            sessionId=session.sessionId,
            workspaceId=workspace_id,
            duration=_timing(request, "totalElapsed"),
            firstProgress=_timing(request, "firstProgress"),
            tokensUsed=estimate_tokens(request),
            model=request.modelId,
            modelRequests=count_model_requests(request),
            fileModifications=count_file_modifications(request),
            isInEdit=bool(edit_request_ids) and request_id in edit_request_ids,
            language=infer_language(request, file_path),
            filePath=file_path,
            userPrompt=request.message_text if self.track_user_prompts else None,
            extensionVersion=self.extension_version,
            **hierarchy,
        )
