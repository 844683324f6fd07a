"""Pydantic models for scanned artifacts, usage events and analytics results."""
from __future__ import annotations

import math
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

EventType = Literal["chat", "completion", "edit", "explain"]
EventSource = Literal["chat-panel", "inline-completion", "sidebar"]
TimeRange = Literal["today", "7d", "30d", "90d"]


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


# ── Chat session files ─────────────────────────────────────────────

class ChatRequest(BaseModel):
    """One turn of a chatSessions/*.json document.

    Only the fields the transformer reads are typed; everything else is
    preserved in ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    requestId: Optional[str] = None
    turnId: Optional[str] = None
    responseId: Optional[str] = None
    timestamp: Optional[float] = None
    modelId: Optional[str] = None
    isCanceled: bool = False
    modes: Optional[list[str]] = None
    message: dict[str, Any] = Field(default_factory=dict)
    agent: Optional[dict[str, Any]] = None
    response: list[Any] = Field(default_factory=list)
    result: Optional[dict[str, Any]] = None
    contentReferences: list[Any] = Field(default_factory=list)
    codeCitations: list[Any] = Field(default_factory=list)
    followups: list[Any] = Field(default_factory=list)

    @field_validator("response", "contentReferences", "codeCitations", "followups", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> list:
        return _as_list(value)

    @field_validator("message", mode="before")
    @classmethod
    def _coerce_message(cls, value: Any) -> dict:
        return value if isinstance(value, dict) else {}

    @field_validator("modes", mode="before")
    @classmethod
    def _string_modes(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return None
        return [mode for mode in value if isinstance(mode, str)]

    @property
    def key(self) -> str | None:
        return self.requestId or self.turnId

    @property
    def agent_id(self) -> str | None:
        if not self.agent:
            return None
        value = self.agent.get("id")
        return value if isinstance(value, str) and value else None

    @property
    def message_text(self) -> str:
        value = self.message.get("text")
        return value if isinstance(value, str) else ""


class ChatSessionFile(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: Optional[int] = None
    sessionId: str = ""
    creationDate: Optional[float] = None
    lastMessageDate: Optional[float] = None
    requesterUsername: Optional[str] = None
    responderUsername: Optional[str] = None
    initialLocation: Optional[str] = None
    requests: list[ChatRequest] = Field(default_factory=list)

    @field_validator("creationDate", "lastMessageDate", mode="before")
    @classmethod
    def _number_or_none(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value

    @field_validator("version", mode="before")
    @classmethod
    def _int_or_none(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return int(value)

    @field_validator("sessionId", mode="before")
    @classmethod
    def _session_id(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("requesterUsername", "responderUsername", "initialLocation", mode="before")
    @classmethod
    def _optional_string(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None


class SessionScanResult(BaseModel):
    sessionFilePath: Path
    session: ChatSessionFile
    lastModified: datetime
    fileSize: int = 0
    droppedRequests: int = 0


class SessionScanStats(BaseModel):
    totalSessions: int = 0
    totalRequests: int = 0
    scannedFiles: int = 0
    errorFiles: int = 0
    scanDuration: int = 0
    oldestSession: Optional[str] = None
    newestSession: Optional[str] = None


class SessionScan(BaseModel):
    results: list[SessionScanResult] = Field(default_factory=list)
    stats: SessionScanStats = Field(default_factory=SessionScanStats)


# ── Edit state timelines ───────────────────────────────────────────

class EditStateTurn(BaseModel):
    model_config = ConfigDict(extra="allow")

    requestId: Optional[str] = None
    telemetryInfo: Optional[dict[str, Any]] = None

    @field_validator("requestId", mode="before")
    @classmethod
    def _string_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @field_validator("telemetryInfo", mode="before")
    @classmethod
    def _dict_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @property
    def effective_request_id(self) -> str | None:
        if self.requestId:
            return self.requestId
        if self.telemetryInfo:
            rid = self.telemetryInfo.get("requestId")
            if isinstance(rid, str) and rid:
                return rid
        return None


class EditStateFile(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: Optional[int] = None
    sessionId: str = ""
    linearHistory: list[EditStateTurn] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def _int_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, int) and not isinstance(value, bool) else None

    @field_validator("sessionId", mode="before")
    @classmethod
    def _session_id(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("linearHistory", mode="before")
    @classmethod
    def _history_turns(cls, value: Any) -> list:
        # Non-object entries carry no request id; keep their position as empty turns.
        return [item if isinstance(item, dict) else {} for item in _as_list(value)]


class EditStateScanResult(BaseModel):
    stateFilePath: Path
    state: EditStateFile
    lastModified: datetime
    fileSize: int = 0


class EditStateSessionRequests(BaseModel):
    sessionId: str
    requests: list[str] = Field(default_factory=list)


class EditStateScanStats(BaseModel):
    totalStateFiles: int = 0
    totalTurns: int = 0
    scannedFiles: int = 0
    errorFiles: int = 0
    scanDuration: int = 0


class EditStateScan(BaseModel):
    results: list[EditStateScanResult] = Field(default_factory=list)
    stats: EditStateScanStats = Field(default_factory=EditStateScanStats)
    sessionRequests: list[EditStateSessionRequests] = Field(default_factory=list)


# ── Request logs ───────────────────────────────────────────────────

class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: str = "info"
    requestId: str
    modelName: str
    responseTime: int = 0
    status: Literal["success", "error"] = "success"
    finishReason: str = ""
    context: str = ""
    ccreqId: str = ""
    modelDeploymentId: str = ""
    rawLine: str = ""
    logFilePath: Optional[str] = None
    version: Optional[str] = None
    session: Optional[str] = None
    window: Optional[str] = None

    @property
    def dedup_key(self) -> tuple[str, str, datetime]:
        return (self.requestId, self.ccreqId, self.timestamp)


class LogScanStats(BaseModel):
    totalFiles: int = 0
    errorFiles: int = 0
    totalEntries: int = 0
    bytesRead: int = 0
    scanDuration: int = 0
    incremental: bool = False


class LogScanResult(BaseModel):
    logEntries: list[LogEntry] = Field(default_factory=list)
    stats: LogScanStats = Field(default_factory=LogScanStats)


# ── Unified usage events ───────────────────────────────────────────

class CopilotUsageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    type: EventType = "chat"
    source: EventSource = "chat-panel"
    requestId: Optional[str] = None
    agent: Optional[str] = None
    modes: Optional[list[str]] = None

    vscodeSessionId: str
    windowId: Optional[str] = None
    extensionHostSessionId: str
    sessionId: str
    workspaceId: Optional[str] = None

    duration: Optional[float] = None
    firstProgress: Optional[float] = None
    tokensUsed: Optional[int] = None
    model: Optional[str] = None
    modelRequests: int = 1
    fileModifications: int = 0

    isInEdit: bool = False

    language: Optional[str] = None
    filePath: Optional[str] = None
    userPrompt: Optional[str] = None

    vsCodeVersion: str = "unknown"
    copilotVersion: str = "unknown"
    extensionVersion: str = "unknown"


class UnifiedScanStats(BaseModel):
    sessions: SessionScanStats = Field(default_factory=SessionScanStats)
    editStates: EditStateScanStats = Field(default_factory=EditStateScanStats)
    logs: LogScanStats = Field(default_factory=LogScanStats)
    totalEvents: int = 0
    duplicateEvents: int = 0
    editCorrelatedEvents: int = 0
    failedSources: list[str] = Field(default_factory=list)
    scanDuration: int = 0


class UnifiedScan(BaseModel):
    sessionEvents: list[CopilotUsageEvent] = Field(default_factory=list)
    logEntries: list[LogEntry] = Field(default_factory=list)
    stats: UnifiedScanStats = Field(default_factory=UnifiedScanStats)


# ── Analytics ──────────────────────────────────────────────────────

class AnalyticsFilter(BaseModel):
    timeRange: TimeRange = "30d"
    workspaceId: Optional[str] = None
    agentIds: list[str] = Field(default_factory=list)
    modelIds: list[str] = Field(default_factory=list)


class Kpis(BaseModel):
    sessions: int = 0
    turns: int = 0
    requests: int = 0
    files: int = 0
    edits: int = 0
    editRatio: float = 0.0
    fileModifications: int = 0
    editProductivity: float = 0.0
    latencyMsMedian: float = 0.0
    latencyMsMean: float = 0.0
    latencyMsP95: float = 0.0
    firstProgressMsMedian: float = 0.0
    models: int = 0
    agents: int = 0


class TimeSeriesPoint(BaseModel):
    t: str
    total: int = 0


class AgentStat(BaseModel):
    id: str
    count: int = 0
    latencyMsMedian: float = 0.0
    editRatio: float = 0.0
    series7d: list[int] = Field(default_factory=list)


class ModelStat(BaseModel):
    id: str
    count: int = 0
    tokensEst: int = 0
    latencyMsMedian: float = 0.0


class LanguageStat(BaseModel):
    id: str
    count: int = 0


class ActivityItem(BaseModel):
    timeISO: str
    type: str
    agent: str
    model: str
    file: Optional[str] = None
    latencyMs: Optional[float] = None
    sessionId: str
    requestId: str = ""
    isInEdit: bool = False
