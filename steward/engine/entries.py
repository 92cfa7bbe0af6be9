"""Canonical entry model and the events normalizers produce.

Every backend's raw output is reduced to the flat ``NormalizedEntry``
variants below. Entries are persisted by index and published to the UI;
``NormalizationEvent`` values tell the orchestrator what to do with them.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import _make_id, _now_iso

NORMALIZATION_VERSION = 3


class EntryType(str, Enum):
    USER_PROMPT = "user-prompt"
    ASSISTANT_MESSAGE = "assistant-message"
    SYSTEM_STATUS = "system-status"
    RESULT = "result"
    TOOL_USE = "tool-use"


def to_plain(value: Any) -> Any:
    """Recursively convert dataclasses/enums to JSON-ready values.

    ``None`` dataclass fields are dropped; dict values are kept verbatim.
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        out: dict[str, Any] = {}
        for f in dataclasses.fields(value):
            v = getattr(value, f.name)
            if v is not None:
                out[f.name] = to_plain(v)
        return out
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    return value


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None


@dataclass
class CostInfo:
    cost_usd: float = 0.0
    total_cost_usd: float | None = None


@dataclass
class NormalizedEntry:
    """Fields common to every entry variant."""
    type: str = ""
    id: str = field(default_factory=_make_id)
    date: str = field(default_factory=_now_iso)
    model: str | None = None
    is_synthetic: bool | None = None
    parent_tool_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


@dataclass
class UserPromptEntry(NormalizedEntry):
    type: str = EntryType.USER_PROMPT.value
    value: str = ""
    is_sdk_synthetic: bool | None = None


@dataclass
class AssistantMessageEntry(NormalizedEntry):
    type: str = EntryType.ASSISTANT_MESSAGE.value
    value: str = ""


@dataclass
class SystemStatusEntry(NormalizedEntry):
    """``status`` is "compacting" while compaction runs, ``None`` after."""
    type: str = EntryType.SYSTEM_STATUS.value
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["status"] = self.status
        return d


@dataclass
class ResultEntry(NormalizedEntry):
    type: str = EntryType.RESULT.value
    value: str | None = None
    is_error: bool = False
    duration_ms: int | None = None
    cost: CostInfo | None = None
    usage: TokenUsage | None = None


@dataclass
class ToolUseEntry(NormalizedEntry):
    """A tool invocation.

    ``name`` is the canonical tool name. ``input`` and ``result`` are the
    typed shapes from ``steward.engine.tools`` for that name; ``result``
    stays ``None`` until the tool finishes.
    """
    type: str = EntryType.TOOL_USE.value
    tool_id: str = ""
    name: str = ""
    input: Any = None
    result: Any = None
    tool_name: str | None = None
    skill_name: str | None = None


@dataclass
class NormalizedResult:
    """Turn-level outcome carried by ``complete``."""
    is_error: bool = False
    text: str | None = None
    cost: CostInfo | None = None
    duration_ms: int | None = None
    usage: TokenUsage | None = None


class NormalizationEventKind(str, Enum):
    ENTRY = "entry"
    ENTRY_UPDATE = "entry-update"
    TOOL_RESULT = "tool-result"
    SESSION_ID = "session-id"
    SESSION_UPDATED = "session-updated"
    PERMISSION_REQUEST = "permission-request"
    COMPLETE = "complete"
    ERROR = "error"
    RATE_LIMIT = "rate-limit"


@dataclass
class NormalizationEvent:
    kind: str = ""


@dataclass
class EntryEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.ENTRY.value
    entry: NormalizedEntry = field(default_factory=NormalizedEntry)


@dataclass
class EntryUpdateEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.ENTRY_UPDATE.value
    entry: NormalizedEntry = field(default_factory=NormalizedEntry)


@dataclass
class ToolResultEvent(NormalizationEvent):
    """Untyped result for a tool call this run never saw start."""
    kind: str = NormalizationEventKind.TOOL_RESULT.value
    tool_id: str = ""
    result: Any = None
    is_error: bool = False
    duration_ms: int | None = None


@dataclass
class SessionIdEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.SESSION_ID.value
    session_id: str = ""


@dataclass
class SessionUpdatedEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.SESSION_UPDATED.value
    title: str | None = None
    summary: str | None = None


@dataclass
class PermissionRequestEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.PERMISSION_REQUEST.value
    request_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    description: str | None = None


@dataclass
class CompleteEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.COMPLETE.value
    result: NormalizedResult = field(default_factory=NormalizedResult)


@dataclass
class ErrorEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.ERROR.value
    error: str = ""


@dataclass
class RateLimitEvent(NormalizationEvent):
    kind: str = NormalizationEventKind.RATE_LIMIT.value
    retry_after_ms: int | None = None
