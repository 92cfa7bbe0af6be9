"""Events published by the session orchestrator.

Each event is a typed dataclass; ``event_to_dict`` flattens it to the
plain dict a UI or IPC bridge sends over the wire.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionEvent:
    """Base event from the session orchestrator."""
    event_type: str = ""
    task_id: str = ""


@dataclass
class StatusChanged(SessionEvent):
    event_type: str = "status"
    status: str = ""
    error: str | None = None


@dataclass
class EntryAdded(SessionEvent):
    """A new entry was persisted at ``index``."""
    event_type: str = "entry"
    index: int = 0
    entry: dict[str, Any] = field(default_factory=dict)


@dataclass
class EntryUpdated(SessionEvent):
    """An already-published entry changed (same id)."""
    event_type: str = "entry_update"
    entry: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultPatched(SessionEvent):
    """Raw result for a tool call that never had a typed entry update."""
    event_type: str = "tool_result"
    tool_id: str = ""
    result: Any = None
    is_error: bool = False


@dataclass
class PermissionRequested(SessionEvent):
    event_type: str = "permission"
    request_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    session_allow_option: dict[str, Any] | None = None


@dataclass
class QuestionRequested(SessionEvent):
    event_type: str = "question"
    request_id: str = ""
    questions: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class QueueUpdated(SessionEvent):
    event_type: str = "queue_update"
    queued_prompts: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class NameUpdated(SessionEvent):
    event_type: str = "name_updated"
    name: str = ""


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Wire format names the discriminator "event"
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d
