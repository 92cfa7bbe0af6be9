"""Normalizer for OpenCode server events.

OpenCode re-announces a message every time one of its parts grows, so
entries are rebuilt from the accumulated parts held in the context and
keyed ``{message_id}:{part_id}``. The first sighting of an id is an
``entry``; every later one is an ``entry-update``.

Raw data are dicts with a ``kind``:

- ``session``: ``{"kind": "session", "session": {...}}`` once per turn
- ``event``: ``{"kind": "event", "event": {"type": ..., "properties": ...}}``
- ``prompt-result``: ``{"kind": "prompt-result", "info": {...}, "parts": [...]}``
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..entries import (
    AssistantMessageEntry,
    CompleteEvent,
    CostInfo,
    EntryEvent,
    EntryUpdateEvent,
    ErrorEvent,
    NormalizationEvent,
    NormalizedEntry,
    NormalizedResult,
    PermissionRequestEvent,
    RateLimitEvent,
    SessionIdEvent,
    SessionUpdatedEvent,
    SystemStatusEntry,
)
from ..models import AgentBackend
from ..tools import OPENCODE_TOOL_ALIASES, ToolOutcome, attach_result, build_tool_use
from .base import NormalizationContext, Normalizer

logger = logging.getLogger(__name__)


class OpenCodeRawKind(str, Enum):
    SESSION = "session"
    EVENT = "event"
    PROMPT_RESULT = "prompt-result"
    UNKNOWN = "unknown"

    @classmethod
    def of(cls, raw: dict[str, Any]) -> OpenCodeRawKind:
        try:
            return cls(raw.get("kind"))
        except ValueError:
            return cls.UNKNOWN


class OpenCodeEventType(str, Enum):
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_PART_UPDATED = "message.part.updated"
    MESSAGE_PART_REMOVED = "message.part.removed"
    MESSAGE_REMOVED = "message.removed"
    SESSION_COMPACTED = "session.compacted"
    SESSION_UPDATED = "session.updated"
    SESSION_IDLE = "session.idle"
    SESSION_ERROR = "session.error"
    SESSION_STATUS = "session.status"
    PERMISSION_UPDATED = "permission.updated"
    # file.*, lsp.*, pty.*, tui.*, todo.updated, permission.replied, ...
    OTHER = "other"

    @classmethod
    def of(cls, event: dict[str, Any]) -> OpenCodeEventType:
        try:
            return cls(event.get("type"))
        except ValueError:
            return cls.OTHER


# Part types that never become entries: reasoning, retry, step-start,
# step-finish, snapshot, patch, agent.
ENTRY_PART_TYPES = frozenset({"text", "tool", "subtask", "compaction"})


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso_from_epoch(value: Any) -> str:
    """OpenCode timestamps are epoch milliseconds; tolerate seconds."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return datetime.now(timezone.utc).isoformat()
    seconds = value / 1000 if value > 1e11 else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


@dataclass
class OpenCodeNormalizationContext(NormalizationContext):
    """Adds the raw message/part state OpenCode entries are rebuilt from."""
    raw_messages: dict[str, dict[str, Any]] = field(default_factory=dict)
    raw_parts: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    message_costs: dict[str, float] = field(default_factory=dict)
    turn_started_at: int = field(default_factory=_now_ms)

    @property
    def total_cost(self) -> float:
        return sum(self.message_costs.values())


def _own_context(ctx: NormalizationContext) -> OpenCodeNormalizationContext:
    if not isinstance(ctx, OpenCodeNormalizationContext):
        raise TypeError(f"expected OpenCodeNormalizationContext, got {type(ctx).__name__}")
    return ctx


class OpenCodeNormalizer(Normalizer):
    """OpenCode server events → canonical entries."""

    def __init__(self) -> None:
        self._event_handlers: dict[
            OpenCodeEventType,
            Callable[[dict[str, Any], OpenCodeNormalizationContext], list[NormalizationEvent]],
        ] = {
            OpenCodeEventType.MESSAGE_UPDATED: self._on_message_updated,
            OpenCodeEventType.MESSAGE_PART_UPDATED: self._on_part_updated,
            OpenCodeEventType.MESSAGE_PART_REMOVED: self._on_part_removed,
            OpenCodeEventType.MESSAGE_REMOVED: self._no_representation,
            OpenCodeEventType.SESSION_COMPACTED: self._on_compacted,
            OpenCodeEventType.SESSION_UPDATED: self._on_session_updated,
            OpenCodeEventType.SESSION_IDLE: self._on_idle,
            OpenCodeEventType.SESSION_ERROR: self._on_error,
            OpenCodeEventType.SESSION_STATUS: self._on_status,
            OpenCodeEventType.PERMISSION_UPDATED: self._on_permission,
            OpenCodeEventType.OTHER: self._no_representation,
        }

    @property
    def backend(self) -> str:
        return AgentBackend.OPENCODE.value

    def new_context(self) -> OpenCodeNormalizationContext:
        return OpenCodeNormalizationContext()

    def begin_turn(self, ctx: NormalizationContext) -> None:
        ctx = _own_context(ctx)
        ctx.turn_started_at = _now_ms()
        ctx.message_costs.clear()

    # ── Context pre-hook ──

    def observe(self, raw: dict[str, Any], ctx: NormalizationContext) -> None:
        ctx = _own_context(ctx)
        kind = OpenCodeRawKind.of(raw)
        if kind == OpenCodeRawKind.PROMPT_RESULT:
            info = raw.get("info") or {}
            if info.get("id"):
                self._store_message(info, ctx)
                parts = raw.get("parts")
                ctx.raw_parts[info["id"]] = list(parts) if isinstance(parts, list) else []
            return
        if kind != OpenCodeRawKind.EVENT:
            return

        event = raw.get("event") or {}
        props = event.get("properties") or {}
        event_type = OpenCodeEventType.of(event)
        if event_type == OpenCodeEventType.MESSAGE_UPDATED:
            info = props.get("info") or {}
            if info.get("id"):
                self._store_message(info, ctx)
        elif event_type == OpenCodeEventType.MESSAGE_PART_UPDATED:
            part = props.get("part") or {}
            message_id = part.get("messageID")
            if message_id and part.get("id"):
                parts = ctx.raw_parts.setdefault(message_id, [])
                for i, existing in enumerate(parts):
                    if existing.get("id") == part["id"]:
                        parts[i] = part
                        break
                else:
                    parts.append(part)
        elif event_type == OpenCodeEventType.MESSAGE_PART_REMOVED:
            message_id = props.get("messageID")
            part_id = props.get("partID")
            if message_id in ctx.raw_parts:
                ctx.raw_parts[message_id] = [
                    p for p in ctx.raw_parts[message_id] if p.get("id") != part_id
                ]
        elif event_type == OpenCodeEventType.MESSAGE_REMOVED:
            message_id = props.get("messageID")
            ctx.raw_messages.pop(message_id, None)
            ctx.raw_parts.pop(message_id, None)
            ctx.message_costs.pop(message_id, None)

    @staticmethod
    def _store_message(info: dict[str, Any], ctx: OpenCodeNormalizationContext) -> None:
        message_id = info["id"]
        ctx.raw_messages[message_id] = info
        ctx.raw_parts.setdefault(message_id, [])
        if info.get("role") == "assistant":
            cost = info.get("cost")
            if isinstance(cost, (int, float)):
                ctx.message_costs[message_id] = float(cost)

    # ── Pure mapping ──

    def normalize(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        ctx = _own_context(ctx)
        kind = OpenCodeRawKind.of(raw)
        if kind == OpenCodeRawKind.SESSION:
            session_id = (raw.get("session") or {}).get("id")
            if session_id and not ctx.session_id_emitted:
                return [SessionIdEvent(session_id=session_id)]
            return []
        if kind == OpenCodeRawKind.PROMPT_RESULT:
            info = raw.get("info") or {}
            return self._build_entries(info.get("id"), ctx)
        if kind == OpenCodeRawKind.EVENT:
            event = raw.get("event") or {}
            handler = self._event_handlers[OpenCodeEventType.of(event)]
            return handler(event.get("properties") or {}, ctx)
        logger.debug("Unknown OpenCode raw kind %r", raw.get("kind"))
        return []

    def _no_representation(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        return []

    def _on_message_updated(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        return self._build_entries((props.get("info") or {}).get("id"), ctx)

    def _on_part_updated(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        return self._build_entries((props.get("part") or {}).get("messageID"), ctx)

    def _on_part_removed(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        return self._build_entries(props.get("messageID"), ctx)

    def _on_compacted(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        entry = SystemStatusEntry(id=f"compact-{_now_ms()}", status=None)
        return [self._entry_event(entry, ctx)]

    def _on_session_updated(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        info = props.get("info") or {}
        return [SessionUpdatedEvent(title=info.get("title"))]

    def _on_idle(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        total_cost = ctx.total_cost
        return [CompleteEvent(result=NormalizedResult(
            is_error=False,
            duration_ms=_now_ms() - ctx.turn_started_at,
            cost=CostInfo(cost_usd=total_cost) if total_cost > 0 else None,
        ))]

    def _on_error(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        error = props.get("error") or {}
        message = (error.get("data") or {}).get("message")
        return [ErrorEvent(error=message or "Unknown error")]

    def _on_status(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        status = props.get("status") or {}
        if status.get("type") == "retry":
            return [RateLimitEvent(retry_after_ms=None)]
        return []

    def _on_permission(
        self, props: dict[str, Any], ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        metadata = props.get("metadata")
        return [PermissionRequestEvent(
            request_id=props.get("id", ""),
            tool_name=props.get("type", ""),
            input=metadata if isinstance(metadata, dict) else {},
            description=props.get("title"),
        )]

    # ── Entry building ──

    def _build_entries(
        self, message_id: str | None, ctx: OpenCodeNormalizationContext,
    ) -> list[NormalizationEvent]:
        info = ctx.raw_messages.get(message_id) if message_id else None
        if info is None:
            return []
        # Submitted prompts are recorded by the orchestrator.
        if info.get("role") != "assistant":
            return []

        date = _iso_from_epoch((info.get("time") or {}).get("created"))
        model = None
        if info.get("providerID") and info.get("modelID"):
            model = f"{info['providerID']}/{info['modelID']}"

        events: list[NormalizationEvent] = []
        for part in ctx.raw_parts.get(message_id, []):
            if part.get("type") not in ENTRY_PART_TYPES:
                continue
            entry = self._part_to_entry(part, message_id, date, model)
            if entry is not None:
                events.append(self._entry_event(entry, ctx))
        return events

    def _part_to_entry(
        self,
        part: dict[str, Any],
        message_id: str,
        date: str,
        model: str | None,
    ) -> NormalizedEntry | None:
        entry_id = f"{message_id}:{part.get('id')}"
        part_type = part.get("type")

        if part_type == "text":
            text = part.get("text")
            if not text:
                return None
            return AssistantMessageEntry(id=entry_id, date=date, model=model, value=text)

        if part_type == "compaction":
            return SystemStatusEntry(id=entry_id, date=date, status=None)

        if part_type == "subtask":
            return build_tool_use(
                part.get("id", ""),
                "task",
                {
                    "agent": part.get("agent"),
                    "description": part.get("description"),
                    "prompt": part.get("prompt"),
                },
                OPENCODE_TOOL_ALIASES,
                id=entry_id,
                date=date,
                model=model,
            )

        state = part.get("state")
        if not isinstance(state, dict):
            return None
        raw_input = state.get("input") if isinstance(state.get("input"), dict) else {}
        entry = build_tool_use(
            part.get("callID", ""),
            part.get("tool", ""),
            raw_input,
            OPENCODE_TOOL_ALIASES,
            fold_case=True,
            id=entry_id,
            date=date,
            model=model,
        )
        status = state.get("status")
        if status == "completed":
            metadata = state.get("metadata")
            return attach_result(entry, ToolOutcome(
                content="" if state.get("output") is None else str(state.get("output")),
                structured=metadata if isinstance(metadata, dict) else None,
                input=raw_input,
            ))
        if status == "error":
            return attach_result(entry, ToolOutcome(
                content="" if state.get("error") is None else str(state.get("error")),
                is_error=True,
                input=raw_input,
            ))
        return entry

    @staticmethod
    def _entry_event(
        entry: NormalizedEntry, ctx: NormalizationContext,
    ) -> NormalizationEvent:
        if entry.id in ctx.emitted_entry_ids:
            return EntryUpdateEvent(entry=entry)
        return EntryEvent(entry=entry)
