"""Normalizer for Claude Agent SDK messages.

Raw data are stream-json style dicts (see
``steward.engine.providers.claude_provider.message_to_raw``). One entry
is emitted per content block. Tool results are matched against the
context's pending tool uses and emitted as typed ``entry-update``
events; results for tool calls this run never saw fall back to a
generic ``tool-result``.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..entries import (
    AssistantMessageEntry,
    CompleteEvent,
    CostInfo,
    EntryEvent,
    EntryUpdateEvent,
    NormalizationEvent,
    NormalizedResult,
    ResultEntry,
    SessionIdEvent,
    SystemStatusEntry,
    TokenUsage,
    ToolResultEvent,
    UserPromptEntry,
)
from ..models import AgentBackend
from ..tools import CLAUDE_TOOL_ALIASES, ToolOutcome, attach_result, build_tool_use
from .base import NormalizationContext, Normalizer

logger = logging.getLogger(__name__)

HIDDEN_SYSTEM_SUBTYPES = frozenset({
    "init",
    "hook_started",
    "hook_completed",
    "hook_response",
})


class ClaudeRawKind(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
    STREAM_EVENT = "stream_event"
    UNKNOWN = "unknown"

    @classmethod
    def of(cls, raw: dict[str, Any]) -> ClaudeRawKind:
        try:
            return cls(raw.get("type"))
        except ValueError:
            return cls.UNKNOWN


def stringify_content(content: Any) -> str:
    """Text of a tool_result ``content`` (a string or a list of blocks)."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(p for p in parts if p)


class ClaudeNormalizer(Normalizer):
    """Claude Agent SDK → canonical entries."""

    def __init__(self) -> None:
        self._handlers: dict[
            ClaudeRawKind,
            Callable[[dict[str, Any], NormalizationContext], list[NormalizationEvent]],
        ] = {
            ClaudeRawKind.SYSTEM: self._normalize_system,
            ClaudeRawKind.ASSISTANT: self._normalize_assistant,
            ClaudeRawKind.USER: self._normalize_user,
            ClaudeRawKind.RESULT: self._normalize_result,
            ClaudeRawKind.STREAM_EVENT: self._no_representation,
            ClaudeRawKind.UNKNOWN: self._no_representation,
        }

    @property
    def backend(self) -> str:
        return AgentBackend.CLAUDE_CODE.value

    def normalize(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        events: list[NormalizationEvent] = []
        session_id = raw.get("session_id")
        if session_id and not ctx.session_id_emitted:
            events.append(SessionIdEvent(session_id=session_id))

        kind = ClaudeRawKind.of(raw)
        events.extend(self._handlers[kind](raw, ctx))
        return events

    def _no_representation(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        return []

    # ── system ──

    def _normalize_system(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        subtype = raw.get("subtype")
        if subtype in HIDDEN_SYSTEM_SUBTYPES:
            return []
        if subtype == "status" and raw.get("status") == "compacting":
            return [EntryEvent(entry=SystemStatusEntry(status="compacting"))]
        if subtype == "compact_boundary":
            return [EntryEvent(entry=SystemStatusEntry(status=None))]
        logger.debug("Skipping system message subtype=%s", subtype)
        return []

    # ── assistant ──

    def _normalize_assistant(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        message = raw.get("message") or {}
        content = message.get("content")
        if not isinstance(content, list):
            return []

        model = message.get("model")
        parent_tool_id = raw.get("parent_tool_use_id")
        is_synthetic = True if raw.get("isSynthetic") else None
        events: list[NormalizationEvent] = []

        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text")
                if text:
                    events.append(EntryEvent(entry=AssistantMessageEntry(
                        value=text,
                        model=model,
                        is_synthetic=is_synthetic,
                        parent_tool_id=parent_tool_id,
                    )))
            elif block_type == "tool_use":
                entry = build_tool_use(
                    block.get("id", ""),
                    block.get("name", ""),
                    block.get("input"),
                    CLAUDE_TOOL_ALIASES,
                    model=model,
                    is_synthetic=is_synthetic,
                    parent_tool_id=parent_tool_id,
                )
                events.append(EntryEvent(entry=entry))
            # thinking blocks have no entry
        return events

    # ── user ──

    def _normalize_user(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        message = raw.get("message") or {}
        content = message.get("content")
        if not content:
            return []

        parent_tool_id = raw.get("parent_tool_use_id")
        is_synthetic = True if raw.get("isSynthetic") else None

        if isinstance(content, str):
            return [EntryEvent(entry=UserPromptEntry(
                value=content,
                is_synthetic=is_synthetic,
                is_sdk_synthetic=is_synthetic,
                parent_tool_id=parent_tool_id,
            ))]

        events: list[NormalizationEvent] = []
        text_parts: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_result":
                events.append(self._tool_result(block, raw, ctx))
            elif block.get("type") == "text" and block.get("text"):
                text_parts.append(block["text"])

        if text_parts:
            events.append(EntryEvent(entry=UserPromptEntry(
                value="\n".join(text_parts),
                is_synthetic=is_synthetic,
                is_sdk_synthetic=is_synthetic,
                parent_tool_id=parent_tool_id,
            )))
        return events

    def _tool_result(
        self,
        block: dict[str, Any],
        raw: dict[str, Any],
        ctx: NormalizationContext,
    ) -> NormalizationEvent:
        tool_id = block.get("tool_use_id", "")
        content = stringify_content(block.get("content"))
        is_error = bool(block.get("is_error"))

        pending = ctx.pending_tool_uses.get(tool_id)
        if pending is None:
            return ToolResultEvent(tool_id=tool_id, result=content, is_error=is_error)

        structured = raw.get("tool_use_result")
        outcome = ToolOutcome(
            content=content,
            is_error=is_error,
            structured=structured if isinstance(structured, dict) else None,
        )
        return EntryUpdateEvent(entry=attach_result(pending, outcome))

    # ── result ──

    def _normalize_result(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        raw_usage = raw.get("usage")
        usage = None
        if isinstance(raw_usage, dict):
            usage = TokenUsage(
                input_tokens=raw_usage.get("input_tokens") or 0,
                output_tokens=raw_usage.get("output_tokens") or 0,
                cache_read_tokens=raw_usage.get("cache_read_input_tokens"),
                cache_creation_tokens=raw_usage.get("cache_creation_input_tokens"),
            )

        cost_usd = raw.get("total_cost_usd")
        if cost_usd is None:
            cost_usd = raw.get("cost_usd")
        cost = CostInfo(cost_usd=cost_usd) if cost_usd is not None else None

        is_error = bool(raw.get("is_error"))
        text = raw.get("result")
        duration_ms = raw.get("duration_ms")
        return [
            EntryEvent(entry=ResultEntry(
                value=text,
                is_error=is_error,
                duration_ms=duration_ms,
                cost=cost,
                usage=usage,
            )),
            CompleteEvent(result=NormalizedResult(
                is_error=is_error,
                text=text,
                cost=cost,
                duration_ms=duration_ms,
                usage=usage,
            )),
        ]
