"""Normalizer strategy interface and per-session normalization state."""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any

from ..entries import (
    EntryEvent,
    EntryUpdateEvent,
    NormalizationEvent,
    SessionIdEvent,
    ToolUseEntry,
)


@dataclass
class NormalizationContext:
    """State a normalizer reads to decide between new entries and updates.

    Owned by one session. Only the hooks on ``Normalizer`` write to it;
    ``Normalizer.normalize`` itself treats it as read-only.
    """
    emitted_entry_ids: set[str] = field(default_factory=set)
    pending_tool_uses: dict[str, ToolUseEntry] = field(default_factory=dict)
    session_id_emitted: bool = False


class Normalizer(abc.ABC):
    """Maps one backend's raw stream data to ``NormalizationEvent`` lists.

    The orchestrator drives each datum through ``process``: the
    ``observe`` pre-hook folds raw state into the context, the pure
    ``normalize`` produces events, and the ``commit`` post-hook records
    what was emitted.
    """

    @property
    @abc.abstractmethod
    def backend(self) -> str:
        """Backend identifier (e.g. 'claude-code', 'opencode')."""
        ...

    def new_context(self) -> NormalizationContext:
        return NormalizationContext()

    def begin_turn(self, ctx: NormalizationContext) -> None:
        """Reset per-turn state before a new prompt is submitted."""

    def observe(self, raw: dict[str, Any], ctx: NormalizationContext) -> None:
        """Fold a raw datum into the context before normalizing it."""

    @abc.abstractmethod
    def normalize(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        """Pure mapping from a raw datum to normalization events."""
        ...

    def commit(
        self, events: list[NormalizationEvent], ctx: NormalizationContext,
    ) -> None:
        """Record emitted ids, in-flight tool calls and the session flag."""
        for event in events:
            if isinstance(event, (EntryEvent, EntryUpdateEvent)):
                entry = event.entry
                ctx.emitted_entry_ids.add(entry.id)
                if isinstance(entry, ToolUseEntry) and entry.tool_id:
                    if entry.result is None:
                        ctx.pending_tool_uses[entry.tool_id] = entry
                    else:
                        ctx.pending_tool_uses.pop(entry.tool_id, None)
            elif isinstance(event, SessionIdEvent):
                ctx.session_id_emitted = True

    def process(
        self, raw: dict[str, Any], ctx: NormalizationContext,
    ) -> list[NormalizationEvent]:
        self.observe(raw, ctx)
        events = self.normalize(raw, ctx)
        self.commit(events, ctx)
        return events
