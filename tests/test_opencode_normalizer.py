from __future__ import annotations

import pytest

from steward.engine.entries import (
    AssistantMessageEntry,
    CompleteEvent,
    EntryEvent,
    EntryUpdateEvent,
    ErrorEvent,
    PermissionRequestEvent,
    RateLimitEvent,
    SessionIdEvent,
    SessionUpdatedEvent,
    SystemStatusEntry,
    ToolUseEntry,
)
from steward.engine.normalizers.base import NormalizationContext
from steward.engine.normalizers.opencode import OpenCodeNormalizer
from steward.engine.tools import BashResult, ReadInput, SubAgentInput


def _event(event_type, **props):
    return {"kind": "event", "event": {"type": event_type, "properties": props}}


def _message(mid="msg_1", role="assistant", cost=None, created=1_700_000_000_000):
    info = {
        "id": mid,
        "role": role,
        "sessionID": "ses_1",
        "providerID": "anthropic",
        "modelID": "claude-sonnet-4",
        "time": {"created": created},
    }
    if cost is not None:
        info["cost"] = cost
    return _event("message.updated", info=info)


def _part(pid, mid="msg_1", **fields):
    return _event("message.part.updated", part={"id": pid, "messageID": mid, "sessionID": "ses_1", **fields})


def test_session_raw_emits_session_id_once() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    raw = {"kind": "session", "session": {"id": "ses_1"}}
    assert normalizer.process(raw, ctx) == [SessionIdEvent(session_id="ses_1")]
    assert normalizer.process(raw, ctx) == []


def test_text_part_is_entry_then_update() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    assert normalizer.process(_message(), ctx) == []

    [first] = normalizer.process(_part("prt_1", type="text", text="Hel"), ctx)
    assert isinstance(first, EntryEvent)
    assert isinstance(first.entry, AssistantMessageEntry)
    assert first.entry.id == "msg_1:prt_1"
    assert first.entry.model == "anthropic/claude-sonnet-4"
    assert first.entry.date.startswith("2023-11-14")

    [second] = normalizer.process(_part("prt_1", type="text", text="Hello"), ctx)
    assert isinstance(second, EntryUpdateEvent)
    assert second.entry.id == "msg_1:prt_1"
    assert second.entry.value == "Hello"


def test_user_messages_are_not_reemitted() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    normalizer.process(_message(mid="msg_u", role="user"), ctx)
    assert normalizer.process(_part("prt_u", mid="msg_u", type="text", text="hi"), ctx) == []


def test_non_entry_parts_are_skipped() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    normalizer.process(_message(), ctx)
    assert normalizer.process(_part("prt_r", type="reasoning", text="thinking"), ctx) == []
    assert normalizer.process(_part("prt_s", type="step-start"), ctx) == []


def test_tool_part_lifecycle() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    normalizer.process(_message(), ctx)

    [started] = normalizer.process(_part(
        "prt_t", type="tool", tool="Bash", callID="call_1",
        state={"status": "running", "input": {"command": "ls"}},
    ), ctx)
    assert isinstance(started.entry, ToolUseEntry)
    assert started.entry.name == "bash"
    assert started.entry.tool_id == "call_1"
    assert started.entry.result is None

    [done] = normalizer.process(_part(
        "prt_t", type="tool", tool="Bash", callID="call_1",
        state={"status": "completed", "input": {"command": "ls"}, "output": "a.py"},
    ), ctx)
    assert isinstance(done, EntryUpdateEvent)
    assert done.entry.result == BashResult(content="a.py")


def test_tool_part_error_state() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    normalizer.process(_message(), ctx)
    [event] = normalizer.process(_part(
        "prt_t", type="tool", tool="read", callID="call_2",
        state={"status": "error", "input": {"filePath": "/missing"}, "error": "ENOENT"},
    ), ctx)
    assert event.entry.input == ReadInput(file_path="/missing")
    assert event.entry.result == "ENOENT"


def test_subtask_part_maps_to_sub_agent() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    normalizer.process(_message(), ctx)
    [event] = normalizer.process(_part(
        "prt_sub", type="subtask", agent="general", description="Find tests", prompt="look",
    ), ctx)
    assert event.entry.name == "sub-agent"
    assert event.entry.input == SubAgentInput(agent_type="general", description="Find tests", prompt="look")


def test_part_removed_drops_entry_from_rebuild() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    normalizer.process(_message(), ctx)
    normalizer.process(_part("prt_1", type="text", text="one"), ctx)
    normalizer.process(_part("prt_2", type="text", text="two"), ctx)

    events = normalizer.process(_event("message.part.removed", messageID="msg_1", partID="prt_1"), ctx)
    assert [e.entry.id for e in events] == ["msg_1:prt_2"]


def test_idle_completes_with_summed_cost() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    normalizer.begin_turn(ctx)
    normalizer.process(_message(mid="msg_1", cost=0.01), ctx)
    normalizer.process(_message(mid="msg_1", cost=0.02), ctx)
    normalizer.process(_message(mid="msg_2", cost=0.03), ctx)

    [complete] = normalizer.process(_event("session.idle", sessionID="ses_1"), ctx)
    assert isinstance(complete, CompleteEvent)
    assert complete.result.is_error is False
    assert round(complete.result.cost.cost_usd, 6) == 0.05
    assert complete.result.duration_ms >= 0


def test_idle_without_cost_has_no_cost_info() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    [complete] = normalizer.process(_event("session.idle"), ctx)
    assert complete.result.cost is None


def test_session_error_message() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    [event] = normalizer.process(
        _event("session.error", error={"name": "APIError", "data": {"message": "overloaded"}}), ctx,
    )
    assert event == ErrorEvent(error="overloaded")
    assert normalizer.process(_event("session.error"), ctx) == [ErrorEvent(error="Unknown error")]


def test_compacted_and_session_updated() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    [compacted] = normalizer.process(_event("session.compacted", sessionID="ses_1"), ctx)
    assert isinstance(compacted.entry, SystemStatusEntry)
    assert compacted.entry.id.startswith("compact-")

    [updated] = normalizer.process(_event("session.updated", info={"id": "ses_1", "title": "Fix tests"}), ctx)
    assert updated == SessionUpdatedEvent(title="Fix tests")


def test_retry_status_is_rate_limit() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    assert normalizer.process(_event("session.status", status={"type": "retry"}), ctx) == [RateLimitEvent()]
    assert normalizer.process(_event("session.status", status={"type": "busy"}), ctx) == []


def test_permission_updated_event() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    [event] = normalizer.process(_event(
        "permission.updated", id="per_1", type="bash", title="Run ls", metadata={"command": "ls"},
    ), ctx)
    assert event == PermissionRequestEvent(
        request_id="per_1", tool_name="bash", input={"command": "ls"}, description="Run ls",
    )


def test_prompt_result_rebuilds_entries() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    raw = {
        "kind": "prompt-result",
        "info": {"id": "msg_9", "role": "assistant", "time": {"created": 1_700_000_000}},
        "parts": [{"id": "prt_1", "messageID": "msg_9", "type": "text", "text": "final"}],
    }
    [event] = normalizer.process(raw, ctx)
    assert event.entry.value == "final"
    assert event.entry.model is None
    assert event.entry.date.startswith("2023-11-14")


def test_unrelated_events_are_ignored() -> None:
    normalizer = OpenCodeNormalizer()
    ctx = normalizer.new_context()
    assert normalizer.process(_event("file.edited", file="/x"), ctx) == []
    assert normalizer.process({"kind": "mystery"}, ctx) == []


def test_foreign_context_is_rejected() -> None:
    normalizer = OpenCodeNormalizer()
    with pytest.raises(TypeError):
        normalizer.normalize(_event("session.idle", sessionID="ses_1"), NormalizationContext())
    with pytest.raises(TypeError):
        normalizer.begin_turn(NormalizationContext())
