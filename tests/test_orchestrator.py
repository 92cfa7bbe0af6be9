"""Session orchestrator tests driven by a scripted in-process provider."""
from __future__ import annotations

import asyncio
import sqlite3
from typing import Any

import pytest

from steward.adapters.event_bus import EventBus
from steward.adapters.events import (
    EntryAdded,
    EntryUpdated,
    NameUpdated,
    PermissionRequested,
    QuestionRequested,
    QueueUpdated,
    StatusChanged,
    ToolResultPatched,
)
from steward.adapters.orchestrator import SessionOrchestrator
from steward.adapters.permission_store import ProjectPermissionStore
from steward.engine.config import EngineConfig
from steward.engine.errors import (
    NoActiveSessionError,
    PendingRequestNotFoundError,
    QueuedPromptNotFoundError,
    SessionAlreadyActiveError,
    TaskNotFoundError,
)
from steward.engine.models import (
    AgentBackend,
    DecisionBehavior,
    InteractionMode,
    PermissionMode,
    PermissionResponse,
    QuestionResponse,
    Task,
    TaskStatus,
    ToolDecision,
)
from steward.engine.normalizers.claude import ClaudeNormalizer
from steward.engine.normalizers.opencode import OpenCodeNormalizer
from steward.engine.providers.base import Provider
from steward.engine.providers.registry import ProviderRegistry
from steward.engine.session import SessionRegistry
from steward.engine.task_store import TaskStore


class FakeProvider(Provider):
    """Replays one scripted list of steps per turn.

    A step is a raw dict to yield, or a tuple: ``("authorize", tool, input)``,
    ``("authorize_all", [(tool, input), ...])``, ``("gate",)`` to block until
    ``gate`` is set, or ``("raise", exc)``.
    """

    def __init__(self, turns: list[list[Any]], normalizer=None) -> None:
        self.turns = list(turns)
        self._normalizer = normalizer or ClaudeNormalizer()
        self.prompts: list[str] = []
        self.resume_tokens: list[str | None] = []
        self.modes: list[PermissionMode] = []
        self.set_modes: list[PermissionMode] = []
        self.decisions: list[ToolDecision] = []
        self.gate = asyncio.Event()
        self.waiting = False
        self.closed = False
        self.shut_down = False

    @property
    def name(self) -> str:
        return "fake"

    @property
    def normalizer(self):
        return self._normalizer

    def is_available(self) -> bool:
        return True

    async def run_turn(self, prompt, *, cwd, authorize, mode, cancel, resume_token=None, model=None):
        self.prompts.append(prompt)
        self.resume_tokens.append(resume_token)
        self.modes.append(mode)
        steps = self.turns.pop(0) if self.turns else []
        try:
            for step in steps:
                if isinstance(step, dict):
                    yield step
                elif step[0] == "authorize":
                    self.decisions.append(await authorize(step[1], step[2]))
                elif step[0] == "authorize_all":
                    self.decisions.extend(await asyncio.gather(
                        *(authorize(tool, tool_input) for tool, tool_input in step[1])
                    ))
                elif step[0] == "gate":
                    self.waiting = True
                    await self.gate.wait()
                    self.waiting = False
                elif step[0] == "raise":
                    raise step[1]
        finally:
            self.closed = True

    async def set_mode(self, mode: PermissionMode) -> None:
        self.set_modes.append(mode)

    async def shutdown(self) -> None:
        self.shut_down = True


class Harness:
    def __init__(self, tmp_path, turns, config=None, normalizer=None, cwd=None, **task_fields):
        self.store = TaskStore(tmp_path / "steward.db")
        self.bus = EventBus()
        self.registry = SessionRegistry()
        self.provider = FakeProvider(turns, normalizer)
        providers = ProviderRegistry(config)
        providers.register(AgentBackend.CLAUDE_CODE, lambda: self.provider)
        self.orch = SessionOrchestrator(self.registry, self.store, self.bus, providers, config)
        workdir = tmp_path / "repo"
        workdir.mkdir(exist_ok=True)
        self.task = self.store.create_task(
            Task(prompt="do it", cwd=str(cwd or workdir), **task_fields),
        )
        self.events: list = []

    @property
    def task_id(self) -> str:
        return self.task.id

    def collect(self) -> list:
        self.events.extend(self.bus.drain_nowait())
        return self.events

    def of(self, cls) -> list:
        return [e for e in self.collect() if isinstance(e, cls)]

    def statuses(self) -> list[str]:
        return [e.status for e in self.of(StatusChanged)]

    def stored(self) -> Task:
        return self.store.get_task(self.task_id)

    def entries(self) -> list[dict]:
        return self.store.list_entries(self.task_id)


def _init(session_id: str = "sess-1") -> dict:
    return {"type": "system", "subtype": "init", "session_id": session_id}


def _text(text: str) -> dict:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "model": "claude-sonnet-4", "content": [{"type": "text", "text": text}]},
    }


def _result(text: str = "Done.", is_error: bool = False) -> dict:
    return {
        "type": "result",
        "subtype": "error" if is_error else "success",
        "session_id": "sess-1",
        "is_error": is_error,
        "result": text,
        "duration_ms": 5,
        "total_cost_usd": 0.01,
    }


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _pending(h: Harness):
    await _until(lambda: h.orch.get_pending_request(h.task_id) is not None)
    return h.orch.get_pending_request(h.task_id)


# ── Lifecycle ──


@pytest.mark.asyncio
async def test_start_runs_turn_to_completion(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), _text("Working on it."), _result()]])

    await h.orch.start(h.task_id)

    entries = h.entries()
    assert [e["type"] for e in entries] == ["user-prompt", "assistant-message", "result"]
    assert [e["index"] for e in entries] == [0, 1, 2]
    assert entries[0]["value"] == "do it"
    assert h.stored().status == TaskStatus.COMPLETED
    assert h.stored().session_id == "sess-1"
    assert h.statuses() == ["running", "completed"]
    assert [e.index for e in h.of(EntryAdded)] == [0, 1, 2]
    assert h.provider.modes == [PermissionMode.DEFAULT]
    assert h.provider.shut_down is True
    assert not h.orch.is_running(h.task_id)


@pytest.mark.asyncio
async def test_start_unknown_task_raises(tmp_path) -> None:
    h = Harness(tmp_path, [])
    with pytest.raises(TaskNotFoundError):
        await h.orch.start("missing")


@pytest.mark.asyncio
async def test_start_while_active_raises(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("gate",), _result()]])
    run = asyncio.create_task(h.orch.start(h.task_id))
    await _until(lambda: h.provider.waiting)

    with pytest.raises(SessionAlreadyActiveError):
        await h.orch.start(h.task_id)

    h.provider.gate.set()
    await asyncio.wait_for(run, 2)
    assert h.stored().status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_send_message_resumes_with_session_id(tmp_path) -> None:
    h = Harness(tmp_path, [
        [_init(), _result()],
        [_text("Again."), _result()],
    ])
    await h.orch.start(h.task_id)
    await h.orch.send_message(h.task_id, "once more")

    assert h.provider.prompts == ["do it", "once more"]
    assert h.provider.resume_tokens == [None, "sess-1"]
    entries = h.entries()
    assert [e["index"] for e in entries] == list(range(5))
    assert (entries[2]["type"], entries[2]["value"]) == ("user-prompt", "once more")
    assert h.statuses() == ["running", "completed", "running", "completed"]


@pytest.mark.asyncio
async def test_send_message_stops_active_session_first(tmp_path) -> None:
    h = Harness(tmp_path, [
        [_init(), ("gate",), _result()],
        [_text("ok"), _result()],
    ])
    run = asyncio.create_task(h.orch.start(h.task_id))
    await _until(lambda: h.provider.waiting)

    await h.orch.send_message(h.task_id, "instead")
    await asyncio.wait_for(run, 2)

    assert h.provider.prompts == ["do it", "instead"]
    assert h.provider.resume_tokens == [None, "sess-1"]
    values = [e.get("value") for e in h.entries()]
    assert values == ["do it", "Task interrupted by user", "instead", "ok", "Done."]
    assert h.stored().status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_stream_without_result_is_errored(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), _text("partial")]])
    await h.orch.start(h.task_id)

    assert h.stored().status == TaskStatus.ERRORED
    [final] = [e for e in h.of(StatusChanged) if e.status == "errored"]
    assert final.error == "Engine stream ended without a result"


@pytest.mark.asyncio
async def test_error_result_marks_task_errored(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), _result("rate limited", is_error=True)]])
    await h.orch.start(h.task_id)

    assert h.stored().status == TaskStatus.ERRORED
    assert h.of(StatusChanged)[-1].error == "rate limited"
    assert h.entries()[-1]["is_error"] is True


@pytest.mark.asyncio
async def test_provider_exception_marks_task_errored(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("raise", RuntimeError("engine crashed"))]])
    await h.orch.start(h.task_id)

    assert h.stored().status == TaskStatus.ERRORED
    assert h.of(StatusChanged)[-1].error == "engine crashed"
    assert not h.orch.is_running(h.task_id)
    assert h.provider.shut_down is True


@pytest.mark.asyncio
async def test_missing_working_directory_errors_before_engine_call(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), _result()]], cwd=tmp_path / "gone")
    await h.orch.start(h.task_id)

    assert h.provider.prompts == []
    assert h.entries() == []
    assert h.stored().status == TaskStatus.ERRORED
    assert "does not exist" in h.of(StatusChanged)[-1].error


@pytest.mark.asyncio
async def test_recover_stale_tasks(tmp_path) -> None:
    h = Harness(tmp_path, [])
    store = h.store
    running = store.create_task(Task(prompt="a", cwd="/tmp", status=TaskStatus.RUNNING))
    waiting = store.create_task(Task(prompt="b", cwd="/tmp", status=TaskStatus.WAITING))
    done = store.create_task(Task(prompt="c", cwd="/tmp", status=TaskStatus.COMPLETED))
    store.update_task(h.task_id, status=TaskStatus.ERRORED)

    assert h.orch.recover_stale_tasks() == 2
    assert store.get_task(running.id).status == TaskStatus.INTERRUPTED
    assert store.get_task(waiting.id).status == TaskStatus.INTERRUPTED
    assert store.get_task(done.id).status == TaskStatus.COMPLETED
    assert h.bus.qsize() == 0
    assert h.orch.recover_stale_tasks() == 0


@pytest.mark.asyncio
async def test_persistence_failures_do_not_stop_the_stream(tmp_path, monkeypatch) -> None:
    h = Harness(tmp_path, [[_init(), _text("hi"), _result()]])

    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(h.store, "append_entry", _broken)
    await h.orch.start(h.task_id)

    assert len(h.of(EntryAdded)) == 3
    assert h.entries() == []
    assert h.stored().status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_entry_updates_overwrite_stored_tool_use(tmp_path) -> None:
    h = Harness(tmp_path, [[
        _init(),
        {"type": "assistant", "message": {"content": [
            {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
        ]}},
        {"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.py"},
        ]}},
        {"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "toolu_9", "content": "stray"},
        ]}},
        _result(),
    ]])
    await h.orch.start(h.task_id)

    tool = [e for e in h.entries() if e["type"] == "tool-use"]
    assert len(tool) == 1
    assert tool[0]["result"] == {"content": "a.py", "is_error": False}
    assert len(h.of(EntryUpdated)) == 1
    [patched] = h.of(ToolResultPatched)
    assert patched.tool_id == "toolu_9"
    assert patched.result == "stray"


@pytest.mark.asyncio
async def test_opencode_stream_names_task_and_updates_entries(tmp_path) -> None:
    def _event(event_type, **props):
        return {"kind": "event", "event": {"type": event_type, "properties": props}}

    part = {"id": "prt_1", "messageID": "msg_1", "sessionID": "ses_1", "type": "text"}
    h = Harness(tmp_path, [[
        {"kind": "session", "session": {"id": "ses_1"}},
        _event("message.updated", info={"id": "msg_1", "role": "assistant", "sessionID": "ses_1"}),
        _event("message.part.updated", part={**part, "text": "Hel"}),
        _event("message.part.updated", part={**part, "text": "Hello"}),
        _event("session.updated", info={"id": "ses_1", "title": "Fix login"}),
        _event("session.idle", sessionID="ses_1"),
    ]], normalizer=OpenCodeNormalizer())

    await h.orch.start(h.task_id)

    stored = h.stored()
    assert stored.session_id == "ses_1"
    assert stored.name == "Fix login"
    assert stored.status == TaskStatus.COMPLETED
    assert [e.get("value") for e in h.entries()] == ["do it", "Hello"]
    assert len(h.of(EntryUpdated)) == 1
    assert [e.name for e in h.of(NameUpdated)] == ["Fix login"]


# ── Permissions and questions ──


@pytest.mark.asyncio
async def test_permission_request_round_trip(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("authorize", "Edit", {"file_path": "/x"}), _result()]])
    run = asyncio.create_task(h.orch.start(h.task_id))

    request = await _pending(h)
    assert isinstance(request, PermissionRequested)
    assert request.tool_name == "Edit"
    assert request.session_allow_option == {"label": "Allow Edit for Session", "tools_to_allow": ["Edit"]}
    assert h.stored().status == TaskStatus.WAITING

    await h.orch.respond(h.task_id, request.request_id, PermissionResponse())
    await asyncio.wait_for(run, 2)

    assert h.provider.decisions == [ToolDecision.allow({"file_path": "/x"})]
    assert len(h.of(PermissionRequested)) == 1
    assert h.statuses() == ["running", "waiting", "running", "completed"]


@pytest.mark.asyncio
async def test_bash_permission_then_result_lands_on_tool_use(tmp_path) -> None:
    h = Harness(tmp_path, [[
        _init(),
        {"type": "assistant", "message": {"content": [
            {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
        ]}},
        ("authorize", "Bash", {"command": "ls"}),
        {"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.py", "is_error": False},
        ]}},
        _result(),
    ]])
    run = asyncio.create_task(h.orch.start(h.task_id))

    request = await _pending(h)
    assert request.tool_name == "Bash"
    assert request.session_allow_option == {
        "label": "Allow Bash for Session", "tools_to_allow": ["Bash(ls)"],
    }
    assert h.stored().status == TaskStatus.WAITING

    await h.orch.respond(h.task_id, request.request_id, PermissionResponse())
    await asyncio.wait_for(run, 2)

    assert h.provider.decisions == [ToolDecision.allow({"command": "ls"})]
    assert h.statuses() == ["running", "waiting", "running", "completed"]
    [tool] = [e for e in h.entries() if e["type"] == "tool-use"]
    assert tool["name"] == "bash"
    assert tool["result"] == {"content": "a.py", "is_error": False}


@pytest.mark.asyncio
async def test_deny_response_carries_message(tmp_path) -> None:
    h = Harness(tmp_path, [[
        _init(),
        ("authorize", "Bash", {"command": "rm -rf build"}),
        ("authorize", "Bash", {"command": "rm -rf dist"}),
        _result(),
    ]])
    run = asyncio.create_task(h.orch.start(h.task_id))

    first = await _pending(h)
    await h.orch.respond(
        h.task_id, first.request_id,
        PermissionResponse(behavior=DecisionBehavior.DENY, message="not now"),
    )
    await _until(lambda: len(h.provider.decisions) == 1)
    second = await _pending(h)
    await h.orch.respond(h.task_id, second.request_id, PermissionResponse(behavior=DecisionBehavior.DENY))
    await asyncio.wait_for(run, 2)

    assert h.provider.decisions == [ToolDecision.deny("not now"), ToolDecision.deny("Denied by user")]


@pytest.mark.asyncio
async def test_session_allow_skips_later_requests(tmp_path) -> None:
    h = Harness(tmp_path, [[
        _init(),
        ("authorize", "Edit", {"file_path": "/a"}),
        ("authorize", "Edit", {"file_path": "/b"}),
        _result(),
    ]])
    run = asyncio.create_task(h.orch.start(h.task_id))

    request = await _pending(h)
    await h.orch.respond(
        h.task_id, request.request_id,
        PermissionResponse(allow_mode="session", tools_to_allow=["Edit"]),
    )
    await asyncio.wait_for(run, 2)

    assert h.stored().session_allowed_tools == ["Edit"]
    assert h.provider.decisions == [
        ToolDecision.allow({"file_path": "/a"}, remember=True),
        ToolDecision.allow({"file_path": "/b"}),
    ]
    assert len(h.of(PermissionRequested)) == 1


@pytest.mark.asyncio
async def test_project_allow_writes_settings_file(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("authorize", "Bash", {"command": "npm test"}), _result()]])
    run = asyncio.create_task(h.orch.start(h.task_id))

    request = await _pending(h)
    assert request.session_allow_option["tools_to_allow"] == ["Bash(npm test)"]
    await h.orch.respond(
        h.task_id, request.request_id,
        PermissionResponse(allow_mode="project", tools_to_allow=["Bash(npm test)"]),
    )
    await asyncio.wait_for(run, 2)

    assert ProjectPermissionStore(h.task.cwd).load() == ["Bash(npm test)"]
    assert h.stored().session_allowed_tools == ["Bash(npm test)"]


@pytest.mark.asyncio
async def test_project_allow_respects_config_switch(tmp_path) -> None:
    config = EngineConfig(persist_project_permissions=False)
    h = Harness(tmp_path, [[_init(), ("authorize", "Write", {"file_path": "/x"}), _result()]], config=config)
    run = asyncio.create_task(h.orch.start(h.task_id))

    request = await _pending(h)
    await h.orch.respond(
        h.task_id, request.request_id,
        PermissionResponse(allow_mode="project", tools_to_allow=["Write"]),
    )
    await asyncio.wait_for(run, 2)

    assert not ProjectPermissionStore(h.task.cwd).path.exists()
    assert h.stored().session_allowed_tools == ["Write"]


@pytest.mark.asyncio
async def test_exit_plan_mode_allow_switches_mode(tmp_path) -> None:
    h = Harness(
        tmp_path,
        [[_init(), ("authorize", "ExitPlanMode", {"plan": "1. edit"}), _result()]],
        interaction_mode=InteractionMode.PLAN,
    )
    run = asyncio.create_task(h.orch.start(h.task_id))

    request = await _pending(h)
    option = request.session_allow_option
    assert option["set_mode_on_allow"] == "ask"
    await h.orch.respond(
        h.task_id, request.request_id,
        PermissionResponse(
            allow_mode="session",
            tools_to_allow=option["tools_to_allow"],
            set_mode_on_allow=InteractionMode.ASK,
        ),
    )
    await asyncio.wait_for(run, 2)

    assert h.provider.modes == [PermissionMode.PLAN]
    assert h.provider.set_modes == [PermissionMode.DEFAULT]
    stored = h.stored()
    assert stored.interaction_mode == InteractionMode.ASK
    assert stored.session_allowed_tools == ["Edit", "Write"]


@pytest.mark.asyncio
async def test_concurrent_requests_are_shown_in_order(tmp_path) -> None:
    h = Harness(tmp_path, [[
        _init(),
        ("authorize_all", [("Edit", {"file_path": "/a"}), ("Write", {"file_path": "/b"})]),
        _result(),
    ]])
    run = asyncio.create_task(h.orch.start(h.task_id))

    await _until(lambda: (s := h.registry.get(h.task_id)) is not None and len(s.pending) == 2)
    first = h.orch.get_pending_request(h.task_id)
    assert first.tool_name == "Edit"
    assert len(h.of(PermissionRequested)) == 1

    await h.orch.respond(h.task_id, first.request_id, PermissionResponse())
    assert [e.tool_name for e in h.of(PermissionRequested)] == ["Edit", "Write"]
    await asyncio.sleep(0.05)
    assert h.stored().status == TaskStatus.WAITING

    second = h.orch.get_pending_request(h.task_id)
    assert second.tool_name == "Write"
    await h.orch.respond(h.task_id, second.request_id, PermissionResponse())
    await asyncio.wait_for(run, 2)

    assert [d.behavior for d in h.provider.decisions] == [DecisionBehavior.ALLOW] * 2
    assert h.statuses()[-2:] == ["running", "completed"]


@pytest.mark.asyncio
async def test_question_request_returns_answers(tmp_path) -> None:
    questions = [{"question": "Which db?", "header": "DB", "options": [{"label": "sqlite"}]}]
    h = Harness(tmp_path, [[_init(), ("authorize", "AskUserQuestion", {"questions": questions}), _result()]])
    run = asyncio.create_task(h.orch.start(h.task_id))

    request = await _pending(h)
    assert isinstance(request, QuestionRequested)
    assert request.questions == questions
    await h.orch.respond(h.task_id, request.request_id, QuestionResponse(answers={"Which db?": "sqlite"}))
    await asyncio.wait_for(run, 2)

    assert h.provider.decisions == [
        ToolDecision.allow({"questions": questions, "answers": {"Which db?": "sqlite"}}),
    ]


@pytest.mark.asyncio
async def test_respond_errors(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("authorize", "Edit", {}), _result()]])
    with pytest.raises(NoActiveSessionError):
        await h.orch.respond(h.task_id, "req", PermissionResponse())

    run = asyncio.create_task(h.orch.start(h.task_id))
    request = await _pending(h)
    with pytest.raises(PendingRequestNotFoundError):
        await h.orch.respond(h.task_id, "not-a-request", PermissionResponse())

    await h.orch.respond(h.task_id, request.request_id, PermissionResponse())
    await asyncio.wait_for(run, 2)


@pytest.mark.asyncio
async def test_permission_timeout_denies(tmp_path) -> None:
    config = EngineConfig(permission_timeout_seconds=0.05)
    h = Harness(tmp_path, [[_init(), ("authorize", "Edit", {}), _result()]], config=config)

    await asyncio.wait_for(h.orch.start(h.task_id), 2)

    assert h.provider.decisions == [ToolDecision.deny("Permission request timed out")]
    assert h.statuses() == ["running", "waiting", "running", "completed"]


# ── Stop ──


@pytest.mark.asyncio
async def test_stop_denies_pending_requests_and_interrupts(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("authorize", "Bash", {"command": "make"}), _result()]])
    run = asyncio.create_task(h.orch.start(h.task_id))
    request = await _pending(h)
    parked = h.registry.get(h.task_id).pending.head()

    await h.orch.stop(h.task_id)
    await asyncio.wait_for(run, 2)

    assert parked.request_id == request.request_id
    assert parked.future.result() == ToolDecision.deny("Stopped by user")
    last = h.entries()[-1]
    assert last["type"] == "result"
    assert last["value"] == "Task interrupted by user"
    assert last["is_error"] is True
    assert h.stored().status == TaskStatus.INTERRUPTED
    interrupted = h.of(StatusChanged)[-1]
    assert (interrupted.status, interrupted.error) == ("interrupted", "Stopped by user")
    assert h.of(QueueUpdated)[-1].queued_prompts == []
    assert not h.orch.is_running(h.task_id)


@pytest.mark.asyncio
async def test_stop_closes_engine_stream(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("gate",), _result()]])
    run = asyncio.create_task(h.orch.start(h.task_id))
    await _until(lambda: h.provider.waiting)

    await h.orch.stop(h.task_id)
    await asyncio.wait_for(run, 2)

    assert h.provider.closed is True
    assert h.stored().status == TaskStatus.INTERRUPTED
    assert "Done." not in [e.get("value") for e in h.entries()]


@pytest.mark.asyncio
async def test_stop_without_session_is_noop(tmp_path) -> None:
    h = Harness(tmp_path, [])
    await h.orch.stop(h.task_id)
    assert h.collect() == []
    assert h.stored().status == TaskStatus.WAITING


@pytest.mark.asyncio
async def test_shutdown_stops_live_sessions(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("gate",), _result()]])
    run = asyncio.create_task(h.orch.start(h.task_id))
    await _until(lambda: h.provider.waiting)

    await h.orch.shutdown()
    await asyncio.wait_for(run, 2)
    assert h.stored().status == TaskStatus.INTERRUPTED
    assert len(h.registry) == 0


# ── Prompt queue ──


@pytest.mark.asyncio
async def test_queued_prompts_run_in_order_on_same_session(tmp_path) -> None:
    h = Harness(tmp_path, [
        [_init(), ("gate",), _result()],
        [_text("A done"), _result()],
        [_text("B done"), _result()],
    ])
    run = asyncio.create_task(h.orch.start(h.task_id))
    await _until(lambda: h.provider.waiting)

    await h.orch.queue_prompt(h.task_id, "A")
    await h.orch.queue_prompt(h.task_id, "B")
    assert [p.content for p in h.orch.get_queued_prompts(h.task_id)] == ["A", "B"]

    h.provider.gate.set()
    await asyncio.wait_for(run, 2)

    assert h.provider.prompts == ["do it", "A", "B"]
    assert h.provider.resume_tokens == [None, "sess-1", "sess-1"]
    snapshots = [[p["content"] for p in e.queued_prompts] for e in h.of(QueueUpdated)]
    assert snapshots == [["A"], ["A", "B"], ["B"], []]
    assert h.statuses() == ["running", "completed"]
    assert h.provider.shut_down is True


@pytest.mark.asyncio
async def test_queue_is_not_drained_after_error(tmp_path) -> None:
    h = Harness(tmp_path, [
        [_init(), ("gate",), _result("boom", is_error=True)],
        [_result()],
    ])
    run = asyncio.create_task(h.orch.start(h.task_id))
    await _until(lambda: h.provider.waiting)
    await h.orch.queue_prompt(h.task_id, "later")

    h.provider.gate.set()
    await asyncio.wait_for(run, 2)

    assert h.provider.prompts == ["do it"]
    assert h.stored().status == TaskStatus.ERRORED


@pytest.mark.asyncio
async def test_cancel_queued_prompt(tmp_path) -> None:
    h = Harness(tmp_path, [[_init(), ("gate",), _result()]])
    with pytest.raises(NoActiveSessionError):
        await h.orch.queue_prompt(h.task_id, "too early")

    run = asyncio.create_task(h.orch.start(h.task_id))
    await _until(lambda: h.provider.waiting)
    prompt_id = await h.orch.queue_prompt(h.task_id, "maybe")
    await h.orch.cancel_queued_prompt(h.task_id, prompt_id)
    assert h.orch.get_queued_prompts(h.task_id) == []
    with pytest.raises(QueuedPromptNotFoundError):
        await h.orch.cancel_queued_prompt(h.task_id, prompt_id)

    h.provider.gate.set()
    await asyncio.wait_for(run, 2)
    assert h.provider.prompts == ["do it"]


# ── Modes ──


@pytest.mark.asyncio
async def test_set_mode_persists_and_applies(tmp_path) -> None:
    h = Harness(tmp_path, [
        [_init(), _result()],
        [("gate",), _result()],
    ])
    with pytest.raises(TaskNotFoundError):
        await h.orch.set_mode("missing", InteractionMode.AUTO)

    await h.orch.set_mode(h.task_id, InteractionMode.AUTO)
    assert h.stored().interaction_mode == InteractionMode.AUTO
    await h.orch.start(h.task_id)
    assert h.provider.modes == [PermissionMode.BYPASS]
    assert h.provider.set_modes == []

    run = asyncio.create_task(h.orch.send_message(h.task_id, "plan it"))
    await _until(lambda: h.provider.waiting)
    await h.orch.set_mode(h.task_id, InteractionMode.PLAN)
    h.provider.gate.set()
    await asyncio.wait_for(run, 2)

    assert h.provider.set_modes == [PermissionMode.PLAN]
    assert h.stored().interaction_mode == InteractionMode.PLAN
