from __future__ import annotations

import pytest

from steward.engine.entries import AssistantMessageEntry, ToolUseEntry, UserPromptEntry
from steward.engine.models import AgentBackend, InteractionMode, Task, TaskStatus
from steward.engine.task_store import TaskStore


def _store(tmp_path) -> TaskStore:
    return TaskStore(tmp_path / "nested" / "steward.db")


def test_create_and_get_task_round_trips_fields(tmp_path) -> None:
    store = _store(tmp_path)
    task = Task(
        prompt="fix the build",
        cwd=str(tmp_path),
        name="build",
        agent_backend=AgentBackend.OPENCODE,
        interaction_mode=InteractionMode.PLAN,
        session_allowed_tools=["Edit", "Bash(make)"],
        model="anthropic/claude-sonnet-4",
    )
    store.create_task(task)

    loaded = store.get_task(task.id)
    assert loaded == task
    assert store.get_task("missing") is None


def test_update_task_patches_fields(tmp_path) -> None:
    store = _store(tmp_path)
    task = store.create_task(Task(prompt="p", cwd="/tmp"))

    updated = store.update_task(
        task.id, status=TaskStatus.RUNNING, session_id="sess-1", session_allowed_tools=["Read"],
    )
    assert updated.status == TaskStatus.RUNNING
    assert updated.session_id == "sess-1"
    assert updated.session_allowed_tools == ["Read"]
    assert updated.updated_at >= task.updated_at


def test_update_task_rejects_unknown_fields(tmp_path) -> None:
    store = _store(tmp_path)
    task = store.create_task(Task(prompt="p", cwd="/tmp"))
    with pytest.raises(ValueError, match="bogus"):
        store.update_task(task.id, bogus=1)
    with pytest.raises(ValueError):
        store.update_task(task.id, id="other")


def test_list_tasks_by_status(tmp_path) -> None:
    store = _store(tmp_path)
    running = store.create_task(Task(prompt="a", cwd="/tmp", status=TaskStatus.RUNNING))
    store.create_task(Task(prompt="b", cwd="/tmp", status=TaskStatus.COMPLETED))
    waiting = store.create_task(Task(prompt="c", cwd="/tmp", status=TaskStatus.WAITING))

    found = store.list_tasks_by_status([TaskStatus.RUNNING, TaskStatus.WAITING])
    assert {t.id for t in found} == {running.id, waiting.id}
    assert store.list_tasks_by_status([]) == []
    assert len(store.list_tasks()) == 3


def test_entries_are_ordered_by_index(tmp_path) -> None:
    store = _store(tmp_path)
    task = store.create_task(Task(prompt="p", cwd="/tmp"))
    store.append_entry(task.id, 1, AssistantMessageEntry(value="second"))
    store.append_entry(task.id, 0, UserPromptEntry(value="first"))

    entries = store.list_entries(task.id)
    assert [e["value"] for e in entries] == ["first", "second"]
    assert [e["index"] for e in entries] == [0, 1]
    assert entries[0]["type"] == "user-prompt"
    assert store.get_entry_count(task.id) == 2


def test_update_entry_overwrites_by_id(tmp_path) -> None:
    store = _store(tmp_path)
    task = store.create_task(Task(prompt="p", cwd="/tmp"))
    entry = AssistantMessageEntry(id="msg_1:prt_1", value="Hel")
    store.append_entry(task.id, 0, entry)

    entry.value = "Hello"
    assert store.update_entry(task.id, entry) is True
    assert store.list_entries(task.id)[0]["value"] == "Hello"
    assert store.update_entry(task.id, AssistantMessageEntry(id="nope")) is False


def test_update_tool_result_patches_matching_tool_use(tmp_path) -> None:
    store = _store(tmp_path)
    task = store.create_task(Task(prompt="p", cwd="/tmp"))
    store.append_entry(task.id, 0, ToolUseEntry(tool_id="toolu_1", name="NotebookEdit", input={}))

    assert store.update_tool_result(task.id, "toolu_1", "done", is_error=True) is True
    [entry] = store.list_entries(task.id)
    assert entry["result"] == "done"
    assert entry["is_error"] is True
    assert store.update_tool_result(task.id, "toolu_2", "x") is False


def test_delete_entries(tmp_path) -> None:
    store = _store(tmp_path)
    task = store.create_task(Task(prompt="p", cwd="/tmp"))
    store.append_entry(task.id, 0, UserPromptEntry(value="a"))
    assert store.delete_entries(task.id) == 1
    assert store.list_entries(task.id) == []
