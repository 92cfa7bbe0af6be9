"""Tool-call mapping shared by every normalizer.

Backends name and shape their tools differently. Each backend resolves
its raw tool name to a ``CanonicalTool`` through an alias table, then
the ``ToolMapping`` registered for that canonical name extracts a typed
input and, once the call finishes, a typed result. The result type is
fixed per canonical name; unknown tools pass through verbatim.
"""
from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .entries import ToolUseEntry

logger = logging.getLogger(__name__)


class CanonicalTool(str, Enum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    BASH = "bash"
    GLOB = "glob"
    GREP = "grep"
    SUB_AGENT = "sub-agent"
    ASK_USER_QUESTION = "ask-user-question"
    TODO_WRITE = "todo-write"
    EXIT_PLAN_MODE = "exit-plan-mode"
    SKILL = "skill"
    WEB_FETCH = "web-fetch"
    WEB_SEARCH = "web-search"
    MCP = "mcp"


TODO_STATUSES = ("pending", "in_progress", "completed")


# ── Typed inputs ──


@dataclass
class ReadInput:
    file_path: str = ""


@dataclass
class WriteInput:
    file_path: str = ""
    value: str = ""


@dataclass
class EditInput:
    file_path: str = ""
    old_string: str = ""
    new_string: str = ""


@dataclass
class BashInput:
    command: str = ""
    description: str | None = None


@dataclass
class GlobInput:
    pattern: str = ""


@dataclass
class GrepInput:
    pattern: str = ""


@dataclass
class SubAgentInput:
    agent_type: str = ""
    description: str = ""
    prompt: str = ""


@dataclass
class QuestionOption:
    label: str = ""
    description: str = ""


@dataclass
class Question:
    question: str = ""
    header: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    multi_select: bool | None = None


@dataclass
class AskUserQuestionInput:
    questions: list[Question] = field(default_factory=list)


@dataclass
class TodoItem:
    content: str = ""
    status: str = "pending"
    description: str | None = None


@dataclass
class TodoWriteInput:
    todos: list[TodoItem] | None = None


@dataclass
class ExitPlanModeInput:
    plan: str = ""


@dataclass
class SkillInput:
    pass


@dataclass
class WebFetchInput:
    url: str = ""
    prompt: str = ""


@dataclass
class WebSearchInput:
    query: str = ""


# ── Typed results ──


@dataclass
class BashResult:
    content: str = ""
    is_error: bool = False


@dataclass
class WriteResult:
    success: bool = True


@dataclass
class EditHunk:
    old_start: int = 0
    new_start: int = 0
    lines: list[str] = field(default_factory=list)


@dataclass
class EditResult:
    changes: list[EditHunk] = field(default_factory=list)


@dataclass
class SubAgentResult:
    output: str = ""


@dataclass
class QuestionAnswer:
    question: str = ""
    answer: str | list[str] = ""


@dataclass
class AskUserQuestionResult:
    answers: list[QuestionAnswer] = field(default_factory=list)


@dataclass
class TodoWriteResult:
    old_todos: list[TodoItem] = field(default_factory=list)
    new_todos: list[TodoItem] = field(default_factory=list)


@dataclass
class ExitPlanModeResult:
    content: str = ""


@dataclass
class SkillResult:
    pass


@dataclass
class WebFetchResult:
    content: str = ""
    code: int | None = None


@dataclass
class WebSearchResult:
    content: str = ""


@dataclass
class ToolOutcome:
    """What a backend knows about a finished tool call.

    ``structured`` carries backend-specific extras (Claude's
    ``tool_use_result``, OpenCode's part metadata); ``input`` is the
    final input when the backend re-reports it with the result.
    """
    content: str = ""
    is_error: bool = False
    structured: dict[str, Any] | None = None
    input: dict[str, Any] | None = None


# ── Field helpers ──


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _first(raw: dict[str, Any], *keys: str) -> Any:
    """First present, non-None value among alias keys."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _todo_item(raw: Any) -> TodoItem:
    obj = raw if isinstance(raw, dict) else {}
    status = _str(obj.get("status"))
    description = _first(obj, "description", "activeForm", "active_form")
    return TodoItem(
        content=_str(obj.get("content")),
        status=status if status in TODO_STATUSES else "pending",
        description=_str(description) if description else None,
    )


def _todo_list(raw: Any) -> list[TodoItem] | None:
    if not isinstance(raw, list):
        return None
    return [_todo_item(t) for t in raw]


def _question(raw: Any) -> Question:
    obj = raw if isinstance(raw, dict) else {}
    options = obj.get("options")
    multi = _first(obj, "multiSelect", "multi_select")
    return Question(
        question=_str(obj.get("question")),
        header=_str(obj.get("header")),
        options=[
            QuestionOption(
                label=_str(o.get("label")),
                description=_str(o.get("description")),
            )
            for o in options
            if isinstance(o, dict)
        ] if isinstance(options, list) else [],
        multi_select=True if multi is True else None,
    )


def parse_json_object(content: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


# ── Per-tool input extraction ──


def _read_input(raw: dict[str, Any]) -> ReadInput:
    return ReadInput(file_path=_str(_first(raw, "file_path", "filePath", "path")))


def _write_input(raw: dict[str, Any]) -> WriteInput:
    return WriteInput(
        file_path=_str(_first(raw, "file_path", "filePath", "path")),
        value=_str(raw.get("content")),
    )


def _edit_input(raw: dict[str, Any]) -> EditInput:
    return EditInput(
        file_path=_str(_first(raw, "file_path", "filePath", "path")),
        old_string=_str(_first(raw, "old_string", "oldString", "old")),
        new_string=_str(_first(raw, "new_string", "newString", "new")),
    )


def _bash_input(raw: dict[str, Any]) -> BashInput:
    description = raw.get("description")
    return BashInput(
        command=_str(_first(raw, "command", "cmd")),
        description=_str(description) if description else None,
    )


def _glob_input(raw: dict[str, Any]) -> GlobInput:
    return GlobInput(pattern=_str(_first(raw, "pattern", "glob")))


def _grep_input(raw: dict[str, Any]) -> GrepInput:
    return GrepInput(pattern=_str(_first(raw, "pattern", "query")))


def _sub_agent_input(raw: dict[str, Any]) -> SubAgentInput:
    return SubAgentInput(
        agent_type=_str(_first(raw, "subagent_type", "subagentType", "agent")),
        description=_str(raw.get("description")),
        prompt=_str(raw.get("prompt")),
    )


def _ask_input(raw: dict[str, Any]) -> AskUserQuestionInput:
    questions = raw.get("questions")
    if not isinstance(questions, list):
        return AskUserQuestionInput()
    return AskUserQuestionInput(questions=[_question(q) for q in questions])


def _todo_input(raw: dict[str, Any]) -> TodoWriteInput:
    return TodoWriteInput(todos=_todo_list(raw.get("todos")))


def _plan_input(raw: dict[str, Any]) -> ExitPlanModeInput:
    return ExitPlanModeInput(plan=_str(raw.get("plan")))


def _skill_input(raw: dict[str, Any]) -> SkillInput:
    return SkillInput()


def _web_fetch_input(raw: dict[str, Any]) -> WebFetchInput:
    return WebFetchInput(url=_str(raw.get("url")), prompt=_str(raw.get("prompt")))


def _web_search_input(raw: dict[str, Any]) -> WebSearchInput:
    return WebSearchInput(query=_str(raw.get("query")))


def _mcp_input(raw: dict[str, Any]) -> dict[str, Any]:
    return dict(raw)


# ── Per-tool result shaping ──


def _text_result(outcome: ToolOutcome) -> str:
    return outcome.content


def _bash_result(outcome: ToolOutcome) -> BashResult:
    return BashResult(content=outcome.content, is_error=bool(outcome.is_error))


def _write_result(outcome: ToolOutcome) -> WriteResult:
    return WriteResult(success=not outcome.is_error)


def _edit_result(outcome: ToolOutcome) -> EditResult:
    patch = (outcome.structured or {}).get("structuredPatch")
    if not isinstance(patch, list):
        return EditResult()
    changes = []
    for hunk in patch:
        if not isinstance(hunk, dict):
            continue
        lines = hunk.get("lines")
        changes.append(EditHunk(
            old_start=_int(hunk.get("oldStart")),
            new_start=_int(hunk.get("newStart")),
            lines=[str(line) for line in lines] if isinstance(lines, list) else [],
        ))
    return EditResult(changes=changes)


def _sub_agent_result(outcome: ToolOutcome) -> SubAgentResult:
    return SubAgentResult(output=outcome.content)


def _ask_result(outcome: ToolOutcome) -> AskUserQuestionResult:
    answers = (outcome.structured or {}).get("answers")
    if not isinstance(answers, dict):
        return AskUserQuestionResult()
    return AskUserQuestionResult(answers=[
        QuestionAnswer(
            question=question,
            answer=[str(a) for a in answer] if isinstance(answer, list) else _str(answer),
        )
        for question, answer in answers.items()
    ])


def _todo_result(outcome: ToolOutcome) -> TodoWriteResult:
    structured = outcome.structured or {}
    old = _todo_list(_first(structured, "oldTodos", "oldTods"))
    new = _todo_list(structured.get("newTodos"))
    if old is not None and new is not None:
        return TodoWriteResult(old_todos=old, new_todos=new)
    # Backends that only report the final list
    todos = _todo_list(_first(structured, "todos"))
    if todos is None and outcome.input:
        todos = _todo_list(outcome.input.get("todos"))
    return TodoWriteResult(old_todos=[], new_todos=todos or [])


def _plan_result(outcome: ToolOutcome) -> ExitPlanModeResult:
    return ExitPlanModeResult(content=outcome.content)


def _skill_result(outcome: ToolOutcome) -> SkillResult:
    return SkillResult()


def _web_fetch_result(outcome: ToolOutcome) -> WebFetchResult:
    code = (outcome.structured or {}).get("code")
    return WebFetchResult(
        content=outcome.content,
        code=code if isinstance(code, int) and not isinstance(code, bool) else None,
    )


def _web_search_result(outcome: ToolOutcome) -> WebSearchResult:
    return WebSearchResult(content=outcome.content)


def _mcp_result(outcome: ToolOutcome) -> dict[str, Any]:
    parsed = parse_json_object(outcome.content)
    if parsed is not None:
        return parsed
    if outcome.is_error:
        return {"error": outcome.content}
    return {}


@dataclass(frozen=True)
class ToolMapping:
    """Input extraction and result shaping for one canonical tool."""
    tool: CanonicalTool
    map_input: Callable[[dict[str, Any]], Any]
    map_result: Callable[[ToolOutcome], Any]


TOOL_MAPPINGS: dict[CanonicalTool, ToolMapping] = {
    m.tool: m
    for m in (
        ToolMapping(CanonicalTool.READ, _read_input, _text_result),
        ToolMapping(CanonicalTool.WRITE, _write_input, _write_result),
        ToolMapping(CanonicalTool.EDIT, _edit_input, _edit_result),
        ToolMapping(CanonicalTool.BASH, _bash_input, _bash_result),
        ToolMapping(CanonicalTool.GLOB, _glob_input, _text_result),
        ToolMapping(CanonicalTool.GREP, _grep_input, _text_result),
        ToolMapping(CanonicalTool.SUB_AGENT, _sub_agent_input, _sub_agent_result),
        ToolMapping(CanonicalTool.ASK_USER_QUESTION, _ask_input, _ask_result),
        ToolMapping(CanonicalTool.TODO_WRITE, _todo_input, _todo_result),
        ToolMapping(CanonicalTool.EXIT_PLAN_MODE, _plan_input, _plan_result),
        ToolMapping(CanonicalTool.SKILL, _skill_input, _skill_result),
        ToolMapping(CanonicalTool.WEB_FETCH, _web_fetch_input, _web_fetch_result),
        ToolMapping(CanonicalTool.WEB_SEARCH, _web_search_input, _web_search_result),
        ToolMapping(CanonicalTool.MCP, _mcp_input, _mcp_result),
    )
}


# ── Backend alias tables ──

CLAUDE_TOOL_ALIASES: dict[str, CanonicalTool] = {
    "Read": CanonicalTool.READ,
    "Write": CanonicalTool.WRITE,
    "Edit": CanonicalTool.EDIT,
    "Bash": CanonicalTool.BASH,
    "Glob": CanonicalTool.GLOB,
    "Grep": CanonicalTool.GREP,
    "Task": CanonicalTool.SUB_AGENT,
    "AskUserQuestion": CanonicalTool.ASK_USER_QUESTION,
    "TodoWrite": CanonicalTool.TODO_WRITE,
    "ExitPlanMode": CanonicalTool.EXIT_PLAN_MODE,
    "Skill": CanonicalTool.SKILL,
    "WebFetch": CanonicalTool.WEB_FETCH,
    "WebSearch": CanonicalTool.WEB_SEARCH,
}

# OpenCode names are matched lowercased.
OPENCODE_TOOL_ALIASES: dict[str, CanonicalTool] = {
    "read": CanonicalTool.READ,
    "read_file": CanonicalTool.READ,
    "write": CanonicalTool.WRITE,
    "write_file": CanonicalTool.WRITE,
    "edit": CanonicalTool.EDIT,
    "edit_file": CanonicalTool.EDIT,
    "bash": CanonicalTool.BASH,
    "shell": CanonicalTool.BASH,
    "glob": CanonicalTool.GLOB,
    "list_files": CanonicalTool.GLOB,
    "grep": CanonicalTool.GREP,
    "search": CanonicalTool.GREP,
    "task": CanonicalTool.SUB_AGENT,
    "web_search": CanonicalTool.WEB_SEARCH,
    "websearch": CanonicalTool.WEB_SEARCH,
    "web_fetch": CanonicalTool.WEB_FETCH,
    "webfetch": CanonicalTool.WEB_FETCH,
    "skill": CanonicalTool.SKILL,
    "todowrite": CanonicalTool.TODO_WRITE,
    "todo_write": CanonicalTool.TODO_WRITE,
}


def resolve_tool(
    raw_name: str,
    aliases: dict[str, CanonicalTool],
    *,
    fold_case: bool = False,
) -> CanonicalTool | None:
    """Canonical tool for a backend tool name, or None when unknown."""
    tool = aliases.get(raw_name.lower() if fold_case else raw_name)
    if tool is not None:
        return tool
    if raw_name.startswith("mcp__"):
        return CanonicalTool.MCP
    return None


def build_tool_use(
    tool_id: str,
    raw_name: str,
    raw_input: dict[str, Any] | None,
    aliases: dict[str, CanonicalTool],
    *,
    fold_case: bool = False,
    **entry_fields: Any,
) -> ToolUseEntry:
    """Create a result-less ``tool-use`` entry for a tool invocation."""
    raw_input = raw_input if isinstance(raw_input, dict) else {}
    tool = resolve_tool(raw_name, aliases, fold_case=fold_case)
    if tool is None:
        logger.debug("Unknown tool %s, passing input through", raw_name)
        return ToolUseEntry(tool_id=tool_id, name=raw_name, input=raw_input, **entry_fields)

    entry = ToolUseEntry(
        tool_id=tool_id,
        name=tool.value,
        input=TOOL_MAPPINGS[tool].map_input(raw_input),
        **entry_fields,
    )
    if tool == CanonicalTool.MCP:
        entry.tool_name = raw_name
    elif tool == CanonicalTool.SKILL:
        entry.skill_name = _str(_first(raw_input, "skill", "name"))
    return entry


def attach_result(entry: ToolUseEntry, outcome: ToolOutcome) -> ToolUseEntry:
    """Return a copy of ``entry`` carrying the typed result for its tool."""
    try:
        tool = CanonicalTool(entry.name)
    except ValueError:
        return dataclasses.replace(entry, result=outcome.content)
    return dataclasses.replace(entry, result=TOOL_MAPPINGS[tool].map_result(outcome))
