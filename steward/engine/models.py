"""Core data models for tasks, sessions and human-in-the-loop requests."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Persisted task states. See lifecycle.py for transition rules."""
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"
    INTERRUPTED = "interrupted"


class InteractionMode(str, Enum):
    """How much the user wants to be asked before tools run."""
    ASK = "ask"
    AUTO = "auto"
    PLAN = "plan"


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


ENGINE_PERMISSION_MODES: dict[InteractionMode, PermissionMode] = {
    InteractionMode.ASK: PermissionMode.DEFAULT,
    InteractionMode.AUTO: PermissionMode.BYPASS,
    InteractionMode.PLAN: PermissionMode.PLAN,
}


class AgentBackend(str, Enum):
    """Engines a task can run on."""
    CLAUDE_CODE = "claude-code"
    OPENCODE = "opencode"


class RequestKind(str, Enum):
    PERMISSION = "permission"
    QUESTION = "question"


class DecisionBehavior(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _utcnow().isoformat()


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Task:
    """A unit of work handed to an agent engine.

    ``session_id`` is the engine's resume token; ``cwd`` is the working
    directory (a worktree or the project root).
    """
    prompt: str
    cwd: str
    id: str = field(default_factory=_make_id)
    name: str | None = None
    status: TaskStatus = TaskStatus.WAITING
    session_id: str | None = None
    interaction_mode: InteractionMode = InteractionMode.ASK
    session_allowed_tools: list[str] = field(default_factory=list)
    agent_backend: AgentBackend = AgentBackend.CLAUDE_CODE
    model: str | None = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)


@dataclass
class QueuedPrompt:
    """A follow-up prompt waiting for the current turn to finish."""
    content: str
    id: str = field(default_factory=_make_id)
    created_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "content": self.content, "created_at": self.created_at}


@dataclass
class SessionAllowOption:
    """The "allow for session" affordance offered with a permission request."""
    label: str
    tools_to_allow: list[str]
    set_mode_on_allow: InteractionMode | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "label": self.label,
            "tools_to_allow": list(self.tools_to_allow),
        }
        if self.set_mode_on_allow is not None:
            d["set_mode_on_allow"] = self.set_mode_on_allow.value
        return d


@dataclass
class PermissionResponse:
    """A user's answer to a permission request.

    ``allow_mode`` is "session" (remember for this task) or "project"
    (also write the project's settings file).
    """
    behavior: DecisionBehavior = DecisionBehavior.ALLOW
    updated_input: dict[str, Any] | None = None
    message: str | None = None
    allow_mode: str | None = None
    tools_to_allow: list[str] | None = None
    set_mode_on_allow: InteractionMode | None = None


@dataclass
class QuestionResponse:
    """Answers keyed by question text."""
    answers: dict[str, str] = field(default_factory=dict)


@dataclass
class ToolDecision:
    """Decision handed back to the engine from the authorization callback."""
    behavior: DecisionBehavior
    updated_input: dict[str, Any] | None = None
    message: str | None = None
    # The user chose to remember the grant beyond this one call
    remember: bool = False

    @classmethod
    def allow(
        cls, updated_input: dict[str, Any] | None = None, remember: bool = False,
    ) -> ToolDecision:
        return cls(DecisionBehavior.ALLOW, updated_input=updated_input, remember=remember)

    @classmethod
    def deny(cls, message: str) -> ToolDecision:
        return cls(DecisionBehavior.DENY, message=message)

    @property
    def allowed(self) -> bool:
        return self.behavior == DecisionBehavior.ALLOW
