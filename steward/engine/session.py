"""Per-task session state and the registry that owns live sessions.

A ``Session`` exists only while a task has an engine turn in flight.
The ``SessionRegistry`` is constructed once per process and injected
into the orchestrator; it guarantees at most one session per task.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import SessionAlreadyActiveError
from .models import (
    QueuedPrompt,
    RequestKind,
    SessionAllowOption,
    _make_id,
    _now_ms,
)
from .normalizers.base import NormalizationContext

if TYPE_CHECKING:
    from .providers.base import Provider

logger = logging.getLogger(__name__)


class CancellationToken:
    """Turn-scoped cancellation signal threaded through the engine stream."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class PendingRequest:
    """A permission or question the engine is blocked on.

    ``future`` is resolved by the orchestrator with the user's response
    (or a deny when the session is stopped).
    """
    kind: RequestKind
    tool_name: str
    input: dict[str, Any]
    future: asyncio.Future
    request_id: str = field(default_factory=_make_id)
    session_allow: SessionAllowOption | None = None
    questions: list[dict[str, Any]] = field(default_factory=list)
    created_at: int = field(default_factory=_now_ms)


class PendingRequestQueue:
    """FIFO of outstanding requests; only the head is shown to the user."""

    def __init__(self) -> None:
        self._items: list[PendingRequest] = []

    def push(self, request: PendingRequest) -> bool:
        """Append a request. Returns True if it is now the head."""
        self._items.append(request)
        return len(self._items) == 1

    def head(self) -> PendingRequest | None:
        return self._items[0] if self._items else None

    def remove(self, request_id: str) -> PendingRequest | None:
        for i, request in enumerate(self._items):
            if request.request_id == request_id:
                return self._items.pop(i)
        return None

    def drain(self) -> list[PendingRequest]:
        items, self._items = self._items, []
        return items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[PendingRequest]:
        return iter(list(self._items))


class PromptQueue:
    """Follow-up prompts submitted while a turn is running."""

    def __init__(self) -> None:
        self._items: deque[QueuedPrompt] = deque()

    def add(self, content: str) -> QueuedPrompt:
        prompt = QueuedPrompt(content=content)
        self._items.append(prompt)
        return prompt

    def cancel(self, prompt_id: str) -> bool:
        for prompt in self._items:
            if prompt.id == prompt_id:
                self._items.remove(prompt)
                return True
        return False

    def pop(self) -> QueuedPrompt | None:
        return self._items.popleft() if self._items else None

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> list[QueuedPrompt]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class Session:
    """Live state for one task's engine conversation."""
    task_id: str
    provider: Provider
    context: NormalizationContext
    next_index: int = 0
    resume_token: str | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    pending: PendingRequestQueue = field(default_factory=PendingRequestQueue)
    prompts: PromptQueue = field(default_factory=PromptQueue)
    stopped: bool = False

    def take_index(self) -> int:
        index = self.next_index
        self.next_index += 1
        return index

    def new_turn(self) -> CancellationToken:
        """Fresh cancellation token for the next engine call."""
        self.cancel_token = CancellationToken()
        return self.cancel_token


class SessionRegistry:
    """Owns every live session, keyed by task id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, task_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(task_id)

    def claim(self, session: Session) -> None:
        """Register ``session``; fails if the task already has one."""
        with self._lock:
            if session.task_id in self._sessions:
                raise SessionAlreadyActiveError(session.task_id)
            self._sessions[session.task_id] = session
        logger.debug("Session registered task=%s", session.task_id[:8])

    def release(self, session: Session) -> bool:
        """Remove ``session`` if it is still the registered one."""
        with self._lock:
            if self._sessions.get(session.task_id) is not session:
                return False
            del self._sessions[session.task_id]
        logger.debug("Session released task=%s", session.task_id[:8])
        return True

    def task_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
