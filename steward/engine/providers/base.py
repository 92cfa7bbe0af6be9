"""Abstract base for agent engine providers.

Each provider wraps one agent runtime (Claude Agent SDK, OpenCode
server) and exposes a single turn as an async stream of raw dicts that
its paired normalizer understands. Tool permission checks flow back to
the host through the ``authorize`` callback the orchestrator passes in.
"""
from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from ..models import PermissionMode, ToolDecision
from ..normalizers.base import Normalizer
from ..session import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Signature: async def authorize(tool_name, tool_input) -> ToolDecision
# Suspends until the host (usually a human) decides.
AuthorizeCallback = Callable[[str, dict[str, Any]], Awaitable[ToolDecision]]


class Provider(abc.ABC):
    """Abstract provider interface.

    A provider instance serves one session, so ``set_mode`` can reach
    the engine connection of the turn in flight.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Backend identifier (e.g. 'claude-code', 'opencode')."""

    @property
    @abc.abstractmethod
    def normalizer(self) -> Normalizer:
        """Normalizer for the raw data ``run_turn`` yields."""

    @abc.abstractmethod
    def run_turn(
        self,
        prompt: str,
        *,
        cwd: str,
        authorize: AuthorizeCallback,
        mode: PermissionMode,
        cancel: CancellationToken,
        resume_token: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Submit ``prompt`` and yield raw engine data until the turn ends."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's runtime is installed or reachable."""

    async def set_mode(self, mode: PermissionMode) -> None:
        """Change the engine permission mode mid-session."""
        logger.debug("%s provider ignores permission mode change to %s", self.name, mode.value)

    async def shutdown(self) -> None:
        """Release provider resources. Default no-op."""
        return None


async def iterate_until_cancelled(
    stream: AsyncIterator[T],
    token: CancellationToken,
) -> AsyncIterator[T]:
    """Yield from ``stream`` until it ends or ``token`` is cancelled.

    The stream is drained by a single pump task so engine clients open
    and close inside one task. Each pull races the cancellation token;
    on cancel the pump is cancelled, which closes the stream. Errors
    raised by the stream propagate to the caller.
    """
    queue: asyncio.Queue[tuple[bool, Any]] = asyncio.Queue(maxsize=1)

    async def pump() -> None:
        iterator = stream.__aiter__()
        try:
            async for item in iterator:
                await queue.put((False, item))
        except Exception as exc:
            await queue.put((True, exc))
            return
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        await queue.put((True, None))

    pump_task = asyncio.create_task(pump())
    cancelled = asyncio.ensure_future(token.wait())
    try:
        while not token.cancelled:
            pull = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {pull, cancelled}, return_when=asyncio.FIRST_COMPLETED,
            )
            if pull not in done or token.cancelled:
                pull.cancel()
                return
            finished, item = pull.result()
            if finished:
                if item is not None:
                    raise item
                return
            yield item
    finally:
        cancelled.cancel()
        if not pump_task.done():
            pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump_task
