"""Claude Agent SDK provider.

Runs one turn per ``ClaudeSDKClient`` connection and converts the SDK's
typed messages back into the stream-json dicts ``ClaudeNormalizer``
reads. Tool permission checks go through the SDK's ``can_use_tool``
callback, which is bridged to the orchestrator's ``authorize``.
"""
from __future__ import annotations

import asyncio
import importlib.util
import logging
from collections.abc import AsyncIterator
from typing import Any

from ..errors import ProviderNotAvailableError
from ..models import AgentBackend, PermissionMode
from ..normalizers.claude import ClaudeNormalizer
from ..session import CancellationToken
from .base import AuthorizeCallback, Provider

logger = logging.getLogger(__name__)

# Max wait for the CLI to acknowledge an interrupt on cancel
INTERRUPT_TIMEOUT_SECONDS = 5.0


def _block_to_raw(block: Any) -> dict[str, Any] | None:
    kind = type(block).__name__
    if kind == "TextBlock":
        return {"type": "text", "text": block.text}
    if kind == "ThinkingBlock":
        return {"type": "thinking", "thinking": getattr(block, "thinking", "")}
    if kind == "ToolUseBlock":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input if isinstance(block.input, dict) else {},
        }
    if kind == "ToolResultBlock":
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": bool(getattr(block, "is_error", False)),
        }
    if isinstance(block, dict):
        return block
    logger.debug("Dropping unknown content block %s", kind)
    return None


def _content_to_raw(content: Any) -> Any:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return []
    blocks = [_block_to_raw(b) for b in content]
    return [b for b in blocks if b is not None]


def message_to_raw(message: Any) -> dict[str, Any]:
    """Convert a claude_agent_sdk message object to a stream-json dict.

    Dispatches on the class name so this module never imports the SDK
    at load time.
    """
    kind = type(message).__name__
    parent_tool_id = getattr(message, "parent_tool_use_id", None)

    if kind == "AssistantMessage":
        return {
            "type": "assistant",
            "message": {
                "role": "assistant",
                "model": getattr(message, "model", None),
                "content": _content_to_raw(message.content),
            },
            "parent_tool_use_id": parent_tool_id,
        }

    if kind == "UserMessage":
        raw: dict[str, Any] = {
            "type": "user",
            "message": {"role": "user", "content": _content_to_raw(message.content)},
            "parent_tool_use_id": parent_tool_id,
        }
        tool_use_result = getattr(message, "tool_use_result", None)
        if tool_use_result is not None:
            raw["tool_use_result"] = tool_use_result
        return raw

    if kind == "SystemMessage":
        data = getattr(message, "data", None)
        raw = dict(data) if isinstance(data, dict) else {}
        raw["type"] = "system"
        raw["subtype"] = message.subtype
        return raw

    if kind == "ResultMessage":
        return {
            "type": "result",
            "subtype": message.subtype,
            "session_id": message.session_id,
            "is_error": bool(message.is_error),
            "result": getattr(message, "result", None),
            "duration_ms": message.duration_ms,
            "num_turns": getattr(message, "num_turns", None),
            "total_cost_usd": getattr(message, "total_cost_usd", None),
            "usage": getattr(message, "usage", None),
        }

    if kind == "StreamEvent":
        return {
            "type": "stream_event",
            "event": getattr(message, "event", None),
            "parent_tool_use_id": parent_tool_id,
        }

    if isinstance(message, dict):
        return message
    logger.debug("Unknown Claude SDK message type %s", kind)
    return {"type": kind}


class ClaudeProvider(Provider):
    """Provider backed by the Claude Agent SDK.

    Auth is whatever the SDK-bundled CLI is configured with (OAuth or
    ANTHROPIC_API_KEY); this class never touches credentials.
    """

    def __init__(self, setting_sources: list[str] | None = None) -> None:
        self._setting_sources = list(setting_sources or [])
        self._normalizer = ClaudeNormalizer()
        self._client: Any = None

    @property
    def name(self) -> str:
        return AgentBackend.CLAUDE_CODE.value

    @property
    def normalizer(self) -> ClaudeNormalizer:
        return self._normalizer

    def is_available(self) -> bool:
        """Check if claude_agent_sdk is importable."""
        return importlib.util.find_spec("claude_agent_sdk") is not None

    async def run_turn(
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
        try:
            from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
            from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny
        except ImportError as exc:
            raise ProviderNotAvailableError(self.name, []) from exc

        async def can_use_tool(tool_name: str, tool_input: dict, context: object = None):
            decision = await authorize(tool_name, dict(tool_input or {}))
            if decision.allowed:
                updated = decision.updated_input
                return PermissionResultAllow(
                    updated_input=updated if updated is not None else tool_input,
                )
            return PermissionResultDeny(message=decision.message or "Denied by user")

        options_kwargs: dict[str, Any] = dict(
            cwd=cwd,
            permission_mode=mode.value,
            can_use_tool=can_use_tool,
        )
        if self._setting_sources:
            options_kwargs["setting_sources"] = self._setting_sources
        if resume_token:
            options_kwargs["resume"] = resume_token
        if model:
            options_kwargs["model"] = model
        logger.info(
            "Claude turn starting cwd=%s mode=%s resume=%s model=%s",
            cwd, mode.value, (resume_token or "")[:8] or "-", model or "<default>",
        )

        client = ClaudeSDKClient(options=ClaudeAgentOptions(**options_kwargs))
        await client.connect()
        self._client = client
        try:
            await client.query(prompt)
            async for message in client.receive_response():
                yield message_to_raw(message)
        finally:
            self._client = None
            if cancel.cancelled:
                try:
                    await asyncio.wait_for(client.interrupt(), INTERRUPT_TIMEOUT_SECONDS)
                except Exception as exc:
                    logger.warning("Claude interrupt failed: %s", exc)
            try:
                await client.disconnect()
            except Exception as exc:
                logger.warning("Claude disconnect failed: %s", exc)

    async def set_mode(self, mode: PermissionMode) -> None:
        client = self._client
        if client is None:
            logger.debug("No Claude turn in flight; mode %s applies next turn", mode.value)
            return
        await client.set_permission_mode(mode.value)
        logger.info("Claude permission mode set to %s", mode.value)
