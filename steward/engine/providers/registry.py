"""Provider registry: builds one Provider per session by backend."""
from __future__ import annotations

import logging
from collections.abc import Callable

from ..config import EngineConfig
from ..errors import ProviderNotAvailableError
from ..models import AgentBackend
from .base import Provider
from .claude_provider import ClaudeProvider
from .opencode_provider import OpenCodeProvider, OpenCodeServer

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[], Provider]


class ProviderRegistry:
    """Maps agent backends to provider factories.

    Providers are per-session (they hold the connection of the turn in
    flight), so the registry stores factories rather than instances.
    The OpenCode server is shared by every OpenCode provider it builds.
    """

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._opencode_server = OpenCodeServer(
            command=self._config.opencode_command,
            url=self._config.opencode_url,
            startup_timeout=self._config.opencode_startup_timeout_seconds,
        )
        self._factories: dict[AgentBackend, ProviderFactory] = {
            AgentBackend.CLAUDE_CODE: lambda: ClaudeProvider(
                setting_sources=self._config.claude_setting_sources,
            ),
            AgentBackend.OPENCODE: lambda: OpenCodeProvider(self._opencode_server),
        }

    def register(self, backend: AgentBackend, factory: ProviderFactory) -> None:
        """Register (or replace) the factory for ``backend``."""
        self._factories[backend] = factory
        logger.info("Provider factory registered: %s", backend.value)

    def create(self, backend: AgentBackend) -> Provider:
        """Build a provider for one session."""
        factory = self._factories.get(backend)
        if factory is None:
            raise ProviderNotAvailableError(backend.value, self.list_names())
        return factory()

    def list_names(self) -> list[str]:
        return [b.value for b in self._factories]

    def get_availability_report(self) -> dict[str, bool]:
        """Return a mapping of backend → is_available for all factories."""
        report = {}
        for backend, factory in self._factories.items():
            report[backend.value] = factory().is_available()
        return report

    async def shutdown(self) -> None:
        """Stop the shared OpenCode server if we spawned it."""
        try:
            await self._opencode_server.stop()
        except Exception as exc:
            logger.error("Error shutting down OpenCode server: %s", exc)
