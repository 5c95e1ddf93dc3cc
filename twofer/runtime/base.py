"""Abstract contract for the agent runtime that hosts model sessions."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class RuntimeClientError(Exception):
    """Raised when a call to the agent runtime fails at the transport level."""


class AgentError(Exception):
    """Raised when a single agent's turn fails."""

    def __init__(self, agent_name: str, message: str) -> None:
        self.agent_name = agent_name
        super().__init__(f"[{agent_name}] {message}")


class AgentTimeoutError(AgentError, TimeoutError):
    """The agent did not finish its turn within the wait bound."""


class NoResponseError(AgentError):
    """The runtime reported completion but no assistant text was ever found."""


class AgentRuntime(ABC):
    """The small slice of an agent runtime the debate engine depends on.

    One instance is created at process start, passed to every component that
    needs it, and shut down explicitly with ``close()``.
    """

    @abstractmethod
    async def create_session(
        self,
        title: str,
        *,
        directory: str | None = None,
        permissions: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        """Create a conversational session. The returned dict carries ``id``."""
        ...

    @abstractmethod
    async def send_prompt(
        self,
        session_id: str,
        model: dict[str, str],
        system_prompt: str,
        text: str,
        tools: dict[str, bool] | None = None,
    ) -> None:
        """Fire a prompt and return immediately; the reply is observed later."""
        ...

    @abstractmethod
    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        """Return the session's messages, oldest first, as ``{info, parts}``."""
        ...

    @abstractmethod
    async def get_session_status(self) -> dict[str, dict[str, Any]]:
        """Return a map of session id -> status (``{"type": "busy"}`` etc.)."""
        ...

    @abstractmethod
    def subscribe_events(self) -> AsyncIterator[dict[str, Any]]:
        """Return the shared raw event stream of ``{type, properties}`` dicts."""
        ...

    @abstractmethod
    async def list_providers(self) -> dict[str, Any]:
        """Return ``{"all": [...], "connected": [...]}`` provider information."""
        ...

    async def close(self) -> None:
        """Release transport resources. Safe to call more than once."""
        return None
