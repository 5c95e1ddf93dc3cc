"""Per-agent runtime sessions: creation, prompt dispatch, completion wait, reply extraction."""

import asyncio
import logging
import time
from typing import Any

from config.config_loader import AgentConfig
from twofer.models import Agent
from twofer.runtime.base import AgentRuntime, AgentTimeoutError, NoResponseError, RuntimeClientError

logger = logging.getLogger(__name__)

# Read-only tools agents may use to explore a project directory.
EXPLORATION_TOOLS = ("read", "glob", "grep", "codesearch")

EXPLORATION_PERMISSIONS = [
    {"permission": tool, "pattern": "*", "action": "allow"} for tool in EXPLORATION_TOOLS
]

_TIMEOUT_SEC = 600.0
_BUSY_GRACE_SEC = 10.0
_POLL_INTERVAL_SEC = 2.0
_INITIAL_DELAY_SEC = 1.0
_TEXT_RETRIES = 3
_TEXT_RETRY_DELAY_SEC = 2.0


async def create_agent_sessions(
    runtime: AgentRuntime,
    agent_configs: list[AgentConfig],
    directory: str | None = None,
    enable_tools: bool = False,
) -> list[Agent]:
    """Create one long-lived session per agent, in configured order.

    Raises:
        RuntimeClientError: If the runtime fails or returns no session id.
    """
    agents: list[Agent] = []
    for cfg in agent_configs:
        session = await runtime.create_session(
            f"twofer-{cfg.name}",
            directory=directory,
            permissions=EXPLORATION_PERMISSIONS if enable_tools else None,
        )
        session_id = session.get("id") if isinstance(session, dict) else None
        if not session_id:
            raise RuntimeClientError(f"Failed to create session for {cfg.name}")
        logger.info("Session %s created for %s (%s/%s)", session_id, cfg.name, cfg.provider_id, cfg.model_id)
        agents.append(
            Agent(
                name=cfg.name,
                provider_id=cfg.provider_id,
                model_id=cfg.model_id,
                session_id=session_id,
            )
        )
    return agents


def _role(message: dict[str, Any]) -> str | None:
    info = message.get("info")
    if isinstance(info, dict) and info.get("role"):
        return info["role"]
    return message.get("role")


def _parts(message: dict[str, Any]) -> list[dict[str, Any]]:
    parts = message.get("parts") or []
    return [p for p in parts if isinstance(p, dict)]


def _non_empty_text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _has_text_part(message: dict[str, Any]) -> bool:
    return any(p.get("type") == "text" and _non_empty_text(p.get("text")) for p in _parts(message))


def has_assistant_text(messages: list[dict[str, Any]]) -> bool:
    """True if any assistant message already carries a non-empty text part."""
    return any(_role(m) == "assistant" and _has_text_part(m) for m in messages)


def _last_text_part(message: dict[str, Any]) -> str | None:
    text_parts = [p for p in _parts(message) if p.get("type") == "text"]
    return _non_empty_text(text_parts[-1].get("text")) if text_parts else None


def _any_part_text(message: dict[str, Any]) -> str | None:
    for part in _parts(message):
        text = _non_empty_text(part.get("text"))
        if text:
            return text
    return None


def _content_field(message: dict[str, Any]) -> str | None:
    info = message.get("info")
    if isinstance(info, dict):
        text = _non_empty_text(info.get("content"))
        if text:
            return text
    return _non_empty_text(message.get("content"))


# Where assistant text may live, tried in order. Providers differ.
TEXT_RULES = (_last_text_part, _any_part_text, _content_field)


def extract_assistant_text(messages: list[dict[str, Any]]) -> str | None:
    """Return the newest assistant text, or None if no assistant message has any."""
    for message in reversed(messages):
        if _role(message) != "assistant":
            continue
        for rule in TEXT_RULES:
            text = rule(message)
            if text:
                return text
        # Assistant message without text (error or step marker only): keep looking.
    return None


def _last_assistant(messages: list[dict[str, Any]]) -> dict[str, Any] | None:
    return next((m for m in reversed(messages) if _role(m) == "assistant"), None)


def _is_busy(status: Any) -> bool:
    return isinstance(status, dict) and (status.get("type") == "busy" or status.get("active") is True)


def _describe_messages(messages: list[dict[str, Any]]) -> str:
    lines = [f"{len(messages)} messages"]
    for i, message in enumerate(messages):
        parts = _parts(message)
        kinds = ",".join(str(p.get("type")) for p in parts[:3])
        more = f" +{len(parts) - 3} more" if len(parts) > 3 else ""
        lines.append(f"  msg[{i}] role={_role(message)} parts={len(parts)} [{kinds}{more}] keys={sorted(message)}")
    return "\n".join(lines)


class PromptDispatcher:
    """Sends prompts to agent sessions and waits for their replies."""

    def __init__(
        self,
        runtime: AgentRuntime,
        timeout_sec: float = _TIMEOUT_SEC,
        busy_grace_sec: float = _BUSY_GRACE_SEC,
        poll_interval_sec: float = _POLL_INTERVAL_SEC,
        initial_delay_sec: float = _INITIAL_DELAY_SEC,
        text_retries: int = _TEXT_RETRIES,
        text_retry_delay_sec: float = _TEXT_RETRY_DELAY_SEC,
    ) -> None:
        self._runtime = runtime
        self.timeout_sec = timeout_sec
        self.busy_grace_sec = busy_grace_sec
        self.poll_interval_sec = poll_interval_sec
        self.initial_delay_sec = initial_delay_sec
        self.text_retries = text_retries
        self.text_retry_delay_sec = text_retry_delay_sec

    async def send_and_wait(
        self,
        agent: Agent,
        system_prompt: str,
        text: str,
        enable_tools: bool = False,
    ) -> str:
        """Send one prompt to the agent's session and return the reply text.

        Raises:
            AgentTimeoutError: If the turn does not finish within ``timeout_sec``.
            NoResponseError: If the turn finished but no assistant text appeared.
            RuntimeClientError: On transport failure.
        """
        model = {"providerID": agent.provider_id, "modelID": agent.model_id}
        tools = {t: True for t in EXPLORATION_TOOLS} if enable_tools else None

        before = await self._runtime.get_messages(agent.session_id)
        await self._runtime.send_prompt(agent.session_id, model, system_prompt, text, tools=tools)

        await self._wait_for_completion(agent, len(before))
        return await self._fetch_reply(agent, len(before))

    async def _wait_for_completion(self, agent: Agent, before_count: int) -> None:
        start = time.monotonic()
        saw_busy = False

        await asyncio.sleep(self.initial_delay_sec)

        while time.monotonic() - start < self.timeout_sec:
            status_map = await self._runtime.get_session_status()
            if _is_busy((status_map or {}).get(agent.session_id)):
                saw_busy = True
            elif saw_busy:
                logger.debug("%s: session went idle after %.1fs", agent.name, time.monotonic() - start)
                return

            # Some providers never report busy; fall back to looking for the reply itself.
            if not saw_busy and time.monotonic() - start > self.busy_grace_sec:
                messages = await self._runtime.get_messages(agent.session_id)
                if has_assistant_text(messages[before_count:]):
                    logger.debug("%s: reply found without busy signal", agent.name)
                    return

            await asyncio.sleep(self.poll_interval_sec)

        raise AgentTimeoutError(
            agent.name,
            f"Timed out after {self.timeout_sec:.0f}s waiting for session {agent.session_id}",
        )

    async def _fetch_reply(self, agent: Agent, before_count: int) -> str:
        # Only messages added after the prompt belong to this turn.
        messages = (await self._runtime.get_messages(agent.session_id))[before_count:]

        # The message can be idle before its parts are populated; give it a moment.
        for _ in range(self.text_retries):
            last = _last_assistant(messages)
            if last is not None and _has_text_part(last):
                break
            await asyncio.sleep(self.text_retry_delay_sec)
            messages = (await self._runtime.get_messages(agent.session_id))[before_count:]

        text = extract_assistant_text(messages)
        if text is not None:
            return text

        logger.debug("%s: no assistant text in session %s\n%s",
                     agent.name, agent.session_id, _describe_messages(messages))
        raise NoResponseError(
            agent.name,
            f"No assistant response found in session {agent.session_id} "
            f"(had {before_count} msgs, {len(messages)} new)",
        )
