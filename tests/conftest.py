"""Shared pytest fixtures."""

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from config.config_loader import AgentConfig, PromptsConfig
from twofer.models import Agent, AgentResponse, Section
from twofer.runtime.base import AgentRuntime
from twofer.session import PromptDispatcher


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        json_format='Respond as {"sections": [...]}',
        system_round1="You are {agent_name}.{stack_hint}{codebase_hint}",
        system_round_n="You are {agent_name}, round {round}.",
        user_round1="Design: {prompt}",
        user_round_n_single="Review {name}:\n{response}",
        user_round_n_multi="Review all:\n{responses}",
        parse_retry="Respond with valid JSON only.",
        stack_hint="\nStack: {stack}",
        codebase_hint="\nContext: {codebase_context}",
    )


def make_response(
    verdict: str = "approve",
    sections: dict[str, str] | None = None,
    project_title: str = "",
) -> AgentResponse:
    """AgentResponse whose sections all carry ``verdict``; ``sections`` maps title -> content."""
    sections = sections if sections is not None else {"Architecture": "Use a queue."}
    return AgentResponse(
        sections=[Section(title=t, content=c, verdict=verdict) for t, c in sections.items()],
        overall_verdict=verdict,
        project_title=project_title,
    )


def response_json(
    verdict: str = "approve",
    sections: dict[str, str] | None = None,
    section_verdicts: dict[str, str] | None = None,
    project_title: str = "",
) -> str:
    """Raw model text for a response. ``section_verdicts`` overrides per title."""
    sections = sections if sections is not None else {"Architecture": "Use a queue."}
    section_verdicts = section_verdicts or {}
    return json.dumps({
        "sections": [
            {"title": t, "content": c, "verdict": section_verdicts.get(t, verdict), "reasoning": ""}
            for t, c in sections.items()
        ],
        "overall_verdict": verdict,
        "change_requests": [],
        "summary": "summary",
        "project_title": project_title,
    })


def assistant_message(text: str, message_id: str = "msg_a") -> dict[str, Any]:
    return {
        "info": {"id": message_id, "role": "assistant"},
        "parts": [{"type": "text", "text": text}],
    }


def user_message(text: str, message_id: str = "msg_u") -> dict[str, Any]:
    return {"info": {"id": message_id, "role": "user"}, "parts": [{"type": "text", "text": text}]}


class FakeRuntime(AgentRuntime):
    """Test double runtime.

    Each session answers prompts from a queue of scripted replies. A reply is
    a string (assistant text), an exception instance (raised by the
    dispatcher), or ``None`` (the session never finishes).
    """

    def __init__(self, events: list[dict[str, Any]] | None = None) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self.status: dict[str, dict[str, Any]] = {}
        self.prompts: list[dict[str, Any]] = []
        self.events = list(events or [])
        self.providers: dict[str, Any] = {"all": [], "connected": []}
        self.stream_open = asyncio.Event()
        self.closed = False

    async def create_session(self, title, *, directory=None, permissions=None):
        session_id = f"ses_{len(self.sessions) + 1}"
        self.sessions[session_id] = {"title": title, "directory": directory, "permissions": permissions}
        self.messages[session_id] = []
        return {"id": session_id, "title": title}

    async def send_prompt(self, session_id, model, system_prompt, text, tools=None):
        self.prompts.append({
            "session_id": session_id,
            "model": model,
            "system": system_prompt,
            "text": text,
            "tools": tools,
        })
        self.messages[session_id].append(user_message(text))

    async def get_messages(self, session_id):
        return list(self.messages[session_id])

    async def get_session_status(self):
        return dict(self.status)

    async def subscribe_events(self) -> AsyncIterator[dict[str, Any]]:
        for event in self.events:
            yield event
        self.stream_open.set()
        await asyncio.Event().wait()

    async def list_providers(self):
        return self.providers

    async def close(self):
        self.closed = True


class ScriptedDispatcher(PromptDispatcher):
    """PromptDispatcher that replies from per-agent scripts instead of polling."""

    def __init__(self, runtime: AgentRuntime, replies: dict[str, list[Any]]) -> None:
        super().__init__(runtime)
        self.replies = {name: list(items) for name, items in replies.items()}
        self.calls: list[dict[str, Any]] = []

    async def send_and_wait(self, agent: Agent, system_prompt: str, text: str, enable_tools: bool = False) -> str:
        self.calls.append({"agent": agent.name, "system": system_prompt, "text": text, "tools": enable_tools})
        await self._runtime.send_prompt(agent.session_id, {}, system_prompt, text)
        reply = self.replies[agent.name].pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def two_agent_configs() -> list[AgentConfig]:
    return [
        AgentConfig(name="Claude", provider_id="anthropic", model_id="claude-opus-4-6"),
        AgentConfig(name="Codex", provider_id="openai", model_id="gpt-5.2-codex"),
    ]


@pytest.fixture
def three_agent_configs(two_agent_configs) -> list[AgentConfig]:
    return two_agent_configs + [AgentConfig(name="GLM", provider_id="openrouter", model_id="z-ai/glm-5")]


@pytest.fixture
def sample_agent() -> Agent:
    return Agent(name="Claude", provider_id="anthropic", model_id="claude-opus-4-6", session_id="ses_1")


@pytest.fixture
def settings_path() -> Path:
    return Path(__file__).parent.parent / "config" / "settings.yaml"
