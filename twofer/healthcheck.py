"""Runtime health checks — confirm every agent's provider and model before a debate."""

import asyncio
import logging
from typing import Any

from config.config_loader import AgentConfig
from twofer.runtime.base import AgentRuntime

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 15.0


def _connected_models(providers: dict[str, Any]) -> dict[str, set[str]]:
    """Map connected provider id -> model ids it offers."""
    connected = set(providers.get("connected") or [])
    models: dict[str, set[str]] = {}
    for provider in providers.get("all") or []:
        if not isinstance(provider, dict):
            continue
        provider_id = provider.get("id")
        if provider_id in connected:
            models[provider_id] = set((provider.get("models") or {}).keys())
    return models


def check_agent(agent: AgentConfig, connected: dict[str, set[str]]) -> tuple[bool, str]:
    """Returns (ok, error_message) for one configured agent."""
    if agent.provider_id not in connected:
        return False, f'Provider "{agent.provider_id}" is not connected'
    if agent.model_id not in connected[agent.provider_id]:
        return False, f'Model "{agent.model_id}" not found in provider "{agent.provider_id}"'
    return True, ""


async def run_health_checks(
    runtime: AgentRuntime,
    agents: list[AgentConfig],
) -> dict[str, tuple[bool, str]]:
    """Ask the runtime which providers are connected and check every agent against them.

    Returns:
        Dict mapping agent name -> (ok, error_message).
        error_message is "" when ok is True. If the runtime itself cannot be
        reached, every agent is marked failed with that error.
    """
    try:
        providers = await asyncio.wait_for(runtime.list_providers(), timeout=_TIMEOUT_SEC)
    except Exception as exc:
        logger.warning("Could not list providers: %s", exc)
        return {a.name: (False, f"Runtime unreachable: {exc}") for a in agents}

    connected = _connected_models(providers)
    logger.info("Connected providers: %s", ", ".join(sorted(connected)) or "none")
    return {a.name: check_agent(a, connected) for a in agents}
