"""Build system and user prompts from the templates in settings.yaml."""

import json
from dataclasses import asdict

from config.config_loader import PromptsConfig
from twofer.models import AgentResponse


def _with_json_format(prompts: PromptsConfig, system: str) -> str:
    # json_format holds literal braces, so it is appended rather than formatted.
    return f"{system.rstrip()}\n\n{prompts.json_format}"


def system_prompt_round1(
    prompts: PromptsConfig,
    agent_name: str,
    stack: str | None = None,
    codebase_context: str | None = None,
) -> str:
    stack_hint = prompts.stack_hint.format(stack=stack) if stack else ""
    codebase_hint = (
        prompts.codebase_hint.format(codebase_context=codebase_context) if codebase_context else ""
    )
    system = prompts.system_round1.format(
        agent_name=agent_name,
        stack_hint=stack_hint,
        codebase_hint=codebase_hint,
    )
    return _with_json_format(prompts, system)


def system_prompt_round_n(prompts: PromptsConfig, agent_name: str, round_number: int) -> str:
    system = prompts.system_round_n.format(agent_name=agent_name, round=round_number)
    return _with_json_format(prompts, system)


def user_prompt_round1(prompts: PromptsConfig, prompt: str) -> str:
    return prompts.user_round1.format(prompt=prompt)


def serialize_response(response: AgentResponse) -> str:
    return json.dumps(asdict(response), indent=2)


def user_prompt_round_n(prompts: PromptsConfig, others: list[tuple[str, AgentResponse]]) -> str:
    """Show an agent the other agents' previous-round responses (never its own)."""
    if len(others) == 1:
        name, response = others[0]
        return prompts.user_round_n_single.format(name=name, response=serialize_response(response))
    blocks = "\n\n".join(f"=== {name} ===\n{serialize_response(r)}" for name, r in others)
    return prompts.user_round_n_multi.format(responses=blocks)
