"""Load settings.yaml into typed dataclasses."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_OPENCODE_URL_ENV = "OPENCODE_URL"


@dataclass
class AgentConfig:
    name: str
    provider_id: str
    model_id: str


@dataclass
class RuntimeConfig:
    base_url: str
    spawn_server: bool = False
    startup_timeout_sec: int = 30
    request_timeout_sec: int = 30


@dataclass
class TimeoutsConfig:
    prompt_timeout_sec: float = 600.0
    busy_grace_sec: float = 10.0
    poll_interval_sec: float = 2.0


@dataclass
class PromptsConfig:
    json_format: str
    system_round1: str
    system_round_n: str
    user_round1: str
    user_round_n_single: str
    user_round_n_multi: str
    parse_retry: str
    stack_hint: str = "Preferred tech stack: {stack}"
    codebase_hint: str = "{codebase_context}"


@dataclass
class DefaultsConfig:
    max_rounds: int
    http_port: int
    output_dir: Path
    agents: list[AgentConfig] = field(default_factory=list)


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    runtime: RuntimeConfig
    timeouts: TimeoutsConfig
    prompts: PromptsConfig


def parse_agent_spec(value: str, index: int = 0) -> AgentConfig:
    """Parse ``provider/model`` or ``name=provider/model`` into an AgentConfig.

    Unnamed agents are called ``Agent-<index+1>``.

    Raises:
        ValueError: If the value has no ``provider/model`` part.
    """
    name, sep, provider_model = value.partition("=")
    if not sep or not name:
        name, provider_model = f"Agent-{index + 1}", value

    provider_id, slash, model_id = provider_model.partition("/")
    if not slash or not provider_id or not model_id:
        raise ValueError(f'Invalid agent "{value}". Use "provider/model" or "name=provider/model"')
    return AgentConfig(name=name.strip(), provider_id=provider_id.strip(), model_id=model_id.strip())


def _parse_agents(raw_agents: list) -> list[AgentConfig]:
    agents: list[AgentConfig] = []
    for i, raw in enumerate(raw_agents or []):
        if isinstance(raw, str):
            agents.append(parse_agent_spec(raw, i))
        else:
            agents.append(
                AgentConfig(
                    name=str(raw["name"]),
                    provider_id=str(raw["provider"]),
                    model_id=str(raw["model"]),
                )
            )
    return agents


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    ``OPENCODE_URL`` in the environment overrides ``runtime.base_url``.

    Raises FileNotFoundError if settings file missing.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        max_rounds=int(defaults_raw["max_rounds"]),
        http_port=int(defaults_raw["http_port"]),
        output_dir=Path(defaults_raw.get("output_dir", ".")),
        agents=_parse_agents(defaults_raw.get("agents", [])),
    )

    runtime_raw = raw.get("runtime", {})
    base_url = os.environ.get(_OPENCODE_URL_ENV, "").strip() or str(
        runtime_raw.get("base_url", "http://127.0.0.1:4096")
    )
    runtime = RuntimeConfig(
        base_url=base_url.rstrip("/"),
        spawn_server=bool(runtime_raw.get("spawn_server", False)),
        startup_timeout_sec=int(runtime_raw.get("startup_timeout_sec", 30)),
        request_timeout_sec=int(runtime_raw.get("request_timeout_sec", 30)),
    )

    timeouts_raw = raw.get("timeouts", {})
    timeouts = TimeoutsConfig(
        prompt_timeout_sec=float(timeouts_raw.get("prompt_timeout_sec", 600)),
        busy_grace_sec=float(timeouts_raw.get("busy_grace_sec", 10)),
        poll_interval_sec=float(timeouts_raw.get("poll_interval_sec", 2)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        json_format=prompts_raw["json_format"],
        system_round1=prompts_raw["system_round1"],
        system_round_n=prompts_raw["system_round_n"],
        user_round1=prompts_raw["user_round1"],
        user_round_n_single=prompts_raw["user_round_n_single"],
        user_round_n_multi=prompts_raw["user_round_n_multi"],
        parse_retry=prompts_raw["parse_retry"],
        stack_hint=prompts_raw.get("stack_hint", "Preferred tech stack: {stack}"),
        codebase_hint=prompts_raw.get("codebase_hint", "{codebase_context}"),
    )

    logger.debug("Loaded settings from %s (runtime %s)", settings_path, runtime.base_url)

    return AppConfig(
        defaults=defaults,
        runtime=runtime,
        timeouts=timeouts,
        prompts=prompts,
    )
