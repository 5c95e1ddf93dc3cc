"""Pure dataclasses for the Twofer debate pipeline. No logic, no deps."""

from dataclasses import dataclass, field
from typing import Literal

Verdict = Literal["approve", "reject", "suggest_changes"]

VERDICTS: tuple[str, ...] = ("approve", "reject", "suggest_changes")


@dataclass
class Agent:
    name: str
    provider_id: str       # "anthropic", "openai", "openrouter", ...
    model_id: str          # model identifier inside that provider
    session_id: str        # runtime session, one per agent for the whole debate


@dataclass
class Section:
    title: str
    content: str
    verdict: Verdict
    reasoning: str = ""


@dataclass
class AgentResponse:
    sections: list[Section]
    overall_verdict: Verdict
    change_requests: list[str] = field(default_factory=list)
    summary: str = ""
    project_title: str = ""


@dataclass
class ConvergenceState:
    consecutive_approvals: int
    round: int
    max_rounds: int
    converged: bool = False
    reason: str | None = None     # "natural" or "cap exhausted" once converged


@dataclass
class ConsensusSection:
    title: str
    agreed: bool
    agent_contents: dict[str, str] = field(default_factory=dict)
    final_content: str = ""       # empty unless agreed


@dataclass
class RoundResult:
    round: int
    responses: dict[str, AgentResponse]
    consensus: list[ConsensusSection] = field(default_factory=list)


@dataclass
class DebateResult:
    rounds: list[RoundResult]
    consensus: list[ConsensusSection]
    convergence_state: ConvergenceState
    agent_responses: dict[str, AgentResponse]
    project_title: str = ""
    outcome: str = "converged"    # "converged" or "aborted"
    abort_reason: str | None = None
