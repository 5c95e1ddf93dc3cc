"""Debate orchestration: parallel agent turns, parse retries, convergence rounds."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from config.config_loader import AgentConfig, PromptsConfig
from twofer.broadcast import Broadcaster
from twofer.convergence import build_consensus, check_convergence, create_convergence_state, describe_reason
from twofer.events import EventForwarder
from twofer.models import Agent, AgentResponse, ConsensusSection, ConvergenceState, DebateResult, RoundResult
from twofer.prompts import system_prompt_round1, system_prompt_round_n, user_prompt_round1, user_prompt_round_n
from twofer.protocol import (
    agent_error_message,
    debate_complete_message,
    error_message,
    round_complete_message,
    status_message,
    streaming_start_message,
)
from twofer.runtime.base import AgentError, AgentRuntime
from twofer.schema import ParseError, parse_agent_response
from twofer.session import PromptDispatcher, create_agent_sessions

logger = logging.getLogger(__name__)

MAX_PARSE_RETRIES = 2

# A round with fewer successful agents than this ends the debate.
MIN_AGENTS_PER_ROUND = 2

OUTCOME_CONVERGED = "converged"
OUTCOME_ABORTED = "aborted"


class InsufficientAgentsError(Exception):
    """Fewer than MIN_AGENTS_PER_ROUND agents produced a response in a round."""

    def __init__(self, round_number: int, succeeded: int) -> None:
        self.round_number = round_number
        self.succeeded = succeeded
        super().__init__(
            f"Only {succeeded} agent(s) responded in round {round_number}; "
            f"need at least {MIN_AGENTS_PER_ROUND}"
        )


@dataclass
class DebateConfig:
    prompt: str
    max_rounds: int
    agents: list[AgentConfig]
    stack: str | None = None
    codebase_context: str | None = None
    project_dir: str | None = None


async def _prompt_and_parse(
    dispatcher: PromptDispatcher,
    agent: Agent,
    system_prompt: str,
    user_prompt: str,
    retry_prompt: str,
    enable_tools: bool = False,
) -> AgentResponse:
    """Prompt the agent, re-prompting with a correction while its reply won't parse.

    Raises:
        AgentError: On timeout, no response, or MAX_PARSE_RETRIES exhausted.
    """
    last_error: ParseError | None = None
    for attempt in range(MAX_PARSE_RETRIES + 1):
        text = user_prompt if attempt == 0 else retry_prompt
        logger.info("%s: sending prompt%s", agent.name, f" (retry {attempt})" if attempt else "")

        raw = await dispatcher.send_and_wait(
            agent, system_prompt, text, enable_tools=enable_tools and attempt == 0
        )
        logger.debug("%s: raw response (%d chars): %s", agent.name, len(raw), raw[:300])

        result = parse_agent_response(raw)
        if isinstance(result, AgentResponse):
            logger.info(
                "%s: response parsed OK (%d sections, verdict: %s)",
                agent.name, len(result.sections), result.overall_verdict,
            )
            return result

        last_error = result
        if attempt < MAX_PARSE_RETRIES:
            logger.warning("%s: parse failed, re-prompting: %s", agent.name, result)

    raise AgentError(
        agent.name,
        f"Failed to parse after {MAX_PARSE_RETRIES + 1} attempts: {last_error}",
    )


async def _run_agent_turn(
    agent: Agent,
    turn: Callable[[Agent], Awaitable[AgentResponse]],
    round_number: int,
) -> AgentResponse | AgentError:
    """Run one agent's turn.

    Never raises — returns AgentError on failure.
    """
    try:
        return await turn(agent)
    except AgentError as exc:
        logger.warning("Agent %s failed in round %d: %s", agent.name, round_number, exc)
        return exc
    except Exception as exc:
        err = AgentError(agent.name, f"Unexpected error: {exc}")
        logger.warning("Agent %s unexpected failure in round %d: %s", agent.name, round_number, exc)
        return err


async def _run_agents_settled(
    agents: list[Agent],
    turn: Callable[[Agent], Awaitable[AgentResponse]],
    round_number: int,
    broadcaster: Broadcaster,
) -> dict[str, AgentResponse]:
    """Run every agent's turn concurrently and wait for all of them.

    Returns the successful responses keyed by agent name, in agent order.
    Failures are broadcast as agent_error and left out.
    """
    results = await asyncio.gather(*(_run_agent_turn(a, turn, round_number) for a in agents))

    responses: dict[str, AgentResponse] = {}
    for agent, result in zip(agents, results):
        if isinstance(result, AgentResponse):
            responses[agent.name] = result
        else:
            broadcaster.broadcast(agent_error_message(agent.name, str(result)))
    return responses


def _project_title(agents: list[Agent], responses: dict[str, AgentResponse]) -> str:
    for agent in agents:
        response = responses.get(agent.name)
        if response and response.project_title:
            return response.project_title
    return ""


async def run_debate(
    runtime: AgentRuntime,
    config: DebateConfig,
    broadcaster: Broadcaster,
    prompts: PromptsConfig,
    on_round_complete: Callable[[RoundResult, ConvergenceState], None] | None = None,
    dispatcher: PromptDispatcher | None = None,
) -> DebateResult:
    """Run the debate until agents converge, the round cap is hit, or too few respond.

    Args:
        runtime: Agent runtime hosting one session per agent.
        config: Task prompt, round cap and agents.
        broadcaster: Receives status/round/error/completion messages.
        prompts: Prompt templates from config.
        on_round_complete: Optional callback invoked after each round aggregates.
        dispatcher: PromptDispatcher to use; built from ``runtime`` if omitted.

    Returns:
        DebateResult with outcome "converged" or "aborted". Does not raise.
    """
    dispatcher = dispatcher or PromptDispatcher(runtime)
    agent_names = [a.name for a in config.agents]
    enable_tools = bool(config.project_dir)

    convergence = create_convergence_state(config.max_rounds)
    rounds: list[RoundResult] = []
    outcome = OUTCOME_CONVERGED
    abort_reason: str | None = None
    agents: list[Agent] = []
    forwarder: EventForwarder | None = None

    try:
        # INIT
        agents = await create_agent_sessions(
            runtime, config.agents, directory=config.project_dir, enable_tools=enable_tools
        )
        session_map = {a.session_id: a.name for a in agents}
        forwarder = EventForwarder(runtime, session_map, broadcaster)
        forwarder.start()

        previous: dict[str, AgentResponse] = {}
        while not convergence.converged:
            round_number = convergence.round + 1
            logger.info("--- Round %d --- (max %d)", round_number, config.max_rounds)

            # ROUND_DISPATCH
            broadcaster.broadcast(status_message(round_number, config.max_rounds, "debating", agent_names))
            for agent in agents:
                broadcaster.broadcast(streaming_start_message(agent.name, agent.session_id))

            if round_number == 1:
                user_prompt = user_prompt_round1(prompts, config.prompt)

                async def turn(agent: Agent) -> AgentResponse:
                    system = system_prompt_round1(prompts, agent.name, config.stack, config.codebase_context)
                    return await _prompt_and_parse(
                        dispatcher, agent, system, user_prompt, prompts.parse_retry, enable_tools=enable_tools
                    )
            else:
                prior = dict(previous)

                async def turn(agent: Agent) -> AgentResponse:
                    others = [(name, r) for name, r in prior.items() if name != agent.name]
                    system = system_prompt_round_n(prompts, agent.name, round_number)
                    return await _prompt_and_parse(
                        dispatcher, agent, system, user_prompt_round_n(prompts, others), prompts.parse_retry
                    )

            responses = await _run_agents_settled(agents, turn, round_number, broadcaster)

            # ROUND_AGGREGATE
            if len(responses) < MIN_AGENTS_PER_ROUND:
                raise InsufficientAgentsError(round_number, len(responses))

            consensus = build_consensus(list(responses.items()))
            convergence = check_convergence(convergence, list(responses.values()))
            current = RoundResult(round=round_number, responses=responses, consensus=consensus)
            rounds.append(current)
            previous = responses

            broadcaster.broadcast(round_complete_message(round_number, consensus, convergence, responses))

            agreed = sum(1 for s in consensus if s.agreed)
            verdicts = ", ".join(f"{name}: {r.overall_verdict}" for name, r in responses.items())
            logger.info(
                "Round %d complete: %d/%d agents, agreed %d, disputed %d | %s",
                round_number, len(responses), len(agents), agreed, len(consensus) - agreed, verdicts,
            )

            if on_round_complete:
                on_round_complete(current, convergence)

        logger.info("Converged: %s", describe_reason(convergence))
    except InsufficientAgentsError as exc:
        outcome, abort_reason = OUTCOME_ABORTED, str(exc)
        logger.error("Aborting debate: %s", exc)
    except Exception as exc:
        outcome, abort_reason = OUTCOME_ABORTED, f"Debate failed: {exc}"
        logger.exception("Aborting debate after unexpected error")
    finally:
        if forwarder is not None and forwarder.running:
            await forwarder.stop()

    # CONVERGED / ABORTED
    last_responses = rounds[-1].responses if rounds else {}
    final_consensus: list[ConsensusSection] = rounds[-1].consensus if rounds else []

    if outcome == OUTCOME_ABORTED:
        broadcaster.broadcast(error_message(abort_reason or "Debate aborted"))
    broadcaster.broadcast(debate_complete_message(final_consensus, convergence, last_responses))

    return DebateResult(
        rounds=rounds,
        consensus=final_consensus,
        convergence_state=convergence,
        agent_responses=last_responses,
        project_title=_project_title(agents, last_responses),
        outcome=outcome,
        abort_reason=abort_reason,
    )
