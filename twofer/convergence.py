"""Convergence state machine and per-round consensus aggregation. Pure functions."""

from twofer.models import AgentResponse, ConsensusSection, ConvergenceState

REASON_NATURAL = "natural"
REASON_CAP_EXHAUSTED = "cap exhausted"

# Unanimous rounds in a row needed to stop naturally.
_REQUIRED_STREAK = 2


def create_convergence_state(max_rounds: int) -> ConvergenceState:
    return ConvergenceState(consecutive_approvals=0, round=0, max_rounds=max_rounds)


def check_convergence(
    state: ConvergenceState,
    responses: list[AgentResponse],
) -> ConvergenceState:
    """Fold one completed round into the convergence state.

    Natural convergence wins over cap exhaustion when both hold in the same
    round. The input state is not modified.
    """
    unanimous = all(r.overall_verdict == "approve" for r in responses)
    streak = state.consecutive_approvals + 1 if unanimous else 0
    round_number = state.round + 1

    if streak >= _REQUIRED_STREAK:
        converged, reason = True, REASON_NATURAL
    elif round_number >= state.max_rounds:
        converged, reason = True, REASON_CAP_EXHAUSTED
    else:
        converged, reason = False, None

    return ConvergenceState(
        consecutive_approvals=streak,
        round=round_number,
        max_rounds=state.max_rounds,
        converged=converged,
        reason=reason,
    )


def describe_reason(state: ConvergenceState) -> str:
    """Human-readable explanation of why the debate stopped."""
    if state.reason == REASON_NATURAL:
        return f"All agents approved for {_REQUIRED_STREAK} consecutive rounds"
    if state.reason == REASON_CAP_EXHAUSTED:
        return f"Max rounds ({state.max_rounds}) reached"
    return "Not converged"


def build_consensus(
    named_responses: list[tuple[str, AgentResponse]],
) -> list[ConsensusSection]:
    """Aggregate one round's responses into per-title consensus sections.

    Titles are the union over all agents, in first-seen order. A title is
    agreed only when every agent produced it with an approve verdict; the
    final content then comes from the first agent in ``named_responses``.
    """
    titles: dict[str, None] = {}
    for _, response in named_responses:
        for section in response.sections:
            titles.setdefault(section.title, None)

    consensus: list[ConsensusSection] = []
    for title in titles:
        agent_contents: dict[str, str] = {}
        agreed = True
        for name, response in named_responses:
            section = next((s for s in response.sections if s.title == title), None)
            agent_contents[name] = section.content if section else ""
            if section is None or section.verdict != "approve":
                agreed = False

        final_content = agent_contents[named_responses[0][0]] if agreed else ""
        consensus.append(
            ConsensusSection(
                title=title,
                agreed=agreed,
                agent_contents=agent_contents,
                final_content=final_content,
            )
        )

    return consensus
