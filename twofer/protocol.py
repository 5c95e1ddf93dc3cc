"""Observer wire protocol: ``{type, payload}`` envelopes with camelCase payloads."""

from dataclasses import asdict
from typing import Any

from twofer.models import AgentResponse, ConsensusSection, ConvergenceState, DebateResult

STATUS = "status"
AGENT_STREAM = "agent_stream"
AGENT_ERROR = "agent_error"
ROUND_COMPLETE = "round_complete"
DEBATE_COMPLETE = "debate_complete"
ERROR = "error"
EXPORT = "export"

MESSAGE_TYPES = (STATUS, AGENT_STREAM, AGENT_ERROR, ROUND_COMPLETE, DEBATE_COMPLETE, ERROR, EXPORT)

# Replayed to late-joining observers. agent_stream is ephemeral and never cached.
DURABLE_TYPES = (STATUS, ROUND_COMPLETE, DEBATE_COMPLETE, AGENT_ERROR)

Message = dict[str, Any]


def convergence_to_wire(state: ConvergenceState) -> dict[str, Any]:
    wire: dict[str, Any] = {
        "consecutiveApprovals": state.consecutive_approvals,
        "round": state.round,
        "maxRounds": state.max_rounds,
        "converged": state.converged,
    }
    if state.reason is not None:
        wire["reason"] = state.reason
    return wire


def consensus_to_wire(consensus: list[ConsensusSection]) -> list[dict[str, Any]]:
    return [
        {
            "title": s.title,
            "agreed": s.agreed,
            "agentContents": dict(s.agent_contents),
            "finalContent": s.final_content,
        }
        for s in consensus
    ]


def responses_to_wire(responses: dict[str, AgentResponse]) -> dict[str, Any]:
    return {name: asdict(response) for name, response in responses.items()}


def result_to_wire(result: DebateResult) -> dict[str, Any]:
    """Full JSON view of a finished debate, served at ``/result``."""
    return {
        "rounds": [
            {
                "round": r.round,
                "responses": responses_to_wire(r.responses),
                "consensus": consensus_to_wire(r.consensus),
            }
            for r in result.rounds
        ],
        "consensus": consensus_to_wire(result.consensus),
        "convergenceState": convergence_to_wire(result.convergence_state),
        "agentResponses": responses_to_wire(result.agent_responses),
        "projectTitle": result.project_title,
        "outcome": result.outcome,
        "abortReason": result.abort_reason,
    }


def status_message(round_number: int, max_rounds: int, status: str, agents: list[str]) -> Message:
    return {
        "type": STATUS,
        "payload": {"round": round_number, "maxRounds": max_rounds, "status": status, "agents": agents},
    }


def agent_stream_message(agent: str, session_id: str, data: dict[str, Any]) -> Message:
    return {
        "type": AGENT_STREAM,
        "payload": {
            "agent": agent,
            "type": "message.part.updated",
            "sessionId": session_id,
            "data": data,
        },
    }


def streaming_start_message(agent: str, session_id: str) -> Message:
    return agent_stream_message(agent, session_id, {"type": "streaming_start"})


def agent_error_message(agent: str, error: str) -> Message:
    return {"type": AGENT_ERROR, "payload": {"agent": agent, "error": error}}


def round_complete_message(
    round_number: int,
    consensus: list[ConsensusSection],
    convergence: ConvergenceState,
    responses: dict[str, AgentResponse],
) -> Message:
    return {
        "type": ROUND_COMPLETE,
        "payload": {
            "round": round_number,
            "consensus": consensus_to_wire(consensus),
            "convergence": convergence_to_wire(convergence),
            "agents": responses_to_wire(responses),
        },
    }


def debate_complete_message(
    consensus: list[ConsensusSection],
    convergence: ConvergenceState,
    responses: dict[str, AgentResponse],
) -> Message:
    return {
        "type": DEBATE_COMPLETE,
        "payload": {
            "consensus": consensus_to_wire(consensus),
            "convergence": convergence_to_wire(convergence),
            "agents": responses_to_wire(responses),
        },
    }


def error_message(message: str) -> Message:
    return {"type": ERROR, "payload": {"message": message}}


def export_message(markdown: str, filename: str) -> Message:
    return {"type": EXPORT, "payload": {"markdown": markdown, "filename": filename}}
