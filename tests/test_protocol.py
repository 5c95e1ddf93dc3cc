"""Tests for twofer/protocol.py."""

import json

from tests.conftest import make_response

from twofer.convergence import build_consensus, check_convergence, create_convergence_state
from twofer.models import DebateResult, RoundResult
from twofer.protocol import (
    DURABLE_TYPES,
    MESSAGE_TYPES,
    agent_error_message,
    convergence_to_wire,
    debate_complete_message,
    export_message,
    result_to_wire,
    round_complete_message,
    streaming_start_message,
)


def test_agent_stream_is_not_durable():
    assert "agent_stream" in MESSAGE_TYPES
    assert "agent_stream" not in DURABLE_TYPES
    assert set(DURABLE_TYPES) == {"status", "round_complete", "debate_complete", "agent_error"}


def test_convergence_to_wire_omits_reason_until_converged():
    state = create_convergence_state(4)
    assert convergence_to_wire(state) == {"consecutiveApprovals": 0, "round": 0, "maxRounds": 4, "converged": False}
    state = check_convergence(create_convergence_state(1), [make_response("reject")])
    assert convergence_to_wire(state)["reason"] == "cap exhausted"


def test_streaming_start_message():
    assert streaming_start_message("Claude", "ses_1") == {
        "type": "agent_stream",
        "payload": {
            "agent": "Claude",
            "type": "message.part.updated",
            "sessionId": "ses_1",
            "data": {"type": "streaming_start"},
        },
    }


def test_agent_error_message():
    assert agent_error_message("GLM", "timed out") == {
        "type": "agent_error",
        "payload": {"agent": "GLM", "error": "timed out"},
    }


def test_round_and_debate_complete_payloads():
    responses = {"Claude": make_response("approve", {"API": "REST"})}
    consensus = build_consensus(list(responses.items()))
    state = check_convergence(create_convergence_state(3), list(responses.values()))

    round_msg = round_complete_message(1, consensus, state, responses)
    assert round_msg["type"] == "round_complete"
    assert set(round_msg["payload"]) == {"round", "consensus", "convergence", "agents"}
    assert round_msg["payload"]["consensus"][0] == {
        "title": "API",
        "agreed": True,
        "agentContents": {"Claude": "REST"},
        "finalContent": "REST",
    }
    assert round_msg["payload"]["agents"]["Claude"]["overall_verdict"] == "approve"

    done = debate_complete_message(consensus, state, responses)
    assert set(done["payload"]) == {"consensus", "convergence", "agents"}
    json.dumps(done)


def test_export_message():
    assert export_message("# Spec", "twofer-spec.md") == {
        "type": "export",
        "payload": {"markdown": "# Spec", "filename": "twofer-spec.md"},
    }


def test_result_to_wire_is_json():
    responses = {"A": make_response("approve"), "B": make_response("approve")}
    consensus = build_consensus(list(responses.items()))
    result = DebateResult(
        rounds=[RoundResult(round=1, responses=responses, consensus=consensus)],
        consensus=consensus,
        convergence_state=create_convergence_state(2),
        agent_responses=responses,
        outcome="aborted",
        abort_reason="boom",
    )
    wire = json.loads(json.dumps(result_to_wire(result)))
    assert wire["rounds"][0]["round"] == 1
    assert wire["outcome"] == "aborted"
    assert wire["abortReason"] == "boom"
