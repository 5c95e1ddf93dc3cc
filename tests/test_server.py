"""Tests for twofer/server.py."""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from tests.conftest import make_response

from twofer.broadcast import Broadcaster
from twofer.convergence import build_consensus, create_convergence_state
from twofer.models import DebateResult, RoundResult
from twofer.protocol import agent_stream_message, error_message, status_message
from twofer.server import create_app


def _result() -> DebateResult:
    responses = {
        "Claude": make_response("approve", {"API": "REST"}, project_title="notify-svc"),
        "Codex": make_response("approve", {"API": "REST"}),
    }
    consensus = build_consensus(list(responses.items()))
    state = create_convergence_state(5)
    return DebateResult(
        rounds=[RoundResult(round=1, responses=responses, consensus=consensus)],
        consensus=consensus,
        convergence_state=state,
        agent_responses=responses,
        project_title="notify-svc",
    )


@pytest.fixture
async def client_factory():
    clients: list[TestClient] = []

    async def make(broadcaster: Broadcaster, result: DebateResult | None = None) -> TestClient:
        client = TestClient(TestServer(create_app(broadcaster, lambda: result)))
        await client.start_server()
        clients.append(client)
        return client

    yield make
    for client in clients:
        await client.close()


async def test_result_404_before_completion(client_factory):
    client = await client_factory(Broadcaster())
    for path in ("/result", "/export", "/spec"):
        resp = await client.get(path)
        assert resp.status == 404
        assert await resp.json() == {"error": "No debate result available"}


async def test_result_json(client_factory):
    client = await client_factory(Broadcaster(), _result())
    resp = await client.get("/result")
    assert resp.status == 200
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    data = await resp.json()
    assert data["projectTitle"] == "notify-svc"
    assert data["outcome"] == "converged"
    assert data["consensus"][0]["agentContents"] == {"Claude": "REST", "Codex": "REST"}
    assert data["convergenceState"]["maxRounds"] == 5


async def test_export_markdown(client_factory):
    client = await client_factory(Broadcaster(), _result())
    resp = await client.get("/export")
    assert resp.status == 200
    assert resp.content_type == "text/markdown"
    assert "twofer-notify-svc.md" in resp.headers["Content-Disposition"]
    assert "## Debate History" in await resp.text()


async def test_spec_markdown(client_factory):
    client = await client_factory(Broadcaster(), _result())
    resp = await client.get("/spec")
    text = await resp.text()
    assert text.startswith("# Technical Specification")
    assert "REST" in text


async def test_options_preflight(client_factory):
    client = await client_factory(Broadcaster())
    resp = await client.options("/result")
    assert resp.status == 204
    assert resp.headers["Access-Control-Allow-Methods"] == "GET, OPTIONS"


async def test_websocket_replays_then_streams(client_factory):
    broadcaster = Broadcaster()
    broadcaster.broadcast(status_message(1, 5, "debating", ["Claude", "Codex"]))
    broadcaster.broadcast(agent_stream_message("Claude", "ses_1", {"type": "text", "text": "old"}))
    client = await client_factory(broadcaster)

    ws = await client.ws_connect("/ws")
    replay = await ws.receive_json(timeout=1)
    assert replay["type"] == "status"

    broadcaster.broadcast(error_message("live"))
    live = await ws.receive_json(timeout=1)
    assert live == {"type": "error", "payload": {"message": "live"}}

    await ws.close()
    for _ in range(50):
        if broadcaster.observer_count == 0:
            break
        await asyncio.sleep(0.01)
    assert broadcaster.observer_count == 0


async def test_websocket_closed_when_broadcaster_closes(client_factory):
    broadcaster = Broadcaster()
    client = await client_factory(broadcaster)
    ws = await client.ws_connect("/ws")
    for _ in range(50):
        if broadcaster.observer_count == 1:
            break
        await asyncio.sleep(0.01)

    broadcaster.close()
    msg = await ws.receive(timeout=1)
    assert ws.closed or msg.type.name in ("CLOSE", "CLOSED")
