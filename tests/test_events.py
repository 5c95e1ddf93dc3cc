"""Tests for twofer/events.py."""

import asyncio

import pytest

from tests.conftest import FakeRuntime

from twofer.broadcast import Broadcaster
from twofer.events import EventForwarder, classify_event, extract_session_id, track_assistant_message

SESSIONS = {"ses_1": "Claude", "ses_2": "Codex"}


def _message_updated(session_id: str, message_id: str, role: str = "assistant") -> dict:
    return {
        "type": "message.updated",
        "properties": {"info": {"id": message_id, "sessionID": session_id, "role": role}},
    }


def _part_updated(session_id: str, part_type: str = "text", text: str = "Hello", message_id: str = "msg_1") -> dict:
    part = {"type": part_type, "sessionID": session_id, "messageID": message_id}
    if part_type == "reasoning":
        part["reasoning"] = text
    else:
        part["text"] = text
    return {"type": "message.part.updated", "properties": {"part": part}}


# --- extract_session_id ---

@pytest.mark.parametrize("properties", [
    {"part": {"sessionID": "ses_1"}},
    {"info": {"sessionID": "ses_1"}},
    {"sessionID": "ses_1"},
    {"session_id": "ses_1"},
])
def test_extract_session_id_locations(properties):
    assert extract_session_id(properties) == "ses_1"


def test_extract_session_id_missing():
    assert extract_session_id({"part": {"type": "text"}}) is None


# --- classify_event ---

def test_classify_text_part():
    assistant_ids = {"msg_1"}
    message = classify_event(_part_updated("ses_1", text="Draft"), SESSIONS, assistant_ids)
    assert message == {
        "type": "agent_stream",
        "payload": {
            "agent": "Claude",
            "type": "message.part.updated",
            "sessionId": "ses_1",
            "data": {"type": "text", "text": "Draft"},
        },
    }


def test_classify_reasoning_part():
    message = classify_event(_part_updated("ses_2", "reasoning", "thinking"), SESSIONS, {"msg_1"})
    assert message["payload"]["agent"] == "Codex"
    assert message["payload"]["data"] == {"type": "reasoning", "reasoning": "thinking"}


def test_classify_reasoning_falls_back_to_text_field():
    event = {
        "type": "message.part.updated",
        "properties": {"part": {"type": "reasoning", "sessionID": "ses_1", "text": "hmm"}},
    }
    message = classify_event(event, SESSIONS, set())
    assert message["payload"]["data"] == {"type": "reasoning", "reasoning": "hmm"}


def test_classify_drops_unknown_session():
    assert classify_event(_part_updated("ses_other"), SESSIONS, {"msg_1"}) is None


def test_classify_drops_user_message_parts():
    assert classify_event(_part_updated("ses_1", message_id="msg_user"), SESSIONS, {"msg_1"}) is None


@pytest.mark.parametrize("part_type", ["tool", "step-start", "step-finish", "file"])
def test_classify_drops_non_text_parts(part_type):
    assert classify_event(_part_updated("ses_1", part_type=part_type), SESSIONS, {"msg_1"}) is None


def test_classify_drops_other_event_types():
    assert classify_event(_message_updated("ses_1", "msg_1"), SESSIONS, set()) is None
    assert classify_event({"type": "session.idle", "properties": {"sessionID": "ses_1"}}, SESSIONS, set()) is None


def test_track_assistant_message_only_assistant_role():
    ids: set[str] = set()
    track_assistant_message(_message_updated("ses_1", "msg_1"), ids)
    track_assistant_message(_message_updated("ses_1", "msg_2", role="user"), ids)
    assert ids == {"msg_1"}


# --- EventForwarder ---

async def test_forwarder_broadcasts_assistant_parts():
    runtime = FakeRuntime(events=[
        _message_updated("ses_1", "msg_u", role="user"),
        _part_updated("ses_1", text="prompt echo", message_id="msg_u"),
        _message_updated("ses_1", "msg_1"),
        _part_updated("ses_1", text="Hel", message_id="msg_1"),
        _part_updated("ses_1", text="Hello", message_id="msg_1"),
        _part_updated("ses_9", text="stranger", message_id="msg_9"),
    ])
    broadcaster = Broadcaster()
    subscription = broadcaster.connect()

    forwarder = EventForwarder(runtime, SESSIONS, broadcaster)
    forwarder.start()
    assert forwarder.running
    await asyncio.wait_for(runtime.stream_open.wait(), timeout=1)
    await forwarder.stop()
    assert not forwarder.running

    received = []
    while not subscription._queue.empty():
        received.append(subscription._queue.get_nowait())
    texts = [m["payload"]["data"]["text"] for m in received]
    assert texts == ["Hel", "Hello"]
    assert forwarder.event_count == 6
    assert forwarder.forwarded_count == 2


async def test_forwarder_emits_nothing_after_stop():
    runtime = FakeRuntime(events=[_part_updated("ses_1", message_id="")])
    broadcaster = Broadcaster()
    forwarder = EventForwarder(runtime, SESSIONS, broadcaster)
    forwarder.start()
    await asyncio.wait_for(runtime.stream_open.wait(), timeout=1)
    await forwarder.stop()

    subscription = broadcaster.connect()
    await asyncio.sleep(0)
    assert subscription._queue.empty()


async def test_forwarder_start_twice_raises():
    forwarder = EventForwarder(FakeRuntime(), SESSIONS, Broadcaster())
    forwarder.start()
    with pytest.raises(RuntimeError):
        forwarder.start()
    await forwarder.stop()


async def test_forwarder_stop_is_idempotent():
    forwarder = EventForwarder(FakeRuntime(), SESSIONS, Broadcaster())
    forwarder.start()
    await forwarder.stop()
    await forwarder.stop()


async def test_forwarder_logs_stream_errors(caplog):
    class BrokenRuntime(FakeRuntime):
        async def subscribe_events(self):
            raise ConnectionError("stream lost")
            yield  # pragma: no cover

    forwarder = EventForwarder(BrokenRuntime(), SESSIONS, Broadcaster())
    forwarder.start()
    await asyncio.sleep(0.01)
    await forwarder.stop()
    assert "stream lost" in caplog.text


async def test_forwarder_queue_drops_oldest_when_full():
    forwarder = EventForwarder(FakeRuntime(), SESSIONS, Broadcaster(), queue_size=2)
    for i in range(3):
        forwarder._put({"type": "agent_stream", "payload": {"n": i}})
    first = forwarder._queue.get_nowait()
    assert first["payload"]["n"] == 1
