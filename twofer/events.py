"""Forward live assistant output from the runtime's event stream to observers.

The runtime exposes a single raw stream shared by every session. A reader
task demultiplexes it by session id, keeps only text/reasoning parts of
assistant messages, and puts ``agent_stream`` messages on a bounded queue.
A pump task drains that queue into the Broadcaster.
"""

import asyncio
import logging
from typing import Any

from twofer.broadcast import Broadcaster
from twofer.protocol import Message, agent_stream_message
from twofer.runtime.base import AgentRuntime

logger = logging.getLogger(__name__)

_DEFAULT_QUEUE_SIZE = 256

_FORWARDED_PART_TYPES = ("text", "reasoning")


def extract_session_id(properties: dict[str, Any]) -> str | None:
    """Find the session id, which the runtime places in different spots per event."""
    for container_key in ("part", "info"):
        container = properties.get(container_key)
        if isinstance(container, dict):
            for key in ("sessionID", "session_id"):
                if isinstance(container.get(key), str):
                    return container[key]
    for key in ("sessionID", "session_id", "sessionId"):
        if isinstance(properties.get(key), str):
            return properties[key]
    return None


def track_assistant_message(event: dict[str, Any], assistant_ids: set[str]) -> None:
    """Remember ids of assistant-authored messages from message metadata events."""
    if event.get("type") != "message.updated":
        return
    info = (event.get("properties") or {}).get("info")
    if isinstance(info, dict) and info.get("role") == "assistant" and isinstance(info.get("id"), str):
        assistant_ids.add(info["id"])


def classify_event(
    event: dict[str, Any],
    session_map: dict[str, str],
    assistant_ids: set[str],
) -> Message | None:
    """Turn one raw runtime event into an ``agent_stream`` message, or None to drop it.

    Each forwarded message carries the part's full current text, not a diff.
    """
    if event.get("type") != "message.part.updated":
        return None

    properties = event.get("properties") or {}
    session_id = extract_session_id(properties)
    if not session_id or session_id not in session_map:
        return None

    part = properties.get("part", properties)
    if not isinstance(part, dict):
        return None

    message_id = part.get("messageID")
    if message_id and message_id not in assistant_ids:
        return None

    part_type = part.get("type")
    if part_type not in _FORWARDED_PART_TYPES:
        return None

    if part_type == "text" and isinstance(part.get("text"), str):
        data = {"type": "text", "text": part["text"]}
    elif part_type == "reasoning" and isinstance(part.get("reasoning"), str):
        data = {"type": "reasoning", "reasoning": part["reasoning"]}
    elif part_type == "reasoning" and isinstance(part.get("text"), str):
        data = {"type": "reasoning", "reasoning": part["text"]}
    else:
        return None

    return agent_stream_message(session_map[session_id], session_id, data)


class EventForwarder:
    """Background subscription that streams agent output to observers.

    Start once before the first prompt; ``stop()`` once the debate reaches a
    terminal state. After ``stop()`` returns, no more messages are broadcast.
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        session_map: dict[str, str],
        broadcaster: Broadcaster,
        queue_size: int = _DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._runtime = runtime
        self._session_map = session_map
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue(maxsize=queue_size)
        self._stopped = asyncio.Event()
        self._reader: asyncio.Task | None = None
        self._pump: asyncio.Task | None = None
        self.event_count = 0
        self.forwarded_count = 0

    @property
    def running(self) -> bool:
        return self._reader is not None and not self._stopped.is_set()

    def start(self) -> None:
        if self._reader is not None:
            raise RuntimeError("EventForwarder already started")
        self._pump = asyncio.create_task(self._drain(), name="twofer-event-pump")
        self._reader = asyncio.create_task(self._read(), name="twofer-event-reader")

    async def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()

        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass

        if self._pump is not None:
            self._put(None)
            await self._pump

        logger.debug(
            "Event forwarder stopped after %d events (%d forwarded)",
            self.event_count,
            self.forwarded_count,
        )

    def _put(self, item: Message | None) -> None:
        """Enqueue, dropping the oldest entry when full."""
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def _read(self) -> None:
        assistant_ids: set[str] = set()
        try:
            async for event in self._runtime.subscribe_events():
                if self._stopped.is_set():
                    break
                self.event_count += 1
                if self.event_count <= 5:
                    logger.debug(
                        "Event #%d type=%s keys=%s",
                        self.event_count,
                        event.get("type"),
                        sorted((event.get("properties") or {}).keys()),
                    )

                track_assistant_message(event, assistant_ids)
                message = classify_event(event, self._session_map, assistant_ids)
                if message is not None:
                    self._put(message)
            logger.debug("Event stream ended after %d events", self.event_count)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._stopped.is_set():
                logger.error("Event stream error: %s", exc)

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            self.forwarded_count += 1
            self._broadcaster.broadcast(message)
