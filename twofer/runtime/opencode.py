"""OpenCode server runtime over HTTP, using aiohttp with native async."""

import asyncio
import json
import logging
import shutil
import time
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse

import aiohttp
from aiohttp import ClientTimeout

from config.config_loader import RuntimeConfig
from twofer.runtime.base import AgentRuntime, RuntimeClientError

logger = logging.getLogger(__name__)

_OPENCODE_BINARY = "opencode"
_READY_POLL_SEC = 0.5


async def iter_sse_events(lines: AsyncIterator[bytes]) -> AsyncIterator[dict[str, Any]]:
    """Decode a server-sent-events byte stream into JSON event dicts.

    Multi-line ``data:`` fields are joined; comments and undecodable payloads
    are skipped.
    """
    data_lines: list[str] = []
    async for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip(" "))
            continue
        if line == "" and data_lines:
            payload = "\n".join(data_lines)
            data_lines = []
            try:
                event = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Skipping undecodable event: %s", payload[:200])
                continue
            if isinstance(event, dict):
                yield event
    if data_lines:
        try:
            event = json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            return
        if isinstance(event, dict):
            yield event


class OpencodeRuntime(AgentRuntime):
    """Client for an OpenCode server, optionally spawning the server itself.

    Use as an async context manager, or call ``start()`` and ``close()``.
    """

    def __init__(self, config: RuntimeConfig) -> None:
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._session: aiohttp.ClientSession | None = None
        self._process: asyncio.subprocess.Process | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> "OpencodeRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self._config.request_timeout_sec),
            )
        if self._config.spawn_server and not await self._is_ready():
            await self._spawn_server()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        if self._process is not None and self._process.returncode is None:
            logger.info("Stopping OpenCode server (pid %d)", self._process.pid)
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5)
            except TimeoutError:
                self._process.kill()
                await self._process.wait()
        self._process = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeClientError("OpencodeRuntime is not started")
        return self._session

    async def _spawn_server(self) -> None:
        if shutil.which(_OPENCODE_BINARY) is None:
            raise RuntimeClientError("opencode is not installed (npm i -g opencode-ai)")

        parsed = urlparse(self._base_url)
        host = parsed.hostname or "127.0.0.1"
        port = parsed.port or 4096
        logger.info("Starting OpenCode server on %s:%d", host, port)
        self._process = await asyncio.create_subprocess_exec(
            _OPENCODE_BINARY, "serve", "--hostname", host, "--port", str(port),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

        deadline = time.monotonic() + self._config.startup_timeout_sec
        while time.monotonic() < deadline:
            if self._process.returncode is not None:
                raise RuntimeClientError(
                    f"OpenCode server exited with code {self._process.returncode} (port {port} in use?)"
                )
            if await self._is_ready():
                return
            await asyncio.sleep(_READY_POLL_SEC)
        raise RuntimeClientError(
            f"OpenCode server did not become ready within {self._config.startup_timeout_sec}s"
        )

    async def _is_ready(self) -> bool:
        try:
            async with self._http().get(f"{self._base_url}/provider") as resp:
                return resp.status == 200
        except (aiohttp.ClientError, TimeoutError):
            return False

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with self._http().request(method, url, json=json_body, params=params) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise RuntimeClientError(f"{method} {path} failed: HTTP {resp.status} {body[:200]}")
                if resp.status == 204 or resp.content_length == 0:
                    return None
                return await resp.json(content_type=None)
        except TimeoutError as exc:
            raise RuntimeClientError(f"{method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            raise RuntimeClientError(f"{method} {path} failed: {exc}") from exc

    async def create_session(
        self,
        title: str,
        *,
        directory: str | None = None,
        permissions: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"title": title}
        if permissions:
            body["permission"] = permissions
        params = {"directory": directory} if directory else None
        session = await self._request("POST", "/session", json_body=body, params=params)
        if not isinstance(session, dict) or not session.get("id"):
            raise RuntimeClientError("Failed to create session")
        return session

    async def send_prompt(
        self,
        session_id: str,
        model: dict[str, str],
        system_prompt: str,
        text: str,
        tools: dict[str, bool] | None = None,
    ) -> None:
        body: dict[str, Any] = {
            "model": model,
            "system": system_prompt,
            "parts": [{"type": "text", "text": text}],
        }
        if tools:
            body["tools"] = tools
        await self._request("POST", f"/session/{session_id}/prompt_async", json_body=body)

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        messages = await self._request("GET", f"/session/{session_id}/message")
        return messages if isinstance(messages, list) else []

    async def get_session_status(self) -> dict[str, dict[str, Any]]:
        status = await self._request("GET", "/session/status")
        return status if isinstance(status, dict) else {}

    async def list_providers(self) -> dict[str, Any]:
        providers = await self._request("GET", "/provider")
        return providers if isinstance(providers, dict) else {}

    async def subscribe_events(self) -> AsyncIterator[dict[str, Any]]:
        url = f"{self._base_url}/event"
        # The stream is long-lived: no total timeout, only on connecting.
        timeout = ClientTimeout(total=None, connect=self._config.request_timeout_sec, sock_read=None)
        try:
            async with self._http().get(url, timeout=timeout, headers={"Accept": "text/event-stream"}) as resp:
                if resp.status >= 400:
                    raise RuntimeClientError(f"GET /event failed: HTTP {resp.status}")
                async for event in iter_sse_events(resp.content):
                    yield event
        except aiohttp.ClientError as exc:
            raise RuntimeClientError(f"Event stream failed: {exc}") from exc
