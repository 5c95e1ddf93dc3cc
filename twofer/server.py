"""aiohttp server exposing the live event feed (WebSocket) and the final result."""

import asyncio
import json
import logging
from collections.abc import Callable

from aiohttp import WSMsgType, web

from twofer.broadcast import Broadcaster, Subscription
from twofer.models import DebateResult
from twofer.output import consensus_to_spec, export_filename, export_to_markdown
from twofer.protocol import result_to_wire

logger = logging.getLogger(__name__)

ResultGetter = Callable[[], DebateResult | None]

_NO_RESULT = {"error": "No debate result available"}

BROADCASTER_KEY = web.AppKey("broadcaster", Broadcaster)
RESULT_KEY = web.AppKey("get_result", ResultGetter)


@web.middleware
async def _cors(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        response = await handler(request)
    if response.prepared:
        # WebSocket responses have already sent their headers.
        return response
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


async def _websocket(request: web.Request) -> web.WebSocketResponse:
    """Replay the cached state, then stream every broadcast until either side closes."""
    broadcaster: Broadcaster = request.app[BROADCASTER_KEY]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    subscription = broadcaster.connect()
    sender = asyncio.create_task(_forward(subscription, ws))
    try:
        async for msg in ws:
            # Observers are read-only; inbound frames are ignored.
            if msg.type == WSMsgType.ERROR:
                logger.debug("WebSocket error: %s", ws.exception())
    finally:
        broadcaster.disconnect(subscription)
        await sender
    return ws


async def _forward(subscription: Subscription, ws: web.WebSocketResponse) -> None:
    async for message in subscription:
        if ws.closed:
            break
        try:
            await ws.send_str(json.dumps(message))
        except ConnectionResetError:
            break
    if not ws.closed:
        await ws.close()


def _markdown_response(text: str, filename: str) -> web.Response:
    return web.Response(
        text=text,
        content_type="text/markdown",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


async def _result(request: web.Request) -> web.Response:
    result = request.app[RESULT_KEY]()
    if result is None:
        return web.json_response(_NO_RESULT, status=404)
    return web.json_response(result_to_wire(result))


async def _export(request: web.Request) -> web.Response:
    result = request.app[RESULT_KEY]()
    if result is None:
        return web.json_response(_NO_RESULT, status=404)
    return _markdown_response(export_to_markdown(result), export_filename(result))


async def _spec(request: web.Request) -> web.Response:
    result = request.app[RESULT_KEY]()
    if result is None:
        return web.json_response(_NO_RESULT, status=404)
    spec = f"# Technical Specification\n\n{consensus_to_spec(result.consensus)}"
    return _markdown_response(spec, export_filename(result))


def create_app(broadcaster: Broadcaster, get_result: ResultGetter) -> web.Application:
    app = web.Application(middlewares=[_cors])
    app[BROADCASTER_KEY] = broadcaster
    app[RESULT_KEY] = get_result
    app.router.add_get("/ws", _websocket)
    app.router.add_get("/result", _result)
    app.router.add_get("/export", _export)
    app.router.add_get("/spec", _spec)
    return app


async def start_server(app: web.Application, port: int, host: str = "127.0.0.1") -> web.AppRunner:
    """Start serving ``app`` in the background. Call ``runner.cleanup()`` to stop."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Server on http://%s:%d", host, port)
    return runner
