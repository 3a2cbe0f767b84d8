"""
Server-Sent Events transport.

The stream opens with the initialize result and the tool list, then emits
ping events until the idle timeout elapses.
"""

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Optional

from starlette.responses import StreamingResponse

from transport.jsonrpc import JsonRpcHandler

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_event(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def ping_event(now: Optional[float] = None) -> str:
    timestamp = int((now if now is not None else time.time()) * 1000)
    return format_event({"type": "ping", "timestamp": timestamp})


async def event_stream(
    handler: JsonRpcHandler,
    keepalive_seconds: float,
    idle_timeout_seconds: float,
) -> AsyncIterator[str]:
    """Yield the SSE frames of one stream.

    Args:
        handler: JSON-RPC handler providing initialize and tools/list results
        keepalive_seconds: Interval between ping events
        idle_timeout_seconds: Total lifetime of the stream
    """
    yield format_event(
        {"jsonrpc": "2.0", "id": 1, "result": handler.initialize_result()}
    )
    yield format_event(
        {"jsonrpc": "2.0", "id": 2, "result": await handler.tools_list_result()}
    )

    loop = asyncio.get_running_loop()
    deadline = loop.time() + idle_timeout_seconds
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(keepalive_seconds, remaining))
        if loop.time() >= deadline:
            break
        yield ping_event()

    logger.info("SSE stream reached idle timeout")


def sse_response(
    handler: JsonRpcHandler, headers: Optional[dict[str, str]] = None
) -> StreamingResponse:
    config = handler.config
    return StreamingResponse(
        event_stream(
            handler,
            keepalive_seconds=config.sse_keepalive_seconds,
            idle_timeout_seconds=config.sse_idle_timeout_seconds,
        ),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **(headers or {})},
    )
