# prophet/engine/transport.py
from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from starlette.responses import StreamingResponse

logger = structlog.get_logger("prophet.transport")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_CLOSE = object()


def format_event(name: str, payload: Any) -> str:
    """Encode one SSE block: `event: <name>\\ndata: <json>\\n\\n`."""
    data = json.dumps(payload, separators=(",", ":"), default=str)
    return f"event: {name}\ndata: {data}\n\n"


class EventChannel:
    """
    Single-producer queue of SSE blocks for one HTTP response.

    emit() never blocks and never raises; once the channel is closed
    (explicitly, or because the consumer went away) further emits are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.events: List[Tuple[str, Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self._closed:
            return
        body = payload if payload is not None else {}
        try:
            block = format_event(name, body)
        except (TypeError, ValueError) as exc:
            logger.warning("sse_encode_failed", sse_event=name, error=str(exc))
            return
        self.events.append((name, body))
        self._queue.put_nowait(block)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def stream(self) -> AsyncIterator[str]:
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    break
                yield item
        finally:
            # consumer gone: stop accepting events, producers keep running
            self._closed = True

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


def open_channel() -> EventChannel:
    return EventChannel()


def sse_response(body: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(
        body,
        media_type="text/event-stream",
        headers=dict(SSE_HEADERS),
    )
