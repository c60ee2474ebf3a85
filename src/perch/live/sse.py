"""Server-Sent Events over ASGI for the live-update channel.

Handles the full SSE lifecycle: sends ``text/event-stream`` headers,
forwards events from an async iterator, monitors for client disconnect,
and sends periodic heartbeat comments to keep the connection alive.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from perch._internal.asgi import Receive, Send
from perch.live.protocol import HEARTBEAT, SSEEvent

logger = logging.getLogger("perch.live")


async def handle_sse(
    events: AsyncIterator[SSEEvent],
    send: Send,
    receive: Receive,
    *,
    heartbeat_interval: float = 15.0,
    retry_ms: int | None = 1000,
) -> None:
    """Stream Server-Sent Events over an ASGI connection.

    1. Sends ``http.response.start`` with ``text/event-stream`` headers.
    2. Runs two concurrent tasks:
       - **Event producer**: consumes the iterator and sends each event
         as an ASGI body chunk.
       - **Disconnect monitor**: awaits ``http.disconnect`` and stops
         the producer.
    3. Sends heartbeat comments (``:``) while the iterator is idle.
    """
    await send(
        {
            "type": "http.response.start",
            "status": 200,
            "headers": [
                (b"content-type", b"text/event-stream"),
                (b"cache-control", b"no-cache"),
                (b"connection", b"keep-alive"),
                (b"x-accel-buffering", b"no"),
            ],
        }
    )

    if retry_ms is not None:
        await _send_chunk(send, f"retry: {retry_ms}\n\n".encode())

    disconnected = asyncio.Event()

    async def monitor_disconnect() -> None:
        while not disconnected.is_set():
            message = await receive()
            if message.get("type") == "http.disconnect":
                disconnected.set()
                return

    async def produce_events() -> None:
        """Forward events, with heartbeats while idle.

        ``asyncio.wait`` does not cancel the pending ``__anext__()`` task
        on timeout, so it survives across heartbeat intervals.
        """
        pending_next: asyncio.Task[Any] | None = None
        iterator = events.__aiter__()

        async def _next() -> Any:
            return await iterator.__anext__()

        try:
            while not disconnected.is_set():
                if pending_next is None:
                    pending_next = asyncio.create_task(_next())

                done, _ = await asyncio.wait({pending_next}, timeout=heartbeat_interval)
                if not done:
                    if disconnected.is_set():
                        break
                    if not await _send_chunk(send, f"{HEARTBEAT}\n\n".encode()):
                        break
                    continue

                pending_next = None
                try:
                    event = done.pop().result()
                except StopAsyncIteration:
                    break
                if not await _send_chunk(send, event.encode().encode("utf-8")):
                    break
        finally:
            if pending_next is not None:
                if not pending_next.done():
                    pending_next.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await pending_next

    producer_task = asyncio.create_task(produce_events())
    monitor_task = asyncio.create_task(monitor_disconnect())

    try:
        done, pending = await asyncio.wait(
            {producer_task, monitor_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("Live stream failed", exc_info=task.exception())
    finally:
        with contextlib.suppress(RuntimeError, OSError):
            await send({"type": "http.response.body", "body": b"", "more_body": False})


async def _send_chunk(send: Send, body: bytes) -> bool:
    """Send one body chunk; ``False`` once the response is closed."""
    try:
        await send({"type": "http.response.body", "body": body, "more_body": True})
    except (RuntimeError, OSError):
        return False
    return True
