import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTasks

from app.core.env import is_development

logger = logging.getLogger("uvicorn.error")

NDJSON_MEDIA_TYPE = "application/x-ndjson"
GENERIC_STREAM_ERROR = "An error occurred. Please try again."
ABORTED_MESSAGE = "Request aborted"
TEXT_CHUNK_SIZE = 120
TERMINAL_EVENT_TYPES = {"done", "error"}

StreamEvent = dict[str, Any]
SendEvent = Callable[[StreamEvent], Awaitable[None]]
StreamHandler = Callable[[SendEvent], Awaitable[None]]

_CLOSE = object()


def client_error_message(exc: BaseException) -> str:
    if is_development() and str(exc):
        return str(exc)
    return GENERIC_STREAM_ERROR


class ChatStream:
    """NDJSON event stream driven by a single handler task.

    The handler receives ``send`` and pushes events through a bounded queue, so a
    slow consumer suspends the producer. Exactly one terminal ``done`` or
    ``error`` event is emitted and nothing follows it.
    """

    def __init__(self, request_id: str, handler: StreamHandler, *, max_buffer: int = 64) -> None:
        self.request_id = request_id
        self._handler = handler
        self._max_buffer = max_buffer
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._terminal_sent = False
        self._aborted = False
        self._started = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def _encode(self, event: StreamEvent) -> str:
        return json.dumps({"requestId": self.request_id, **event}) + "\n"

    async def send(self, event: StreamEvent) -> None:
        if self._terminal_sent or self._queue is None:
            return
        if event.get("type") in TERMINAL_EVENT_TYPES:
            self._terminal_sent = True
        await self._queue.put(self._encode(event))

    async def _run(self) -> None:
        assert self._queue is not None
        try:
            await self._handler(self.send)
        except asyncio.CancelledError:
            if self._aborted:
                await self.send({"type": "error", "error": ABORTED_MESSAGE})
                await self._queue.put(_CLOSE)
            raise
        except Exception as exc:
            logger.exception("chat_stream_failed request_id=%s", self.request_id)
            await self.send({"type": "error", "error": client_error_message(exc)})
        else:
            await self.send({"type": "done"})
        await self._queue.put(_CLOSE)

    def abort(self) -> None:
        if self._aborted or self._terminal_sent:
            return
        self._aborted = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def __aiter__(self) -> AsyncIterator[str]:
        if self._started:
            raise RuntimeError("ChatStream can only be consumed once")
        self._started = True
        if self._aborted:
            self._terminal_sent = True
            yield self._encode({"type": "error", "error": ABORTED_MESSAGE})
            return

        self._queue = asyncio.Queue(maxsize=self._max_buffer)
        self._task = asyncio.create_task(self._run())
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    break
                yield item
        finally:
            # Consumer went away (or finished); make sure the provider call stops.
            if not self._task.done():
                self._task.cancel()


async def stream_text_chunks(text: str, send: SendEvent, chunk_size: int = TEXT_CHUNK_SIZE) -> None:
    for start in range(0, len(text), chunk_size):
        await send({"type": "token", "value": text[start : start + chunk_size]})


def ndjson_response(
    stream: ChatStream,
    headers: Optional[dict[str, str]] = None,
    background: Optional[BackgroundTasks] = None,
) -> StreamingResponse:
    return StreamingResponse(
        stream,
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", **(headers or {})},
        background=background,
    )
