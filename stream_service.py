import asyncio
import threading
from typing import Any, AsyncIterator, List, Optional, Protocol, Tuple

from fastapi.responses import StreamingResponse

from log_service import AppLogger

INFO = "INFO"
OUT = "OUT"
ERR = "ERR"
DONE = "DONE"

STREAM_HEADERS = {"Transfer-Encoding": "chunked"}


class Flushable(Protocol):
    def write(self, data: str) -> Any: ...

    def flush(self) -> None: ...


def format_line(tag: str, text: str) -> str:
    return f"[{tag}] {text}\n"


class QueueSink:
    """Flushable sink whose flushed chunks are the body of a StreamingResponse.

    Writers may be any thread; chunks are handed to the event loop with
    call_soon_threadsafe and read by an async iterator, so an idle stream
    holds no thread. Writes after close (or after the client went away)
    are dropped.
    """

    _EOF = None

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._buffer: List[str] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Optional[str]) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # loop already closed: nobody left to read
            self._closed = True

    def write(self, data: str) -> int:
        if self._closed:
            return 0
        self._buffer.append(data)
        return len(data)

    def flush(self) -> None:
        if self._closed or not self._buffer:
            return
        chunk = "".join(self._buffer)
        self._buffer.clear()
        self._put(chunk)

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._put(self._EOF)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is self._EOF:
                    return
                yield chunk.encode("utf-8")
        finally:
            # client disconnected or body fully sent
            self._closed = True


class LineEmitter:
    """Append-only `[TAG] text` log written to a Flushable, one flush per line.

    Safe to call from several threads at once; each line is written whole.
    """

    def __init__(self, sink: Flushable, task: Optional[str] = None, logger: Optional[AppLogger] = None):
        self._sink = sink
        self._lock = threading.Lock()
        self.task = task
        self.logger = logger

    def emit(self, tag: str, text: str) -> None:
        line = format_line(tag, text)
        with self._lock:
            try:
                self._sink.write(line)
                self._sink.flush()
            except (OSError, ValueError):
                # transport gone; nothing to report back to
                pass
        if self.logger is not None:
            self.logger.forward({"task": self.task, "line": line.rstrip("\n")})

    def info(self, text: str) -> None:
        self.emit(INFO, text)

    def error(self, text: str) -> None:
        self.emit(ERR, text)

    def done(self, text: str) -> None:
        self.emit(DONE, text)

    def close(self) -> None:
        close = getattr(self._sink, "close", None)
        if close is not None:
            with self._lock:
                close()


def open_stream(task: Optional[str] = None, logger: Optional[AppLogger] = None) -> Tuple[LineEmitter, StreamingResponse]:
    """Emitter plus the plain-text chunked response that carries its lines to the client.

    Must be called on the event loop that will serve the response.
    """
    sink = QueueSink()
    response = StreamingResponse(sink.__aiter__(), media_type="text/plain", headers=dict(STREAM_HEADERS))
    return LineEmitter(sink, task=task, logger=logger), response
