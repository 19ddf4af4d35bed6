import asyncio
import json
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from .errors import ModelCompatibilityError
from .schemas import StepLogEntry

STREAM_HEADERS = {
    "x-vercel-ai-ui-message-stream": "v1",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
DONE_LINE = "data: [DONE]\n\n"
_DONE = object()


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def now_ms() -> int:
    return int(time.time() * 1000)


class StepLog:
    """Start/done timeline of tool activity for one assistant turn."""

    def __init__(self) -> None:
        self.entries: List[StepLogEntry] = []

    def start(self, tool_name: str, detail: str = "") -> StepLogEntry:
        entry = StepLogEntry(phase="start", tool_name=tool_name, detail=detail, ts=now_ms())
        self.entries.append(entry)
        return entry

    def done(self, tool_name: str, detail: str = "", next_step: Optional[str] = None) -> StepLogEntry:
        entry = StepLogEntry(phase="done", tool_name=tool_name, detail=detail, next_step=next_step, ts=now_ms())
        self.entries.append(entry)
        return entry

    def __len__(self) -> int:
        return len(self.entries)

    def dump(self) -> List[Dict[str, Any]]:
        return [e.model_dump(by_alias=True, exclude_none=True) for e in self.entries]


class EventSink:
    """Receiver for reasoning-loop events. The base class discards everything."""

    async def emit(self, event: Dict[str, Any]) -> None:
        return None


class StreamMultiplexer(EventSink):
    """Bounded queue between the reasoning loop (producer) and the HTTP response (consumer).

    `start{messageId}` is prepended to the first event, so a turn that fails
    before the model says anything leaves the stream untouched and the caller
    can still answer with a plain JSON error.
    """

    def __init__(self, message_id: str, max_buffered: int = 64):
        self.message_id = message_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, max_buffered))
        self._started = asyncio.Event()
        self.emitted = 0
        self.closed = False

    @property
    def started(self) -> bool:
        return self.emitted > 0

    async def emit(self, event: Dict[str, Any]) -> None:
        if self.closed:
            return
        if not self.emitted:
            self.emitted += 1
            self._started.set()
            await self.queue.put({"type": "start", "messageId": self.message_id})
        self.emitted += 1
        await self.queue.put(event)

    async def emit_error(self, exc: BaseException) -> None:
        event: Dict[str, Any] = {"type": "error", "errorText": str(exc) or type(exc).__name__}
        if isinstance(exc, ModelCompatibilityError):
            event["error"] = "MODEL_COMPATIBILITY_ERROR"
            event["compatibilityIssue"] = exc.issue
        else:
            event["error"] = "CHAT_ERROR"
        await self.emit(event)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._started.set()
        await self.queue.put(_DONE)

    async def wait_started(self) -> bool:
        """Block until the first event (or close); True if anything was emitted."""
        await self._started.wait()
        return self.started

    async def iter_sse(self) -> AsyncIterator[str]:
        while True:
            event = await self.queue.get()
            if event is _DONE:
                yield DONE_LINE
                return
            yield sse_format(event)


def parse_sse_events(lines: Iterable[str]) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        chunk = line[len("data:"):].strip()
        if not chunk or chunk == "[DONE]":
            continue
        try:
            event = json.loads(chunk)
        except ValueError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


def collect_text(lines: Iterable[str]) -> str:
    """Rebuild the assistant text from `text-delta` events, skipping every other event type."""
    return "".join(
        str(e.get("delta") or "") for e in parse_sse_events(lines) if e.get("type") == "text-delta"
    )
