import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .llm import ChatModel, StreamFinish, TextDelta, ToolCallRequest
from .schemas import ChatMessage, TextPart, ToolCallPart, ToolResultPart
from .stream import EventSink, StepLog
from .tools import ToolContext, ToolRegistry, parse_tool_arguments

logger = logging.getLogger("uvicorn.error")

MAX_TOOL_RESULT_CHARS = 20_000


@dataclass
class LoopResult:
    text: str = ""
    parts: List[Any] = field(default_factory=list)
    rounds: int = 0
    finish_reason: str = "stop"
    tool_calls: int = 0


def _truncate(text: str, limit: int = MAX_TOOL_RESULT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[truncated {len(text) - limit} chars]"


def _step_event(entry: Any) -> Dict[str, Any]:
    return {"type": "data-step", "data": entry.model_dump(by_alias=True, exclude_none=True), "transient": True}


def tool_output_text(output: Any) -> str:
    if isinstance(output, str):
        return _truncate(output)
    return _truncate(json.dumps(output, default=str, ensure_ascii=False))


def to_model_messages(system_prompt: Optional[str], history: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Flatten stored/client messages into OpenAI chat messages, replaying past tool rounds."""
    messages: List[Dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for msg in history:
        if msg.role == "user":
            text = msg.text
            if text.strip():
                messages.append({"role": "user", "content": text})
            continue
        text_chunks: List[str] = []
        calls: List[Dict[str, Any]] = []
        results: List[Dict[str, Any]] = []
        for part in msg.parts:
            if isinstance(part, TextPart):
                text_chunks.append(part.text)
            elif isinstance(part, ToolCallPart):
                calls.append(
                    {
                        "id": part.tool_call_id,
                        "type": "function",
                        "function": {"name": part.tool_name, "arguments": json.dumps(part.input)},
                    }
                )
            elif isinstance(part, ToolResultPart):
                results.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.tool_call_id,
                        "content": tool_output_text(part.output),
                    }
                )
        answered = {r["tool_call_id"] for r in results}
        calls = [c for c in calls if c["id"] in answered]
        if calls:
            messages.append({"role": "assistant", "content": "", "tool_calls": calls})
            messages.extend(r for r in results if r["tool_call_id"] in {c["id"] for c in calls})
        text = "".join(text_chunks)
        if text.strip():
            messages.append({"role": "assistant", "content": text})
    return messages


class ReasoningLoop:
    """Round-bounded tool-calling loop over one streaming chat model.

    Each round streams a completion; tool calls requested in that round run
    concurrently (at most `max_parallel_tools` at once) and all of them finish
    before the next round starts.
    """

    def __init__(
        self,
        model: ChatModel,
        tools: ToolRegistry,
        max_rounds: int = 10,
        max_parallel_tools: int = 5,
        provider_options: Optional[Dict[str, Any]] = None,
        context: Optional[ToolContext] = None,
    ):
        self.model = model
        self.tools = tools
        self.max_rounds = max(1, max_rounds)
        self.max_parallel_tools = max(1, max_parallel_tools)
        self.provider_options = provider_options or {}
        self.context = context or ToolContext()
        self.result = LoopResult()
        self._open_text_id: Optional[str] = None
        self._round_text: List[str] = []

    async def run(
        self,
        messages: List[Dict[str, Any]],
        sink: Optional[EventSink] = None,
        step_log: Optional[StepLog] = None,
        timeout: Optional[float] = None,
    ) -> LoopResult:
        sink = sink or EventSink()
        step_log = step_log if step_log is not None else StepLog()
        self.result = LoopResult()
        try:
            if timeout:
                await asyncio.wait_for(self._run(list(messages), sink, step_log), timeout)
            else:
                await self._run(list(messages), sink, step_log)
        except asyncio.TimeoutError:
            logger.warning("Reasoning loop hit the %.0fs wall-clock limit after %s rounds", timeout, self.result.rounds)
            self.result.finish_reason = "timeout"
            if self._round_text:
                self.result.parts.append(TextPart(text="".join(self._round_text)))
                self._round_text = []
            if self._open_text_id:
                await sink.emit({"type": "text-end", "id": self._open_text_id})
                self._open_text_id = None
        return self.result

    async def _run(self, messages: List[Dict[str, Any]], sink: EventSink, step_log: StepLog) -> None:
        schema = self.tools.openai_schema()
        semaphore = asyncio.Semaphore(self.max_parallel_tools)
        while self.result.rounds < self.max_rounds:
            self.result.rounds += 1
            text, calls = await self._stream_round(messages, schema, sink)
            if not calls:
                await sink.emit({"type": "finish-step"})
                self.result.finish_reason = "stop"
                return

            call_parts: List[ToolCallPart] = []
            parsed: List[Optional[Dict[str, Any]]] = []
            parse_errors: List[Optional[str]] = []
            for call in calls:
                try:
                    args = parse_tool_arguments(call.arguments)
                    parse_errors.append(None)
                except ValueError as exc:
                    args = None
                    parse_errors.append(f"invalid tool arguments: {exc}")
                parsed.append(args)
                part = ToolCallPart(tool_call_id=call.id, tool_name=call.name, input=args or {})
                call_parts.append(part)
                await sink.emit(
                    {
                        "type": "tool-input-available",
                        "toolCallId": call.id,
                        "toolName": call.name,
                        "input": part.input,
                    }
                )
            self.result.parts.extend(call_parts)
            self.result.tool_calls += len(calls)

            results = await asyncio.gather(
                *(
                    self._run_tool(call, args, error, semaphore, sink, step_log)
                    for call, args, error in zip(calls, parsed, parse_errors)
                )
            )
            self.result.parts.extend(results)
            await sink.emit({"type": "finish-step"})

            messages.append(
                {
                    "role": "assistant",
                    "content": text,
                    "tool_calls": [
                        {
                            "id": part.tool_call_id,
                            "type": "function",
                            "function": {"name": part.tool_name, "arguments": json.dumps(part.input)},
                        }
                        for part in call_parts
                    ],
                }
            )
            for res in results:
                messages.append(
                    {"role": "tool", "tool_call_id": res.tool_call_id, "content": tool_output_text(res.output)}
                )
        self.result.finish_reason = "max-rounds"
        logger.info("Reasoning loop stopped at the %s-round cap", self.max_rounds)

    async def _stream_round(
        self,
        messages: List[Dict[str, Any]],
        schema: List[Dict[str, Any]],
        sink: EventSink,
    ) -> tuple:
        text_chunks: List[str] = []
        self._round_text = text_chunks
        calls: List[ToolCallRequest] = []
        step_started = False
        try:
            async for event in self.model.stream_chat(
                messages, tools=schema or None, provider_options=self.provider_options
            ):
                if not step_started:
                    await sink.emit({"type": "start-step"})
                    step_started = True
                if isinstance(event, TextDelta):
                    if self._open_text_id is None:
                        self._open_text_id = uuid.uuid4().hex
                        await sink.emit({"type": "text-start", "id": self._open_text_id})
                    text_chunks.append(event.text)
                    self.result.text += event.text
                    await sink.emit({"type": "text-delta", "id": self._open_text_id, "delta": event.text})
                elif isinstance(event, ToolCallRequest):
                    if not event.id:
                        event.id = f"call_{uuid.uuid4().hex[:16]}"
                    calls.append(event)
                elif isinstance(event, StreamFinish):
                    logger.debug("Round %s finished (%s)", self.result.rounds, event.finish_reason)
        except Exception:
            # A text block that already started must be closed before the caller reports the error.
            if self._open_text_id is not None:
                await sink.emit({"type": "text-end", "id": self._open_text_id})
                self._open_text_id = None
            raise
        if not step_started:
            await sink.emit({"type": "start-step"})
        if self._open_text_id is not None:
            await sink.emit({"type": "text-end", "id": self._open_text_id})
            self._open_text_id = None
        self._round_text = []
        text = "".join(text_chunks)
        if text:
            self.result.parts.append(TextPart(text=text))
        return text, calls

    async def _run_tool(
        self,
        call: ToolCallRequest,
        args: Optional[Dict[str, Any]],
        parse_error: Optional[str],
        semaphore: asyncio.Semaphore,
        sink: EventSink,
        step_log: StepLog,
    ) -> ToolResultPart:
        spec = self.tools.get(call.name)
        detail = spec.summarize_args(args or {}) if spec else ""
        error: Optional[str] = parse_error
        output: Any = None
        if error is None and spec is None:
            error = f'unknown tool "{call.name}"'

        async with semaphore:
            # Logged when the call actually gets a slot, not when it is queued.
            await sink.emit(_step_event(step_log.start(call.name, detail)))
            if error is None:
                try:
                    output = await spec.handler(args or {}, self.context)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("Tool %s failed: %s", call.name, exc)
                    error = str(exc) or type(exc).__name__
            # Back-end clients report HTTP failures as {"error": ...} instead of raising.
            if error is None and isinstance(output, dict) and output.get("error"):
                error = str(output["error"])
                logger.warning("Tool %s returned an error: %s", call.name, error)

        if error is not None:
            payload = output if isinstance(output, dict) and output.get("error") else {"error": error}
            result = ToolResultPart(tool_call_id=call.id, tool_name=call.name, output=payload, is_error=True)
            entry = step_log.done(call.name, error, next_step="report failure")
            await sink.emit({"type": "tool-output-error", "toolCallId": call.id, "errorText": error})
        else:
            result = ToolResultPart(tool_call_id=call.id, tool_name=call.name, output=output)
            entry = step_log.done(call.name, spec.summarize_result(output), next_step="analyze results")
            await sink.emit({"type": "tool-output-available", "toolCallId": call.id, "output": output})
        await sink.emit(_step_event(entry))
        return result
