import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional, Union

import httpx

from .errors import ModelCompatibilityError, ModelRequestError, classify_model_error

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: str = ""


@dataclass
class StreamFinish:
    finish_reason: str


ModelEvent = Union[TextDelta, ToolCallRequest, StreamFinish]


def _normalize_error_text(detail: str) -> str:
    """Unwrap `{"error": {"message": ...}}` style bodies down to the message text."""
    text = detail or ""
    for _ in range(3):
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError):
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, dict):
                    text = json.dumps(val)
                    found = True
                    break
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except ValueError:
        pass
    return response.text


def _sanitize_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    sanitized: List[Dict[str, Any]] = []
    for msg in messages:
        if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
            continue
        content = msg.get("content")
        if msg["role"] in ("system", "user") and not (isinstance(content, str) and content.strip()):
            continue
        sanitized.append(msg)
    return sanitized


class ChatModel:
    """Streaming client for any OpenAI-compatible `/chat/completions` endpoint.

    Used for Ollama and LM Studio (`{base}/v1`), the OpenAI API and the AI gateway.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_tokens: Optional[int] = None,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        provider_options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": _sanitize_messages(messages),
            "stream": True,
        }
        if not payload["messages"]:
            raise ValueError("messages must include at least one non-empty entry")
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if provider_options:
            payload.update(provider_options)
        return payload

    def _raise_for_error(self, status_code: int, detail: str) -> None:
        text = _normalize_error_text(detail)
        if status_code == 400:
            issue = classify_model_error(text)
            if issue:
                raise ModelCompatibilityError(text or "model rejected request", issue=issue, status_code=status_code)
        raise ModelRequestError(text or f"model request failed ({status_code})", status_code=status_code)

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        provider_options: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[ModelEvent, None]:
        """Yield text deltas as they arrive, then the assembled tool calls, then the finish reason.

        HTTP failures are raised before anything is yielded.
        """
        payload = self.build_payload(messages, tools, provider_options)
        url = f"{self.base_url}/chat/completions"
        calls: Dict[int, ToolCallRequest] = {}
        finish_reason = "stop"
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    self._raise_for_error(resp.status_code, _extract_error_detail(resp))
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except ValueError:
                        continue
                    if isinstance(data, dict) and data.get("error"):
                        self._raise_for_error(400, json.dumps(data))
                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield TextDelta(content)
                    for tc in delta.get("tool_calls") or []:
                        index = tc.get("index", len(calls))
                        entry = calls.get(index)
                        if entry is None:
                            entry = ToolCallRequest(id=tc.get("id") or "", name="")
                            calls[index] = entry
                        if tc.get("id"):
                            entry.id = tc["id"]
                        fn = tc.get("function") or {}
                        if fn.get("name"):
                            entry.name = fn["name"]
                        if fn.get("arguments"):
                            entry.arguments += fn["arguments"]
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except httpx.RequestError as exc:
            raise ModelRequestError(f"model request failed: {exc}") from exc
        for index in sorted(calls):
            yield calls[index]
        yield StreamFinish(finish_reason)

    async def close(self) -> None:
        if self._owns_client and not self.client.is_closed:
            await self.client.aclose()
