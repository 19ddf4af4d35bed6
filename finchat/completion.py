import json
import logging
import re
from typing import Awaitable, Callable, Optional

import httpx

from .config import AppSettings, RequestOverrides
from .errors import CardParseError
from .formats import select_format
from .orchestrator import ReasoningLoop, to_model_messages
from .providers import ModelSelection, resolve_provider
from .schemas import Card, ChatMessage, TextPart
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger("uvicorn.error")

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
DEFAULT_CARD_EMOJI = "📰"


async def run_single_message_completion(
    message: str,
    settings: AppSettings,
    http_client: httpx.AsyncClient,
    tools: ToolRegistry,
    disable_local: bool = True,
    timeout: Optional[float] = None,
    resolver: Callable[..., Awaitable[ModelSelection]] = resolve_provider,
) -> str:
    """Run one user message through the finance model and tools; return the final text.

    No caller identity: tools fall back to the server's own API keys.
    """
    overrides = RequestOverrides(local_enabled=not disable_local)
    selection = await resolver(settings, overrides, http_client)
    profile = select_format("external", max_rounds=settings.external_max_rounds)
    logger.info("External completion | model=%s", selection.label)
    loop = ReasoningLoop(
        selection.model,
        tools.subset(profile.tool_names),
        max_rounds=profile.max_rounds,
        max_parallel_tools=settings.max_parallel_tools,
        provider_options=selection.provider_options,
        context=ToolContext(),
    )
    history = [ChatMessage(role="user", parts=[TextPart(text=message)])]
    result = await loop.run(
        to_model_messages(profile.system_prompt, history),
        timeout=timeout or settings.external_timeout_s,
    )
    return result.text


def extract_json_object(text: str) -> str:
    """Take the fenced block if there is one, then slice from the first `{` to the last `}`."""
    candidate = text.strip()
    fence = _CODE_FENCE_RE.search(text)
    if fence:
        candidate = fence.group(1).strip()
    first = candidate.find("{")
    if first >= 0:
        candidate = candidate[first:]
    last = candidate.rfind("}")
    if last > 0:
        candidate = candidate[: last + 1]
    return candidate


def parse_card(text: str, ticker: str) -> Card:
    if not text or not text.strip():
        raise CardParseError("Empty response from model")
    try:
        data = json.loads(extract_json_object(text))
    except ValueError as exc:
        raise CardParseError(f"Model output was not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise CardParseError("Model output was not a JSON object")
    title = data.get("title").strip() if isinstance(data.get("title"), str) else ""
    content = data.get("content").strip() if isinstance(data.get("content"), str) else ""
    emoji = data.get("emoji").strip() if isinstance(data.get("emoji"), str) else ""
    if not title or not content:
        raise CardParseError("Model did not return valid title and content")
    return Card(title=title, emoji=emoji or DEFAULT_CARD_EMOJI, content=content, ticker=ticker)
