import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from .config import AppSettings, RequestOverrides
from .errors import NoProviderAvailableError
from .llm import ChatModel

logger = logging.getLogger("uvicorn.error")

PROVIDER_NAMES = {"ollama": "Ollama", "lmstudio": "LM Studio"}
# Local servers ignore the key but OpenAI-compatible clients must send one.
PLACEHOLDER_KEYS = {"ollama": "ollama", "lmstudio": "lm-studio"}
_DATE_SUFFIX_RE = re.compile(r"-\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class LocalRoute:
    provider: str
    model: str


@dataclass(frozen=True)
class HostedRoute:
    credential_kind: str = "openai"
    model: str = ""


@dataclass(frozen=True)
class GatewayRoute:
    model: str


Route = Union[LocalRoute, HostedRoute, GatewayRoute]


@dataclass
class ModelSelection:
    model: ChatModel
    route: Route
    supports_thinking: bool = False
    fallback: bool = False
    self_hosted: bool = False
    provider_options: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return describe_route(self.route, self.supports_thinking, self.fallback, self.self_hosted)


def short_model_name(model: str) -> str:
    name = model.rsplit("/", 1)[-1]
    return _DATE_SUFFIX_RE.sub("", name)


def describe_route(route: Route, supports_thinking: bool, fallback: bool, self_hosted: bool) -> str:
    if isinstance(route, LocalRoute):
        reasoning = " [Reasoning]" if supports_thinking else ""
        return f"{PROVIDER_NAMES.get(route.provider, route.provider)} ({route.model}){reasoning} - Self-Hosted"
    if isinstance(route, HostedRoute):
        head = f"OpenAI ({short_model_name(route.model)})"
    else:
        head = f"Vercel AI Gateway ({short_model_name(route.model)})"
    if self_hosted:
        return f"{head} - Self-Hosted Fallback" if fallback else f"{head} - Self-Hosted"
    return f"{head} - Valyu Mode"


def provider_options_for(route: Route, supports_thinking: bool) -> Dict[str, Any]:
    if isinstance(route, LocalRoute):
        return {"think": supports_thinking}
    return {"reasoning_effort": "low", "store": True}


def filter_models(names: List[str], markers: List[str]) -> List[str]:
    lowered = [m.lower() for m in markers]
    return [n for n in names if n and not any(m in n.lower() for m in lowered)]


def pick_local_model(available: List[str], requested: Optional[str], preferred: List[str]) -> str:
    if requested and requested in available:
        return requested
    for fragment in preferred:
        for name in available:
            if fragment in name:
                return name
    return available[0]


def model_supports_thinking(model: str, thinking_models: List[str]) -> bool:
    lowered = model.lower()
    return any(t.lower() in lowered for t in thinking_models)


async def list_local_models(
    http_client: httpx.AsyncClient,
    settings: AppSettings,
    provider: str,
) -> List[str]:
    """List chat-capable models on the local provider; raises on any failure or an empty list."""
    base = settings.local_base_url(provider)
    if provider == "lmstudio":
        resp = await http_client.get(f"{base}/v1/models", timeout=settings.local_probe_timeout_s)
        resp.raise_for_status()
        names = [str(m.get("id") or "") for m in resp.json().get("data") or []]
    else:
        resp = await http_client.get(f"{base}/api/tags", timeout=settings.local_probe_timeout_s)
        resp.raise_for_status()
        names = [str(m.get("name") or "") for m in resp.json().get("models") or []]
    names = filter_models(names, settings.embedding_markers)
    if not names:
        raise LookupError(f"no models in {provider}")
    return names


def hosted_selection(
    settings: AppSettings,
    http_client: httpx.AsyncClient,
    fallback: bool = False,
) -> ModelSelection:
    if settings.openai_api_key:
        route: Route = HostedRoute("openai", settings.openai_model)
        model = ChatModel(
            settings.openai_base_url,
            settings.openai_model,
            api_key=settings.openai_api_key,
            client=http_client,
            max_tokens=settings.max_tokens,
        )
    elif settings.gateway_api_key:
        route = GatewayRoute(settings.gateway_model)
        model = ChatModel(
            settings.gateway_base_url,
            settings.gateway_model,
            api_key=settings.gateway_api_key,
            client=http_client,
            max_tokens=settings.max_tokens,
        )
    else:
        raise NoProviderAvailableError(
            "No language model available: local provider unreachable and no hosted API key configured."
        )
    return ModelSelection(
        model=model,
        route=route,
        fallback=fallback,
        self_hosted=settings.self_hosted,
        provider_options=provider_options_for(route, False),
    )


async def resolve_provider(
    settings: AppSettings,
    overrides: RequestOverrides,
    http_client: httpx.AsyncClient,
) -> ModelSelection:
    """Pick the model for one request.

    Self-hosted mode with local enabled probes Ollama / LM Studio within
    `local_probe_timeout_s`; any probe failure falls back to the hosted model.
    Raises `NoProviderAvailableError` when nothing is reachable.
    """
    if not (settings.self_hosted and overrides.local_enabled):
        return hosted_selection(settings, http_client)

    provider = overrides.local_provider
    try:
        available = await asyncio.wait_for(
            list_local_models(http_client, settings, provider),
            timeout=settings.local_probe_timeout_s,
        )
    except (asyncio.TimeoutError, httpx.HTTPError, LookupError, ValueError, TypeError, AttributeError) as exc:
        logger.warning("Local provider %s unavailable (%s); falling back to hosted model", provider, exc or type(exc).__name__)
        return hosted_selection(settings, http_client, fallback=True)

    name = pick_local_model(available, overrides.preferred_model, settings.preferred_models)
    thinking = model_supports_thinking(name, settings.thinking_models)
    route = LocalRoute(provider, name)
    model = ChatModel(
        f"{settings.local_base_url(provider)}/v1",
        name,
        api_key=PLACEHOLDER_KEYS.get(provider),
        client=http_client,
        max_tokens=settings.max_tokens,
    )
    return ModelSelection(
        model=model,
        route=route,
        supports_thinking=thinking,
        self_hosted=True,
        provider_options=provider_options_for(route, thinking),
    )
