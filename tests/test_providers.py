import asyncio
import time

import httpx
import pytest
import respx
from httpx import Response

from finchat.config import RequestOverrides
from finchat.errors import NoProviderAvailableError
from finchat.providers import (
    GatewayRoute,
    HostedRoute,
    LocalRoute,
    describe_route,
    pick_local_model,
    resolve_provider,
)


@pytest.mark.asyncio
async def test_ollama_prefers_ranked_model_and_flags_thinking(settings_factory):
    settings = settings_factory()
    async with httpx.AsyncClient() as http_client:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://ollama.test/api/tags").mock(
                return_value=Response(
                    200,
                    json={"models": [{"name": "llama3.2:3b"}, {"name": "qwen3:8b"}, {"name": "nomic-embed-text"}]},
                )
            )
            selection = await resolve_provider(settings, RequestOverrides(), http_client)

    assert selection.route == LocalRoute("ollama", "qwen3:8b")
    assert selection.supports_thinking is True
    assert selection.fallback is False
    assert selection.label == "Ollama (qwen3:8b) [Reasoning] - Self-Hosted"
    assert selection.provider_options == {"think": True}
    assert selection.model.base_url == "http://ollama.test/v1"
    assert selection.model.api_key == "ollama"


@pytest.mark.asyncio
async def test_lmstudio_honours_requested_model_and_drops_embeddings(settings_factory):
    settings = settings_factory()
    overrides = RequestOverrides(local_provider="lmstudio", preferred_model="mistral-7b-instruct")
    async with httpx.AsyncClient() as http_client:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://lmstudio.test/v1/models").mock(
                return_value=Response(
                    200,
                    json={
                        "data": [
                            {"id": "text-embedding-nomic-embed-text-v1.5"},
                            {"id": "qwen3-4b"},
                            {"id": "mistral-7b-instruct"},
                        ]
                    },
                )
            )
            selection = await resolve_provider(settings, overrides, http_client)

    assert selection.route == LocalRoute("lmstudio", "mistral-7b-instruct")
    assert selection.supports_thinking is False
    assert selection.label == "LM Studio (mistral-7b-instruct) - Self-Hosted"
    assert selection.model.api_key == "lm-studio"


def test_unlisted_requested_model_falls_back_to_ranking():
    assert pick_local_model(["gemma3:4b", "llama3.1:8b"], "missing:1b", ["llama3.1", "gemma3"]) == "llama3.1:8b"
    assert pick_local_model(["mystery"], None, ["qwen3"]) == "mystery"


@pytest.mark.asyncio
async def test_slow_local_probe_falls_back_within_timeout(settings_factory):
    settings = settings_factory(local_probe_timeout_s=0.2, openai_api_key="sk-test")

    async def slow_handler(request):
        await asyncio.sleep(5)
        return Response(200, json={"models": [{"name": "qwen3:8b"}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow_handler)) as http_client:
        started = time.monotonic()
        selection = await resolve_provider(settings, RequestOverrides(), http_client)
        elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert isinstance(selection.route, HostedRoute)
    assert selection.fallback is True
    assert selection.label == "OpenAI (gpt-5.2) - Self-Hosted Fallback"
    assert selection.provider_options == {"reasoning_effort": "low", "store": True}


@pytest.mark.asyncio
async def test_probe_error_uses_gateway_when_only_gateway_key(settings_factory):
    settings = settings_factory(gateway_api_key="gw-key")
    async with httpx.AsyncClient() as http_client:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://ollama.test/api/tags").mock(return_value=Response(500))
            selection = await resolve_provider(settings, RequestOverrides(), http_client)

    assert selection.route == GatewayRoute("openai/gpt-5.2-2025-12-11")
    assert selection.label == "Vercel AI Gateway (gpt-5.2) - Self-Hosted Fallback"
    assert selection.model.base_url == "https://ai-gateway.vercel.sh/v1"


@pytest.mark.asyncio
async def test_empty_model_list_counts_as_unavailable(settings_factory):
    settings = settings_factory(openai_api_key="sk-test")
    async with httpx.AsyncClient() as http_client:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://ollama.test/api/tags").mock(return_value=Response(200, json={"models": []}))
            selection = await resolve_provider(settings, RequestOverrides(), http_client)
    assert selection.fallback is True


@pytest.mark.asyncio
async def test_hosted_mode_never_probes_local(settings_factory):
    settings = settings_factory(app_mode="valyu", openai_api_key="sk-test")
    async with httpx.AsyncClient() as http_client:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get("http://ollama.test/api/tags")
            selection = await resolve_provider(settings, RequestOverrides(), http_client)
            assert not route.called

    assert selection.label == "OpenAI (gpt-5.2) - Valyu Mode"
    assert selection.fallback is False


@pytest.mark.asyncio
async def test_no_local_and_no_keys_raises_typed_error(settings_factory):
    settings = settings_factory()
    async with httpx.AsyncClient() as http_client:
        with pytest.raises(NoProviderAvailableError):
            await resolve_provider(settings, RequestOverrides(local_enabled=False), http_client)


def test_labels_follow_route_not_strings():
    assert describe_route(GatewayRoute("openai/gpt-5.2-2025-12-11"), False, False, False) == (
        "Vercel AI Gateway (gpt-5.2) - Valyu Mode"
    )
    assert describe_route(HostedRoute("openai", "gpt-5.2-2025-12-11"), False, False, True) == (
        "OpenAI (gpt-5.2) - Self-Hosted"
    )
