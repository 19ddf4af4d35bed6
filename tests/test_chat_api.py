import uuid

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from finchat.agents import CARDS_SYSTEM, CHAT_SYSTEM
from finchat.errors import ModelCompatibilityError, ModelRequestError
from finchat.schemas import StepLogPart, ToolCallPart
from finchat.stream import collect_text, parse_sse_events
from tests.fakes import FakeResolver, ScriptedModel, no_provider_resolver, tool_call


def chat_body(text: str = "What is Apple trading at?", **extra):
    body = {"messages": [{"id": str(uuid.uuid4()), "role": "user", "parts": [{"type": "text", "text": text}]}]}
    body.update(extra)
    return body


async def post_chat(app, body, headers=None):
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            return await client.post("/api/chat", json=body, headers=headers or {})


@pytest.mark.asyncio
async def test_missing_or_empty_messages_is_invalid_request(client):
    for body in ({}, {"messages": []}, {"messages": "hi"}):
        res = await client.post("/api/chat", json=body)
        assert res.status_code == 400
        assert res.json()["error"] == "INVALID_REQUEST"

    res = await client.post("/api/chat", content=b"not json", headers={"content-type": "application/json"})
    assert res.status_code == 400
    assert client.resolver.calls == []


@pytest.mark.asyncio
async def test_hosted_mode_requires_access_token(app_factory):
    app, _, resolver, _ = app_factory(app_mode="valyu")
    res = await post_chat(app, chat_body())
    assert res.status_code == 401
    assert res.json()["error"] == "AUTH_REQUIRED"
    assert resolver.calls == []


@pytest.mark.asyncio
async def test_no_provider_is_service_unavailable(app_factory):
    app, _, _, _ = app_factory(resolver=no_provider_resolver())
    res = await post_chat(app, chat_body())
    assert res.status_code == 503
    assert res.json()["error"] == "NO_PROVIDER"


@pytest.mark.asyncio
async def test_streams_text_and_persists_both_turns(app_factory):
    model = ScriptedModel([["Apple is ", "at 190."]])
    app, _, _, _ = app_factory(resolver=FakeResolver(model))
    session_id = str(uuid.uuid4())
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json=chat_body(sessionId=session_id))
            assert res.status_code == 200
            assert res.headers["content-type"].startswith("text/event-stream")
            assert res.headers["x-vercel-ai-ui-message-stream"] == "v1"
            assert res.headers["x-self-hosted-mode"] == "true"
            lines = res.text.splitlines()
            assert collect_text(lines) == "Apple is at 190."
            assert res.text.rstrip().endswith("data: [DONE]")
            events = parse_sse_events(lines)
            assert events[0]["type"] == "start"
            assert events[-1] == {"type": "finish", "finishReason": "stop"}
            step_log = [e for e in events if e["type"] == "data-step-log"][0]
            assert step_log["data"]["steps"] == []
            assert step_log["data"]["model"] == "Ollama (scripted-model) - Self-Hosted"

            stored = await app.state.conversations.load(session_id)
            assert [m.role for m in stored] == ["user", "assistant"]
            assert stored[1].text == "Apple is at 190."
            assert stored[1].id == events[0]["messageId"]
            assert stored[1].processing_time_ms is not None
            assert not any(isinstance(p, StepLogPart) for p in stored[1].parts)

            listed = await client.get("/api/sessions")
            assert session_id in {s["id"] for s in listed.json()["sessions"]}
            history = await client.get(f"/api/sessions/{session_id}/messages")
            assert [m["role"] for m in history.json()["messages"]] == ["user", "assistant"]

    assert model.calls[0]["messages"][0] == {"role": "system", "content": CHAT_SYSTEM}


@pytest.mark.asyncio
async def test_tool_round_streams_tool_events_and_step_log(app_factory):
    model = ScriptedModel(
        [
            ["Looking up Apple's price. ", tool_call("financeSearch", {"query": "AAPL price"})],
            ["Got it: 190.12."],
        ]
    )
    app, _, _, valyu = app_factory(resolver=FakeResolver(model))
    session_id = str(uuid.uuid4())
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/api/chat",
                json=chat_body(sessionId=session_id, valyuAccessToken="user-token"),
                headers={"x-user-id": "user-1"},
            )
            events = parse_sse_events(res.text.splitlines())
            types = [e["type"] for e in events]
            assert types.index("tool-input-available") < types.index("tool-output-available")
            assert types.count("start-step") == 2
            assert types.count("finish-step") == 2
            step_log = [e for e in events if e["type"] == "data-step-log"][0]["data"]["steps"]
            assert [s["phase"] for s in step_log] == ["start", "done"]
            assert collect_text(res.text.splitlines()) == "Looking up Apple's price. Got it: 190.12."

            stored = await app.state.conversations.load(session_id)
            assistant = stored[-1]
            assert any(isinstance(p, ToolCallPart) for p in assistant.parts)
            assert isinstance(assistant.parts[-1], StepLogPart)
            session = await app.state.db.get_session(session_id)
            assert session["user_id"] == "user-1"

    assert valyu.search_calls[0]["query"] == "AAPL price"
    assert valyu.search_calls[0]["access_token"] == "user-token"


@pytest.mark.asyncio
async def test_compatibility_error_before_output_is_json_400(app_factory):
    model = ScriptedModel([[ModelCompatibilityError("llama2 does not support tools", issue="tools")]])
    app, _, _, _ = app_factory(resolver=FakeResolver(model))
    session_id = str(uuid.uuid4())
    res = await post_chat(app, chat_body(sessionId=session_id))
    assert res.status_code == 400
    data = res.json()
    assert data["error"] == "MODEL_COMPATIBILITY_ERROR"
    assert data["compatibilityIssue"] == "tools"


@pytest.mark.asyncio
async def test_provider_failure_before_output_is_chat_error(app_factory):
    model = ScriptedModel([[ModelRequestError("upstream exploded", status_code=502)]])
    app, _, _, _ = app_factory(resolver=FakeResolver(model))
    res = await post_chat(app, chat_body())
    assert res.status_code == 500
    assert res.json()["error"] == "CHAT_ERROR"


@pytest.mark.asyncio
async def test_failure_after_text_becomes_in_stream_error(app_factory):
    model = ScriptedModel([["Partial answer", ModelCompatibilityError("thinking unsupported", issue="thinking")]])
    app, _, _, _ = app_factory(resolver=FakeResolver(model))
    res = await post_chat(app, chat_body())
    assert res.status_code == 200
    events = parse_sse_events(res.text.splitlines())
    errors = [e for e in events if e["type"] == "error"]
    assert errors[0]["compatibilityIssue"] == "thinking"
    assert events[-1] == {"type": "finish", "finishReason": "error"}
    assert collect_text(res.text.splitlines()) == "Partial answer"
    types = [e["type"] for e in events]
    assert types.index("text-end") < types.index("error")


@pytest.mark.asyncio
async def test_cards_format_uses_narrative_prompt_without_charts(app_factory):
    model = ScriptedModel([["📖 THE STORY RIGHT NOW"]])
    app, _, _, _ = app_factory(resolver=FakeResolver(model))
    res = await post_chat(app, chat_body(), headers={"x-response-format": "cards"})
    assert res.status_code == 200
    call = model.calls[0]
    assert call["messages"][0]["content"] == CARDS_SYSTEM
    names = {t["function"]["name"] for t in call["tools"]}
    assert "createChart" not in names
    assert "financeSearch" in names


@pytest.mark.asyncio
async def test_headers_reach_the_resolver(app_factory):
    app, _, resolver, _ = app_factory()
    await post_chat(
        app,
        chat_body(),
        headers={"x-ollama-enabled": "false", "x-local-provider": "lmstudio", "x-ollama-model": "qwen3-4b"},
    )
    overrides = resolver.calls[0]
    assert overrides.local_enabled is False
    assert overrides.local_provider == "lmstudio"
    assert overrides.preferred_model == "qwen3-4b"


@pytest.mark.asyncio
async def test_unknown_session_history_is_404(client):
    res = await client.get(f"/api/sessions/{uuid.uuid4()}/messages")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_health_reports_mode(client):
    res = await client.get("/health")
    assert res.json() == {"ok": True, "mode": "self-hosted"}


@pytest.mark.asyncio
async def test_sessions_are_scoped_to_the_caller(app_factory):
    app, _, _, _ = app_factory(resolver=FakeResolver(ScriptedModel([["one"], ["two"]])))
    mine, anonymous = str(uuid.uuid4()), str(uuid.uuid4())
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            await client.post("/api/chat", json=chat_body(sessionId=mine), headers={"x-user-id": "alice"})
            await client.post("/api/chat", json=chat_body(sessionId=anonymous))

            alice = await client.get("/api/sessions", headers={"x-user-id": "alice"})
            assert [s["id"] for s in alice.json()["sessions"]] == [mine]
            nobody = await client.get("/api/sessions")
            assert [s["id"] for s in nobody.json()["sessions"]] == [anonymous]

            own = await client.get(f"/api/sessions/{mine}/messages", headers={"x-user-id": "alice"})
            assert own.status_code == 200
            for headers in ({"x-user-id": "mallory"}, {}):
                other = await client.get(f"/api/sessions/{mine}/messages", headers=headers)
                assert other.status_code == 404
