import pytest

from finchat.completion import extract_json_object, parse_card
from finchat.errors import CardParseError
from tests.fakes import FakeResolver, ScriptedModel


def test_parse_card_reads_fenced_json():
    text = 'Sure!\n```json\n{"title": "Apple holds steady", "emoji": "🍎", "content": "Shares flat."}\n```'
    card = parse_card(text, "AAPL")
    assert card.title == "Apple holds steady"
    assert card.emoji == "🍎"
    assert card.content == "Shares flat."
    assert card.ticker == "AAPL"


def test_parse_card_slices_object_out_of_prose_and_defaults_emoji():
    text = 'Here you go: {"title": "  Nvidia rallies ", "content": "Up 4% on data-center demand."} Enjoy.'
    card = parse_card(text, "NVDA")
    assert card.title == "Nvidia rallies"
    assert card.emoji == "📰"


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   ",
        "I could not find anything.",
        "[1, 2, 3]",
        '{"title": "No body"}',
        '{"title": "", "content": "x"}',
    ],
)
def test_parse_card_rejects_unusable_output(text):
    with pytest.raises(CardParseError):
        parse_card(text, "MSFT")


def test_extract_json_object_keeps_nested_braces():
    text = 'prefix {"title": "a", "meta": {"k": 1}} suffix'
    assert extract_json_object(text) == '{"title": "a", "meta": {"k": 1}}'


@pytest.mark.asyncio
async def test_card_usage_message(client):
    res = await client.get("/api/card")
    assert res.status_code == 200
    assert "symbol" in res.json()["message"]


@pytest.mark.asyncio
async def test_card_requires_symbol(client):
    for body in ({}, {"symbol": ""}, {"symbol": 42}):
        res = await client.post("/api/card", json=body)
        assert res.status_code == 400
        assert res.json() == {"success": False, "error": "symbol is required"}
    assert client.resolver.calls == []


@pytest.mark.asyncio
async def test_card_generates_with_hosted_model_only(client):
    model = ScriptedModel(
        [['{"title": "Tesla slips", "emoji": "🚗", "content": "Deliveries missed estimates."}']]
    )
    client.app.state.model_resolver = FakeResolver(model)
    res = await client.post("/api/card", json={"symbol": " tsla "})
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    assert data["card"] == {
        "title": "Tesla slips",
        "emoji": "🚗",
        "content": "Deliveries missed estimates.",
        "ticker": "TSLA",
    }
    resolver = client.app.state.model_resolver
    assert resolver.calls[0].local_enabled is False
    prompt = model.calls[0]["messages"][-1]["content"]
    assert "TSLA" in prompt


@pytest.mark.asyncio
async def test_card_unparseable_output_is_bad_gateway(client):
    client.app.state.model_resolver = FakeResolver(ScriptedModel([["Sorry, no data today."]]))
    res = await client.post("/api/card", json={"symbol": "AAPL"})
    assert res.status_code == 502
    assert res.json()["success"] is False


@pytest.mark.asyncio
async def test_card_model_failure_is_server_error(client):
    client.app.state.model_resolver = FakeResolver(error=RuntimeError("gateway down"))
    res = await client.post("/api/card", json={"symbol": "AAPL"})
    assert res.status_code == 500
    assert res.json() == {"success": False, "error": "gateway down"}
