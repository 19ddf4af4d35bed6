from finchat.orchestrator import to_model_messages
from finchat.schemas import ChatMessage, StepLogPart, TextPart, ToolCallPart


def test_message_keeps_part_models_built_in_code():
    message = ChatMessage(role="user", parts=[TextPart(text="How did MSFT do?")])
    assert message.text == "How did MSFT do?"
    assert to_model_messages("sys", [message])[-1] == {"role": "user", "content": "How did MSFT do?"}


def test_message_accepts_mixed_models_and_wire_dicts():
    message = ChatMessage(
        role="assistant",
        parts=[
            ToolCallPart(tool_call_id="c1", tool_name="financeSearch", input={"query": "MSFT"}),
            {"type": "text", "text": "Revenue grew."},
            {"type": "reasoning", "text": "hidden"},
            StepLogPart(steps=[]),
        ],
    )
    assert [type(p) for p in message.parts] == [ToolCallPart, TextPart, StepLogPart]
    assert message.text == "Revenue grew."


def test_legacy_content_string_becomes_a_text_part():
    message = ChatMessage.model_validate({"role": "user", "content": "hello", "processingTimeMs": 5})
    assert message.parts == [TextPart(text="hello")]
    assert message.processing_time_ms == 5
