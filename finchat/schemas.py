from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


Role = Literal["user", "assistant"]
StepPhase = Literal["start", "done"]
KNOWN_PART_TYPES = {"text", "tool-call", "tool-result", "step-log"}


class StepLogEntry(BaseModel):
    phase: StepPhase
    tool_name: str = Field(alias="toolName")
    detail: str = ""
    next_step: Optional[str] = Field(default=None, alias="nextStep")
    ts: int

    model_config = {"populate_by_name": True}


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    input: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class ToolResultPart(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    output: Any = None
    is_error: bool = Field(default=False, alias="isError")

    model_config = {"populate_by_name": True}


class StepLogPart(BaseModel):
    type: Literal["step-log"] = "step-log"
    steps: List[StepLogEntry] = Field(default_factory=list)


ContentPart = Annotated[
    Union[TextPart, ToolCallPart, ToolResultPart, StepLogPart],
    Field(discriminator="type"),
]
PART_MODELS = (TextPart, ToolCallPart, ToolResultPart, StepLogPart)


def dump_parts(parts: List[Any]) -> List[Dict[str, Any]]:
    return [part.model_dump(by_alias=True, exclude_none=True) for part in parts]


class ChatMessage(BaseModel):
    """One conversation turn; accepts `parts` or a legacy `content` string/list."""

    id: Optional[str] = None
    role: Role
    parts: List[ContentPart] = Field(default_factory=list)
    processing_time_ms: Optional[int] = Field(default=None, alias="processingTimeMs")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _coerce_content(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        parts = data.get("parts")
        if parts is None:
            content = data.pop("content", None)
            if isinstance(content, str):
                parts = [{"type": "text", "text": content}]
            elif isinstance(content, list):
                parts = content
            else:
                parts = []
        # Clients may send part types this server does not model (reasoning, step-start, ...).
        data["parts"] = [
            p
            for p in parts
            if isinstance(p, PART_MODELS) or (isinstance(p, dict) and p.get("type") in KNOWN_PART_TYPES)
        ]
        return data

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    response_format: Optional[str] = Field(default=None, alias="responseFormat")
    valyu_access_token: Optional[str] = Field(default=None, alias="valyuAccessToken")

    model_config = {"populate_by_name": True}


class ExternalCompletionRequest(BaseModel):
    message: str = Field(min_length=1)
    disable_local: bool = Field(default=True, alias="disableLocal")

    model_config = {"populate_by_name": True}


class CardRequest(BaseModel):
    symbol: str

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        cleaned = value.strip().upper()
        if not cleaned:
            raise ValueError("symbol is required")
        return cleaned


class Card(BaseModel):
    title: str
    emoji: str = "📰"
    content: str
    ticker: Optional[str] = None
