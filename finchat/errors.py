from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class ChatAPIError(Exception):
    """Error surfaced to the client as `{"error": <discriminator>, "message": ...}`."""

    def __init__(self, status_code: int, error: str, message: str, **details: Any) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.message = message
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "message": self.message}
        payload.update({k: v for k, v in self.details.items() if v is not None})
        return payload


class NoProviderAvailableError(RuntimeError):
    """No local model answered and no hosted credential is configured."""


class ModelRequestError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelCompatibilityError(ModelRequestError):
    """The selected model rejected tool calling or the thinking option."""

    def __init__(self, message: str, issue: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, status_code=status_code)
        self.issue = issue


class CardParseError(ValueError):
    pass


def invalid_request(message: str) -> ChatAPIError:
    return ChatAPIError(400, "INVALID_REQUEST", message)


def auth_required(message: str) -> ChatAPIError:
    return ChatAPIError(401, "AUTH_REQUIRED", message)


def no_provider(message: str) -> ChatAPIError:
    return ChatAPIError(503, "NO_PROVIDER", message)


def compatibility_error(exc: ModelCompatibilityError) -> ChatAPIError:
    return ChatAPIError(400, "MODEL_COMPATIBILITY_ERROR", str(exc), compatibilityIssue=exc.issue)


def chat_error(message: str) -> ChatAPIError:
    return ChatAPIError(500, "CHAT_ERROR", message)


def classify_model_error(detail: str) -> Optional[str]:
    """Return "tools" / "thinking" when a provider error names an unsupported feature."""
    lowered = (detail or "").lower()
    if "tool" in lowered or "function" in lowered:
        return "tools"
    if "thinking" in lowered or "think" in lowered:
        return "thinking"
    return None


async def chat_api_error_handler(request: Request, exc: ChatAPIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


__all__ = [
    "CardParseError",
    "ChatAPIError",
    "ModelCompatibilityError",
    "ModelRequestError",
    "NoProviderAvailableError",
    "auth_required",
    "chat_api_error_handler",
    "chat_error",
    "classify_model_error",
    "compatibility_error",
    "invalid_request",
    "no_provider",
]
