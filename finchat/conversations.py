import logging
import re
import uuid
from typing import Any, List, Optional

from .db import Database
from .schemas import ChatMessage, StepLogEntry, StepLogPart, TextPart, ToolCallPart, dump_parts

logger = logging.getLogger("uvicorn.error")

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
TITLE_MAX_CHARS = 80


def valid_message_id(candidate: Optional[str]) -> str:
    if candidate and UUID_RE.match(candidate):
        return candidate
    return str(uuid.uuid4())


def _title_from(message: ChatMessage) -> Optional[str]:
    text = " ".join(message.text.split())
    if not text:
        return None
    if len(text) > TITLE_MAX_CHARS:
        return text[: TITLE_MAX_CHARS - 3].rstrip() + "..."
    return text


class ConversationStore:
    """Session history on top of `Database`.

    Every method is best-effort: a storage failure is logged and reported as
    `None` / `[]` so a chat turn is never failed by persistence.
    """

    def __init__(self, db: Database):
        self.db = db

    async def load(self, session_id: str) -> List[ChatMessage]:
        try:
            rows = await self.db.list_messages(session_id)
        except Exception:
            logger.exception("Failed to load session %s", session_id)
            return []
        messages: List[ChatMessage] = []
        for row in rows:
            try:
                messages.append(
                    ChatMessage(
                        id=row["id"],
                        role=row["role"],
                        parts=row["content"],
                        processing_time_ms=row.get("processing_time_ms"),
                    )
                )
            except ValueError as exc:
                logger.warning("Skipping unreadable message %s in session %s: %s", row.get("id"), session_id, exc)
        return messages

    async def append_user_turn(
        self,
        session_id: str,
        message: ChatMessage,
        user_id: Optional[str] = None,
    ) -> Optional[dict]:
        try:
            row = await self.db.append_message(
                session_id,
                valid_message_id(message.id),
                "user",
                dump_parts(message.parts),
                user_id=user_id,
            )
            title = _title_from(message)
            if title:
                await self.db.set_session_title(session_id, title)
            return row
        except Exception:
            logger.exception("Failed to persist user turn for session %s", session_id)
            return None

    async def append_assistant_turn(
        self,
        session_id: str,
        parts: List[Any],
        step_log: List[StepLogEntry],
        processing_time_ms: Optional[int],
        message_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Optional[dict]:
        content = list(parts)
        if step_log and any(isinstance(part, ToolCallPart) for part in content):
            content.append(StepLogPart(steps=list(step_log)))
        if not content:
            content = [TextPart(text="")]
        try:
            return await self.db.append_message(
                session_id,
                valid_message_id(message_id),
                "assistant",
                dump_parts(content),
                processing_time_ms=processing_time_ms,
                user_id=user_id,
            )
        except Exception:
            logger.exception("Failed to persist assistant turn for session %s", session_id)
            return None

    async def history_for_request(
        self,
        session_id: Optional[str],
        incoming: List[ChatMessage],
    ) -> List[ChatMessage]:
        """Return the transcript the model should see for this turn.

        A client that sends only the new user message gets the stored history
        prepended; a client that sends a full transcript is trusted as-is.
        """
        if not session_id or len(incoming) != 1 or incoming[0].role != "user":
            return list(incoming)
        stored = await self.load(session_id)
        return stored + list(incoming)
