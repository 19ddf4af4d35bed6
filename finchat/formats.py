from dataclasses import dataclass
from typing import Optional, Tuple

from .agents import CARDS_SYSTEM, CHAT_SYSTEM, EXTERNAL_SYSTEM

FINANCE_TOOL_NAMES: Tuple[str, ...] = (
    "financeSearch",
    "secSearch",
    "economicsSearch",
    "patentSearch",
    "financeJournalSearch",
    "polymarketSearch",
    "webSearch",
    "codeExecution",
    "createCSV",
)
# Every format below renders plain text, so none of them offers createChart.
TEXT_ONLY_EXCLUDED = ("createChart",)


@dataclass(frozen=True)
class FormatProfile:
    name: str
    system_prompt: str
    tool_names: Tuple[str, ...]
    max_rounds: int = 10


def select_format(token: Optional[str], max_rounds: int = 10) -> FormatProfile:
    """Map a response-format token to its prompt and tool subset.

    Unknown or missing tokens fall back to the conversational chat format.
    """
    cleaned = (token or "").strip().lower()
    if cleaned == "cards":
        return FormatProfile("cards", CARDS_SYSTEM, FINANCE_TOOL_NAMES, max_rounds)
    if cleaned == "external":
        return FormatProfile("external", EXTERNAL_SYSTEM, FINANCE_TOOL_NAMES, max_rounds)
    return FormatProfile("chat", CHAT_SYSTEM, FINANCE_TOOL_NAMES, max_rounds)
