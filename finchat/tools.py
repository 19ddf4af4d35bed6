import csv
import io
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .sandbox import SandboxClient
from .valyu import ValyuClient


@dataclass(frozen=True)
class ToolContext:
    """Per-request values handed to every tool call."""

    access_token: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Any]]


def _default_summarize_args(args: Dict[str, Any]) -> str:
    for key in ("query", "symbol", "title", "filename"):
        value = args.get(key)
        if value:
            return str(value)[:120]
    if "code" in args:
        return "running code"
    return ""


def _default_summarize_result(result: Any) -> str:
    if isinstance(result, dict):
        if result.get("error"):
            return f"error: {result['error']}"
        results = result.get("results")
        if isinstance(results, list):
            return f"{len(results)} results"
        if "rows" in result:
            return f"{result['rows']} rows"
        if "exit_code" in result:
            return f"exit code {result['exit_code']}"
    return "done"


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler
    summarize_args: Callable[[Dict[str, Any]], str] = _default_summarize_args
    summarize_result: Callable[[Any], str] = _default_summarize_result

    def openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolRegistry:
    tools: Dict[str, ToolSpec] = field(default_factory=dict)

    def register(self, spec: ToolSpec) -> None:
        self.tools[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self.tools.get(name)

    def names(self) -> List[str]:
        return list(self.tools)

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        return ToolRegistry({n: self.tools[n] for n in names if n in self.tools})

    def openai_schema(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        selected = self.names() if names is None else [n for n in names if n in self.tools]
        return [self.tools[n].openai_schema() for n in selected]


def _search_parameters(extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    props: Dict[str, Any] = {
        "query": {"type": "string", "description": "Natural-language search query."},
        "max_results": {"type": "integer", "minimum": 1, "maximum": 20},
        "start_date": {"type": "string", "description": "YYYY-MM-DD lower bound."},
        "end_date": {"type": "string", "description": "YYYY-MM-DD upper bound."},
    }
    if extra:
        props.update(extra)
    return {"type": "object", "properties": props, "required": ["query"]}


# name -> (description, search_type, included_sources)
SEARCH_TOOLS: Dict[str, tuple] = {
    "financeSearch": (
        "Search stock prices, earnings, balance sheets, insider trades and financial news.",
        "all",
        [
            "valyu/valyu-stocks",
            "valyu/valyu-earnings-US",
            "valyu/valyu-balance-sheet-US",
            "valyu/valyu-income-statement-US",
            "valyu/valyu-cash-flow-US",
            "valyu/valyu-insider-transactions-US",
        ],
    ),
    "secSearch": (
        "Search SEC filings (10-K, 10-Q, 8-K) for a company.",
        "proprietary",
        ["valyu/valyu-sec-filings"],
    ),
    "economicsSearch": (
        "Search macroeconomic data: BLS, FRED, World Bank indicators.",
        "all",
        ["valyu/valyu-bls", "valyu/valyu-fred", "valyu/valyu-world-bank"],
    ),
    "patentSearch": (
        "Search US patents by technology, assignee or topic.",
        "proprietary",
        ["valyu/valyu-patents"],
    ),
    "financeJournalSearch": (
        "Search academic finance and economics literature.",
        "proprietary",
        ["valyu/valyu-arxiv", "wiley/wiley-finance-papers", "wiley/wiley-finance-books"],
    ),
    "polymarketSearch": (
        "Search Polymarket prediction markets and their current odds.",
        "proprietary",
        ["valyu/valyu-polymarket"],
    ),
    "webSearch": (
        "Search the web for news, sentiment and general context.",
        "web",
        None,
    ),
}


def _search_handler(valyu: ValyuClient, search_type: str, sources: Optional[List[str]]) -> ToolHandler:
    async def handler(args: Dict[str, Any], ctx: ToolContext) -> Any:
        query = str(args.get("query") or "").strip()
        if not query:
            raise ValueError("query is required")
        return await valyu.search(
            query,
            search_type=search_type,
            included_sources=sources,
            max_results=args.get("max_results"),
            start_date=args.get("start_date"),
            end_date=args.get("end_date"),
            access_token=ctx.access_token,
        )

    return handler


def rows_to_csv(columns: List[str], rows: List[Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        if isinstance(row, dict):
            writer.writerow([row.get(col, "") for col in columns])
        else:
            writer.writerow(list(row))
    return buffer.getvalue()


async def _create_csv(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    columns = [str(c) for c in args.get("columns") or []]
    rows = args.get("rows") or []
    if not columns:
        raise ValueError("columns must be a non-empty list")
    return {
        "title": args.get("title") or "data",
        "csv": rows_to_csv(columns, rows),
        "rows": len(rows),
    }


async def _create_chart(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    return {
        "chartType": args.get("chartType") or "line",
        "title": args.get("title") or "",
        "dataSeries": args.get("dataSeries") or [],
    }


def build_finance_tools(valyu: ValyuClient, sandbox: SandboxClient, include_chart: bool = False) -> ToolRegistry:
    """Register the finance tools.

    `createChart` is only registered for an output channel that can render charts;
    every response format served today is text only.
    """
    registry = ToolRegistry()
    for name, (description, search_type, sources) in SEARCH_TOOLS.items():
        registry.register(
            ToolSpec(
                name=name,
                description=description,
                parameters=_search_parameters(),
                handler=_search_handler(valyu, search_type, sources),
            )
        )

    async def run_code(args: Dict[str, Any], ctx: ToolContext) -> Any:
        code = str(args.get("code") or "")
        if not code.strip():
            raise ValueError("code is required")
        return await sandbox.execute(code)

    registry.register(
        ToolSpec(
            name="codeExecution",
            description="Execute Python in a sandbox for calculations. Print the values you need.",
            parameters={
                "type": "object",
                "properties": {
                    "code": {"type": "string"},
                    "description": {"type": "string"},
                },
                "required": ["code"],
            },
            handler=run_code,
        )
    )
    registry.register(
        ToolSpec(
            name="createCSV",
            description="Build a CSV table from columns and rows.",
            parameters={
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "columns": {"type": "array", "items": {"type": "string"}},
                    "rows": {"type": "array", "items": {"type": "array"}},
                },
                "required": ["columns", "rows"],
            },
            handler=_create_csv,
        )
    )
    if include_chart:
        registry.register(
            ToolSpec(
                name="createChart",
                description="Create a chart specification (line, bar, area) from data series.",
                parameters={
                    "type": "object",
                    "properties": {
                        "chartType": {"type": "string", "enum": ["line", "bar", "area"]},
                        "title": {"type": "string"},
                        "dataSeries": {"type": "array", "items": {"type": "object"}},
                    },
                    "required": ["chartType", "dataSeries"],
                },
                handler=_create_chart,
            )
        )
    return registry


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if raw in (None, ""):
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("tool arguments must be a JSON object")
    return parsed
