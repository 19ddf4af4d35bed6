import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .agents import card_prompt
from .completion import parse_card, run_single_message_completion
from .config import CONFIG_PATH, MUTABLE_FIELDS, AppSettings, RequestOverrides, load_settings, save_settings
from .conversations import ConversationStore
from .db import Database
from .errors import (
    CardParseError,
    ChatAPIError,
    ModelCompatibilityError,
    ModelRequestError,
    NoProviderAvailableError,
    auth_required,
    chat_api_error_handler,
    chat_error,
    compatibility_error,
    invalid_request,
    no_provider,
)
from .formats import select_format
from .orchestrator import ReasoningLoop, to_model_messages
from .providers import ModelSelection, resolve_provider
from .sandbox import SandboxClient
from .schemas import CardRequest, ChatRequest, ExternalCompletionRequest
from .stream import STREAM_HEADERS, StepLog, StreamMultiplexer
from .tools import ToolContext, ToolRegistry, build_finance_tools
from .valyu import ValyuClient

logger = logging.getLogger("uvicorn.error")

router = APIRouter()

ModelResolver = Callable[[AppSettings, RequestOverrides, httpx.AsyncClient], Awaitable[ModelSelection]]


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_conversations(request: Request) -> ConversationStore:
    return request.app.state.conversations


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_tools(request: Request) -> ToolRegistry:
    return request.app.state.tools


def get_model_resolver(request: Request) -> ModelResolver:
    return request.app.state.model_resolver


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _as_api_error(exc: BaseException) -> ChatAPIError:
    if isinstance(exc, ChatAPIError):
        return exc
    if isinstance(exc, ModelCompatibilityError):
        return compatibility_error(exc)
    if isinstance(exc, NoProviderAvailableError):
        return no_provider(str(exc))
    if isinstance(exc, ModelRequestError):
        return chat_error(str(exc))
    return chat_error("An error occurred while processing your request")


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings)):
    return {"ok": True, "mode": settings.app_mode}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    if not settings.self_hosted:
        raise HTTPException(status_code=403, detail="Settings are read-only in hosted mode.")
    body = await _read_json(request)
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be a JSON object.")
    locked = sorted(k for k in body if k not in MUTABLE_FIELDS)
    if locked:
        raise HTTPException(status_code=400, detail=f"Read-only settings: {', '.join(locked)}")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False)) from exc
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    valyu: ValyuClient = request.app.state.valyu_client
    valyu.max_results = new_settings.valyu_max_results
    return {"settings": new_settings.to_safe_dict()}


@router.get("/api/sessions")
async def list_sessions(request: Request, limit: int = 100, db: Database = Depends(get_db)):
    user_id = request.headers.get("x-user-id") or None
    sessions = await db.list_sessions(user_id=user_id, limit=limit)
    return {"sessions": sessions}


@router.get("/api/sessions/{session_id}/messages")
async def get_session_messages(
    session_id: str,
    request: Request,
    db: Database = Depends(get_db),
    store: ConversationStore = Depends(get_conversations),
):
    user_id = request.headers.get("x-user-id") or None
    session = await db.get_session(session_id)
    # Another caller's session is reported as missing.
    if not session or session["user_id"] != user_id:
        raise HTTPException(status_code=404, detail="Session not found")
    messages = await store.load(session_id)
    return {
        "session": session,
        "messages": [m.model_dump(by_alias=True, exclude_none=True) for m in messages],
    }


@router.post("/api/chat")
async def chat(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    store: ConversationStore = Depends(get_conversations),
    tools: ToolRegistry = Depends(get_tools),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    resolver: ModelResolver = Depends(get_model_resolver),
):
    started_at = time.perf_counter()
    body = await _read_json(request)
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list) or not body["messages"]:
        raise invalid_request("Messages array is required and must not be empty")
    try:
        payload = ChatRequest.model_validate(body)
    except ValidationError as exc:
        raise invalid_request(f"Invalid chat request: {exc.errors(include_url=False)[0]['msg']}") from exc

    overrides = RequestOverrides.from_headers(request.headers, settings)
    profile = select_format(payload.response_format or overrides.response_format, settings.chat_max_rounds)
    if profile.name == "external":
        profile = select_format("chat", settings.chat_max_rounds)
    user_id = request.headers.get("x-user-id") or None
    session_id = payload.session_id
    logger.info(
        "Chat request | session=%s mode=%s format=%s user=%s messages=%s",
        session_id,
        settings.app_mode,
        profile.name,
        user_id or "anonymous",
        len(payload.messages),
    )

    if not settings.self_hosted and not payload.valyu_access_token:
        raise auth_required("Sign in with Valyu to continue. Get $10 free credits on signup!")

    try:
        selection = await resolver(settings, overrides, http_client)
    except NoProviderAvailableError as exc:
        raise no_provider(str(exc)) from exc
    logger.info("Chat model: %s", selection.label)

    history = await store.history_for_request(session_id, payload.messages)
    last = payload.messages[-1]
    if session_id and last.role == "user":
        await store.append_user_turn(session_id, last, user_id=user_id)

    message_id = str(uuid.uuid4())
    mux = StreamMultiplexer(message_id, settings.stream_buffer_size)
    step_log = StepLog()
    loop = ReasoningLoop(
        selection.model,
        tools.subset(profile.tool_names),
        max_rounds=profile.max_rounds,
        max_parallel_tools=settings.max_parallel_tools,
        provider_options=selection.provider_options,
        context=ToolContext(
            access_token=payload.valyu_access_token,
            session_id=session_id,
            user_id=user_id,
        ),
    )

    async def produce() -> None:
        try:
            result = await loop.run(
                to_model_messages(profile.system_prompt, history),
                mux,
                step_log,
                timeout=settings.chat_timeout_s,
            )
        except Exception as exc:
            if not mux.started:
                raise
            logger.error("Chat stream failed mid-response: %s", exc)
            await mux.emit_error(exc)
            await mux.emit({"type": "finish", "finishReason": "error"})
            await mux.close()
            return
        processing_time_ms = int((time.perf_counter() - started_at) * 1000)
        await mux.emit(
            {
                "type": "data-step-log",
                "data": {
                    "steps": step_log.dump(),
                    "processingTimeMs": processing_time_ms,
                    "model": selection.label,
                },
            }
        )
        await mux.emit({"type": "finish", "finishReason": result.finish_reason})
        if session_id:
            await store.append_assistant_turn(
                session_id,
                result.parts,
                step_log.entries,
                processing_time_ms,
                message_id=message_id,
                user_id=user_id,
            )
        await mux.close()

    producer = asyncio.create_task(produce())
    waiter = asyncio.create_task(mux.wait_started())
    await asyncio.wait({producer, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if not waiter.done():
        waiter.cancel()
    if producer.done() and not mux.started:
        exc = producer.exception()
        if exc is not None:
            if not isinstance(exc, (ModelRequestError, NoProviderAvailableError)):
                logger.error("Chat request failed", exc_info=exc)
            raise _as_api_error(exc)

    async def body_iterator():
        try:
            async for chunk in mux.iter_sse():
                yield chunk
        finally:
            # Client went away (or stream ended): stop the loop and its tool calls.
            if not producer.done():
                producer.cancel()

    headers: Dict[str, str] = dict(STREAM_HEADERS)
    if settings.self_hosted:
        headers["X-Self-Hosted-Mode"] = "true"
    return StreamingResponse(body_iterator(), media_type="text/event-stream", headers=headers)


@router.post("/api/chat/external")
async def chat_external(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    tools: ToolRegistry = Depends(get_tools),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    resolver: ModelResolver = Depends(get_model_resolver),
):
    try:
        payload = ExternalCompletionRequest.model_validate(await _read_json(request))
    except ValidationError:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Message is required and must be a string"},
        )
    try:
        text = await run_single_message_completion(
            payload.message,
            settings,
            http_client,
            tools,
            disable_local=payload.disable_local,
            resolver=resolver,
        )
    except Exception as exc:
        logger.exception("External completion failed")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc) or "External completion failed"},
        )
    return {"success": True, "response": text}


@router.get("/api/card")
async def card_usage():
    return {"ok": True, "message": 'Card API. POST with body: { "symbol": "AAPL" } to generate a card.'}


@router.post("/api/card")
async def create_card(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    tools: ToolRegistry = Depends(get_tools),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    resolver: ModelResolver = Depends(get_model_resolver),
):
    try:
        ticker = CardRequest.model_validate(await _read_json(request)).symbol
    except ValidationError:
        return JSONResponse(status_code=400, content={"success": False, "error": "symbol is required"})
    try:
        text = await run_single_message_completion(
            card_prompt(ticker),
            settings,
            http_client,
            tools,
            disable_local=True,
            resolver=resolver,
        )
        card = parse_card(text, ticker)
    except CardParseError as exc:
        logger.warning("Card for %s could not be parsed: %s", ticker, exc)
        return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})
    except Exception as exc:
        logger.exception("Card generation failed for %s", ticker)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc) or "Card generation failed"},
        )
    return {"success": True, "card": card.model_dump()}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    valyu_client: Optional[ValyuClient] = None,
    sandbox_client: Optional[SandboxClient] = None,
    model_resolver: Optional[ModelResolver] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            await app.state.http_client.aclose()
            await app.state.valyu_client.close()
            await app.state.sandbox_client.close()

    app = FastAPI(title="Finance Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.conversations = ConversationStore(app.state.db)
    # Shared by the local probe and every model stream.
    app.state.http_client = http_client or httpx.AsyncClient(
        timeout=httpx.Timeout(120.0, connect=10.0),
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
    )
    app.state.valyu_client = valyu_client or ValyuClient(
        settings.valyu_api_key,
        base_url=settings.valyu_base_url,
        max_results=settings.valyu_max_results,
    )
    app.state.sandbox_client = sandbox_client or SandboxClient(settings.sandbox_api_url, settings.sandbox_api_key)
    app.state.tools = build_finance_tools(app.state.valyu_client, app.state.sandbox_client)
    app.state.model_resolver = model_resolver or resolve_provider
    app.state.config_path = config_path or CONFIG_PATH

    app.add_exception_handler(ChatAPIError, chat_api_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("FINCHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "finchat.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
