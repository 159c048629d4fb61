"""
FastAPI application — the Orchestrate HTTP surface.

Each conversation gets one ConversationSession, kept for the lifetime of
the process. Submit and retry answer with a text/event-stream of
transcript changes, so clients watch the reply render as it streams:

    data: {"type": "start", "conversation_id": "..."}
    data: {"type": "update", "index": 1, "message": {...}}
    data: {"type": "end", "conversation_id": "...", "state": "idle", "error": null}
    data: [DONE]
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from orchestrate.backends import make_backend
from orchestrate.commands import parse_chat_command
from orchestrate.config import get_config
from orchestrate.controller import RequestController
from orchestrate.errors import BusyError, PersistenceError
from orchestrate.session import DEFAULT_MODEL, ConversationSession
from orchestrate.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Globals, set up in lifespan
# ---------------------------------------------------------------------------
store: SQLiteStore | None = None
backend = None
controller: RequestController | None = None
sessions: dict[str, ConversationSession] = {}
_background: set[asyncio.Task] = set()
_running: dict[str, asyncio.Task] = {}


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global store, backend, controller

    cfg = get_config()
    _setup_logging(cfg)

    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    backend = make_backend(cfg)
    controller = RequestController()
    sessions.clear()
    _running.clear()

    logger.info(
        "Orchestrate started — backend %s, default model %s",
        cfg.get("backend", {}).get("url", ""),
        cfg.get("backend", {}).get("default_model", DEFAULT_MODEL),
    )
    logger.info("Storage: SQLite=%s", cfg["storage"]["sqlite_path"])
    logger.info(
        "Checkpoint granularity: %s chars",
        cfg.get("streaming", {}).get("checkpoint_every", 100),
    )

    yield

    for conversation_id in list(sessions):
        controller.cancel_conversation(conversation_id)
    if _background:
        await asyncio.gather(*_background, return_exceptions=True)
    logger.info("Orchestrate shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Orchestrate",
    description="Streaming multi-model chat with durable transcripts.",
    version=VERSION,
    lifespan=lifespan,
)


@app.exception_handler(BusyError)
async def busy_handler(request: Request, exc: BusyError):
    return JSONResponse({"error": str(exc)}, status_code=409)


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError):
    logger.warning("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse({"error": f"Storage failure: {exc}"}, status_code=503)


def _new_session(conversation_id: str | None = None) -> ConversationSession:
    cfg = get_config()
    return ConversationSession(
        store,
        backend,
        controller,
        conversation_id=conversation_id,
        model=cfg.get("backend", {}).get("default_model", DEFAULT_MODEL),
        checkpoint_every=int(cfg.get("streaming", {}).get("checkpoint_every", 100)),
    )


async def _session_for(conversation_id: str) -> ConversationSession | None:
    """Cached session for a stored conversation, loading it on first use."""
    session = sessions.get(conversation_id)
    if session is not None:
        return session
    if await store.get_conversation(conversation_id) is None:
        return None
    session = _new_session()
    await session.load(conversation_id)
    sessions[conversation_id] = session
    return session


def _not_found(conversation_id: str) -> JSONResponse:
    return JSONResponse({"error": f"Unknown conversation {conversation_id}"}, status_code=404)


def _sse(data: dict) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _log_task_result(task: asyncio.Task):
    _background.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Background chat action failed: %s", error)


def _ensure_idle(session: ConversationSession):
    if session.busy or session.conversation_id in _running:
        raise BusyError(session.conversation_id)


def _launch(session: ConversationSession, action) -> StreamingResponse:
    """
    Start `action` as a task now and relay its transcript changes as SSE.

    The task is registered in `_running` before the response is returned,
    so a second request for the same conversation sees it as busy even if
    the action has not taken its first step yet.
    """
    conversation_id = session.conversation_id
    queue: asyncio.Queue = asyncio.Queue()

    def on_change(kind, index, message):
        queue.put_nowait({
            "type": kind,
            "index": index,
            "message": message.to_dict() if message is not None else None,
        })

    def on_done(task: asyncio.Task):
        if _running.get(conversation_id) is task:
            del _running[conversation_id]
        queue.put_nowait(None)

    unsubscribe = session.transcript.subscribe(on_change)
    task = asyncio.create_task(action)
    _running[conversation_id] = task
    _background.add(task)
    task.add_done_callback(on_done)
    task.add_done_callback(_log_task_result)
    return _event_stream(_stream_updates(session, task, queue, unsubscribe))


async def _stream_updates(session: ConversationSession, task: asyncio.Task, queue: asyncio.Queue, unsubscribe):
    try:
        yield _sse({"type": "start", "conversation_id": session.conversation_id})
        while True:
            item = await queue.get()
            if item is None:
                break
            yield _sse(item)

        error = None
        if not task.cancelled() and task.exception() is not None:
            error = str(task.exception())
        yield _sse({
            "type": "end",
            "conversation_id": session.conversation_id,
            "state": session.state.value,
            "error": error,
        })
        yield "data: [DONE]\n\n"
    finally:
        unsubscribe()


def _event_stream(generator) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Chat endpoints
# ---------------------------------------------------------------------------

@app.post("/api/v1/chat")
async def chat(request: Request):
    """
    Submit a message. Starts a new conversation when no conversation_id
    is given. Body: {"message", "conversation_id"?, "model"?, "search"?}
    """
    body = await request.json()
    text = body.get("message", "")
    try:
        parse_chat_command(text)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    conversation_id = body.get("conversation_id")
    if conversation_id:
        session = await _session_for(conversation_id)
        if session is None:
            return _not_found(conversation_id)
    else:
        session = _new_session(await store.create_conversation())
        sessions[session.conversation_id] = session

    _ensure_idle(session)
    if body.get("model"):
        session.set_model(body["model"])

    return _launch(session, session.submit(text, search=bool(body.get("search", False))))


@app.post("/api/v1/conversations/{conversation_id}/retry")
async def retry(conversation_id: str, request: Request):
    """Regenerate the reply after the user message at body["turn_index"]."""
    body = await request.json()
    session = await _session_for(conversation_id)
    if session is None:
        return _not_found(conversation_id)
    _ensure_idle(session)
    try:
        turn_index = int(body.get("turn_index"))
        session.retry_target(turn_index)
    except (TypeError, ValueError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    if body.get("model"):
        session.set_model(body["model"])

    return _launch(session, session.retry(turn_index))


@app.post("/api/v1/conversations/{conversation_id}/abort")
async def abort(conversation_id: str):
    session = sessions.get(conversation_id)
    aborted = session.abort() if session else False
    return JSONResponse({"aborted": aborted})


# ---------------------------------------------------------------------------
# Conversation management
# ---------------------------------------------------------------------------

@app.get("/api/v1/conversations")
async def list_conversations(limit: int = 50, offset: int = 0):
    conversations = await store.list_conversations(limit=limit, offset=offset)
    return JSONResponse({"conversations": [c.to_dict() for c in conversations]})


@app.get("/api/v1/conversations/{conversation_id}")
async def get_conversation(conversation_id: str):
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        return _not_found(conversation_id)
    session = await _session_for(conversation_id)
    return JSONResponse({
        "conversation": conversation.to_dict(),
        "model": session.model,
        "state": session.state.value,
        "messages": session.transcript.snapshot(),
    })


@app.patch("/api/v1/conversations/{conversation_id}")
async def rename_conversation(conversation_id: str, request: Request):
    body = await request.json()
    title = (body.get("title") or "").strip()
    if not title:
        return JSONResponse({"error": "title is required"}, status_code=400)
    ok = await store.rename_conversation(conversation_id, title)
    if not ok:
        return _not_found(conversation_id)
    return JSONResponse({"ok": True, "title": title})


@app.delete("/api/v1/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    session = await _session_for(conversation_id)
    if session is None:
        return _not_found(conversation_id)
    ok = await session.delete_conversation()
    if ok:
        sessions.pop(conversation_id, None)
    return JSONResponse({"ok": ok})


@app.patch("/api/v1/conversations/{conversation_id}/messages/{message_id}")
async def edit_message(conversation_id: str, message_id: str, request: Request):
    body = await request.json()
    session = await _session_for(conversation_id)
    if session is None:
        return _not_found(conversation_id)
    _ensure_idle(session)
    ok = await session.edit_message(message_id, body.get("content", ""))
    return JSONResponse({"ok": ok}, status_code=200 if ok else 400)


@app.delete("/api/v1/conversations/{conversation_id}/messages/{message_id}")
async def delete_message(conversation_id: str, message_id: str):
    session = await _session_for(conversation_id)
    if session is None:
        return _not_found(conversation_id)
    _ensure_idle(session)
    ok = await session.delete_message(message_id)
    return JSONResponse({"ok": ok}, status_code=200 if ok else 404)


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------

@app.get("/api/v1/models")
async def list_models():
    """Model catalogue from the provider."""
    models = await backend.list_models()
    return JSONResponse({"models": models})


@app.get("/api/v1/health")
async def health():
    """Health check."""
    return JSONResponse({
        "status": "ok",
        "version": VERSION,
        "active_sessions": len(sessions),
    })
