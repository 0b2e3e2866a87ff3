"""
FastAPI application — the chatfeedback entry point.

Routes:
  - POST /api/chat           streaming relay (data: frames over text/plain)
  - GET  /api/config         send limits for clients
  - GET  /api/models         model catalog
  - POST/GET /api/conversations, POST /api/feedback, POST /api/end-chat
                             conversation and feedback stores
  - GET  /api/health
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from chatfeedback import __version__
from chatfeedback.backends import make_backend
from chatfeedback.config import get_config, get_limits, get_models
from chatfeedback.relay import StreamRelay, ValidationError
from chatfeedback.storage.models import MessageFeedback, OverallFeedback, utc_now
from chatfeedback.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
relay: StreamRelay | None = None
store: SQLiteStore | None = None

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
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
    global relay, store

    cfg = get_config()
    _setup_logging(cfg)

    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    backend = make_backend(cfg.get("backend", {}))
    relay = StreamRelay.from_config(cfg, backend)

    limits = get_limits(cfg)
    logger.info(
        "chatfeedback started — backend %s (%s), default model %s",
        backend.name, backend.url, relay.default_model,
    )
    logger.info(
        "Limits: context=%s messages, %s words per message",
        limits.context_msg_limit, limits.max_msg_size,
    )

    yield

    logger.info("chatfeedback shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatfeedback",
    description="Streaming LLM chat with feedback capture",
    version=__version__,
    lifespan=lifespan,
)


async def _json_body(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Chat relay
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat(request: Request):
    """
    Stream a reply to a conversation.

    Body: {"messages": [{"role", "content"}...], "model"?: str}
    Returns text/plain carrying `data: <json>\\n\\n` frames:
        {type:"content",  content}
        {type:"complete", message, timestamp, messageCount}
        {type:"error",    error}
    """
    body = await _json_body(request)
    try:
        conversation = relay.prepare(body)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    logger.debug(
        "Chat request: %d messages, model=%s",
        len(conversation.messages), conversation.model or relay.default_model,
    )
    return StreamingResponse(
        relay.stream(conversation),
        media_type="text/plain; charset=utf-8",
        headers=STREAM_HEADERS,
    )


@app.get("/api/chat")
async def chat_info():
    """Describe the chat endpoint."""
    return JSONResponse({
        "message": "Chat API is ready",
        "provider": relay.backend.name if relay else "",
        "defaultModel": relay.default_model if relay else "",
        "supportedMethods": ["POST"],
        "schema": {
            "messages": [{"role": "user", "content": "Your message here"}],
            "model": "optional model id, see /api/models",
        },
    })


@app.get("/api/config")
async def client_config():
    """Send limits consumed by clients before a request is made."""
    limits = get_limits()
    return JSONResponse({
        "contextMsgLimit": limits.context_msg_limit,
        "maxMsgSize": limits.max_msg_size,
        "status": "success",
    })


@app.get("/api/models")
async def list_models():
    cfg = get_config()
    return JSONResponse({
        "models": get_models(cfg),
        "default": cfg.get("backend", {}).get("default_model", ""),
    })


# ---------------------------------------------------------------------------
# Conversation and feedback stores
# ---------------------------------------------------------------------------

@app.post("/api/conversations")
async def save_conversation(request: Request):
    """Upsert a session: {sessionId, username, messages, feedback}."""
    data = await _json_body(request)
    if not isinstance(data, dict) or not data.get("sessionId"):
        return JSONResponse({"error": "Session ID is required"}, status_code=400)
    messages = data.get("messages", [])
    feedback = data.get("feedback") or {}
    if not isinstance(messages, list) or not isinstance(feedback, dict):
        return JSONResponse({"error": "messages must be a list and feedback an object"}, status_code=400)

    try:
        store.save_conversation(
            session_id=data["sessionId"],
            username=str(data.get("username", "")).strip(),
            messages=messages,
            feedback=feedback,
        )
    except Exception as e:
        logger.error("Error saving conversation %s: %s", data["sessionId"], e)
        return JSONResponse(
            {"error": "Failed to save conversation", "details": str(e)},
            status_code=500,
        )
    return JSONResponse({"success": True})


@app.get("/api/conversations")
async def get_conversation(sessionId: str | None = None):
    if not sessionId:
        return JSONResponse({"error": "Session ID is required"}, status_code=400)
    record = store.get_conversation(sessionId)
    if record is None:
        return JSONResponse({"error": "Conversation not found"}, status_code=404)
    return JSONResponse(record.to_dict())


@app.post("/api/feedback")
async def update_feedback(request: Request):
    """Merge per-message feedback: {sessionId, feedback: {index: {thumbs?, rating?, comment?}}}."""
    data = await _json_body(request)
    if not isinstance(data, dict) or not data.get("sessionId"):
        return JSONResponse({"error": "Session ID is required"}, status_code=400)
    feedback = data.get("feedback")
    if not isinstance(feedback, dict):
        return JSONResponse({"error": "feedback must be an object"}, status_code=400)

    try:
        for index, entry in feedback.items():
            int(index)
            MessageFeedback(**entry).validate()
    except (TypeError, ValueError) as e:
        return JSONResponse({"error": f"Invalid feedback: {e}"}, status_code=400)

    try:
        store.update_feedback(data["sessionId"], feedback)
    except KeyError:
        return JSONResponse({"error": "Conversation not found"}, status_code=404)
    except Exception as e:
        logger.error("Error updating feedback for %s: %s", data["sessionId"], e)
        return JSONResponse(
            {"error": "Failed to update feedback", "details": str(e)},
            status_code=500,
        )
    return JSONResponse({"success": True})


@app.post("/api/end-chat")
async def end_chat(request: Request):
    """Complete a session: {sessionId, overallFeedback: {rating 1-5, thumbs, comment}}."""
    data = await _json_body(request)
    if not isinstance(data, dict) or not data.get("sessionId"):
        return JSONResponse({"error": "Session ID is required"}, status_code=400)
    try:
        overall = OverallFeedback.from_dict(data.get("overallFeedback") or {})
    except (TypeError, ValueError, AttributeError) as e:
        return JSONResponse({"error": f"Invalid overall feedback: {e}"}, status_code=400)

    try:
        store.end_session(data["sessionId"], overall)
    except KeyError:
        return JSONResponse({"error": "Conversation not found"}, status_code=404)
    except Exception as e:
        logger.error("Error ending chat session %s: %s", data["sessionId"], e)
        return JSONResponse(
            {"error": "Failed to end chat session", "details": str(e)},
            status_code=500,
        )
    return JSONResponse({"success": True})


@app.get("/api/health")
async def health():
    return JSONResponse({
        "status": "healthy",
        "timestamp": utc_now(),
        "version": __version__,
    })
