"""
HTTP routes.

- POST /api/stream-chat: token-accounted streaming relay
- GET/POST /api/chat: exchange history
- GET /api/dashboard: usage totals
- GET /api/models: model catalogue
- GET /api/user/me: the authenticated caller
- GET /, GET /health: service info
"""

import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from chat_cost_relay.errors import BadRequest, PersistenceFailure
from chat_cost_relay.relay.streaming import ChatRequest, StreamingRelay
from chat_cost_relay.storage.models import ExchangeStore, UsageSummary

from .auth import Identity, require_identity

logger = logging.getLogger(__name__)

router = APIRouter()

SERVICE_NAME = "Chat Cost Relay API"
SERVICE_VERSION = "1.0.0"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

MODEL_CATALOGUE = [
    {
        "id": "gpt-4o",
        "name": "GPT-4o",
        "provider": "OpenAI",
        "description": "OpenAI's latest flagship model, fast and high quality.",
    },
    {
        "id": "gpt-3.5-turbo",
        "name": "GPT-3.5 Turbo",
        "provider": "OpenAI",
        "description": "OpenAI's fast, cost-effective model.",
    },
    {
        "id": "claude-v1",
        "name": "Claude v1",
        "provider": "Anthropic",
        "description": "Anthropic's helpful, harmless, and honest model.",
    },
    {
        "id": "gemini-pro",
        "name": "Gemini Pro",
        "provider": "Google",
        "description": "Google's advanced conversational model.",
    },
]


class SaveMessageRequest(BaseModel):
    message: str


def _store(request: Request) -> ExchangeStore:
    return request.app.state.store


def _relay(request: Request) -> StreamingRelay:
    return request.app.state.relay


@router.get("/")
async def root():
    return {
        "message": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": {
            "health": "/health",
            "chat": "/api/chat",
            "user": "/api/user",
            "dashboard": "/api/dashboard",
            "models": "/api/models",
            "streamChat": "/api/stream-chat",
        },
    }


@router.get("/health")
async def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/api/models")
async def list_models():
    return {"models": MODEL_CATALOGUE}


@router.post("/api/stream-chat")
async def stream_chat(request: Request, identity: Identity = Depends(require_identity)):
    """Relay a streaming completion and append the usage trailer."""
    try:
        body = await request.json()
    except ValueError:
        raise BadRequest("Request body must be valid JSON.")

    chat_request = ChatRequest.from_body(body)
    stream = await _relay(request).open(identity.id, chat_request)
    return StreamingResponse(
        stream.chunks(),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@router.get("/api/chat")
async def chat_history(request: Request, identity: Identity = Depends(require_identity)):
    try:
        records = await asyncio.to_thread(_store(request).fetch_history, identity.id)
    except PersistenceFailure:
        logger.exception("Error fetching chat history for user %s", identity.id)
        return []
    return [record.to_dict() for record in records]


@router.post("/api/chat")
async def save_message(
    payload: SaveMessageRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
):
    if not payload.message.strip():
        raise BadRequest("Message cannot be empty.")
    record = await asyncio.to_thread(_store(request).record_exchange, identity.id, payload.message)
    return record.to_dict()


@router.get("/api/dashboard")
async def dashboard(request: Request, identity: Identity = Depends(require_identity)):
    try:
        summary = await asyncio.to_thread(_store(request).get_usage_summary, identity.id)
    except PersistenceFailure:
        logger.exception("Error fetching user usage for user %s", identity.id)
        summary = UsageSummary()
    return summary.to_dict()


@router.get("/api/user/me")
async def current_user(identity: Identity = Depends(require_identity)):
    return identity.to_dict()
