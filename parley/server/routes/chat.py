"""POST /api/chat - AI SDK compatible streaming chat endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from parley.server.dependencies import find_session, get_engine, get_session_store
from parley.server.models import ChatRequest
from parley.server.protocol import get_encoder
from parley.server.stream import session_to_aisdk_stream

router = APIRouter()


def _text_of(content: str | list) -> str:
    if isinstance(content, str):
        return content
    return "".join(part.get("text", "") for part in content if part.get("type") == "text")


@router.post("/chat")
async def chat(body: ChatRequest):
    """
    Stream one user turn.

    Accepts { messages: [...], model: "sonnet", sessionId: "..." }. Only the
    last user message is sent; the session holds the history. The session id
    is returned in the ``x-parley-session-id`` header.
    """
    encoder = get_encoder()
    engine = get_engine()

    user_message = ""
    for msg in reversed(body.messages):
        if msg.role == "user":
            user_message = _text_of(msg.content)
            break

    if not user_message:
        return StreamingResponse(
            iter([encoder.error("No user message found"), encoder.message_finish("error")]),
            media_type=encoder.content_type(),
            headers=encoder.extra_headers(),
        )

    session = find_session(body.session_id) if body.session_id else None
    if session is None:
        session = engine.create_session(model=body.model, system_prompt=body.system)

    headers = {**encoder.extra_headers(), "x-parley-session-id": session.id}
    return StreamingResponse(
        session_to_aisdk_stream(engine, session.id, user_message, encoder, get_session_store()),
        media_type=encoder.content_type(),
        headers=headers,
    )
