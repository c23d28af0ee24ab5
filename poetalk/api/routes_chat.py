import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..conversation.session import SessionState
from ..errors import PoetalkError, ValidationError
from .deps import find_session, get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

_cancel_events: dict[str, asyncio.Event] = {}


class SendRequest(BaseModel):
    message: str
    session_id: str = "default"


class SessionRequest(BaseModel):
    session_id: str = "default"


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@router.post("/send")
async def send_message(req: SendRequest):
    session = get_session(req.session_id)
    events = session.stream_send(req.message)

    # The first event comes before any network call, so input and
    # configuration problems surface as a plain 400 instead of a stream.
    try:
        first = await anext(events)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())

    cancel_event = asyncio.Event()
    _cancel_events[req.session_id] = cancel_event

    async def event_stream():
        try:
            yield _sse(first.to_dict())
            async for event in events:
                if cancel_event.is_set():
                    yield _sse({"type": "done", "reason": "cancelled"})
                    return
                yield _sse(event.to_dict())
        except PoetalkError as e:
            yield _sse({"type": "error", **e.to_dict()})
        finally:
            _cancel_events.pop(req.session_id, None)
            await events.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/stop")
async def stop_generation(session_id: str = "default"):
    event = _cancel_events.get(session_id)
    if event:
        event.set()
        return {"status": "stopped"}
    return {"status": "no_active_generation"}


@router.post("/new")
async def new_conversation(req: SessionRequest):
    session = find_session(req.session_id)
    if session is not None:
        await session.new_conversation()
    return {"status": "ok", "state": SessionState.IDLE.value}


@router.get("/state")
async def get_state(session_id: str = "default"):
    session = find_session(session_id)
    if session is None:
        return {
            "state": SessionState.IDLE.value,
            "is_loading": False,
            "streaming_text": "",
            "conversation": None,
            "last_error": None,
        }
    conv = session.conversation
    return {
        "state": session.state.value,
        "is_loading": session.is_loading,
        "streaming_text": session.streaming_text,
        "conversation": conv.to_record() if conv else None,
        "last_error": session.last_error.to_dict() if session.last_error else None,
    }
