import asyncio
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse

from ..config import get_conversations_dir
from ..conversation.cleanup import clear_history
from ..conversation.models import ConversationSummary
from ..errors import NotFoundError, ValidationError
from .deps import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


async def _load_or_404(conv_id: str):
    try:
        conv = await get_store().load(conv_id)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


@router.get("")
async def list_conversations():
    conversations = await get_store().list()
    summaries = [ConversationSummary.from_conversation(c) for c in conversations]
    return {"conversations": [s.model_dump(by_alias=True) for s in summaries]}


@router.get("/{conv_id}")
async def get_conversation(conv_id: str):
    conv = await _load_or_404(conv_id)
    return {"conversation": conv.to_record(), "stats": conv.stats().model_dump()}


@router.get("/{conv_id}/transcript", response_class=PlainTextResponse)
async def get_transcript(conv_id: str):
    conv = await _load_or_404(conv_id)
    return conv.transcript()


@router.delete("/{conv_id}")
async def delete_conversation(conv_id: str, confirmed: bool = False):
    if not confirmed:
        raise HTTPException(status_code=400, detail="Deletion must be confirmed")
    try:
        await get_store().delete(conv_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {"status": "deleted"}


@router.delete("")
async def clear_all_conversations(confirmed: bool = False):
    if not confirmed:
        return {"status": "cancelled", "deleted": 0}
    store = get_store()
    await store.flush()
    try:
        deleted = await asyncio.to_thread(clear_history, get_conversations_dir())
    except OSError as e:
        logger.error("Error clearing history: %s", e)
        raise HTTPException(status_code=500, detail=f"Failed to delete conversations: {e}")
    finally:
        store.invalidate()
    return {"status": "deleted", "deleted": deleted}
