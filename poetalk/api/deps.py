"""Process-wide store and chat sessions shared by the routers."""

import logging
from typing import Optional

from ..config import get_config, get_conversations_dir
from ..conversation.session import ChatSession
from ..conversation.storage import ConversationStore

logger = logging.getLogger(__name__)

_store: Optional[ConversationStore] = None
_sessions: dict[str, ChatSession] = {}


def get_store() -> ConversationStore:
    global _store
    if _store is None:
        _store = ConversationStore(get_conversations_dir())
    return _store


def find_session(session_id: str = "default") -> Optional[ChatSession]:
    return _sessions.get(session_id)


def get_session(session_id: str = "default") -> ChatSession:
    """Return the session for *session_id*, starting it with the current settings."""
    session = _sessions.get(session_id)
    if session is None:
        config = get_config().poe.model_copy()
        session = ChatSession(config, get_store())
        _sessions[session_id] = session
    return session


async def reset_sessions() -> None:
    """Close every session so the next request picks up new settings."""
    sessions = list(_sessions.values())
    _sessions.clear()
    for session in sessions:
        await session.close()


def reset_state(store: Optional[ConversationStore] = None) -> None:
    global _store
    _sessions.clear()
    _store = store
