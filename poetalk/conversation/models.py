import random
import string
import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

TITLE_MAX_LENGTH = 50
_ID_ALPHABET = string.digits + string.ascii_lowercase


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_conversation_id() -> str:
    """``conv_<epoch ms>_<9 random base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"conv_{now_ms()}_{suffix}"


def generate_conversation_title(first_message: str) -> str:
    """First 50 characters of the first message, ``...`` appended when truncated."""
    title = first_message[:TITLE_MAX_LENGTH]
    return f"{title}..." if len(title) < len(first_message) else title


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: int = Field(default_factory=now_ms)  # epoch milliseconds


class Conversation(BaseModel):
    """Persisted unit of chat history.

    Field names on disk are camelCase (``createdAt``, ``botName``...); Python
    code uses the snake_case attributes.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    messages: list[Message] = []
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")
    bot_name: str = Field("", alias="botName")

    @classmethod
    def start(cls, first_message: str, bot_name: str) -> "Conversation":
        """New in-memory conversation; the caller appends the first message."""
        now = now_ms()
        return cls(
            id=generate_conversation_id(),
            title=generate_conversation_title(first_message),
            messages=[],
            created_at=now,
            updated_at=now,
            bot_name=bot_name,
        )

    def append(self, role: str, content: str) -> Message:
        message = Message(role=role, content=content)
        self.messages.append(message)
        self.updated_at = max(now_ms(), self.created_at)
        return message

    def stats(self) -> "ConversationStats":
        user = sum(1 for m in self.messages if m.role == "user")
        total_chars = sum(len(m.content) for m in self.messages)
        count = len(self.messages)
        return ConversationStats(
            message_count=count,
            user_messages=user,
            assistant_messages=count - user,
            total_chars=total_chars,
            avg_chars=round(total_chars / count) if count else 0,
            duration_minutes=round((self.updated_at - self.created_at) / 60000),
        )

    def transcript(self) -> str:
        """Plain-text export of every message, separated by rules."""
        blocks = []
        for m in self.messages:
            speaker = "You" if m.role == "user" else (self.bot_name or "Assistant")
            when = time.strftime("%H:%M:%S", time.localtime(m.timestamp / 1000))
            blocks.append(f"{speaker} {when}\n{m.content}")
        return "\n\n---\n\n".join(blocks)

    def to_json(self) -> str:
        """Compact JSON record (no indentation, keeps writes small)."""
        return self.model_dump_json(by_alias=True)

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)


class ConversationStats(BaseModel):
    message_count: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    total_chars: int = 0
    avg_chars: int = 0
    duration_minutes: int = 0


class ConversationSummary(BaseModel):
    """Lightweight metadata for list views."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    bot_name: str = Field("", alias="botName")
    message_count: int = Field(0, alias="messageCount")
    preview: str = ""       # First ~80 chars of the first user message
    last_message: str = Field("", alias="lastMessage")
    created_at: int = Field(0, alias="createdAt")
    updated_at: int = Field(0, alias="updatedAt")

    @classmethod
    def from_conversation(cls, conv: Conversation) -> "ConversationSummary":
        preview = ""
        for m in conv.messages:
            if m.role == "user":
                preview = m.content[:80]
                break
        last = conv.messages[-1].content[:100] if conv.messages else ""
        return cls(
            id=conv.id,
            title=conv.title,
            bot_name=conv.bot_name,
            message_count=len(conv.messages),
            preview=preview,
            last_message=last,
            created_at=conv.created_at,
            updated_at=conv.updated_at,
        )
