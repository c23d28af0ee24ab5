r"""One chat session: drives a turn from user input to a persisted reply.

A turn appends the user message, streams the bot's reply through the
provider, pushes throttled progress to the observer, appends the assistant
message and hands the conversation to the store.

State per session::

    IDLE --send--> AWAITING_REPLY --saved--> IDLE
                                  \--error--> FAILED --send--> AWAITING_REPLY
"""

import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import AsyncGenerator, Awaitable, Callable, Optional, Union

from ..config import PoeConfig
from ..errors import ConfigurationError, PoetalkError, TransportError, ValidationError
from ..llm.base import LLMProvider
from ..llm.poe_provider import PoeProvider
from .models import Conversation
from .storage import ConversationStore

logger = logging.getLogger(__name__)

UPDATE_INTERVAL = 0.1  # seconds between progress pushes while streaming


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"
    FAILED = "failed"


@dataclass
class SessionEvent:
    kind: str  # "user" | "progress" | "done"
    conversation: Conversation
    text: str = ""  # Reply accumulated so far

    def to_dict(self) -> dict:
        data = {"type": self.kind, "text": self.text}
        if self.kind != "progress":
            data["conversation"] = self.conversation.to_record()
        return data


Observer = Callable[[SessionEvent], Union[None, Awaitable[None]]]
ProviderFactory = Callable[[PoeConfig], LLMProvider]


class ChatSession:
    def __init__(
        self,
        config: PoeConfig,
        store: ConversationStore,
        provider_factory: ProviderFactory = PoeProvider,
        update_interval: float = UPDATE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.store = store
        self.update_interval = update_interval
        self._provider_factory = provider_factory
        self._provider: Optional[LLMProvider] = None
        self._clock = clock

        self.state = SessionState.IDLE
        self.conversation: Optional[Conversation] = None
        self.streaming_text = ""
        self.is_loading = False
        self.last_error: Optional[PoetalkError] = None

    def _get_provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = self._provider_factory(self.config)
        return self._provider

    def _validate(self, text: str) -> str:
        message = (text or "").strip()
        if not message:
            raise ValidationError("Please enter a message")
        if not self.config.api_key.strip():
            raise ConfigurationError("Configure your Poe API key in settings")
        if self.state == SessionState.AWAITING_REPLY:
            raise ValidationError("A reply is already in progress")
        return message

    async def stream_send(self, text: str) -> AsyncGenerator[SessionEvent, None]:
        """Run one turn, yielding events as it progresses.

        Yields a ``user`` event once the user message is appended, ``progress``
        events at most every ``update_interval`` seconds, and exactly one
        ``done`` event carrying the full reply. Errors are raised after the
        session is marked FAILED; the user message stays in the conversation.
        """
        try:
            message = self._validate(text)
        except ValidationError as e:
            self.last_error = e
            raise

        self.state = SessionState.AWAITING_REPLY
        self.is_loading = True
        self.streaming_text = ""
        self.last_error = None

        try:
            if self.conversation is None:
                self.conversation = Conversation.start(message, self.config.bot_name)
                logger.info("Started conversation %s", self.conversation.id)
            conv = self.conversation
            conv.append("user", message)
            yield SessionEvent("user", conv)

            parts: list[str] = []
            last_push = self._clock()
            # Closed on exit so an abandoned turn also ends the upstream request
            async with aclosing(self._get_provider().stream(list(conv.messages))) as fragments:
                async for fragment in fragments:
                    parts.append(fragment)
                    now = self._clock()
                    if now - last_push >= self.update_interval:
                        last_push = now
                        self.streaming_text = "".join(parts)
                        yield SessionEvent("progress", conv, self.streaming_text)

            reply = "".join(parts)
            self.streaming_text = reply
            conv.append("assistant", reply)
            await self.store.save(conv)
            self.state = SessionState.IDLE
            self.streaming_text = ""
            yield SessionEvent("done", conv, reply)
        except PoetalkError as e:
            self._fail(e)
            raise
        except Exception as e:
            err = TransportError(str(e) or "Failed to communicate with Poe")
            self._fail(err)
            raise err from e
        finally:
            self.is_loading = False
            if self.state == SessionState.AWAITING_REPLY:
                # Consumer stopped iterating before the reply finished
                self.state = SessionState.IDLE

    def _fail(self, error: PoetalkError) -> None:
        logger.error("Chat turn failed: %s", error.message)
        self.state = SessionState.FAILED
        self.last_error = error
        self.streaming_text = ""

    async def send(self, text: str, on_update: Optional[Observer] = None) -> Conversation:
        """Run one turn to completion and return the updated conversation."""
        async for event in self.stream_send(text):
            if on_update is not None:
                result = on_update(event)
                if result is not None:
                    await result
        return self.conversation

    async def new_conversation(self) -> None:
        """Forget the active conversation and the provider tied to it."""
        if self._provider is not None:
            await self._provider.aclose()
        self._provider = None
        self.conversation = None
        self.streaming_text = ""
        self.last_error = None
        self.state = SessionState.IDLE

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.aclose()
            self._provider = None
