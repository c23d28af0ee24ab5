from abc import ABC, abstractmethod
from typing import AsyncGenerator, Sequence

from ..conversation.models import Message


class LLMProvider(ABC):
    """Abstract base class for chat-completions providers."""

    name: str
    bot_name: str

    @abstractmethod
    async def complete(self, messages: Sequence[Message]) -> str:
        """Send messages and get a complete response."""
        ...

    @abstractmethod
    def stream(self, messages: Sequence[Message]) -> AsyncGenerator[str, None]:
        """Send messages and stream response text fragments.

        Implementations are async generators; callers close them to stop early.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources held by the provider."""
        return None
