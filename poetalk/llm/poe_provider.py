import asyncio
import logging
from typing import AsyncGenerator, Callable, Optional, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from ..config import PoeConfig
from ..conversation.models import Message
from ..errors import (
    AuthError,
    ChatTimeoutError,
    InsufficientCreditError,
    NotFoundError,
    PoetalkError,
    RateLimitError,
    TransportError,
)
from .base import LLMProvider
from .proxy import resolve_proxy_url

logger = logging.getLogger(__name__)

POE_BASE_URL = "https://api.poe.com/v1"
REQUEST_TIMEOUT = 60.0  # seconds

HttpClientFactory = Callable[[Optional[str], float], httpx.AsyncClient]


def default_http_client(proxy: Optional[str], timeout: float) -> httpx.AsyncClient:
    """Route through *proxy* when given, directly otherwise.

    ``trust_env`` is off because the environment proxies were already
    considered by :func:`resolve_proxy_url`.
    """
    return httpx.AsyncClient(proxy=proxy, timeout=timeout, trust_env=False)


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (openai.APITimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return True
    text = str(error).lower()
    return "timed out" in text or "timeout" in text


def map_provider_error(
    error: BaseException, bot_name: str, proxy_url: Optional[str]
) -> PoetalkError:
    """Translate an openai/httpx failure into the poetalk error taxonomy."""
    if isinstance(error, PoetalkError):
        return error

    status = getattr(error, "status_code", None)
    if status == 401:
        return AuthError(status_code=401)
    if status == 404:
        return NotFoundError(
            f"Bot '{bot_name}' does not exist, check the bot name", status_code=404
        )
    if status == 429:
        return RateLimitError(status_code=429)
    if status == 402:
        return InsufficientCreditError(status_code=402)
    if status is None and _is_timeout(error):
        code = type(error).__name__
        return ChatTimeoutError(proxy_url=proxy_url, code=code)

    message = getattr(error, "message", None) or str(error) or "Request failed"
    return TransportError(message, status_code=status)


class PoeProvider(LLMProvider):
    """Poe chat-completions client (OpenAI-compatible API)."""

    name = "poe"

    def __init__(
        self,
        config: PoeConfig,
        http_client_factory: Optional[HttpClientFactory] = None,
        environ=None,
    ) -> None:
        headers: dict[str, str] = {}
        if config.referer_url:
            headers["HTTP-Referer"] = config.referer_url
        if config.app_title:
            headers["X-Title"] = config.app_title

        self.bot_name = config.bot_name
        self.proxy_url = resolve_proxy_url(config.proxy_url, environ)
        factory = http_client_factory or default_http_client
        self.http_client = factory(self.proxy_url, REQUEST_TIMEOUT)
        self.client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=POE_BASE_URL,
            default_headers=headers,
            timeout=REQUEST_TIMEOUT,
            max_retries=0,  # The caller decides whether to retry
            http_client=self.http_client,
        )

    @staticmethod
    def _format(messages: Sequence[Message]) -> list[dict]:
        return [{"role": m.role, "content": m.content} for m in messages]

    async def complete(self, messages: Sequence[Message]) -> str:
        formatted = self._format(messages)
        logger.info(
            "Sending request: bot=%s messages=%d base_url=%s",
            self.bot_name, len(formatted), POE_BASE_URL,
        )
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.bot_name,
                    messages=formatted,
                ),
                timeout=REQUEST_TIMEOUT,
            )
        except Exception as e:
            logger.error("Request failed: %s", e)
            if e.__cause__:
                logger.error("Caused by: %s", e.__cause__)
            raise map_provider_error(e, self.bot_name, self.proxy_url) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def stream(self, messages: Sequence[Message]) -> AsyncGenerator[str, None]:
        formatted = self._format(messages)
        logger.info(
            "Sending streaming request: bot=%s messages=%d base_url=%s",
            self.bot_name, len(formatted), POE_BASE_URL,
        )
        try:
            response = await self.client.chat.completions.create(
                model=self.bot_name,
                messages=formatted,
                stream=True,
            )
        except Exception as e:
            logger.error("Streaming request failed: %s", e)
            raise map_provider_error(e, self.bot_name, self.proxy_url) from e

        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except Exception as e:
            logger.error("Stream interrupted: %s", e)
            raise map_provider_error(e, self.bot_name, self.proxy_url) from e
        finally:
            await response.close()

    async def aclose(self) -> None:
        await self.client.close()
