"""Fakes shared by the test modules."""

import json
from typing import Callable, Optional

import httpx

from poetalk.llm.base import LLMProvider


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(LLMProvider):
    """Streams a fixed list of fragments, optionally failing afterwards."""

    name = "fake"

    def __init__(self, fragments=None, error: Optional[Exception] = None, bot_name: str = "TestBot"):
        self.fragments = list(fragments or [])
        self.error = error
        self.bot_name = bot_name
        self.calls: list[list] = []
        self.closed = False
        self.stream_closed = False

    async def complete(self, messages):
        self.calls.append(list(messages))
        if self.error:
            raise self.error
        return "".join(self.fragments)

    async def stream(self, messages):
        self.calls.append([m.model_copy() for m in messages])
        try:
            for fragment in self.fragments:
                yield fragment
            if self.error:
                raise self.error
        finally:
            self.stream_closed = True

    async def aclose(self):
        self.closed = True


def completion_body(content: Optional[str]) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "TestBot",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def chunk_event(content: Optional[str]) -> str:
    chunk = {
        "id": "chatcmpl-test",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "TestBot",
        "choices": [
            {"index": 0, "delta": {"content": content}, "finish_reason": None}
        ],
    }
    return f"data: {json.dumps(chunk)}\n\n"


def sse_body(fragments, trailer: str = "data: [DONE]\n\n") -> bytes:
    return ("".join(chunk_event(f) for f in fragments) + trailer).encode("utf-8")


def stream_response(fragments, trailer: str = "data: [DONE]\n\n") -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=sse_body(fragments, trailer),
    )


class RecordingClientFactory:
    """HTTP client factory that records the proxy it was asked to use.

    Every request goes to *handler* through ``httpx.MockTransport``.
    """

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.calls: list[tuple[Optional[str], float]] = []
        self.requests: list[httpx.Request] = []

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def __call__(self, proxy: Optional[str], timeout: float) -> httpx.AsyncClient:
        self.calls.append((proxy, timeout))
        return httpx.AsyncClient(transport=httpx.MockTransport(self._handle), timeout=timeout)
