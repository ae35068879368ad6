"""Shared helpers for the sturdy test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from sturdy.http import ClientConfig, SturdyClient


class ChunkedStream(httpx.AsyncByteStream):
    """Async body that yields fixed chunks and records how it was consumed."""

    def __init__(self, *chunks: bytes, fail_close: Exception | None = None) -> None:
        self.chunks = list(chunks)
        self.yielded = 0
        self.closed = False
        self.fail_close = fail_close

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            self.yielded += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True
        if self.fail_close is not None:
            raise self.fail_close


def streamed_response(status: int, *chunks: bytes, **kwargs) -> httpx.Response:
    return httpx.Response(status, stream=ChunkedStream(*chunks), **kwargs)


@pytest.fixture
def make_client() -> Callable[..., SturdyClient]:
    """Build clients over a MockTransport handler with near-zero backoff."""

    def factory(handler, **options) -> SturdyClient:
        options.setdefault("base_url", "https://api.example.com")
        options.setdefault("retry_wait_min", 0.001)
        options.setdefault("retry_wait_max", 0.005)
        return SturdyClient(
            ClientConfig(transport=httpx.MockTransport(handler), **options)
        )

    return factory
