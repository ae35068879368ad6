"""Transport chain coverage: request rewriting, stage order and attempt timeouts."""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl

import httpx
import pytest

from sturdy.http import (
    CONTEXT_EXTENSION,
    AttemptTimeoutError,
    AttemptTimeoutTransport,
    CallContext,
    ChainTransport,
    DeadlineExceededError,
    NetworkTransport,
    TLSConfig,
    build_ssl_context,
)
from sturdy.http._transport import (
    compose_stages,
    default_ssl_context,
    fill_headers,
    keepalive_socket_options,
    override_headers,
)


class Recorder:
    """MockTransport handler that remembers every request it saw."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": True})

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class TaggingStage(httpx.AsyncBaseTransport):
    def __init__(self, inner: httpx.AsyncBaseTransport, tag: str, seen: list[str]) -> None:
        self.inner = inner
        self.tag = tag
        self.seen = seen

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.seen.append(self.tag)
        return await self.inner.handle_async_request(request)


def _with_context(request: httpx.Request, ctx: CallContext) -> httpx.Request:
    request.extensions[CONTEXT_EXTENSION] = ctx
    return request


@pytest.mark.asyncio
async def test_chain_resolves_relative_url_against_base():
    recorder = Recorder()
    chain = ChainTransport(
        httpx.MockTransport(recorder), base_url="https://api.example.com/v2/"
    )

    await chain.handle_async_request(httpx.Request("GET", "items?page=2"))

    assert recorder.last.url == httpx.URL("https://api.example.com/v2/items?page=2")
    assert recorder.last.headers["Host"] == "api.example.com"


@pytest.mark.asyncio
async def test_chain_keeps_absolute_urls():
    recorder = Recorder()
    chain = ChainTransport(httpx.MockTransport(recorder), base_url="https://api.example.com")

    await chain.handle_async_request(httpx.Request("GET", "https://other.example.org/x"))

    assert recorder.last.url.host == "other.example.org"


@pytest.mark.asyncio
async def test_descriptor_headers_beat_client_defaults():
    recorder = Recorder()
    chain = ChainTransport(
        httpx.MockTransport(recorder),
        headers={"X-Info": "client", "X-Default": "filled"},
    )

    request = httpx.Request("GET", "https://api.example.com", headers={"X-Info": "request"})
    await chain.handle_async_request(request)

    assert recorder.last.headers["X-Info"] == "request"
    assert recorder.last.headers["X-Default"] == "filled"


@pytest.mark.asyncio
async def test_context_headers_override_request_headers():
    recorder = Recorder()
    chain = ChainTransport(httpx.MockTransport(recorder), headers={"X-Info": "client"})
    ctx = CallContext(headers={"X-Info": "context"})

    request = httpx.Request("GET", "https://api.example.com", headers={"X-Info": "request"})
    await chain.handle_async_request(_with_context(request, ctx))

    assert recorder.last.headers.get_list("X-Info") == ["context"]


@pytest.mark.asyncio
async def test_injector_runs_after_every_other_rewrite():
    recorder = Recorder()
    seen_before_inject: list[str] = []

    def inject(ctx: CallContext, request: httpx.Request) -> None:
        seen_before_inject.append(request.headers["X-Info"])
        request.headers["X-Info"] = "injected"

    chain = ChainTransport(
        httpx.MockTransport(recorder), headers={"X-Info": "client"}, inject=inject
    )
    ctx = CallContext(headers={"X-Info": "context"})

    await chain.handle_async_request(
        _with_context(httpx.Request("GET", "https://api.example.com"), ctx)
    )

    assert seen_before_inject == ["context"]
    assert recorder.last.headers["X-Info"] == "injected"


@pytest.mark.asyncio
async def test_chain_never_mutates_the_callers_request():
    recorder = Recorder()
    chain = ChainTransport(
        httpx.MockTransport(recorder),
        base_url="https://api.example.com",
        headers={"X-Default": "filled"},
    )
    original = httpx.Request("GET", "/items", headers={"X-Info": "mine"})

    await chain.handle_async_request(original)

    assert original.url == httpx.URL("/items")
    assert "X-Default" not in original.headers
    assert recorder.last is not original


def test_header_helpers_preserve_name_casing():
    target = httpx.Headers([("x-trace", "a"), ("Accept", "text/plain")])

    merged = override_headers(target, httpx.Headers({"X-Trace": "b"}))
    assert merged.raw == [(b"Accept", b"text/plain"), (b"X-Trace", b"b")]

    filled = fill_headers(merged, httpx.Headers({"accept": "*/*", "User-Agent": "ua"}))
    assert filled["Accept"] == "text/plain"
    assert filled["User-Agent"] == "ua"


@pytest.mark.asyncio
async def test_last_registered_stage_is_outermost():
    seen: list[str] = []
    transport = compose_stages(
        httpx.MockTransport(Recorder()),
        [
            lambda inner: TaggingStage(inner, "first", seen),
            None,
            lambda inner: TaggingStage(inner, "second", seen),
        ],
    )

    await transport.handle_async_request(httpx.Request("GET", "https://api.example.com"))

    assert seen == ["second", "first"]


@pytest.mark.asyncio
async def test_attempt_timeout_raises_retryable_timeout():
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200)

    transport = AttemptTimeoutTransport(httpx.MockTransport(slow), timeout=0.02)

    with pytest.raises(AttemptTimeoutError) as info:
        await transport.handle_async_request(httpx.Request("GET", "https://api.example.com"))

    assert isinstance(info.value, httpx.TimeoutException)


@pytest.mark.asyncio
async def test_attempt_timeout_reports_expired_call_context():
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200)

    transport = AttemptTimeoutTransport(httpx.MockTransport(slow), timeout=0.05)
    ctx = CallContext(timeout=0.01)
    request = _with_context(httpx.Request("GET", "https://api.example.com"), ctx)

    with pytest.raises(DeadlineExceededError):
        await transport.handle_async_request(request)


@pytest.mark.asyncio
async def test_attempt_timeout_passes_fast_responses_through():
    transport = AttemptTimeoutTransport(httpx.MockTransport(Recorder(204)), timeout=1)

    response = await transport.handle_async_request(
        httpx.Request("GET", "https://api.example.com")
    )

    assert response.status_code == 204


@pytest.mark.asyncio
async def test_attempt_timeout_leaves_unrelated_timeouts_alone():
    def broken(request: httpx.Request) -> httpx.Response:
        raise TimeoutError("upstream clock")

    transport = AttemptTimeoutTransport(httpx.MockTransport(broken), timeout=1)

    with pytest.raises(TimeoutError, match="upstream clock") as info:
        await transport.handle_async_request(httpx.Request("GET", "https://api.example.com"))

    assert not isinstance(info.value, AttemptTimeoutError)


def test_disabled_tls_config_loads_nothing():
    assert TLSConfig(cert_file="/missing/cert.pem").generate() is None


def test_tls_config_surfaces_unreadable_files():
    with pytest.raises(OSError):
        TLSConfig(enabled=True, ca_file="/missing/ca.pem").generate()


def test_insecure_skip_verify_turns_verification_off(caplog):
    caplog.set_level(logging.WARNING, logger="sturdy.http._transport")

    ctx = build_ssl_context(insecure_skip_verify=True)

    assert ctx.verify_mode == ssl.CERT_NONE
    assert not ctx.check_hostname
    assert "verification is disabled" in caplog.text


def test_default_ssl_context_verifies():
    ctx = build_ssl_context()

    assert ctx.verify_mode == ssl.CERT_REQUIRED
    assert ctx.minimum_version == ssl.TLSVersion.TLSv1_2
    assert ctx.check_hostname


def test_default_ssl_context_offers_only_forward_secret_aead_suites():
    tls12 = [c for c in default_ssl_context().get_ciphers() if c["protocol"] == "TLSv1.2"]

    assert tls12
    assert all(c["name"].startswith("ECDHE-") and c["aead"] for c in tls12)


def test_keepalive_socket_options_enable_keepalive():
    options = keepalive_socket_options()

    assert (socket.IPPROTO_TCP, socket.TCP_NODELAY, 1) in options
    assert (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1) in options
    if hasattr(socket, "TCP_KEEPIDLE"):
        assert (socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 15) in options
    assert len(options) <= 5


@pytest.mark.asyncio
async def test_network_transport_builds_with_ssl_context():
    transport = NetworkTransport(
        http2=False,
        limits=httpx.Limits(max_connections=4),
        verify=build_ssl_context(TLSConfig()),
    )

    await transport.aclose()
