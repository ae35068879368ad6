import asyncio
import dataclasses as dc
import logging
import socket
import ssl
from collections.abc import Callable, Mapping

import httpx

from sturdy.http._context import CallContext, context_of
from sturdy.http._errors import AttemptTimeoutError

logger = logging.getLogger(__name__)


Injector = Callable[[CallContext, httpx.Request], None]
Stage = Callable[[httpx.AsyncBaseTransport], httpx.AsyncBaseTransport]


# (level, option, value); options the platform lacks are skipped.
# Keepalive packets start after 15s idle, repeat every 15s and give up after 9.
_SOCKET_OPTIONS: tuple[tuple[str, str, int], ...] = (
    ('IPPROTO_TCP', 'TCP_NODELAY', 1),
    ('SOL_SOCKET', 'SO_KEEPALIVE', 1),
    ('IPPROTO_TCP', 'TCP_KEEPIDLE', 15),
    ('IPPROTO_TCP', 'TCP_KEEPINTVL', 15),
    ('IPPROTO_TCP', 'TCP_KEEPCNT', 9),
)

# forward secret AEAD suites only; TLS 1.3 keeps the OpenSSL defaults
_TLS_1_2_CIPHERS = 'ECDHE+AESGCM:ECDHE+CHACHA20'


def keepalive_socket_options() -> list[tuple[int, int, int]]:
    '''
    TCP options for pooled connections: no Nagle delay, and keepalive
    packets so dead peers are noticed while a connection sits idle.
    '''
    return [
        (getattr(socket, level), getattr(socket, option), value)
        for level, option, value in _SOCKET_OPTIONS
        if hasattr(socket, option)
    ]


def default_ssl_context() -> ssl.SSLContext:
    '''
    The client SSL context: system CA pool, TLS 1.2 or newer, certificate
    and hostname verification on.

    ALPN is left to httpcore, which sets it on every new connection from
    the transport's `http2` flag.
    '''
    ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.set_ciphers(_TLS_1_2_CIPHERS)
    return ctx


@dc.dataclass(slots=True)
class TLSConfig:
    '''
    Client TLS material. Nothing is loaded unless `enabled` is set.
    A `ca_file` is trusted in addition to the system CA pool.
    '''
    enabled: bool = False
    cert_file: str | None = None
    key_file: str | None = None
    ca_file: str | None = None

    def generate(self) -> ssl.SSLContext | None:
        '''
        Build the SSL context described by this config.

        Returns
        -------
        ssl.SSLContext | None
            None when TLS is not enabled, the system defaults apply then.

        Raises
        ------
        OSError / ssl.SSLError
            if a certificate, key or CA file cannot be loaded
        '''
        if not self.enabled:
            return None

        ctx = default_ssl_context()
        if self.cert_file and self.key_file:
            ctx.load_cert_chain(certfile=self.cert_file, keyfile=self.key_file)

        if self.ca_file:
            ctx.load_verify_locations(cafile=self.ca_file)

        return ctx


def build_ssl_context(
    tls: TLSConfig | None = None,
    *,
    insecure_skip_verify: bool = False,
) -> ssl.SSLContext:
    ctx = tls.generate() if tls is not None else None
    if ctx is None:
        ctx = default_ssl_context()

    if insecure_skip_verify:
        logger.warning('TLS certificate verification is disabled')
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    return ctx


class NetworkTransport(httpx.AsyncBaseTransport):
    '''
    The terminal transport: httpx's connection pool with TCP keepalive
    socket options and the configured SSL context.
    '''
    def __init__(
        self,
        *,
        http2: bool = True,
        trust_env: bool = False,
        limits: httpx.Limits | None = None,
        proxy: str | None = None,
        verify: ssl.SSLContext | None = None,
    ) -> None:
        self._inner: httpx.AsyncHTTPTransport = httpx.AsyncHTTPTransport(
            http2=http2,
            socket_options=keepalive_socket_options(),
            verify=verify if verify is not None else default_ssl_context(),
            trust_env=trust_env,
            limits=limits if limits is not None else httpx.Limits(),
            proxy=proxy,
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        await self._inner.aclose()


def clone_request(request: httpx.Request) -> httpx.Request:
    '''
    Copy of `request` that shares the body stream but owns its headers
    and extensions, so the copy can be rewritten freely.
    '''
    clone = httpx.Request(
        request.method,
        request.url,
        headers=request.headers.copy(),
        stream=request.stream,
        extensions=dict(request.extensions),
    )
    return clone


def override_headers(target: httpx.Headers, source: httpx.Headers) -> httpx.Headers:
    '''
    `source` replaces every same-named header in `target`.
    '''
    replaced = {key.lower() for key, _ in source.raw}
    kept = [
        (key, value) for key, value in target.raw
        if key.lower() not in replaced
    ]
    return httpx.Headers(kept + source.raw)


def fill_headers(target: httpx.Headers, defaults: httpx.Headers) -> httpx.Headers:
    '''
    `defaults` are added only for header names `target` does not have.
    '''
    missing = [
        (key, value) for key, value in defaults.raw
        if key.decode(defaults.encoding) not in target
    ]
    if not missing:
        return target
    return httpx.Headers(target.raw + missing)


class ChainTransport(httpx.AsyncBaseTransport):
    '''
    Rewrites each outbound request before handing it to the inner
    transport: resolves relative URLs against the base URL, applies the
    call context headers, fills in default headers and finally runs the
    injector. The caller's request object is never modified.
    '''
    def __init__(
        self,
        inner: httpx.AsyncBaseTransport,
        *,
        base_url: httpx.URL | str | None = None,
        headers: Mapping[str, str] | httpx.Headers | None = None,
        inject: Injector | None = None,
    ) -> None:
        self._inner = inner
        self._base_url: httpx.URL | None = httpx.URL(base_url) if base_url else None
        self._headers: httpx.Headers = httpx.Headers(headers)
        self._inject: Injector | None = inject

    def prepare(self, request: httpx.Request) -> None:
        if self._base_url is not None and request.url.is_relative_url:
            request.url = self._base_url.join(request.url)
            if 'Host' not in request.headers:
                request.headers['Host'] = request.url.netloc.decode('ascii')

        ctx = context_of(request)
        if ctx.headers:
            request.headers = override_headers(request.headers, ctx.headers)

        request.headers = fill_headers(request.headers, self._headers)

        if self._inject is not None:
            self._inject(ctx, request)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        outbound = clone_request(request)
        self.prepare(outbound)
        logger.debug(f'Sending request: {outbound.method} {outbound.url}')
        return await self._inner.handle_async_request(outbound)

    async def aclose(self) -> None:
        await self._inner.aclose()


class AttemptTimeoutTransport(httpx.AsyncBaseTransport):
    '''
    Bounds each attempt to `timeout` seconds, independently of the call
    deadline, so a hung attempt is abandoned and can be retried.
    '''
    def __init__(self, inner: httpx.AsyncBaseTransport, timeout: float) -> None:
        self._inner = inner
        self.timeout: float = timeout

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        ctx = context_of(request)
        attempt_deadline = asyncio.timeout(self.timeout)
        try:
            async with attempt_deadline:
                return await self._inner.handle_async_request(request)
        except TimeoutError as exc:
            if not attempt_deadline.expired():
                raise
            if (err := ctx.err()) is not None:
                raise err from exc
            raise AttemptTimeoutError(
                f'attempt timed out after {self.timeout}s',
                request=request,
            ) from exc

    async def aclose(self) -> None:
        await self._inner.aclose()


def compose_stages(
    transport: httpx.AsyncBaseTransport,
    stages: list[Stage],
) -> httpx.AsyncBaseTransport:
    '''
    Wrap `transport` with each stage in turn; the last stage ends up outermost.
    '''
    for stage in stages:
        if stage is None:
            continue
        transport = stage(transport)
    return transport
