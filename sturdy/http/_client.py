import asyncio
import dataclasses as dc
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any, Self, TypeVar

import httpx

from sturdy.http._context import CONTEXT_EXTENSION, CallContext
from sturdy.http._errors import (
    ConfigurationError,
    CreateRequestError,
    DeadlineExceededError,
    RequestError,
    RequestTimeoutError,
)
from sturdy.http._reader import RESPONSE_ERR_LIMIT, drain
from sturdy.http._request import RawBody, Request, Requester, build_request_parts
from sturdy.http._response import ResponseHandler, response_func_json
from sturdy.http._retry import (
    Backoff,
    CheckRetry,
    RetryOverride,
    RetryPolicy,
    RetryTransport,
)
from sturdy.http._transport import (
    AttemptTimeoutTransport,
    ChainTransport,
    Injector,
    NetworkTransport,
    Stage,
    TLSConfig,
    build_ssl_context,
    compose_stages,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _base_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=100,
        max_keepalive_connections=100,
        keepalive_expiry=90,
    )


def _base_timeouts() -> httpx.Timeout:
    return httpx.Timeout(
        connect=30.0,
        read=None,
        write=None,
        pool=30.0,
    )


@dc.dataclass(slots=True)
class ClientConfig:
    '''
    Configuration options for the sturdy HTTP client.
    Good defaults are provided for most use cases; validated on creation.
    '''
    base_url: str | None = None
    headers: Mapping[str, str] = dc.field(default_factory=dict)

    # whole call, attempts and backoff included
    timeout: float | None = None
    # a single attempt, up to the response headers
    attempt_timeout: float | None = None
    network_timeout: httpx.Timeout = dc.field(default_factory=_base_timeouts)
    limits: httpx.Limits = dc.field(default_factory=_base_limits)

    disable_retry: bool = False
    retry_max: int = 4
    retry_wait_min: float = 1.0
    retry_wait_max: float = 30.0
    retry: RetryOverride | None = None
    retry_log: bool = True
    check_retry: CheckRetry | None = None
    backoff: Backoff | None = None
    response_err_limit: int = RESPONSE_ERR_LIMIT

    http2: bool = True
    follow_redirects: bool = True
    trust_env: bool = False
    proxy: str | None = None
    tls: TLSConfig | None = None
    insecure_skip_verify: bool = False

    transport: httpx.AsyncBaseTransport | None = None
    stages: list[Stage] = dc.field(default_factory=list)
    inject: Injector | None = None

    def __post_init__(self) -> None:
        self.headers = dict(self.headers)
        self.stages = list(self.stages)

        if self.base_url:
            try:
                url = httpx.URL(self.base_url)
            except httpx.InvalidURL as exc:
                raise ConfigurationError(f'failed to parse base url: {exc}') from exc
            if not url.is_absolute_url:
                raise ConfigurationError(f'base url must be absolute: {self.base_url!r}')

        if self.retry_max < 0:
            raise ConfigurationError('retry_max must not be negative')
        if self.retry_wait_min < 0 or self.retry_wait_max < 0:
            raise ConfigurationError('retry waits must not be negative')
        if self.retry_wait_min > self.retry_wait_max:
            raise ConfigurationError('retry_wait_min must not exceed retry_wait_max')

        for name in ('timeout', 'attempt_timeout'):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f'{name} must be positive')

        if self.transport is not None and (
            self.proxy or self.tls is not None or self.insecure_skip_verify
        ):
            raise ConfigurationError(
                'proxy and TLS options cannot be applied to a custom transport'
            )

    @classmethod
    def plain(cls, **options: Any) -> Self:
        '''
        A config with retries switched off, for callers that handle
        failures themselves.
        '''
        options.setdefault('disable_retry', True)
        return cls(**options)


def build_transport(config: ClientConfig) -> httpx.AsyncBaseTransport:
    '''
    Compose the transport stack described by `config`, innermost first:
    network (or `config.transport`), per-attempt timeout, retries,
    request rewriting, then the caller's stages.
    '''
    transport = config.transport
    if transport is None:
        transport = NetworkTransport(
            http2=config.http2,
            trust_env=config.trust_env,
            limits=config.limits,
            proxy=config.proxy,
            verify=build_ssl_context(
                config.tls,
                insecure_skip_verify=config.insecure_skip_verify,
            ),
        )

    if config.attempt_timeout is not None:
        transport = AttemptTimeoutTransport(transport, config.attempt_timeout)

    if not config.disable_retry:
        check_retry = config.check_retry or RetryPolicy(
            defaults=config.retry,
            logger=logger if config.retry_log else None,
            response_err_limit=config.response_err_limit,
        )
        transport = RetryTransport(
            transport,
            retry_max=config.retry_max,
            wait_min=config.retry_wait_min,
            wait_max=config.retry_wait_max,
            check_retry=check_retry,
            backoff=config.backoff,
            response_err_limit=config.response_err_limit,
        )

    transport = ChainTransport(
        transport,
        base_url=config.base_url,
        headers=config.headers,
        inject=config.inject,
    )

    try:
        return compose_stages(transport, config.stages)
    except Exception as exc:
        raise ConfigurationError(f'failed to wrap transport: {exc}') from exc


class SturdyClient(httpx.AsyncClient):
    '''
    httpx.AsyncClient with retries, per-attempt timeouts, default and
    contextual headers, and a descriptor based dispatch API
    (`do_with_func`, `do`, `call`).

    The client is configured once and then only read, so a single instance
    can serve any number of concurrent calls.
    '''

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        auth: httpx.Auth | None = None,
    ) -> None:
        self._config: ClientConfig = config or ClientConfig()
        self._base: httpx.URL | None = (
            httpx.URL(self._config.base_url) if self._config.base_url else None
        )

        super().__init__(
            base_url=self._config.base_url or '',
            transport=build_transport(self._config),
            auth=auth,
            timeout=self._config.network_timeout,
            headers=self._config.headers,
            follow_redirects=self._config.follow_redirects,
            # env proxies would bypass the transport stack
            trust_env=False,
        )

    @property
    def config(self) -> ClientConfig:
        return self._config

    async def do_with_func(
        self,
        request: Requester,
        fn: ResponseHandler[T] | None,
        *,
        ctx: CallContext | None = None,
    ) -> T:
        '''
        Send `request` and hand the response to `fn`.

        The response body is drained and closed after `fn` returns or
        raises, so `fn` should read whatever it needs from the body itself.

        Parameters
        ----------
        request : Requester
            Request descriptor, see `sturdy.http._request`
        fn : ResponseHandler[T]
            Sync or async callable receiving the `httpx.Response`
        ctx : CallContext | None, optional
            Deadline, cancel switch, retry override and extra headers
            for this call

        Returns
        -------
        T
            Whatever `fn` returns.

        Raises
        ------
        ConfigurationError
            if `fn` is None or a relative path has no base URL
        ValidationError, MarshalError, CreateRequestError
            if the request cannot be built; nothing is sent
        RequestError
            if the exchange fails at the transport level without retries
        RequestTimeoutError
            if that failure is a timeout (per attempt or network level)
        NoAttemptsLeftError
            if every allowed attempt failed with a retryable outcome
        DeadlineExceededError, CallCancelledError
            if the call context ends first; cancelling the context
            abandons an attempt that is in flight
        '''
        if fn is None:
            raise ConfigurationError('response function is nil')

        parts = build_request_parts(request, self._base)

        call_ctx = (ctx or CallContext()).with_timeout(self._config.timeout)
        if (err := call_ctx.err()) is not None:
            raise err

        try:
            outbound = self.build_request(
                parts.method,
                parts.url,
                headers=parts.headers,
                content=parts.content,
                extensions={CONTEXT_EXTENSION: call_ctx},
            )
        except (TypeError, ValueError, httpx.InvalidURL) as exc:
            raise CreateRequestError(f'failed to create request: {exc}') from exc

        deadline = asyncio.timeout(call_ctx.remaining())
        try:
            async with deadline:
                return await call_ctx.watch(self._exchange(outbound, fn))
        except TimeoutError as exc:
            if not deadline.expired():
                raise
            raise DeadlineExceededError(
                f'{parts.method} {parts.url}: call deadline exceeded'
            ) from exc

    async def _exchange(
        self,
        outbound: httpx.Request,
        fn: ResponseHandler[T],
    ) -> T:
        try:
            response = await self.send(outbound, stream=True)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f'request timed out: {exc}') from exc
        except httpx.HTTPError as exc:
            raise RequestError(f'failed to do request: {exc}') from exc

        try:
            result = fn(response)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            await drain(response, self._config.response_err_limit)

    async def do(
        self,
        request: Requester,
        *,
        ctx: CallContext | None = None,
        parse: Callable[[Any], T] | None = None,
    ) -> T | Any | None:
        '''
        Send `request` and decode a JSON response.

        Non-2xx responses raise `ResponseError`; 204 and empty bodies
        return None.
        '''
        return await self.do_with_func(request, response_func_json(parse), ctx=ctx)

    async def call(
        self,
        method: str,
        path: str,
        fn: ResponseHandler[T] | None,
        *,
        body: RawBody | None = None,
        headers: Mapping[str, str] | None = None,
        ctx: CallContext | None = None,
    ) -> T:
        return await self.do_with_func(
            Request(method=method, path=path, header=headers, content=body),
            fn,
            ctx=ctx,
        )
