'''
retry policy engine for the sturdy transport chain

A policy looks at one attempt's outcome and decides whether to try again.
`RetryTransport` runs the attempt loop around the inner transport, asking the
policy after every attempt and waiting out the backoff in between.

Raises
------
NoAttemptsLeftError
    _raised from the last attempt's error when the retry budget runs out_
'''
from __future__ import annotations

import dataclasses as dc
import logging
import random
import ssl
from collections.abc import Awaitable, Callable, Iterable

import httpcore
import httpx

from sturdy.http._context import CallContext, context_of
from sturdy.http._errors import NoAttemptsLeftError, RetryAttemptError
from sturdy.http._reader import RESPONSE_ERR_LIMIT, drain, limited_response, snapshot

logger = logging.getLogger(__name__)


CheckRetry = Callable[
    [CallContext, httpx.Response | None, BaseException | None],
    Awaitable[tuple[bool, BaseException | None]],
]
Backoff = Callable[[float, float, int, httpx.Response | None], float]


_TRANSIENT_ERRORS = (
    ConnectionError,
    httpx.TransportError,
    httpcore.NetworkError,
    httpcore.TimeoutException,
    httpcore.ProxyError,
    httpcore.RemoteProtocolError,
)

# the request itself is at fault, sending it again cannot help
_PERMANENT_ERRORS = (
    httpx.UnsupportedProtocol,
    httpx.LocalProtocolError,
    httpcore.UnsupportedProtocol,
    httpcore.LocalProtocolError,
)


@dc.dataclass(frozen=True, slots=True)
class RetryOverride:
    '''
    Retry behaviour for a single call (or the client-wide default).

    When set on a `CallContext` it replaces the client default entirely.
    '''
    disable: bool = False
    disabled_status_codes: frozenset[int] = frozenset()
    enabled_status_codes: frozenset[int] = frozenset()
    logger: logging.Logger | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, 'disabled_status_codes', frozenset(self.disabled_status_codes)
        )
        object.__setattr__(
            self, 'enabled_status_codes', frozenset(self.enabled_status_codes)
        )

    @classmethod
    def disabled(cls) -> RetryOverride:
        return cls(disable=True)

    @classmethod
    def for_status(
        cls,
        *,
        retry: Iterable[int] = (),
        never: Iterable[int] = (),
    ) -> RetryOverride:
        return cls(
            disabled_status_codes=frozenset(never),
            enabled_status_codes=frozenset(retry),
        )


def _status_text(response: httpx.Response) -> str:
    return f'{response.status_code} {response.reason_phrase}'.strip()


def _caused_by(
    exc: BaseException,
    kind: type[BaseException] | tuple[type[BaseException], ...],
) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, kind):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def default_retry_classification(
    response: httpx.Response | None,
    error: BaseException | None,
) -> tuple[bool, BaseException | None]:
    '''
    Connectivity / 5xx / 429 classification used when no override decides.

    Parameters
    ----------
    response : httpx.Response | None
    error : BaseException | None
        The exception raised by the attempt, if any.

    Returns
    -------
    tuple[bool, BaseException | None]
        _(should_retry, reason)_
    '''
    if error is not None:
        if _caused_by(error, _PERMANENT_ERRORS):
            return False, error
        if _caused_by(error, ssl.SSLCertVerificationError):
            return False, error
        return True, error

    if response is None:
        return False, None

    status = response.status_code
    if status == 429:
        return True, RetryAttemptError(
            f'unexpected HTTP status {_status_text(response)}', status_code=status
        )

    if status == 0 or (status >= 500 and status != 501):
        return True, RetryAttemptError(
            f'unexpected HTTP status {_status_text(response)}', status_code=status
        )

    return False, None


class RetryPolicy:
    '''
    The default retry decision, honouring per-call `RetryOverride`s.
    '''
    def __init__(
        self,
        *,
        defaults: RetryOverride | None = None,
        logger: logging.Logger | None = None,
        response_err_limit: int = RESPONSE_ERR_LIMIT,
    ) -> None:
        '''
        Parameters
        ----------
        defaults : RetryOverride | None, optional
            Client-wide override used when the call context carries none
        logger : logging.Logger | None, optional
            Where retry warnings go, by default None (no warnings)
        response_err_limit : int, optional
            Excerpt ceiling for diagnostic body snapshots
        '''
        self.defaults: RetryOverride | None = defaults
        self.logger: logging.Logger | None = logger
        self.response_err_limit: int = response_err_limit

    async def __call__(
        self,
        ctx: CallContext,
        response: httpx.Response | None,
        error: BaseException | None,
    ) -> tuple[bool, BaseException | None]:
        if (ctx_err := ctx.err()) is not None:
            return False, ctx_err

        override = ctx.retry if ctx.retry is not None else self.defaults
        log = self.logger
        if override is not None:
            if override.logger is not None:
                log = override.logger

            if override.disable:
                return False, error

            if response is not None:
                status = response.status_code
                if status in override.disabled_status_codes:
                    return False, None

                if status in override.enabled_status_codes:
                    excerpt = await limited_response(
                        response, self.response_err_limit, ctx=ctx
                    )
                    reason = RetryAttemptError(
                        f'force retried HTTP status {_status_text(response)}',
                        excerpt,
                        status_code=status,
                    )
                    if log is not None:
                        log.warning(f'retrying request: {reason}')
                    return True, reason

        should_retry, reason = default_retry_classification(response, error)
        if not should_retry:
            return should_retry, reason

        if response is not None and isinstance(reason, RetryAttemptError):
            excerpt = await limited_response(
                response, self.response_err_limit, ctx=ctx
            )
            reason = RetryAttemptError(
                reason.message, excerpt, status_code=reason.status_code
            )

        if log is not None:
            log.warning(f'retrying request: {reason}')

        return True, reason


def default_backoff(
    wait_min: float,
    wait_max: float,
    attempt_no: int,
    response: httpx.Response | None,
) -> float:
    '''
    Exponential backoff, `wait_min * 2**attempt_no` capped at `wait_max`.
    A numeric `Retry-After` on 429/503 responses is honoured within
    `[wait_min, wait_max]`.
    '''
    if response is not None and response.status_code in (429, 503):
        retry_after = response.headers.get('Retry-After', '')
        if retry_after.isdigit():
            return min(max(float(retry_after), wait_min), wait_max)

    try:
        wait = wait_min * (2 ** attempt_no)
    except OverflowError:
        return wait_max
    return min(wait, wait_max)


def linear_jitter_backoff(
    wait_min: float,
    wait_max: float,
    attempt_no: int,
    response: httpx.Response | None,
    *,
    jitter: float = 0.1,
) -> float:
    '''
    Linear backoff, `wait_min * (attempt_no + 1)` with +/- `jitter` noise,
    capped at `wait_max`.
    '''
    base = wait_min * (attempt_no + 1)

    if jitter:
        j = base * jitter
        base += random.uniform(-j, j)

    return min(max(0.0, base), wait_max)


class RetryTransport(httpx.AsyncBaseTransport):
    '''
    Runs attempts against the inner transport until the policy stops
    asking for retries or `retry_max` retries have been spent.
    '''
    def __init__(
        self,
        inner: httpx.AsyncBaseTransport,
        *,
        retry_max: int = 4,
        wait_min: float = 1.0,
        wait_max: float = 30.0,
        check_retry: CheckRetry | None = None,
        backoff: Backoff | None = None,
        response_err_limit: int = RESPONSE_ERR_LIMIT,
    ) -> None:
        self._inner = inner
        self.retry_max: int = retry_max
        self.wait_min: float = wait_min
        self.wait_max: float = wait_max
        self.check_retry: CheckRetry = check_retry or RetryPolicy(
            response_err_limit=response_err_limit
        )
        self.backoff: Backoff = backoff or default_backoff
        self.response_err_limit: int = response_err_limit

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        ctx = context_of(request)

        # every attempt replays the same body
        await request.aread()

        attempt = 0
        while True:
            attempt += 1
            response: httpx.Response | None = None
            error: BaseException | None = None
            try:
                response = await self._inner.handle_async_request(request)
            except _TRANSIENT_ERRORS as exc:
                error = exc
                logger.debug(f'{request.method} {request.url} attempt {attempt} failed: {exc!r}')

            should_retry, check_error = await self.check_retry(ctx, response, error)
            if not should_retry:
                return await self._finish(response, error, check_error)

            remaining = self.retry_max - (attempt - 1)
            if remaining <= 0:
                raise await self._exhausted(attempt, response, check_error or error)

            if response is not None:
                await drain(response, self.response_err_limit)

            wait = self.backoff(self.wait_min, self.wait_max, attempt - 1, response)
            logger.debug(
                f'{request.method} {request.url}: retrying in {wait:.2f}s '
                f'({remaining} left)'
            )
            await ctx.sleep(wait)

    async def _finish(
        self,
        response: httpx.Response | None,
        error: BaseException | None,
        check_error: BaseException | None,
    ) -> httpx.Response:
        if check_error is None and error is None and response is not None:
            return response

        if response is not None:
            await drain(response, self.response_err_limit)

        final = check_error if check_error is not None else error
        if final is None:
            raise RuntimeError('transport returned neither a response nor an error')
        if error is not None and final is not error:
            raise final from error
        raise final

    async def _exhausted(
        self,
        attempts: int,
        response: httpx.Response | None,
        last_error: BaseException | None,
    ) -> NoAttemptsLeftError:
        '''
        Build the exhaustion error. The final response is closed; its body
        stays on `response.content` when it fits in twice the excerpt
        ceiling, otherwise it is dropped unread and only the excerpt remains.
        '''
        if response is not None:
            try:
                await self._keep_body(response)
            finally:
                await response.aclose()

        exc = NoAttemptsLeftError(attempts, last_error, response)
        exc.__cause__ = last_error
        return exc

    async def _keep_body(self, response: httpx.Response) -> None:
        if self.response_err_limit < 0:
            await response.aread()
            return

        ceiling = 2 * self.response_err_limit
        head = await snapshot(response, ceiling + 1)
        if len(head) <= ceiling:
            await response.aread()
            return

        logger.debug(
            f'final response body exceeds {ceiling} bytes, closing it unread'
        )

    async def aclose(self) -> None:
        await self._inner.aclose()
