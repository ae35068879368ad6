'''
error taxonomy for the sturdy http layer

Everything raised on purpose by this package derives from `SturdyError`,
except `AttemptTimeoutError` which has to look like an httpx transport
timeout so the retry policy treats it as a transient failure.
'''
from __future__ import annotations

import httpx


class SturdyError(Exception):
    '''
    Base class for errors raised by the sturdy http layer.

    Parent: Exception
    '''


class ConfigurationError(SturdyError, ValueError):
    '''
    Raised when the client or a call is wired incorrectly, e.g. a missing
    response handler or a relative path without a base URL.

    Parent: SturdyError, ValueError
    '''


class ValidationError(SturdyError, ValueError):
    '''
    Raised when a request rejects itself through its `validate()` capability.

    Parent: SturdyError, ValueError
    '''


class MarshalError(SturdyError, TypeError):
    '''
    Raised when a `body_json()` payload cannot be encoded.

    Parent: SturdyError, TypeError
    '''


class CreateRequestError(SturdyError, ValueError):
    '''
    Raised when the outbound request cannot be built (bad method or URL).

    Parent: SturdyError, ValueError
    '''


class RequestError(SturdyError):
    '''
    Raised when the exchange failed at the transport level and
    no retry was attempted (or retries are disabled).

    Parent: SturdyError
    '''


class RequestTimeoutError(RequestError, TimeoutError):
    '''
    Raised when that transport level failure was a timeout, either the
    per-attempt timeout or one of the network timeouts.

    Parent: RequestError, TimeoutError
    '''


class DecodeError(SturdyError, ValueError):
    '''
    Raised when a successful response body is not valid JSON.

    Parent: SturdyError, ValueError
    '''


class DeadlineExceededError(SturdyError, TimeoutError):
    '''
    The call-level deadline expired. Terminal, never retried.

    Parent: SturdyError, TimeoutError
    '''


class CallCancelledError(SturdyError):
    '''
    The call context was cancelled. Terminal, never retried.

    Parent: SturdyError
    '''


class AttemptTimeoutError(httpx.TimeoutException):
    '''
    A single attempt ran past the per-attempt timeout while the call
    itself was still alive.

    Parent: httpx.TimeoutException
    '''


class ResponseError(SturdyError):
    '''
    A non-2xx response, carrying a bounded excerpt of its body.

    Parent: SturdyError
    '''

    def __init__(
        self,
        status_code: int,
        body: str,
        request_id: str | None = None,
    ) -> None:
        self.status_code: int = status_code
        self.body: str = body
        self.request_id: str | None = request_id
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.request_id:
            return f'unexpected response [{self.status_code}]: {self.body}'
        return (
            f'unexpected response [{self.status_code}] '
            f'with request id [{self.request_id}]: {self.body}'
        )


class RetryAttemptError(SturdyError):
    '''
    The reason an attempt was retried, enriched with a bounded excerpt
    of the response body that triggered it.

    Parent: SturdyError
    '''

    def __init__(
        self,
        message: str,
        excerpt: bytes = b'',
        *,
        status_code: int | None = None,
    ) -> None:
        self.message: str = message
        self.excerpt: bytes = excerpt
        self.status_code: int | None = status_code
        super().__init__(str(self))

    def __str__(self) -> str:
        text = self.excerpt.decode('utf-8', errors='replace')
        return f'{self.message}: [{text}]'


class NoAttemptsLeftError(SturdyError):
    '''
    Every attempt allowed by the retry budget failed with a retryable
    outcome. The last attempt's error is chained as `__cause__`.

    Parent: SturdyError
    '''

    def __init__(
        self,
        attempts: int,
        last_error: BaseException | None,
        response: httpx.Response | None = None,
    ) -> None:
        self.attempts: int = attempts
        self.last_error: BaseException | None = last_error
        self.response: httpx.Response | None = response
        super().__init__(f'giving up after {attempts} attempt(s): {last_error}')

    @property
    def status_code(self) -> int | None:
        if self.response is None:
            return None
        return self.response.status_code

    @property
    def excerpt(self) -> bytes:
        return getattr(self.last_error, 'excerpt', b'')
