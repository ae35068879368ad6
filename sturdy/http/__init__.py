'''
**sturdy.http**
---------

A resilient HTTP dispatch layer on top of httpx. `SturdyClient` sends request
descriptors through a transport chain that rewrites requests (base URL,
default and contextual headers, an injector), retries transient failures with
exponential backoff, and can bound every attempt with its own timeout.
Response bodies behind retry and error diagnostics are captured with a
bounded excerpt and put back, so nothing is lost for the caller.
'''
from sturdy.http._client import ClientConfig, SturdyClient, build_transport
from sturdy.http._context import CONTEXT_EXTENSION, CallContext, context_of
from sturdy.http._errors import (
    AttemptTimeoutError,
    CallCancelledError,
    ConfigurationError,
    CreateRequestError,
    DeadlineExceededError,
    DecodeError,
    MarshalError,
    NoAttemptsLeftError,
    RequestError,
    RequestTimeoutError,
    ResponseError,
    RetryAttemptError,
    SturdyError,
    ValidationError,
)
from sturdy.http._reader import (
    RESPONSE_ERR_LIMIT,
    MultiStream,
    drain,
    limited_response,
    snapshot,
)
from sturdy.http._request import (
    HasBody,
    HasHeaders,
    HasJSONBody,
    HasQuery,
    Request,
    Requester,
    Validator,
)
from sturdy.http._response import (
    error_response,
    response_func_json,
    unexpected_response,
)
from sturdy.http._retry import (
    RetryOverride,
    RetryPolicy,
    RetryTransport,
    default_backoff,
    default_retry_classification,
    linear_jitter_backoff,
)
from sturdy.http._transport import (
    AttemptTimeoutTransport,
    ChainTransport,
    NetworkTransport,
    TLSConfig,
    build_ssl_context,
)

__all__ = [
    'ClientConfig',
    'SturdyClient',
    'build_transport',
    'CONTEXT_EXTENSION',
    'CallContext',
    'context_of',
    'AttemptTimeoutError',
    'CallCancelledError',
    'ConfigurationError',
    'CreateRequestError',
    'DeadlineExceededError',
    'DecodeError',
    'MarshalError',
    'NoAttemptsLeftError',
    'RequestError',
    'RequestTimeoutError',
    'ResponseError',
    'RetryAttemptError',
    'SturdyError',
    'ValidationError',
    'RESPONSE_ERR_LIMIT',
    'MultiStream',
    'drain',
    'limited_response',
    'snapshot',
    'HasBody',
    'HasHeaders',
    'HasJSONBody',
    'HasQuery',
    'Request',
    'Requester',
    'Validator',
    'error_response',
    'response_func_json',
    'unexpected_response',
    'RetryOverride',
    'RetryPolicy',
    'RetryTransport',
    'default_backoff',
    'default_retry_classification',
    'linear_jitter_backoff',
    'AttemptTimeoutTransport',
    'ChainTransport',
    'NetworkTransport',
    'TLSConfig',
    'build_ssl_context',
]
