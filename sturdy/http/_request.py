'''
request descriptors and their optional capabilities

A descriptor is anything with a `method` and a `path`. Everything else is
opt-in: implement `headers()`, `body()`, `body_json()`, `to_query()` or
`validate()` and the dispatcher picks it up. A missing capability is never
an error, it simply contributes nothing.
'''
from __future__ import annotations

import dataclasses as dc
import json
import re
from collections.abc import AsyncIterable, Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

import httpx

from sturdy.http._errors import (
    ConfigurationError,
    CreateRequestError,
    MarshalError,
    ValidationError,
)

RawBody = bytes | bytearray | str | Iterable[bytes] | AsyncIterable[bytes]

# RFC 9110 token characters
_METHOD_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


@runtime_checkable
class Requester(Protocol):
    method: str
    path: str


@runtime_checkable
class HasHeaders(Protocol):
    def headers(self) -> Mapping[str, str] | httpx.Headers | None: ...


@runtime_checkable
class HasBody(Protocol):
    '''
    Raw request body. Takes precedence over `HasJSONBody`.
    '''
    def body(self) -> RawBody | None: ...


@runtime_checkable
class HasJSONBody(Protocol):
    '''
    Anything `json.dumps` can encode. Sets `Content-Type: application/json`
    unless the request already has a content type.
    '''
    def body_json(self) -> Any: ...


@runtime_checkable
class HasQuery(Protocol):
    def to_query(self) -> httpx.QueryParams | Mapping[str, Any] | None: ...


@runtime_checkable
class Validator(Protocol):
    '''
    `validate()` raises when the request must not be sent.
    '''
    def validate(self) -> None: ...


@dc.dataclass(slots=True)
class Request:
    '''
    Plain descriptor for ad-hoc calls: method, path, headers and a raw body.
    '''
    method: str
    path: str
    header: Mapping[str, str] | None = None
    content: RawBody | None = None

    def headers(self) -> Mapping[str, str] | None:
        return self.header

    def body(self) -> RawBody | None:
        return self.content


@dc.dataclass(slots=True)
class RequestParts:
    method: str
    url: httpx.URL
    headers: httpx.Headers
    content: RawBody | None = None


def _raw_content(body: Any) -> RawBody | None:
    if body is None:
        return None
    if isinstance(body, bytearray):
        return bytes(body)
    if isinstance(body, (bytes, str)):
        return body

    read = getattr(body, 'read', None)
    if callable(read):
        data = read()
        return data.encode('utf-8') if isinstance(data, str) else data

    return body


def resolve_url(path: str, base_url: httpx.URL | None) -> httpx.URL:
    '''
    Resolve `path` against `base_url` as a URL reference (RFC 3986):
    the reference keeps its own path and query, the base supplies the
    scheme and host.

    Raises
    ------
    CreateRequestError
        if `path` is not a valid URL reference
    ConfigurationError
        if `path` is relative and there is no base URL
    '''
    try:
        url = httpx.URL(path)
    except httpx.InvalidURL as exc:
        raise CreateRequestError(f'failed to create request: {exc}') from exc

    if url.is_absolute_url:
        return url

    if base_url is None:
        raise ConfigurationError(f'base url is required for relative path {path!r}')

    return base_url.join(url)


def build_request_parts(
    request: Requester,
    base_url: httpx.URL | None = None,
) -> RequestParts:
    '''
    Turn a request descriptor into the pieces of an outbound request,
    running its validator first.

    Parameters
    ----------
    request : Requester
    base_url : httpx.URL | None, optional

    Returns
    -------
    RequestParts

    Raises
    ------
    ValidationError
        if the descriptor's `validate()` raises
    MarshalError
        if the `body_json()` payload cannot be encoded
    CreateRequestError
        if the method or path cannot form a request
    '''
    if isinstance(request, Validator):
        try:
            request.validate()
        except Exception as exc:
            raise ValidationError(f'validating request: {exc}') from exc

    method = request.method
    if not isinstance(method, str) or not _METHOD_TOKEN.match(method):
        raise CreateRequestError(f'failed to create request: invalid method {method!r}')

    url = resolve_url(request.path, base_url)

    if isinstance(request, HasQuery):
        query = request.to_query()
        if query:
            url = url.copy_merge_params(query)

    headers = httpx.Headers()
    if isinstance(request, HasHeaders):
        headers = httpx.Headers(request.headers())

    content: RawBody | None = None
    if isinstance(request, HasBody):
        content = _raw_content(request.body())
    elif isinstance(request, HasJSONBody):
        try:
            content = json.dumps(request.body_json()).encode('utf-8')
        except (TypeError, ValueError) as exc:
            raise MarshalError(f'failed to marshal request body: {exc}') from exc

        headers.setdefault('Content-Type', 'application/json')

    return RequestParts(
        method=method.upper(),
        url=url,
        headers=headers,
        content=content,
    )
