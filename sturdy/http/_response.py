import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from sturdy.http._context import CallContext
from sturdy.http._errors import DecodeError, ResponseError
from sturdy.http._reader import RESPONSE_ERR_LIMIT, snapshot

T = TypeVar("T")

ResponseHandler = Callable[[httpx.Response], Awaitable[T] | T]


async def error_response(
    response: httpx.Response,
    limit: int = RESPONSE_ERR_LIMIT,
    *,
    ctx: CallContext | None = None,
) -> ResponseError:
    '''
    Build a `ResponseError` for `response` with a bounded body excerpt.
    The body stays readable in full afterwards, for as long as the call
    context (`ctx`, else the one on `response.request`) is live.
    '''
    excerpt = await snapshot(response, limit, ctx=ctx)
    return ResponseError(
        status_code=response.status_code,
        body=excerpt.decode('utf-8', errors='replace'),
        request_id=response.headers.get('X-Request-Id'),
    )


async def unexpected_response(
    response: httpx.Response,
    limit: int = RESPONSE_ERR_LIMIT,
    *,
    ctx: CallContext | None = None,
) -> None:
    '''
    Raise a `ResponseError` unless the status code is 2xx.
    '''
    if not 200 <= response.status_code < 300:
        raise await error_response(response, limit, ctx=ctx)


def response_func_json(
    parse: Callable[[Any], T] | None = None,
) -> Callable[[httpx.Response], Awaitable[T | Any | None]]:
    '''
    Response handler that checks the status code and decodes a JSON body.

    Parameters
    ----------
    parse : Callable[[Any], T] | None, optional
        Applied to the decoded JSON, e.g. a dataclass or model constructor

    Returns
    -------
    Callable[[httpx.Response], Awaitable[T | Any | None]]
        The handler. It returns None for 204s and empty bodies.
    '''
    async def handle(response: httpx.Response) -> T | Any | None:
        await unexpected_response(response)

        # 204s, for example
        if response.status_code == 204 or response.headers.get('Content-Length') == '0':
            return None

        body = await response.aread()
        if not body:
            return None

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(f'decode response body: {exc}') from exc

        return parse(data) if parse is not None else data

    return handle
