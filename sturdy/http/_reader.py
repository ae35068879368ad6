'''
peek-and-drain helpers for response bodies

`snapshot()` reads a bounded prefix of a response body for diagnostics and
puts it back in front of the unread remainder, so whoever reads the body
next still sees every byte exactly once. `drain()` is the cheap path when
nobody needs the bytes: discard a bounded amount and release the connection.
'''
from __future__ import annotations

from collections.abc import AsyncIterator

import httpx

from sturdy.http._context import CONTEXT_EXTENSION, CallContext

RESPONSE_ERR_LIMIT: int = 1 << 20  # 1 MiB


class _ResumedStream(httpx.AsyncByteStream):
    '''
    The unread tail of a stream whose iterator has already been started.
    Closing it closes the stream it came from.
    '''
    def __init__(
        self,
        iterator: AsyncIterator[bytes],
        origin: httpx.AsyncByteStream,
    ) -> None:
        self._iterator = iterator
        self._origin = origin

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._iterator:
            yield chunk

    async def aclose(self) -> None:
        await self._origin.aclose()


class MultiStream(httpx.AsyncByteStream):
    '''
    Concatenates several byte streams into one.

    Segments are read strictly in order; reaching the end of one moves on to
    the next. Any error raised by a segment, or a cancelled/expired call
    context, stops the read immediately. Single consumer only.
    '''
    def __init__(
        self,
        *segments: bytes | httpx.AsyncByteStream,
        ctx: CallContext | None = None,
    ) -> None:
        self._segments: list[httpx.AsyncByteStream] = [
            httpx.ByteStream(seg) if isinstance(seg, bytes) else seg
            for seg in segments
        ]
        self._ctx: CallContext | None = ctx

    def _check_context(self) -> None:
        if self._ctx is None:
            return
        if (err := self._ctx.err()) is not None:
            raise err

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for segment in self._segments:
            self._check_context()
            async for chunk in segment:
                self._check_context()
                if chunk:
                    yield chunk

    async def aclose(self) -> None:
        '''
        Close every segment, even if some of them fail to close.

        Raises
        ------
        Exception
            the single close error, if exactly one segment failed
        ExceptionGroup
            if more than one segment failed
        '''
        errors: list[Exception] = []
        for segment in self._segments:
            try:
                await segment.aclose()
            except Exception as exc:
                errors.append(exc)

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise ExceptionGroup('failed to close response stream', errors)


def _loaded_content(response: httpx.Response) -> bytes | None:
    try:
        return response.content
    except httpx.ResponseNotRead:
        return None


def _request_context(response: httpx.Response) -> CallContext | None:
    try:
        request = response.request
    except RuntimeError:
        # responses built by a transport have no request yet
        return None
    ctx = request.extensions.get(CONTEXT_EXTENSION)
    return ctx if isinstance(ctx, CallContext) else None


async def snapshot(
    response: httpx.Response,
    limit: int = RESPONSE_ERR_LIMIT,
    *,
    ctx: CallContext | None = None,
) -> bytes:
    '''
    Read up to `limit` bytes of the response body without losing them.

    The response stream is replaced by a `MultiStream` that yields the
    captured bytes followed by everything that was not read yet, so the
    body can still be consumed in full afterwards.

    Parameters
    ----------
    response : httpx.Response
    limit : int, optional
        Maximum number of bytes to capture, by default `RESPONSE_ERR_LIMIT`.
        A negative limit captures the whole body.
    ctx : CallContext | None, optional
        Call context checked while reading the reconstructed stream.
        Defaults to the context attached to `response.request`, if any.

    Returns
    -------
    bytes
        The captured prefix of the body.
    '''
    content = _loaded_content(response)
    if content is not None:
        return content if limit < 0 else content[:limit]

    if response.is_stream_consumed or response.is_closed:
        return b''

    origin = response.stream
    if not isinstance(origin, httpx.AsyncByteStream):
        raise RuntimeError('snapshot requires an async response stream')

    if ctx is None:
        ctx = _request_context(response)

    iterator = aiter(origin)
    captured = bytearray()
    overflow = b''
    while limit < 0 or len(captured) < limit:
        try:
            chunk = await anext(iterator)
        except StopAsyncIteration:
            break

        if limit < 0:
            captured += chunk
            continue

        room = limit - len(captured)
        captured += chunk[:room]
        overflow = chunk[room:]

    excerpt = bytes(captured)
    response.stream = MultiStream(
        excerpt,
        overflow,
        _ResumedStream(iterator, origin),
        ctx=ctx,
    )
    return excerpt


async def limited_response(
    response: httpx.Response | None,
    limit: int = RESPONSE_ERR_LIMIT,
    *,
    ctx: CallContext | None = None,
) -> bytes:
    '''
    `snapshot()` for call sites that may not have a response at all.
    Does not close the body.
    '''
    if response is None:
        return b''
    return await snapshot(response, limit, ctx=ctx)


async def drain(
    response: httpx.Response,
    limit: int = RESPONSE_ERR_LIMIT,
) -> None:
    '''
    Discard up to `limit` bytes of the body, then close the response.

    Parameters
    ----------
    response : httpx.Response
    limit : int, optional
        Maximum number of bytes to read before closing, by default
        `RESPONSE_ERR_LIMIT`. A negative limit reads everything.
    '''
    try:
        if limit == 0 or response.is_stream_consumed or response.is_closed:
            return

        discarded = 0
        async for chunk in response.stream:
            discarded += len(chunk)
            if 0 <= limit <= discarded:
                break
    finally:
        await response.aclose()
