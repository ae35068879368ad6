'''
request-scoped call context

A `CallContext` travels with one logical call (every attempt of it).
It carries the call deadline, a cancel switch, an optional retry override
and optional headers that the transport chain applies with override
semantics. Inside the transport stack it rides on `request.extensions`.
'''
from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Mapping
from typing import TYPE_CHECKING, Self, TypeVar

import httpx

from sturdy.http._errors import CallCancelledError, DeadlineExceededError, SturdyError

if TYPE_CHECKING:
    from sturdy.http._retry import RetryOverride

T = TypeVar("T")


CONTEXT_EXTENSION = 'sturdy.call_context'


class CallContext:
    '''
    Deadline, cancellation and request-scoped options for a single call.

    Derived contexts (`with_timeout`, `with_retry`, `with_headers`) share the
    cancel switch of the context they were derived from, so cancelling any of
    them cancels the whole call.
    '''
    __slots__ = (
        'deadline',
        'retry',
        'headers',
        '_cancelled',
    )

    def __init__(
        self,
        *,
        timeout: float | None = None,
        deadline: float | None = None,
        retry: RetryOverride | None = None,
        headers: Mapping[str, str] | httpx.Headers | None = None,
    ) -> None:
        '''
        Parameters
        ----------
        timeout : float | None, optional
            Seconds from now until the call expires, by default None
        deadline : float | None, optional
            Absolute `time.monotonic()` deadline, by default None.
            When both are given the earlier one wins.
        retry : RetryOverride | None, optional
            Retry override for this call only, by default None
        headers : Mapping[str, str] | httpx.Headers | None, optional
            Headers that replace any same-named request header, by default None
        '''
        if timeout is not None:
            deadline = _earliest(deadline, time.monotonic() + timeout)

        self.deadline: float | None = deadline
        self.retry: RetryOverride | None = retry
        self.headers: httpx.Headers | None = (
            httpx.Headers(headers) if headers is not None else None
        )
        self._cancelled: asyncio.Event = asyncio.Event()

    def _derive(self, **changes) -> Self:
        child = self.__class__.__new__(self.__class__)
        child.deadline = changes.get('deadline', self.deadline)
        child.retry = changes.get('retry', self.retry)
        child.headers = changes.get('headers', self.headers)
        child._cancelled = self._cancelled
        return child

    def with_timeout(self, timeout: float | None) -> Self:
        if timeout is None:
            return self
        return self._derive(
            deadline=_earliest(self.deadline, time.monotonic() + timeout)
        )

    def with_retry(self, retry: RetryOverride | None) -> Self:
        return self._derive(retry=retry)

    def with_headers(self, headers: Mapping[str, str] | httpx.Headers) -> Self:
        merged = httpx.Headers(self.headers) if self.headers else httpx.Headers()
        merged.update(headers)
        return self._derive(headers=merged)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def err(self) -> SturdyError | None:
        '''
        The terminal error of this context, if it is already done.

        Returns
        -------
        SturdyError | None
            `CallCancelledError`, `DeadlineExceededError` or None
        '''
        if self._cancelled.is_set():
            return CallCancelledError('call context cancelled')
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return DeadlineExceededError('call deadline exceeded')
        return None

    async def sleep(self, delay: float) -> None:
        '''
        Wait `delay` seconds unless the context ends first.

        Raises
        ------
        CallCancelledError
            if `cancel()` is called while waiting
        DeadlineExceededError
            if the deadline passes while waiting
        '''
        if (err := self.err()) is not None:
            raise err

        remaining = self.remaining()
        wait = delay if remaining is None else min(delay, remaining)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._cancelled.wait(), timeout=max(0.0, wait))

        if (err := self.err()) is not None:
            raise err
        # the loop may wake slightly before the deadline
        if remaining is not None and delay >= remaining:
            raise DeadlineExceededError('call deadline exceeded')

    async def watch(self, aw: Awaitable[T]) -> T:
        '''
        Await `aw`, abandoning it as soon as the context is cancelled.

        `aw` runs in its own task. When `cancel()` fires first that task is
        cancelled and awaited, so its cleanup runs before this returns.

        Raises
        ------
        CallCancelledError
            if the context is cancelled before `aw` completes
        '''
        if self._cancelled.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise CallCancelledError('call context cancelled')

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait((task, waiter), return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if task.cancelled():
            raise CallCancelledError('call context cancelled')
        return task.result()

    def attach(self, request: httpx.Request) -> httpx.Request:
        request.extensions[CONTEXT_EXTENSION] = self
        return request


def context_of(request: httpx.Request) -> CallContext:
    '''
    The call context attached to `request`, or a fresh unbounded one.
    '''
    ctx = request.extensions.get(CONTEXT_EXTENSION)
    if isinstance(ctx, CallContext):
        return ctx
    return CallContext()


def _earliest(a: float | None, b: float | None) -> float | None:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)
