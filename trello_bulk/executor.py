"""Resilient request execution against the Trello REST API.

Every remote call funnels through :class:`RequestExecutor.execute`:

- each attempt runs under its own deadline;
- outcomes are classified into success, ``ClientFailure`` (4xx, never retried),
  ``ServerFailure`` (5xx), ``NetworkFailure`` and ``TimeoutFailure``;
- retryable failures are retried with exponential backoff until the policy's
  attempt budget is spent, after which ``RetriesExhausted`` is raised.

Each attempt produces exactly one :class:`RequestEvent` for the optional
``on_event`` callback, so callers decide how attempts are displayed.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .errors import (
    ClientFailure,
    ExecutorError,
    NetworkFailure,
    RetriesExhausted,
    ServerFailure,
    TimeoutFailure,
    TrelloAuthError,
)

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE"})


@dataclass(frozen=True)
class RequestDescriptor:
    method: str
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    body: Mapping[str, Any] | None = None
    idempotent: bool | None = None

    def __post_init__(self) -> None:
        method = self.method.upper()
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "params", MappingProxyType(dict(self.params or {})))
        if self.body is not None:
            object.__setattr__(self, "body", MappingProxyType(dict(self.body)))
        if self.idempotent is None:
            object.__setattr__(self, "idempotent", method in IDEMPOTENT_METHODS)

    def query(self) -> dict[str, str | int | float]:
        query: dict[str, str | int | float] = {}
        for key, value in self.params.items():
            if value is None:
                continue
            if isinstance(value, bool):
                query[key] = "true" if value else "false"
            elif isinstance(value, (list, tuple)):
                query[key] = ",".join(str(item) for item in value)
            elif isinstance(value, (int, float)):
                query[key] = value
            else:
                query[key] = str(value)
        return query


def is_retryable_failure(exc: BaseException) -> bool:
    return isinstance(exc, ExecutorError) and exc.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one call.

    ``max_attempts`` is the total number of tries, so ``max_attempts=3`` means
    one try and two retries. The delay before retry ``n`` (0-based) is
    ``min(base_delay * 2**n, max_delay)`` seconds, plus up to ``jitter``
    seconds of random spread when jitter is enabled.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    jitter: float = 0.0
    retryable: Callable[[BaseException], bool] = field(
        default=is_retryable_failure, compare=False
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("retry delays must be >= 0")

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1)

    @classmethod
    def from_settings(
        cls,
        *,
        max_attempts: Any,
        base_delay: Any,
        max_delay: Any,
        jitter: Any = 0.0,
    ) -> RetryPolicy:
        # User config may hold nonsense; clamp instead of rejecting.
        base = max(0.0, float(base_delay))
        return cls(
            max_attempts=max(1, int(max_attempts)),
            base_delay=base,
            max_delay=max(base, float(max_delay)),
            jitter=max(0.0, float(jitter)),
        )

    def delay_for(self, attempt_index: int) -> float:
        """Backoff before retry ``attempt_index`` without jitter."""
        return min(self.base_delay * (2**attempt_index), self.max_delay)

    def wait_strategy(self):
        wait = wait_exponential(multiplier=self.base_delay, max=self.max_delay, exp_base=2)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return wait


class ExecutionState(enum.Enum):
    DONE = "done"
    WAITING = "waiting"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RequestEvent:
    state: ExecutionState
    method: str
    path: str
    attempt: int
    latency: float
    status: int | None = None
    delay: float | None = None
    error: str | None = None


EventHook = Callable[[RequestEvent], None]
SleepFn = Callable[[float], Awaitable[None]]


class RequestExecutor:
    def __init__(
        self,
        *,
        api_key: str,
        token: str,
        base_url: str = "https://api.trello.com/1",
        timeout: float = 20,
        policy: RetryPolicy | None = None,
        on_event: EventHook | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.policy = policy or RetryPolicy()
        self.on_event = on_event
        self._sleep = sleep
        self._clock = clock
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(trust_env=True)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def execute(
        self, descriptor: RequestDescriptor, policy: RetryPolicy | None = None
    ) -> Any:
        """Run ``descriptor`` under ``policy`` and return the decoded JSON body.

        Raises:
            ClientFailure: immediately, on any 4xx response.
            RetriesExhausted: when every attempt ended in a retryable failure.
        """
        policy = policy or self.policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=policy.wait_strategy(),
            retry=retry_if_exception(policy.retryable),
            sleep=self._sleep,
            before_sleep=self._on_backoff,
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    started = self._clock()
                    status, data = await self._attempt(descriptor, number)
                    self._emit(
                        RequestEvent(
                            state=ExecutionState.DONE,
                            method=descriptor.method,
                            path=descriptor.path,
                            attempt=number,
                            latency=self._clock() - started,
                            status=status,
                        )
                    )
                    return data
        except RetryError as exc:
            last = exc.last_attempt.exception()
            if not isinstance(last, ExecutorError):
                raise
            self._emit_failure(ExecutionState.EXHAUSTED, last)
            raise RetriesExhausted(last, attempts=last.attempt) from last
        except ExecutorError as failure:
            self._emit_failure(ExecutionState.FAILED, failure)
            raise
        raise RuntimeError("retry loop ended without an outcome")  # pragma: no cover

    async def _attempt(
        self, descriptor: RequestDescriptor, attempt: int
    ) -> tuple[int, Any]:
        started = self._clock()
        try:
            return await asyncio.wait_for(self._send(descriptor), timeout=self.timeout)
        except ExecutorError as failure:
            failure.record(attempt, self._clock() - started)
            raise
        except asyncio.TimeoutError as exc:
            failure = TimeoutFailure(
                f"Request timed out after {self.timeout}s: {descriptor.method} {descriptor.path}",
                descriptor=descriptor,
            )
            failure.record(attempt, self._clock() - started)
            raise failure from exc
        except aiohttp.ClientError as exc:
            failure = NetworkFailure(f"Network error: {exc}", descriptor=descriptor)
            failure.record(attempt, self._clock() - started)
            raise failure from exc

    async def _send(self, descriptor: RequestDescriptor) -> tuple[int, Any]:
        query = descriptor.query()
        query["key"] = self.api_key
        query["token"] = self.token
        url = f"{self.base_url}/{descriptor.path.lstrip('/')}"
        kwargs: dict[str, Any] = {
            "method": descriptor.method,
            "url": url,
            "params": query,
        }
        if descriptor.body is not None:
            kwargs["json"] = dict(descriptor.body)

        session = await self._get_session()
        async with session.request(**kwargs) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise self._status_failure(descriptor, resp.status, body)
            if resp.content_length == 0:
                return resp.status, {}
            try:
                return resp.status, await resp.json()
            except aiohttp.ContentTypeError:
                return resp.status, {"text": await resp.text()}
            except ValueError as exc:
                raise ExecutorError(
                    f"Malformed JSON response: {exc}",
                    descriptor=descriptor,
                    status=resp.status,
                ) from exc

    @staticmethod
    def _status_failure(
        descriptor: RequestDescriptor, status: int, body: str
    ) -> ExecutorError:
        message = f"HTTP {status}: {body[:300]}"
        if status in (401, 403):
            return TrelloAuthError(
                "Authentication failed.", descriptor=descriptor, status=status, body=body
            )
        if status < 500:
            return ClientFailure(message, descriptor=descriptor, status=status, body=body)
        return ServerFailure(message, descriptor=descriptor, status=status, body=body)

    def _on_backoff(self, retry_state: RetryCallState) -> None:
        failure = retry_state.outcome.exception() if retry_state.outcome else None
        if not isinstance(failure, ExecutorError):
            return
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        self._emit_failure(ExecutionState.WAITING, failure, delay=delay)

    def _emit_failure(
        self,
        state: ExecutionState,
        failure: ExecutorError,
        *,
        delay: float | None = None,
    ) -> None:
        descriptor = failure.descriptor
        self._emit(
            RequestEvent(
                state=state,
                method=descriptor.method if descriptor else "",
                path=descriptor.path if descriptor else "",
                attempt=failure.attempt,
                latency=failure.latency,
                status=failure.status,
                delay=delay,
                error=f"{type(failure).__name__}: {failure}",
            )
        )

    def _emit(self, event: RequestEvent) -> None:
        if event.state is ExecutionState.DONE:
            logger.debug(
                "%s %s -> %s (attempt %d, %.3fs)",
                event.method,
                event.path,
                event.status,
                event.attempt,
                event.latency,
            )
        else:
            logger.warning(
                "%s %s %s on attempt %d after %.3fs: %s",
                event.method,
                event.path,
                event.state.value,
                event.attempt,
                event.latency,
                event.error,
            )
        if self.on_event is not None:
            self.on_event(event)
