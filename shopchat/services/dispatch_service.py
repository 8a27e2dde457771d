"""Bounded, failover-aware dispatch of completion requests.

All attempts in the process share one FIFO admission limiter, so the number of
requests in flight against the completion service never exceeds the configured
ceiling no matter how many conversations fire at once.
"""

import asyncio
import random
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Deque, List, Optional, Sequence

import httpx

from shopchat.logging_config import get_logger
from shopchat.services.llm import (
    CompletionError,
    DispatchAbortedError,
    DispatchExhaustedError,
    ErrorKind,
    LLMProvider,
    LLMResponse,
)

logger = get_logger("dispatch_service")

RATE_LIMIT_RETRIES = 1


class DispatchAction(str, Enum):
    RETRY_SAME = "retry_same"
    NEXT_CANDIDATE = "next_candidate"
    ABORT = "abort"


def decide(kind: ErrorKind, attempts_on_candidate: int) -> DispatchAction:
    """What to do after a failed attempt.

    attempts_on_candidate counts the failed attempt itself (1 for the first try).
    """
    if kind == ErrorKind.FATAL:
        return DispatchAction.ABORT
    if kind == ErrorKind.RATE_LIMITED and attempts_on_candidate <= RATE_LIMIT_RETRIES:
        return DispatchAction.RETRY_SAME
    return DispatchAction.NEXT_CANDIDATE


@dataclass(frozen=True)
class DispatchRequest:
    messages: tuple
    temperature: float = 0.7
    purpose: str = "reply"

    @classmethod
    def build(cls, messages: Sequence[dict], temperature: float = 0.7, purpose: str = "reply") -> "DispatchRequest":
        return cls(messages=tuple(dict(m) for m in messages), temperature=temperature, purpose=purpose)


@dataclass(frozen=True)
class DispatchResponse:
    content: str
    candidate: str
    attempts: int


class AdmissionLimiter:
    """Counting limiter that releases queued waiters strictly in arrival order."""

    def __init__(self, limit: int):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._in_flight = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._in_flight < self._limit and not self._waiters:
            self._in_flight += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before the cancel landed.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        # Hand the slot straight to the oldest live waiter; in_flight is unchanged.
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_flight -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


class BoundedDispatcher:
    def __init__(
        self,
        provider: LLMProvider,
        candidates: Sequence[str],
        *,
        concurrency: int = 4,
        timeout_seconds: float = 25.0,
        backoff_min_ms: int = 300,
        backoff_max_ms: int = 800,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if backoff_min_ms > backoff_max_ms:
            raise ValueError("backoff_min_ms must be <= backoff_max_ms")
        self._provider = provider
        self._candidates = list(candidates)
        self._limiter = AdmissionLimiter(concurrency)
        self._timeout_seconds = timeout_seconds
        self._backoff_min_ms = backoff_min_ms
        self._backoff_max_ms = backoff_max_ms
        self._sleep = sleep_func
        self._rng = rng or random.Random()

    @property
    def limiter(self) -> AdmissionLimiter:
        return self._limiter

    @property
    def candidates(self) -> List[str]:
        return list(self._candidates)

    def _backoff_seconds(self) -> float:
        return self._rng.uniform(self._backoff_min_ms, self._backoff_max_ms) / 1000.0

    async def _attempt(self, request: DispatchRequest, candidate: str) -> LLMResponse:
        async with self._limiter.slot():
            try:
                response = await asyncio.wait_for(
                    self._provider.generate(
                        [dict(m) for m in request.messages],
                        model=candidate,
                        temperature=request.temperature,
                    ),
                    timeout=self._timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise CompletionError(
                    ErrorKind.TIMEOUT,
                    f"Attempt timed out after {self._timeout_seconds}s",
                    candidate=candidate,
                ) from exc
            except httpx.HTTPError as exc:
                raise CompletionError(ErrorKind.NETWORK, str(exc), candidate=candidate) from exc

        if not response.content or not response.content.strip():
            raise CompletionError(ErrorKind.MALFORMED, "Empty completion payload", candidate=candidate)
        return response

    async def dispatch(
        self,
        request: DispatchRequest,
        candidates: Optional[Sequence[str]] = None,
    ) -> DispatchResponse:
        """Try candidates in order and return the first non-empty completion.

        Raises DispatchAbortedError on a fatal error and DispatchExhaustedError
        once every candidate has failed.
        """
        ordered = list(candidates) if candidates is not None else list(self._candidates)
        if not ordered:
            raise ValueError("dispatch needs at least one candidate")

        last_error: Optional[CompletionError] = None
        attempts = 0
        for candidate in ordered:
            tries = 0
            while True:
                tries += 1
                attempts += 1
                try:
                    response = await self._attempt(request, candidate)
                except CompletionError as exc:
                    last_error = exc
                    action = decide(exc.kind, tries)
                    logger.warning(
                        "Dispatch attempt failed",
                        extra={
                            "context": {
                                "candidate": candidate,
                                "error_kind": exc.kind.value,
                                "attempt": tries,
                                "action": action.value,
                                "purpose": request.purpose,
                                "error": str(exc)[:200],
                            }
                        },
                    )
                    if action == DispatchAction.ABORT:
                        raise DispatchAbortedError(f"Dispatch aborted on {candidate}: {exc}", exc) from exc
                    if action == DispatchAction.RETRY_SAME:
                        await self._sleep(self._backoff_seconds())
                        continue
                    break

                if attempts > 1:
                    logger.info(
                        "Dispatch recovered",
                        extra={"context": {"candidate": candidate, "attempts": attempts, "purpose": request.purpose}},
                    )
                return DispatchResponse(content=response.content.strip(), candidate=candidate, attempts=attempts)

        raise DispatchExhaustedError(
            f"All {len(ordered)} candidates failed; last error: {last_error}",
            last_error,
        ) from last_error
