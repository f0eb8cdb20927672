"""Retry/backoff policy and the controller that drives sequential upstream attempts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple, TypeVar

import httpx

from config import AppConfig
from errors import (
    ExhaustedRetriesError,
    StallError,
    UpstreamConnectionError,
    UpstreamError,
)
from logger import LOGGER_NAME
from models import StreamAttempt
from sse_handler import SSELineDecoder, StallDetector, data_payloads, detect_sse_stream_error
from upstream import UpstreamStream

log = logging.getLogger(LOGGER_NAME)

T = TypeVar("T")

STREAM_EXHAUSTED = "stream exhausted all retry attempts"
REQUEST_EXHAUSTED = "request exhausted all retry attempts"
PARTIAL_NOT_RETRIED = "stream failed after partial output (retry after partial output disabled)"

RETRYABLE_ERRORS = (UpstreamConnectionError, UpstreamError, StallError)


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts to make, how long to wait between them, and when a stream is stalled."""

    max_attempts: int = 3
    variant: str = "schedule"
    schedule_s: Tuple[float, ...] = (0.5, 1.0, 3.0)
    base_delay_s: float = 1.0
    max_delay_s: float = 10.0
    stall_timeout_s: float = 15.0
    initial_timeout_s: float = 5.0
    retry_after_partial: bool = True

    @classmethod
    def from_config(cls, config: AppConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            variant=config.retry_policy,
            schedule_s=tuple(ms / 1000.0 for ms in config.retry_schedule_ms),
            base_delay_s=config.backoff_base_ms / 1000.0,
            max_delay_s=config.backoff_max_ms / 1000.0,
            stall_timeout_s=config.stall_timeout_s,
            initial_timeout_s=config.initial_timeout_s,
            retry_after_partial=config.retry_after_partial,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt `attempt` (0-based) before the next one."""
        attempt = max(0, attempt)
        if self.variant == "exponential":
            return min(self.base_delay_s * (2 ** attempt), self.max_delay_s)
        if not self.schedule_s:
            return 0.0
        return self.schedule_s[min(attempt, len(self.schedule_s) - 1)]

    def single_shot(self) -> RetryPolicy:
        return replace(self, max_attempts=1)


@dataclass
class AttemptEvent:
    """One step of a retried stream: `start` of an attempt, a `data` chunk, or its clean `end`."""

    kind: str
    attempt: StreamAttempt
    data: bytes = b""


class RetryController:
    """Run upstream attempts one at a time until one succeeds or the policy is exhausted.

    The controller never replays a chunk it has already yielded. The consumer
    reports what it actually wrote to the caller via `record_delivery`, which
    decides whether a failure after partial output may still be retried.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        req_id: str = "-",
        label: str = "default",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self.req_id = req_id
        self.label = label
        self.attempts: List[StreamAttempt] = []
        self.delivered_bytes = 0
        self.last_error: Optional[BaseException] = None
        self._sleep = sleep

    def record_delivery(self, n: int) -> None:
        self.delivered_bytes += n

    async def _backoff(self, seq: int) -> None:
        delay = self.policy.delay(seq - 1)
        log.warning(
            "Retry attempt %d/%d provider=%s in %.2fs req_id=%s reason=%s",
            seq + 1,
            self.policy.max_attempts,
            self.label,
            delay,
            self.req_id,
            self.last_error,
        )
        if delay > 0:
            await self._sleep(delay)

    async def stream(
        self,
        opener: Callable[[], Awaitable[UpstreamStream]],
        verify_end: Optional[Callable[[], None]] = None,
    ) -> AsyncIterator[AttemptEvent]:
        """Yield attempt events until a stream ends cleanly; raise ExhaustedRetriesError otherwise.

        `verify_end` runs when an upstream stream finishes; raising a retryable
        error from it fails that attempt instead of completing it.
        """
        for seq in range(self.policy.max_attempts):
            if seq > 0:
                if self.delivered_bytes and not self.policy.retry_after_partial:
                    raise ExhaustedRetriesError(PARTIAL_NOT_RETRIED, self.last_error)
                if self.delivered_bytes:
                    log.warning(
                        "Restarting stream after %d bytes already delivered; "
                        "the new upstream stream starts from its beginning req_id=%s",
                        self.delivered_bytes,
                        self.req_id,
                    )
                await self._backoff(seq)

            attempt = StreamAttempt(sequence=seq)
            self.attempts.append(attempt)

            handle: Optional[UpstreamStream] = None
            try:
                yield AttemptEvent("start", attempt)
                try:
                    handle = await asyncio.wait_for(opener(), timeout=self.policy.initial_timeout_s)
                except asyncio.TimeoutError:
                    raise StallError(self.policy.initial_timeout_s, initial=True) from None

                detector = StallDetector(
                    handle.aiter_bytes(),
                    initial_timeout_s=self.policy.initial_timeout_s,
                    stall_timeout_s=self.policy.stall_timeout_s,
                )
                # Keep-alive comments may precede an error event; scan until real data shows up.
                preamble: Optional[SSELineDecoder] = SSELineDecoder()
                async for chunk in detector:
                    attempt.mark_chunk(len(chunk))
                    if preamble is not None:
                        lines = preamble.feed(chunk)
                        problem = detect_sse_stream_error("\n".join(lines).encode("utf-8"))
                        if problem:
                            raise UpstreamError(502, problem)
                        if data_payloads(lines):
                            preamble = None
                    yield AttemptEvent("data", attempt, chunk)

                if preamble is not None:
                    problem = detect_sse_stream_error("\n".join(preamble.flush()).encode("utf-8"))
                    if problem:
                        raise UpstreamError(502, problem)
                if verify_end is not None:
                    verify_end()
                attempt.succeed()
                yield AttemptEvent("end", attempt)
                return
            except (httpx.HTTPError, httpx.StreamError) as e:
                err = UpstreamConnectionError(f"stream broke: {type(e).__name__}: {e}")
                attempt.fail(err)
                self.last_error = err
            except RETRYABLE_ERRORS as e:
                attempt.fail(e)
                self.last_error = e
            finally:
                # Consumer went away (caller disconnect) or a bug: this attempt is abandoned.
                if not attempt.finished:
                    attempt.abandon()
                if handle is not None:
                    await handle.aclose()

            log.warning(
                "Attempt %d/%d failed provider=%s req_id=%s chunks=%d err=%s",
                seq + 1,
                self.policy.max_attempts,
                self.label,
                self.req_id,
                attempt.chunks,
                attempt.error,
            )

        log.error(
            "All %d attempts failed provider=%s req_id=%s last_error=%s",
            self.policy.max_attempts,
            self.label,
            self.req_id,
            self.last_error,
        )
        raise ExhaustedRetriesError(STREAM_EXHAUSTED, self.last_error)

    async def call(self, fetcher: Callable[[], Awaitable[T]]) -> T:
        """Non-streaming variant of the same attempt/backoff loop."""
        for seq in range(self.policy.max_attempts):
            if seq > 0:
                await self._backoff(seq)

            attempt = StreamAttempt(sequence=seq)
            self.attempts.append(attempt)
            try:
                result = await fetcher()
            except (UpstreamConnectionError, UpstreamError) as e:
                attempt.fail(e)
                self.last_error = e
                log.warning(
                    "Attempt %d/%d failed provider=%s req_id=%s err=%s",
                    seq + 1,
                    self.policy.max_attempts,
                    self.label,
                    self.req_id,
                    e,
                )
                continue
            except BaseException:
                attempt.abandon()
                raise
            attempt.succeed()
            return result

        raise ExhaustedRetriesError(REQUEST_EXHAUSTED, self.last_error)
