"""Relay session: one inbound chat-completion request, end to end."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx

from aggregator import DeltaAggregator
from config import AppConfig
from errors import ExhaustedRetriesError, RelayError, UpstreamError
from history import HistoryStore, history_timestamp, redact_headers
from logger import LOGGER_NAME, TRAFFIC_LOGGER_NAME
from models import CompletionRequest, RoutePlan, SessionState
from providers import ProviderSelector
from retry import RetryController, RetryPolicy
from upstream import UpstreamClient

log = logging.getLogger(LOGGER_NAME)
traffic_log = logging.getLogger(TRAFFIC_LOGGER_NAME)

SSE_MEDIA_TYPE = "text/event-stream"
JSON_MEDIA_TYPE = "application/json"


@dataclass
class RelayChunk:
    """Bytes for the caller's open event stream."""

    data: bytes


@dataclass
class RelayReply:
    """A complete response body; always the last thing a session emits."""

    status: int
    content: bytes
    media_type: str = JSON_MEDIA_TYPE

    @classmethod
    def from_json(cls, status: int, payload: Any, media_type: str = JSON_MEDIA_TYPE) -> RelayReply:
        return cls(status, json.dumps(payload, ensure_ascii=False).encode("utf-8"), media_type)


RelayOutput = Union[RelayChunk, RelayReply]


class TerminationGate:
    """Sole writer of the caller connection.

    Bytes may be written while the gate is open; it is then closed exactly
    once, as completed or failed. A second termination is a bug and raises.
    """

    def __init__(self) -> None:
        self.state = SessionState.OPEN
        self.bytes_written = 0

    @property
    def terminated(self) -> bool:
        return self.state is not SessionState.OPEN

    def write(self, data: bytes) -> bytes:
        """Count `data` as sent to the caller and hand it back. Raises once terminated."""
        if self.terminated:
            raise RuntimeError(f"write after the caller connection was {self.state.value}")
        self.bytes_written += len(data)
        return data

    def complete(self) -> None:
        """Close the caller connection as a successful response."""
        self._terminate(SessionState.COMPLETED)

    def fail(self) -> None:
        """Close the caller connection as a failed response."""
        self._terminate(SessionState.FAILED)

    def _terminate(self, state: SessionState) -> None:
        if self.terminated:
            raise RuntimeError(f"caller connection already {self.state.value}")
        self.state = state


class RelaySession:
    """Drive provider selection, retries and delivery for one request.

    `run()` yields either a sequence of RelayChunk (live event stream that
    simply ends) or a single RelayReply (JSON body with its own status).
    """

    def __init__(
        self,
        request: CompletionRequest,
        *,
        config: AppConfig,
        upstream: UpstreamClient,
        selector: ProviderSelector,
        policy: Optional[RetryPolicy] = None,
        history: Optional[HistoryStore] = None,
        req_id: str = "-",
        url: str = "/v1/chat/completions",
        inbound_headers: Optional[Mapping[str, str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.request = request
        self.req_id = req_id
        self.gate = TerminationGate()
        self.controllers: List[RetryController] = []
        self.plans: List[RoutePlan] = []
        self._config = config
        self._upstream = upstream
        self._selector = selector
        self._policy = policy or RetryPolicy.from_config(config)
        self._history = history
        self._url = url
        self._inbound_headers = dict(inbound_headers or {})
        self._sleep = sleep
        self._aggregate = request.stream and config.stream_mode == "aggregate"
        # Relay mode still folds the stream when history wants the final message.
        self._track_completion = self._aggregate or history is not None
        self._aggregator = DeltaAggregator()
        self._stamp = history_timestamp()
        self._outcome: Optional[Dict[str, Any]] = None

    async def run(self) -> AsyncIterator[RelayOutput]:
        client = self._upstream.new_http_client()
        try:
            if self.request.stream:
                async with contextlib.aclosing(self._run_stream(client)) as outputs:
                    async for out in outputs:
                        yield out
            else:
                yield await self._run_once(client)
        finally:
            with contextlib.suppress(Exception):
                await client.aclose()
            if self.gate.terminated:
                await self._save_history()

    # -- streaming ---------------------------------------------------------

    async def _run_stream(self, client: httpx.AsyncClient) -> AsyncIterator[RelayOutput]:
        plan = self._selector.select(self.request)

        if plan.route.fast_path:
            try:
                async with contextlib.aclosing(self._attempts(client, plan, self._policy.single_shot())) as outputs:
                    async for out in outputs:
                        yield out
                return
            except ExhaustedRetriesError as e:
                if self.gate.bytes_written:
                    log.warning(
                        "Fast path failed after %d bytes; ending stream req_id=%s err=%s",
                        self.gate.bytes_written,
                        self.req_id,
                        e.last_error,
                    )
                    self._end_failed_stream(e)
                    return
                log.warning(
                    "Fast path failed, falling back to %s req_id=%s err=%s",
                    self._selector.default_route.name,
                    self.req_id,
                    e.last_error,
                )
                plan = self._selector.fallback(self.request)

        try:
            async with contextlib.aclosing(self._attempts(client, plan, self._policy)) as outputs:
                async for out in outputs:
                    yield out
        except ExhaustedRetriesError as e:
            if self.gate.bytes_written:
                # Status and headers are already on the wire; all we can do is end the stream.
                self._end_failed_stream(e)
                return
            yield self._error_reply(e)

    async def _attempts(
        self, client: httpx.AsyncClient, plan: RoutePlan, policy: RetryPolicy
    ) -> AsyncIterator[RelayOutput]:
        self.plans.append(plan)
        controller = RetryController(policy, req_id=self.req_id, label=plan.route.name, sleep=self._sleep)
        self.controllers.append(controller)
        headers = self._upstream.build_headers(plan.route, self.request)

        async def opener():
            return await self._upstream.open_stream(client, plan, headers)

        verify_end = self._require_choices if self._aggregate else None
        async with contextlib.aclosing(controller.stream(opener, verify_end)) as events:
            async for event in events:
                if event.kind == "start":
                    # Partial output of a failed attempt must not leak into the retry's result.
                    self._aggregator.reset()
                    continue

                if event.kind == "data":
                    self._trace(event.attempt.sequence, event.data)
                    if self._track_completion:
                        self._aggregator.feed_bytes(event.data)
                    if not self._aggregate:
                        data = self.gate.write(event.data)
                        controller.record_delivery(len(data))
                        yield RelayChunk(data)
                    continue

                # end: the attempt finished cleanly
                completion = self._aggregator.finalize() if self._track_completion else None
                self._outcome = {"status": 200, "headers": {"content-type": SSE_MEDIA_TYPE}, "data": completion}
                log.info(
                    "Stream complete provider=%s attempts=%d bytes=%d req_id=%s",
                    plan.route.name,
                    len(controller.attempts),
                    self.gate.bytes_written,
                    self.req_id,
                )
                if self._aggregate:
                    self.gate.complete()
                    yield RelayReply.from_json(200, completion, media_type=SSE_MEDIA_TYPE)
                elif self.gate.bytes_written == 0:
                    self.gate.complete()
                    yield RelayReply(200, b"", SSE_MEDIA_TYPE)
                else:
                    self.gate.complete()

    def _require_choices(self) -> None:
        """An aggregated reply needs at least one choice; an empty stream is retried."""
        self._aggregator.flush()
        if not self._aggregator.started:
            raise UpstreamError(502, "stream ended without any completion chunk")

    def _end_failed_stream(self, e: ExhaustedRetriesError) -> None:
        log.error(
            "Ending stream without error body after %d bytes req_id=%s err=%s",
            self.gate.bytes_written,
            self.req_id,
            e.last_error,
        )
        self._outcome = {"status": e.status, "headers": {}, "data": e.to_body()}
        self.gate.fail()

    # -- non-streaming -----------------------------------------------------

    async def _run_once(self, client: httpx.AsyncClient) -> RelayReply:
        plan = self._selector.select(self.request)

        if plan.route.fast_path:
            try:
                return self._reply_from(await self._fetch(client, plan, self._policy.single_shot()))
            except ExhaustedRetriesError as e:
                log.warning(
                    "Fast path failed, falling back to %s req_id=%s err=%s",
                    self._selector.default_route.name,
                    self.req_id,
                    e.last_error,
                )
                plan = self._selector.fallback(self.request)

        try:
            reply = await self._fetch(client, plan, self._policy)
        except ExhaustedRetriesError as e:
            # Surface what the provider said when it said something.
            if isinstance(e.last_error, UpstreamError):
                return self._error_reply(e.last_error)
            return self._error_reply(e)
        return self._reply_from(reply)

    async def _fetch(self, client: httpx.AsyncClient, plan: RoutePlan, policy: RetryPolicy):
        self.plans.append(plan)
        controller = RetryController(policy, req_id=self.req_id, label=plan.route.name, sleep=self._sleep)
        self.controllers.append(controller)
        headers = self._upstream.build_headers(plan.route, self.request)

        async def fetcher():
            return await self._upstream.fetch(client, plan, headers)

        return await controller.call(fetcher)

    def _reply_from(self, reply) -> RelayReply:
        try:
            data = reply.json()
        except ValueError:
            data = reply.content.decode("utf-8", errors="replace")
        self._outcome = {"status": reply.status_code, "headers": reply.headers, "data": data}
        self.gate.complete()
        return RelayReply(reply.status_code, reply.content, reply.media_type)

    # -- shared ------------------------------------------------------------

    def _error_reply(self, e: RelayError) -> RelayReply:
        body = e.to_body()
        self._outcome = {"status": e.status, "headers": {}, "data": body}
        self.gate.fail()
        return RelayReply.from_json(e.status, body)

    def _trace(self, sequence: int, data: bytes) -> None:
        if not self._config.debug_sse_traffic:
            return
        limit = self._config.debug_sse_traffic_truncate_bytes
        shown = data[:limit] if limit > 0 else data
        traffic_log.debug(
            "IN req_id=%s attempt=%d len=%d data=%r",
            self.req_id,
            sequence,
            len(data),
            shown,
        )

    async def _save_history(self) -> None:
        if self._history is None or self._outcome is None:
            return
        request_record = {
            "method": "POST",
            "url": self._url,
            "headers": redact_headers(self._inbound_headers),
            "body": self.request.body,
        }
        response_record = {
            "status": self._outcome["status"],
            "headers": dict(self._outcome["headers"]),
            "data": self._outcome["data"],
        }
        await asyncio.to_thread(self._history.save_quietly, "request", request_record, self._stamp)
        await asyncio.to_thread(self._history.save_quietly, "response", response_record, self._stamp)
