"""Upstream provider communication. Single-shot primitives; retries live elsewhere."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx

from config import AppConfig
from errors import UpstreamConnectionError, UpstreamError
from logger import LOGGER_NAME
from models import CompletionRequest, ProviderRoute, RoutePlan

log = logging.getLogger(LOGGER_NAME)


def extract_error_message(raw: str) -> str:
    """Pull a human-readable message out of an upstream error body."""
    if not raw:
        return ""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return raw.strip()
    if not isinstance(payload, dict):
        return raw.strip()
    err = payload.get("error")
    if isinstance(err, dict):
        msg = err.get("message")
        if isinstance(msg, str) and msg:
            return msg
        return json.dumps(err, ensure_ascii=False)
    if isinstance(err, str) and err:
        return err
    status_message = payload.get("statusMessage")
    if isinstance(status_message, str) and status_message:
        return status_message
    return raw.strip()


def upstream_error_from_payload(payload: Any, status: int) -> Optional[UpstreamError]:
    """A 2xx body that carries an error object instead of choices is still a failure."""
    if not isinstance(payload, dict) or payload.get("choices"):
        return None
    err = payload.get("error")
    if err is None:
        return None
    code = err.get("code") if isinstance(err, dict) else None
    if not (isinstance(code, int) and 400 <= code <= 599):
        code = 502 if 200 <= status < 300 else status
    message = extract_error_message(json.dumps(payload, ensure_ascii=False))
    return UpstreamError(code, message or "upstream reported an error")


class UpstreamStream:
    """An open streaming response. Its chunks can be consumed once."""

    def __init__(self, resp: httpx.Response) -> None:
        self._resp = resp

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._resp.aiter_bytes()

    async def aclose(self) -> None:
        await self._resp.aclose()


class UpstreamReply:
    """A fully read non-streaming response."""

    def __init__(self, status_code: int, headers: Mapping[str, str], content: bytes) -> None:
        self.status_code = status_code
        self.headers = dict(headers)
        self.content = content

    @property
    def media_type(self) -> str:
        return self.headers.get("content-type", "application/json")

    def json(self) -> Any:
        return json.loads(self.content)


class UpstreamClient:
    """Handle communication with the default provider and the fast path."""

    def __init__(self, config: AppConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    def get_proxy_url(self) -> str | None:
        """
        Get proxy URL for httpx AsyncClient.

        Returns HTTPS proxy if set (preferred for HTTPS API calls),
        otherwise HTTP proxy if set, or None if no proxy configured.
        """
        if self._config.https_proxy:
            return self._config.https_proxy
        if self._config.http_proxy:
            return self._config.http_proxy
        return None

    def new_http_client(self, read_timeout_s: float | None = None) -> httpx.AsyncClient:
        """Client for one relay session. No read timeout by default: stall detection owns that."""
        t = float(self._config.request_timeout_s)
        timeout = httpx.Timeout(connect=t, write=t, pool=t, read=read_timeout_s)
        if self._transport is not None:
            return httpx.AsyncClient(timeout=timeout, transport=self._transport)
        return httpx.AsyncClient(timeout=timeout, proxy=self.get_proxy_url())

    def build_headers(self, route: ProviderRoute, request: CompletionRequest) -> Dict[str, str]:
        """Headers for a chat-completions call on the given route."""
        if route.api_key is not None:
            return {
                "Authorization": f"Bearer {route.api_key}",
                "Content-Type": "application/json",
                "User-Agent": self._config.user_agent,
            }
        return {
            **self.passthrough_headers(request.authorization, request.referer),
            "Content-Type": "application/json",
        }

    def passthrough_headers(self, authorization: str | None, referer: str | None) -> Dict[str, str]:
        """Caller credentials forwarded verbatim, or the process-held key when absent."""
        headers = {
            "HTTP-Referer": referer or self._config.openrouter_http_referer,
            "X-Title": self._config.openrouter_x_title,
            "User-Agent": self._config.user_agent,
        }
        if authorization:
            headers["Authorization"] = authorization
        elif self._config.openrouter_api_key:
            headers["Authorization"] = f"Bearer {self._config.openrouter_api_key}"
        return headers

    async def open_stream(
        self,
        client: httpx.AsyncClient,
        plan: RoutePlan,
        headers: Dict[str, str],
    ) -> UpstreamStream:
        """Open one streaming chat-completions call. The caller owns closing it."""
        req = client.build_request("POST", plan.route.url, headers=headers, content=plan.body)
        t0 = time.time()
        try:
            resp = await client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamConnectionError(f"{plan.route.name} unreachable: {type(e).__name__}: {e}") from e

        dt = (time.time() - t0) * 1000
        log.info(
            "Upstream stream provider=%s model=%s status=%s ms=%.1f",
            plan.route.name,
            plan.model,
            resp.status_code,
            dt,
        )

        if not 200 <= resp.status_code < 300:
            snippet = await self.read_error_snippet(resp)
            await resp.aclose()
            raise UpstreamError(
                resp.status_code,
                extract_error_message(snippet) or f"Upstream error {resp.status_code}",
            )

        # Some providers answer a streaming call with a plain JSON error body.
        if "application/json" in resp.headers.get("content-type", ""):
            snippet = await self.read_error_snippet(resp, limit=65536)
            await resp.aclose()
            try:
                payload = json.loads(snippet)
            except json.JSONDecodeError:
                payload = None
            err = upstream_error_from_payload(payload, resp.status_code)
            raise err or UpstreamError(502, "upstream returned JSON instead of an event stream")

        return UpstreamStream(resp)

    async def fetch(
        self,
        client: httpx.AsyncClient,
        plan: RoutePlan,
        headers: Dict[str, str],
    ) -> UpstreamReply:
        """One non-streaming chat-completions call, body kept byte-for-byte."""
        req = client.build_request("POST", plan.route.url, headers=headers, content=plan.body)
        t0 = time.time()
        try:
            resp = await client.send(req)
        except httpx.HTTPError as e:
            raise UpstreamConnectionError(f"{plan.route.name} unreachable: {type(e).__name__}: {e}") from e

        dt = (time.time() - t0) * 1000
        log.info(
            "Upstream chat provider=%s model=%s status=%s ms=%.1f",
            plan.route.name,
            plan.model,
            resp.status_code,
            dt,
        )

        if not 200 <= resp.status_code < 300:
            message = extract_error_message(resp.text[:2000])
            log.warning(
                "Upstream chat error provider=%s status=%s content-type=%s",
                plan.route.name,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
            raise UpstreamError(resp.status_code, message or f"Upstream error {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        err = upstream_error_from_payload(payload, resp.status_code)
        if err is not None:
            raise err

        return UpstreamReply(resp.status_code, resp.headers, resp.content)

    async def forward_get(
        self,
        client: httpx.AsyncClient,
        path: str,
        *,
        params: Dict[str, str] | None = None,
        authorization: str | None = None,
        referer: str | None = None,
    ) -> httpx.Response:
        """Single unconditional GET against the default provider."""
        url = f"{self._config.openrouter_base_url}{path}"
        try:
            return await client.get(
                url,
                params=params,
                headers=self.passthrough_headers(authorization, referer),
            )
        except httpx.HTTPError as e:
            raise UpstreamConnectionError(f"openrouter unreachable: {type(e).__name__}: {e}") from e

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
