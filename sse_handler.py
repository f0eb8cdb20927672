"""Server-Sent Events (SSE) handling and stall detection for upstream streams."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, List, Optional

from errors import StallError
from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


def is_sse_activity_line(line: str) -> bool:
    """
    Any SSE field/comment/continuation counts as activity.
    Fields: data, event, id, retry; comments ":"; and (rare) continuation lines that start with space.
    """
    return (
        line.startswith("data:")
        or line.startswith("event:")
        or line.startswith("id:")
        or line.startswith("retry:")
        or line.startswith(":")
        or line.startswith(" ")
    )


def is_done_data_line(line: str) -> bool:
    """
    Accept: "data:[DONE]" / "data: [DONE]" / "data:    [DONE]" (tolerate whitespace)
    """
    if not line.startswith("data:"):
        return False
    return line[len("data:"):].strip() == "[DONE]"


def detect_sse_stream_error(data: bytes) -> Optional[str]:
    """
    Check SSE bytes for an error event sent in place of completion chunks.

    Returns an error message if an error is detected, None otherwise.

    Detects patterns like:
    - data: {"type":"error","error":{...}}
    - data: {"error":{...}}
    """
    text = data.decode("utf-8", errors="replace")

    for line in text.split("\n"):
        line = line.strip()
        if not line.startswith("data:"):
            continue

        json_part = line[5:].strip()
        if not json_part or json_part == "[DONE]":
            continue

        try:
            parsed = json.loads(json_part)
        except json.JSONDecodeError:
            continue

        if not isinstance(parsed, dict):
            continue

        if parsed.get("type") == "error":
            error_obj = parsed.get("error") or {}
            if isinstance(error_obj, dict):
                msg = error_obj.get("message") or str(error_obj)
            else:
                msg = str(error_obj)
            return f"SSE stream error: {msg or 'unknown error'}"

        error_obj = parsed.get("error")
        if isinstance(error_obj, dict):
            error_msg = error_obj.get("message") or str(error_obj)
            error_type = error_obj.get("type", "unknown")
            return f"SSE stream error: {error_msg} (type={error_type})"

    return None


class SSELineDecoder:
    """Incrementally split raw stream bytes into complete text lines.

    Chunk boundaries from the network rarely line up with SSE line boundaries,
    so a trailing partial line is held until the rest of it arrives.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        return [ln.rstrip(b"\r").decode("utf-8", errors="replace") for ln in complete]

    def flush(self) -> List[str]:
        """Return whatever is left once the stream ended without a final newline."""
        rest, self._buffer = self._buffer, b""
        if not rest:
            return []
        return [rest.rstrip(b"\r").decode("utf-8", errors="replace")]


def data_payloads(lines: List[str]) -> List[str]:
    """Pick the payload of every `data:` line, skipping comments and [DONE]."""
    out: List[str] = []
    for line in lines:
        if line and not is_sse_activity_line(line):
            log.debug("Ignoring non-SSE line from upstream: %r", line[:200])
            continue
        if not line.startswith("data:") or is_done_data_line(line):
            continue
        payload = line[len("data:"):].strip()
        if payload:
            out.append(payload)
    return out


class StallDetector:
    """Wrap an upstream byte iterator and raise StallError when it goes quiet.

    Before the first chunk the shorter `initial_timeout_s` applies; after that
    every chunk re-arms `stall_timeout_s`. Once a StallError is raised the
    wrapped iterator has been cancelled and must not be reused.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        *,
        initial_timeout_s: float,
        stall_timeout_s: float,
    ) -> None:
        self._chunks = chunks
        self._initial_timeout_s = initial_timeout_s
        self._stall_timeout_s = stall_timeout_s
        self.chunks_seen = 0

    def __aiter__(self) -> StallDetector:
        return self

    async def __anext__(self) -> bytes:
        initial = self.chunks_seen == 0
        timeout_s = self._initial_timeout_s if initial else self._stall_timeout_s
        try:
            chunk = await asyncio.wait_for(self._chunks.__anext__(), timeout=timeout_s)  # type: ignore[attr-defined]
        except asyncio.TimeoutError:
            raise StallError(timeout_s, initial=initial) from None
        self.chunks_seen += 1
        return chunk
