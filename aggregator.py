"""Fold streamed chat.completion.chunk deltas into one chat.completion object."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ParseError
from logger import LOGGER_NAME
from sse_handler import SSELineDecoder, data_payloads

log = logging.getLogger(LOGGER_NAME)


@dataclass
class ChoiceDelta:
    index: int
    role: Optional[str] = None
    content: Optional[str] = None
    finish_reason: Optional[str] = None


@dataclass
class DeltaChunk:
    """One parsed unit of an upstream stream."""

    choices: List[ChoiceDelta]
    id: Optional[str] = None
    object: Optional[str] = None
    created: Optional[int] = None
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    has_choices: bool = False

    @classmethod
    def parse(cls, text: str) -> DeltaChunk:
        """Decode the JSON payload of one `data:` line. Raises ParseError."""
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"chunk is not valid JSON: {e}") from e
        if not isinstance(obj, dict):
            raise ParseError(f"chunk is not a JSON object: {type(obj).__name__}")
        return cls.from_dict(obj)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> DeltaChunk:
        raw_choices = obj.get("choices")
        choices: List[ChoiceDelta] = []
        if isinstance(raw_choices, list):
            for pos, ch in enumerate(raw_choices):
                if not isinstance(ch, dict):
                    continue
                idx = ch.get("index")
                delta = ch.get("delta") or {}
                if not isinstance(delta, dict):
                    delta = {}
                role = delta.get("role")
                content = delta.get("content")
                finish = ch.get("finish_reason")
                choices.append(
                    ChoiceDelta(
                        index=idx if isinstance(idx, int) else pos,
                        role=role if isinstance(role, str) and role else None,
                        content=content if isinstance(content, str) else None,
                        finish_reason=finish if isinstance(finish, str) and finish else None,
                    )
                )

        usage = obj.get("usage")
        created = obj.get("created")
        return cls(
            choices=choices,
            id=obj.get("id") if isinstance(obj.get("id"), str) else None,
            object=obj.get("object") if isinstance(obj.get("object"), str) else None,
            created=created if isinstance(created, int) else None,
            model=obj.get("model") if isinstance(obj.get("model"), str) else None,
            usage=usage if isinstance(usage, dict) else None,
            has_choices=bool(choices),
        )


@dataclass
class ChoiceState:
    index: int
    role: Optional[str] = None
    parts: List[str] = field(default_factory=list)
    finish_reason: Optional[str] = None

    @property
    def content(self) -> str:
        return "".join(self.parts)


@dataclass
class AggregatedCompletion:
    id: Optional[str] = None
    created: Optional[int] = None
    model: Optional[str] = None
    choices: List[ChoiceState] = field(default_factory=list)
    usage: Dict[str, int] = field(
        default_factory=lambda: {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created if self.created is not None else int(time.time()),
            "model": self.model,
            "choices": [
                {
                    "index": ch.index,
                    "message": {"role": ch.role or "assistant", "content": ch.content},
                    "finish_reason": ch.finish_reason,
                }
                for ch in self.choices
            ],
            "usage": dict(self.usage),
        }


class DeltaAggregator:
    """Accumulate delta chunks in arrival order.

    The skeleton (id and choice list) comes from the first chunk that has a
    non-empty `choices` array and never changes afterwards. Later chunks only
    append content and set role/finish_reason when they carry one. Usage is
    cumulative upstream, so a newer block replaces the old one.
    """

    def __init__(self) -> None:
        self._completion = AggregatedCompletion()
        self._slots: Dict[int, ChoiceState] = {}
        self._decoder = SSELineDecoder()
        self._finalized = False
        self.dropped = 0

    @property
    def started(self) -> bool:
        """True once a chunk with choices has fixed the completion skeleton."""
        return bool(self._completion.choices)

    def reset(self) -> None:
        """Forget everything folded so far (a retried stream starts over)."""
        self._completion = AggregatedCompletion()
        self._slots = {}
        self._decoder = SSELineDecoder()
        self._finalized = False

    def apply(self, chunk: DeltaChunk) -> None:
        if self._finalized:
            raise RuntimeError("aggregator already finalized")
        acc = self._completion

        if not acc.choices and chunk.has_choices:
            acc.id = chunk.id
            acc.created = chunk.created
            acc.model = chunk.model
            for ch in chunk.choices:
                if ch.index in self._slots:
                    continue
                state = ChoiceState(index=ch.index)
                self._slots[ch.index] = state
                acc.choices.append(state)

        for ch in chunk.choices:
            state = self._slots.get(ch.index)
            if state is None:
                log.debug("Dropping delta for choice index=%s outside the stream's choice set", ch.index)
                continue
            if ch.content:
                state.parts.append(ch.content)
            if ch.role:
                state.role = ch.role
            if ch.finish_reason:
                state.finish_reason = ch.finish_reason

        if chunk.usage is not None:
            acc.usage = {
                "prompt_tokens": _int(chunk.usage.get("prompt_tokens")),
                "completion_tokens": _int(chunk.usage.get("completion_tokens")),
                "total_tokens": _int(chunk.usage.get("total_tokens")),
            }

    def feed(self, data: str) -> bool:
        """Apply one `data:` payload. Malformed payloads are logged and dropped."""
        try:
            chunk = DeltaChunk.parse(data)
        except ParseError as e:
            self.dropped += 1
            log.warning("Dropping malformed stream chunk: %s payload=%r", e, data[:200])
            return False
        self.apply(chunk)
        return True

    def feed_bytes(self, raw: bytes) -> None:
        """Apply raw SSE bytes as they arrive from upstream."""
        for payload in data_payloads(self._decoder.feed(raw)):
            self.feed(payload)

    def flush(self) -> None:
        """Apply a trailing line that arrived without its newline."""
        for payload in data_payloads(self._decoder.flush()):
            self.feed(payload)

    def finalize(self) -> Dict[str, Any]:
        """Render the final chat.completion. Callable once."""
        if self._finalized:
            raise RuntimeError("aggregator already finalized")
        self.flush()
        self._finalized = True
        return self._completion.to_dict()


def _int(v: Any) -> int:
    """Token counts must be real ints; anything else counts as zero."""
    return v if isinstance(v, int) and not isinstance(v, bool) else 0
