"""Data model shared by the relay components."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class CompletionRequest:
    """Inbound chat-completion request. The raw bytes are what gets forwarded."""

    model: str
    stream: bool
    body: Dict[str, Any]
    raw: bytes
    authorization: Optional[str] = None
    referer: Optional[str] = None

    @classmethod
    def from_body(
        cls,
        raw: bytes,
        *,
        authorization: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> CompletionRequest:
        """Parse the inbound payload. Raises ValueError when it is not a JSON object."""
        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Invalid JSON body: {e}") from e
        if not isinstance(body, dict):
            raise ValueError("Invalid JSON body: expected object")

        model = body.get("model")
        return cls(
            model=model.strip() if isinstance(model, str) else "",
            stream=body.get("stream") is True,
            body=body,
            raw=raw,
            authorization=authorization,
            referer=referer,
        )

    def with_model(self, model: str) -> bytes:
        """Serialize the body with only the model field replaced."""
        rewritten = dict(self.body)
        rewritten["model"] = model
        return json.dumps(rewritten, ensure_ascii=False).encode("utf-8")


class AttemptState(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass
class StreamAttempt:
    """One upstream connection try."""

    sequence: int
    started_at: float = field(default_factory=time.monotonic)
    last_chunk_at: Optional[float] = None
    chunks: int = 0
    bytes_received: int = 0
    state: AttemptState = AttemptState.PENDING
    error: Optional[BaseException] = None

    @property
    def finished(self) -> bool:
        return self.state is not AttemptState.PENDING

    def mark_chunk(self, size: int) -> None:
        self.chunks += 1
        self.bytes_received += size
        self.last_chunk_at = time.monotonic()

    def succeed(self) -> None:
        self._finish(AttemptState.SUCCEEDED)

    def fail(self, error: BaseException) -> None:
        self.error = error
        self._finish(AttemptState.FAILED)

    def abandon(self) -> None:
        self._finish(AttemptState.ABANDONED)

    def _finish(self, state: AttemptState) -> None:
        # A terminal state is final; later transitions are ignored.
        if self.state is AttemptState.PENDING:
            self.state = state


class SessionState(str, enum.Enum):
    OPEN = "open"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProviderRoute:
    """An upstream chat-completions endpoint."""

    name: str
    url: str
    api_key: Optional[str] = None  # None: forward the caller's credentials
    fast_path: bool = False


@dataclass(frozen=True)
class RoutePlan:
    """Where to send a request and the exact bytes to send."""

    route: ProviderRoute
    body: bytes
    model: str
