"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
- Helpers for faking upstream event streams
"""

import asyncio
import json
import os
import sys
from dataclasses import replace
from pathlib import Path

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the service loads config at import time.
os.environ.setdefault("OPENROUTER_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/openrouter_relay_test.log")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("HISTORY_ENABLED", "false")

from config import AppConfig  # noqa: E402


def build_test_config() -> AppConfig:
    return AppConfig(
        openrouter_base_url="https://openrouter.test/api/v1",
        openrouter_api_key="test-key",
        openrouter_http_referer="http://localhost",
        openrouter_x_title="test-app",
        fast_path_url="https://fast.test/chat/completions",
        fast_path_api_key="",
        fast_path_models={"deepseek/deepseek-chat": "deepseek-chat"},
        stream_mode="relay",
        retry_policy="schedule",
        max_attempts=3,
        retry_schedule_ms=(500, 1000, 3000),
        backoff_base_ms=1000,
        backoff_max_ms=10000,
        stall_timeout_s=0.2,
        initial_timeout_s=0.2,
        retry_after_partial=True,
        request_timeout_s=5.0,
        max_request_bytes=2_000_000,
        history_enabled=False,
        history_dir="history",
        debug_sse_traffic=False,
        debug_sse_traffic_log_path="/tmp/openrouter_relay_test_traffic.log",
        debug_sse_traffic_truncate_bytes=0,
        https_proxy="",
        http_proxy="",
        port=5050,
        log_level="DEBUG",
        log_path="/tmp/openrouter_relay_test.log",
        user_agent="openrouter-relay-test/1.0",
    )


@pytest.fixture
def test_config():
    """Create test configuration."""
    return build_test_config()


@pytest.fixture
def make_config():
    """Build a test configuration with selected fields overridden."""

    def _make(**overrides):
        return replace(build_test_config(), **overrides)

    return _make


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays and returns at once."""

    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


@pytest.fixture
def fake_sleep():
    return SleepRecorder()


def sse_chunk(content=None, *, chunk_id="gen-1", role=None, finish_reason=None, usage=None, index=0):
    """One `data:` event of a chat.completion.chunk stream."""
    delta = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    obj = {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "test/model",
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        obj["usage"] = usage
    return ("data: " + json.dumps(obj) + "\n\n").encode("utf-8")


def sse_done():
    return b"data: [DONE]\n\n"


def event_stream(chunks, *, pause_after=None, pause_s=10.0, gap_s=0.0):
    """Async byte source for httpx responses.

    `pause_after=n` goes silent for `pause_s` after n chunks; None never stalls.
    """

    async def _gen():
        for i, chunk in enumerate(chunks):
            if pause_after is not None and i == pause_after:
                await asyncio.sleep(pause_s)
            if gap_s:
                await asyncio.sleep(gap_s)
            yield chunk
        if pause_after is not None and pause_after >= len(chunks):
            await asyncio.sleep(pause_s)

    return _gen()


def sse_response(chunks, **kwargs):
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=event_stream(chunks, **kwargs),
    )


class ScriptedUpstream:
    """httpx.MockTransport handler that answers each call from a script of responders.

    Every call is recorded; once the script runs out the last responder repeats.
    """

    def __init__(self, *responders):
        self.responders = list(responders)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        idx = min(len(self.requests), len(self.responders)) - 1
        responder = self.responders[idx]
        if isinstance(responder, Exception):
            raise responder
        return responder(request) if callable(responder) else responder

    def urls(self):
        return [str(r.url) for r in self.requests]

    def transport(self):
        return httpx.MockTransport(self)


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root
