"""
Tests for folding streamed deltas into a single chat.completion.
"""

import json

import pytest

from aggregator import DeltaAggregator, DeltaChunk
from conftest import sse_chunk, sse_done
from errors import ParseError


def _payload(obj):
    return json.dumps(obj)


# ============================================================================
# Chunk Parsing Tests
# ============================================================================

class TestDeltaChunk:
    """Test parsing individual stream payloads."""

    def test_parse(self):
        chunk = DeltaChunk.parse(
            _payload({"id": "gen-1", "model": "m", "choices": [{"index": 0, "delta": {"content": "hi"}}]})
        )
        assert chunk.id == "gen-1"
        assert chunk.has_choices is True
        assert chunk.choices[0].content == "hi"

    def test_parse_invalid_json(self):
        with pytest.raises(ParseError):
            DeltaChunk.parse("{not json")

    def test_parse_non_object(self):
        with pytest.raises(ParseError):
            DeltaChunk.parse("[1, 2]")

    def test_missing_index_uses_position(self):
        chunk = DeltaChunk.from_dict({"choices": [{"delta": {"content": "a"}}, {"delta": {"content": "b"}}]})
        assert [c.index for c in chunk.choices] == [0, 1]

    def test_usage_only_chunk(self):
        chunk = DeltaChunk.from_dict({"choices": [], "usage": {"total_tokens": 3}})
        assert chunk.has_choices is False
        assert chunk.usage == {"total_tokens": 3}


# ============================================================================
# Aggregation Tests
# ============================================================================

class TestDeltaAggregator:
    """Test accumulation rules."""

    def test_content_is_concatenation_of_deltas(self):
        parts = ["The", " quick", " brown", "", " fox", " ✓"]
        agg = DeltaAggregator()
        agg.feed_bytes(sse_chunk(parts[0], role="assistant"))
        for p in parts[1:]:
            agg.feed_bytes(sse_chunk(p))
        agg.feed_bytes(sse_chunk(None, finish_reason="stop"))
        agg.feed_bytes(sse_done())
        result = agg.finalize()
        assert result["choices"][0]["message"]["content"] == "".join(parts)
        assert result["choices"][0]["message"]["role"] == "assistant"
        assert result["choices"][0]["finish_reason"] == "stop"
        assert result["object"] == "chat.completion"
        assert result["id"] == "gen-1"
        assert result["model"] == "test/model"
        assert result["created"] == 1700000000

    def test_bytes_split_mid_line(self):
        raw = sse_chunk("Hello") + sse_chunk(", world")
        agg = DeltaAggregator()
        for i in range(0, len(raw), 7):
            agg.feed_bytes(raw[i:i + 7])
        assert agg.finalize()["choices"][0]["message"]["content"] == "Hello, world"

    def test_unterminated_last_line_is_flushed(self):
        raw = sse_chunk("tail").rstrip(b"\n")
        agg = DeltaAggregator()
        agg.feed_bytes(raw)
        assert agg.finalize()["choices"][0]["message"]["content"] == "tail"

    def test_malformed_chunk_dropped(self):
        agg = DeltaAggregator()
        agg.feed_bytes(sse_chunk("a"))
        agg.feed_bytes(b"data: {broken json\n\n")
        agg.feed_bytes(sse_chunk("b"))
        result = agg.finalize()
        assert result["choices"][0]["message"]["content"] == "ab"
        assert agg.dropped == 1

    def test_id_set_once_from_first_chunk(self):
        agg = DeltaAggregator()
        agg.feed_bytes(sse_chunk("a", chunk_id="gen-first"))
        agg.feed_bytes(sse_chunk("b", chunk_id="gen-second"))
        assert agg.finalize()["id"] == "gen-first"

    def test_usage_replaced_not_summed(self):
        agg = DeltaAggregator()
        agg.feed_bytes(sse_chunk("a", usage={"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6}))
        agg.feed_bytes(sse_chunk("b", usage={"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}))
        assert agg.finalize()["usage"] == {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}

    def test_usage_defaults_to_zero(self):
        agg = DeltaAggregator()
        agg.feed_bytes(sse_chunk("a"))
        assert agg.finalize()["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    def test_role_defaults_to_assistant(self):
        agg = DeltaAggregator()
        agg.feed_bytes(sse_chunk("a"))
        assert agg.finalize()["choices"][0]["message"]["role"] == "assistant"

    def test_multiple_choices_and_unknown_index(self):
        agg = DeltaAggregator()
        agg.feed(
            _payload(
                {
                    "id": "gen-1",
                    "choices": [
                        {"index": 0, "delta": {"content": "x"}},
                        {"index": 1, "delta": {"content": "y"}},
                    ],
                }
            )
        )
        agg.feed_bytes(sse_chunk("X", index=0))
        agg.feed_bytes(sse_chunk("Y", index=1))
        agg.feed_bytes(sse_chunk("?", index=7))
        choices = agg.finalize()["choices"]
        assert [(c["index"], c["message"]["content"]) for c in choices] == [(0, "xX"), (1, "yY")]

    def test_finalize_twice_raises(self):
        agg = DeltaAggregator()
        agg.finalize()
        with pytest.raises(RuntimeError):
            agg.finalize()

    def test_reset_forgets_previous_attempt(self):
        agg = DeltaAggregator()
        agg.feed_bytes(sse_chunk("stale", chunk_id="gen-old"))
        agg.feed_bytes(b'data: {"half')
        agg.reset()
        assert agg.started is False
        agg.feed_bytes(sse_chunk("fresh", chunk_id="gen-new"))
        result = agg.finalize()
        assert result["id"] == "gen-new"
        assert result["choices"][0]["message"]["content"] == "fresh"

    def test_empty_stream(self):
        result = DeltaAggregator().finalize()
        assert result["choices"] == []
        assert result["id"] is None
