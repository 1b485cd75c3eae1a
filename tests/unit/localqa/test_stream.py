"""
Unit tests for NDJSON stream decoding.
"""

import json

import pytest

from localqa.core.exceptions import MalformedStreamChunk
from localqa.runtime.stream import (
    ErrorEvent,
    PartialOutput,
    StatusEvent,
    StreamDecoder,
    UnknownEvent,
    decode_line,
    decode_stream,
    parse_line,
    progress_from_status,
)


class TestParseLine:
    """Tests for parse_line and decode_line."""

    def test_generate_fragment(self):
        event = parse_line('{"model": "phi3:mini", "response": "Hel", "done": false}')

        assert event == PartialOutput(text="Hel", done=False, model="phi3:mini")

    def test_chat_fragment(self):
        event = parse_line('{"message": {"role": "assistant", "content": "lo"}, "done": true, "eval_count": 7}')

        assert isinstance(event, PartialOutput)
        assert event.text == "lo"
        assert event.done is True
        assert event.eval_count == 7

    def test_status_line(self):
        event = parse_line('{"status": "downloading", "digest": "sha256:ab", "total": 200, "completed": 50}')

        assert event == StatusEvent(status="downloading", completed=50, total=200, digest="sha256:ab")

    def test_error_line(self):
        assert parse_line('{"error": "model not found"}') == ErrorEvent(message="model not found")

    def test_unknown_shape(self):
        assert isinstance(parse_line('{"something": 1}'), UnknownEvent)

    def test_blank_line(self):
        assert parse_line("   ") is None

    def test_malformed_raises(self):
        with pytest.raises(MalformedStreamChunk):
            parse_line('{"response": "unterminated')

    def test_non_object_raises(self):
        with pytest.raises(MalformedStreamChunk, match="not a JSON object"):
            parse_line("[1, 2]")

    def test_decode_line_absorbs_malformed(self):
        event = decode_line("not json at all")

        assert isinstance(event, UnknownEvent)
        assert event.malformed is True
        assert event.raw == "not json at all"


class TestProgress:
    """Tests for progress_from_status."""

    def test_fraction(self):
        progress = progress_from_status(StatusEvent(status="downloading", completed=25, total=100))

        assert progress.fraction == 0.25
        assert progress.indeterminate is False

    def test_indeterminate_without_totals(self):
        progress = progress_from_status(StatusEvent(status="pulling manifest"))

        assert progress.fraction is None
        assert progress.indeterminate is True

    def test_zero_total_is_indeterminate(self):
        assert progress_from_status(StatusEvent(status="x", completed=0, total=0)).indeterminate

    def test_fraction_clamped(self):
        progress = progress_from_status(StatusEvent(status="verifying", completed=120, total=100))

        assert progress.fraction == 1.0


class TestStreamDecoder:
    """Tests for the incremental byte decoder."""

    def test_split_line(self):
        decoder = StreamDecoder()

        events = decoder.feed(b'{"response": "Hel')
        assert events == []
        events = decoder.feed(b'lo", "done": false}\n')

        assert events == [PartialOutput(text="Hello")]

    def test_split_multibyte_character(self):
        """A UTF-8 sequence cut between reads is not treated as corruption."""
        payload = json.dumps({"response": "café"}, ensure_ascii=False).encode("utf-8") + b"\n"
        cut = payload.index("é".encode("utf-8")) + 1
        decoder = StreamDecoder()

        events = decoder.feed(payload[:cut]) + decoder.feed(payload[cut:])

        assert events == [PartialOutput(text="café")]
        assert decoder.malformed_count == 0

    def test_malformed_line_skipped_stream_continues(self):
        decoder = StreamDecoder()

        events = decoder.feed(
            b'{"response": "A"}\n'
            b'{garbage\n'
            b'{"response": "B", "done": true}\n'
        )

        assert [type(e) for e in events] == [PartialOutput, UnknownEvent, PartialOutput]
        assert decoder.malformed_count == 1
        assert decoder.lines_seen == 3

    def test_finish_flushes_tail(self):
        decoder = StreamDecoder()
        decoder.feed(b'{"status": "success"}')

        assert decoder.finish() == [StatusEvent(status="success")]


class TestDecodeStream:
    """Tests for decode_stream over an async line iterator."""

    async def test_decodes_and_drops_blank_lines(self):
        async def lines():
            yield '{"response": "a"}'
            yield ""
            yield "oops"
            yield '{"response": "b", "done": true}'

        events = [event async for event in decode_stream(lines())]

        assert len(events) == 3
        assert events[1].malformed is True

    async def test_closing_closes_source(self):
        closed = []

        async def lines():
            try:
                yield '{"response": "a"}'
                yield '{"response": "b"}'
            finally:
                closed.append(True)

        stream = decode_stream(lines())
        first = await stream.__anext__()
        await stream.aclose()

        assert first.text == "a"
        assert closed == [True]
