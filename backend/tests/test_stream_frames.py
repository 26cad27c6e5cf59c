"""Tests for the streaming frame decoder."""
import pytest

from docuchat.services.stream_frames import (
    MalformedFrame,
    StreamEnd,
    StreamFrameDecoder,
    TokenDelta,
    UsageSummary,
)


class TestStreamFrameDecoder:
    def test_delta_and_done(self):
        decoder = StreamFrameDecoder()
        events = decoder.feed(
            b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":" world"}}]}\n\n'
            b"data: [DONE]\n\n"
        )
        assert events == [TokenDelta("Hello"), TokenDelta(" world"), StreamEnd()]

    def test_line_split_across_reads(self):
        decoder = StreamFrameDecoder()
        assert decoder.feed(b'data: {"choices":[{"delta":{"con') == []
        assert decoder.feed(b'tent":"Hi"}}]}\n') == [TokenDelta("Hi")]

    def test_multibyte_character_split_across_reads(self):
        decoder = StreamFrameDecoder()
        raw = 'data: {"choices":[{"delta":{"content":"café"}}]}\n'.encode()
        split = raw.index("é".encode()) + 1

        assert decoder.feed(raw[:split]) == []
        assert decoder.feed(raw[split:]) == [TokenDelta("café")]

    def test_usage_frame(self):
        decoder = StreamFrameDecoder()
        events = decoder.feed(
            b'data: {"choices":[{"delta":{"content":"!"}}],'
            b'"usage":{"prompt_tokens":12,"completion_tokens":3,"total_tokens":15}}\n'
        )
        assert events == [TokenDelta("!"), UsageSummary(input_tokens=12, output_tokens=3)]

    def test_malformed_frame_is_reported(self):
        decoder = StreamFrameDecoder()
        assert decoder.feed(b"data: {not json\n") == [MalformedFrame("{not json")]

    @pytest.mark.parametrize(
        "payload",
        [
            '{"choices": {"delta": {"content": "x"}}}',
            '{"choices": ["x"]}',
            '{"choices": [{"delta": "oops"}]}',
            '{"usage": {"prompt_tokens": "many"}}',
            '{"usage": ["bad"]}',
        ],
    )
    def test_unexpected_shape_is_malformed(self, payload):
        decoder = StreamFrameDecoder()
        assert decoder.feed(f"data: {payload}\n".encode()) == [MalformedFrame(payload)]

    def test_decoding_continues_after_malformed_frame(self):
        decoder = StreamFrameDecoder()
        events = decoder.feed(
            b'data: {"choices":[{"delta":{"content":"a"}}]}\n\n'
            b'data: {"choices":[{"delta":"oops"}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"b"}}]}\n\n'
        )
        assert events == [TokenDelta("a"), MalformedFrame('{"choices":[{"delta":"oops"}]}'), TokenDelta("b")]

    def test_ignores_comments_and_other_fields(self):
        decoder = StreamFrameDecoder()
        events = decoder.feed(b": keep-alive\nevent: message\nid: 4\r\n\r\n")
        assert events == []

    def test_empty_delta_produces_nothing(self):
        decoder = StreamFrameDecoder()
        assert decoder.feed(b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n') == []

    def test_flush_decodes_unterminated_line(self):
        decoder = StreamFrameDecoder()
        assert decoder.feed(b"data: [DONE]") == []
        assert decoder.flush() == [StreamEnd()]
