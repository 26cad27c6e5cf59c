"""Incremental decoder for the provider's server-sent event stream."""
import codecs
import json
from dataclasses import dataclass
from typing import List, Union


DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


@dataclass(frozen=True)
class TokenDelta:
    text: str


@dataclass(frozen=True)
class UsageSummary:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class StreamEnd:
    pass


@dataclass(frozen=True)
class MalformedFrame:
    raw: str


StreamEvent = Union[TokenDelta, UsageSummary, StreamEnd, MalformedFrame]


class StreamFrameDecoder:
    """
    Turns raw response bytes into stream events.

    Bytes may be split anywhere, including inside a multi-byte character or
    a line; incomplete input is buffered until the rest arrives.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> List[StreamEvent]:
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")

        events: List[StreamEvent] = []
        for line in lines:
            events.extend(self._parse_line(line))
        return events

    def flush(self) -> List[StreamEvent]:
        """Decode whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_line(remainder)

    def _parse_line(self, line: str) -> List[StreamEvent]:
        line = line.rstrip("\r")
        # Blank lines separate events; other SSE fields and comments carry no data
        if not line.startswith(DATA_PREFIX):
            return []

        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            return []
        if payload == DONE_MARKER:
            return [StreamEnd()]

        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            return [MalformedFrame(raw=payload)]
        if not isinstance(frame, dict):
            return [MalformedFrame(raw=payload)]

        try:
            return self._frame_events(frame)
        except (TypeError, ValueError):
            return [MalformedFrame(raw=payload)]

    @staticmethod
    def _frame_events(frame: dict) -> List[StreamEvent]:
        """Events of one decoded frame; raises TypeError or ValueError on an unexpected shape."""
        events: List[StreamEvent] = []
        choices = frame.get("choices") or []
        if not isinstance(choices, list):
            raise TypeError("choices must be a list")
        if choices:
            if not isinstance(choices[0], dict):
                raise TypeError("choice must be an object")
            delta = choices[0].get("delta") or {}
            if not isinstance(delta, dict):
                raise TypeError("delta must be an object")
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(TokenDelta(text=content))

        usage = frame.get("usage")
        if usage is not None:
            if not isinstance(usage, dict):
                raise TypeError("usage must be an object")
            events.append(
                UsageSummary(
                    input_tokens=int(usage.get("prompt_tokens") or 0),
                    output_tokens=int(usage.get("completion_tokens") or 0),
                )
            )
        return events
