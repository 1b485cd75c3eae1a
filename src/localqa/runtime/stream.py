"""
Stream decoding for the daemon's NDJSON responses.

Each line is decoded on its own into a tagged event:
- StatusEvent: progress/status lines ("pulling manifest", byte counts)
- PartialOutput: an increment of generated text
- ErrorEvent: the daemon reported an error mid-stream
- UnknownEvent: anything else, including lines that fail to parse

A malformed line never aborts the stream: it is logged and surfaces as an
UnknownEvent that consumers skip.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from ..core.exceptions import MalformedStreamChunk


logger = logging.getLogger(__name__)


@dataclass
class StatusEvent:
    """A status line, optionally with completed/total unit counts."""
    status: str
    completed: Optional[int] = None
    total: Optional[int] = None
    digest: Optional[str] = None


@dataclass
class PartialOutput:
    """An increment of generated text."""
    text: str
    done: bool = False
    model: Optional[str] = None
    eval_count: Optional[int] = None


@dataclass
class ErrorEvent:
    """The daemon reported an error in the stream."""
    message: str


@dataclass
class UnknownEvent:
    """A line that is not one of the known shapes; malformed lines land here."""
    raw: str
    malformed: bool = False
    reason: Optional[str] = None


StreamEvent = Union[StatusEvent, PartialOutput, ErrorEvent, UnknownEvent]


@dataclass
class ProgressEvent:
    """
    Progress of a long-running daemon operation.

    fraction is None when the stream has not reported both completed and
    total units, i.e. progress is indeterminate.
    """
    fraction: Optional[float]
    status: str
    completed: Optional[int] = None
    total: Optional[int] = None

    @property
    def indeterminate(self) -> bool:
        return self.fraction is None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def parse_line(line: str) -> Optional[StreamEvent]:
    """
    Parse one stream line into an event.

    Args:
        line: A single NDJSON line

    Returns:
        The decoded event, or None for blank lines

    Raises:
        MalformedStreamChunk: If the line is not a JSON object
    """
    text = line.strip()
    if not text:
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedStreamChunk(f"Invalid JSON in stream line: {e}", line=text)

    if not isinstance(data, dict):
        raise MalformedStreamChunk("Stream line is not a JSON object", line=text)

    return _classify(data, text)


def _classify(data: Dict[str, Any], raw: str) -> StreamEvent:
    error = data.get("error")
    if error:
        return ErrorEvent(message=str(error))

    if "response" in data and isinstance(data["response"], str):
        return PartialOutput(
            text=data["response"],
            done=bool(data.get("done", False)),
            model=data.get("model"),
            eval_count=_optional_int(data.get("eval_count")),
        )

    message = data.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return PartialOutput(
            text=message["content"],
            done=bool(data.get("done", False)),
            model=data.get("model"),
            eval_count=_optional_int(data.get("eval_count")),
        )

    status = data.get("status")
    if isinstance(status, str):
        return StatusEvent(
            status=status,
            completed=_optional_int(data.get("completed")),
            total=_optional_int(data.get("total")),
            digest=data.get("digest"),
        )

    return UnknownEvent(raw=raw)


def decode_line(line: str) -> Optional[StreamEvent]:
    """
    Decode one line, absorbing malformed input.

    Returns:
        The decoded event, an UnknownEvent(malformed=True) for a bad line,
        or None for a blank line
    """
    try:
        return parse_line(line)
    except MalformedStreamChunk as e:
        logger.warning(f"Skipping malformed stream line: {e} ({e.line[:200]!r})")
        return UnknownEvent(raw=e.line, malformed=True, reason=str(e))


def progress_from_status(event: StatusEvent) -> ProgressEvent:
    """
    Convert a status line into a progress report.

    fraction = completed / total, clamped to [0, 1], when both are known and
    total is positive; otherwise progress is indeterminate.
    """
    fraction = None
    if event.total is not None and event.completed is not None and event.total > 0:
        fraction = min(max(event.completed / event.total, 0.0), 1.0)
    return ProgressEvent(
        fraction=fraction,
        status=event.status,
        completed=event.completed,
        total=event.total,
    )


class StreamDecoder:
    """
    Incremental decoder for a raw NDJSON byte stream.

    Buffers partial lines and partial UTF-8 sequences across chunk
    boundaries, so a multi-byte character split between two network reads
    is not mistaken for corruption.

    Example:
        >>> decoder = StreamDecoder()
        >>> events = decoder.feed(b'{"response": "Hel')
        >>> events += decoder.feed(b'lo", "done": false}\\n')
        >>> events += decoder.finish()
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.malformed_count = 0
        self.lines_seen = 0

    def feed(self, data: bytes) -> List[StreamEvent]:
        """Decode the complete lines contained in data plus any buffered prefix."""
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def finish(self) -> List[StreamEvent]:
        """Flush the trailing, unterminated line (if any)."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._decode_lines([tail])

    def _decode_lines(self, lines: List[str]) -> List[StreamEvent]:
        events = []
        for line in lines:
            event = decode_line(line)
            if event is None:
                continue
            self.lines_seen += 1
            if isinstance(event, UnknownEvent) and event.malformed:
                self.malformed_count += 1
            events.append(event)
        return events


async def decode_stream(lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
    """
    Decode an async iterator of lines into events.

    Blank lines are dropped; malformed lines come through as
    UnknownEvent(malformed=True). Closing this iterator closes `lines` too.
    """
    try:
        async for line in lines:
            event = decode_line(line)
            if event is not None:
                yield event
    finally:
        aclose = getattr(lines, "aclose", None)
        if aclose is not None:
            await aclose()
