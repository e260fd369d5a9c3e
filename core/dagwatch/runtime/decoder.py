"""
Stream Event Decoder - turns arbitrary byte/text chunks into typed events.

Wire format (server-sent events):

    data: {"type": "node_lifecycle", "status": "starting", ...}\\n
    \\n
    data: [DONE]\\n
    \\n

Chunks arrive with no alignment guarantees: a chunk may end in the middle
of a frame or in the middle of a multi-byte UTF-8 character. Bytes are
run through an incremental UTF-8 decoder first, so a split character is
held back until its remaining bytes arrive; only then is the text split
into frames.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator

from dagwatch.config import DATA_PREFIX, DONE_SENTINEL, FRAME_DELIMITER
from dagwatch.runtime.events import RunEvent, parse_event

logger = logging.getLogger(__name__)


class StreamEventDecoder:
    """
    Incremental decoder for one event stream.

    Example:
        decoder = StreamEventDecoder()
        for chunk in chunks:
            for event in decoder.feed(chunk):
                handle(event)
            if decoder.done:
                break
        for event in decoder.close():
            handle(event)
    """

    def __init__(self) -> None:
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._done = False
        self.frames_dropped = 0

    @property
    def done(self) -> bool:
        """True once the termination sentinel has been seen."""
        return self._done

    @property
    def pending(self) -> str:
        """Text held back waiting for the rest of its frame."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[RunEvent]:
        """
        Add a chunk and return every event completed by it, in order.

        After the sentinel has been seen, further chunks are ignored.
        """
        if self._done:
            return []

        if isinstance(chunk, bytes | bytearray):
            text = self._text_decoder.decode(bytes(chunk))
        else:
            text = chunk

        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        segments = self._buffer.split(FRAME_DELIMITER)
        # Last segment is incomplete (or "" if the chunk ended on a delimiter)
        self._buffer = segments.pop()

        return self._process_frames(segments)

    def close(self) -> list[RunEvent]:
        """
        Flush at end of stream: complete any held-back bytes and decode a
        trailing frame that arrived without its delimiter.
        """
        if self._done:
            return []

        tail = self._text_decoder.decode(b"", final=True)
        remainder = (self._buffer + tail).replace("\r\n", "\n")
        self._buffer = ""

        if not remainder.strip():
            return []
        return self._process_frames([remainder])

    def _process_frames(self, frames: Iterable[str]) -> list[RunEvent]:
        events: list[RunEvent] = []
        for frame in frames:
            data = self._extract_data(frame)
            if data is None:
                continue

            if data == DONE_SENTINEL:
                logger.debug("Stream sentinel received")
                self._done = True
                self._buffer = ""
                break

            event = self._parse(data)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _extract_data(frame: str) -> str | None:
        """Payload of a frame's data line(s), or None if it has none."""
        data_lines = []
        for line in frame.split("\n"):
            line = line.strip()
            if line.startswith(DATA_PREFIX):
                data_lines.append(line[len(DATA_PREFIX) :].strip())
            # ":" comments (keep-alives), "event:" and "id:" lines carry nothing we use
        if not data_lines:
            return None
        return "\n".join(data_lines)

    def _parse(self, data: str) -> RunEvent | None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            self.frames_dropped += 1
            logger.warning(f"Dropping unparseable frame: {e}", extra={"frame": data[:200]})
            return None

        try:
            return parse_event(payload)
        except (ValueError, TypeError) as e:
            self.frames_dropped += 1
            logger.warning(f"Dropping malformed event: {e}", extra={"frame": data[:200]})
            return None


def iter_events(chunks: Iterable[bytes | str]) -> Iterator[RunEvent]:
    """Lazily decode a synchronous sequence of chunks."""
    decoder = StreamEventDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.done:
            return
    yield from decoder.close()


async def aiter_events(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[RunEvent]:
    """
    Lazily decode an async sequence of chunks.

    Stops pulling chunks as soon as the sentinel is seen or the consumer
    stops iterating.
    """
    decoder = StreamEventDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return
    for event in decoder.close():
        yield event
