"""Incremental SSE frame parser for decoded text streams."""

import json
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Servers mix conventions, sometimes within the same stream.
_BLOCK_SEPARATOR = re.compile(r"\n\n|\r\n\r\n|\r\r")
_LINE_SEPARATOR = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class SSEEvent:
    """A single Server-Sent Event."""

    event: str = "message"
    """The event type. Defaults to 'message' if not specified in the block."""

    data: str = ""
    """The concatenation of every 'data:' line in the block."""


def parse_event_block(block: str) -> SSEEvent:
    """Parse one event block (without its trailing separator)."""
    event_type = "message"
    data = ""
    for line in _LINE_SEPARATOR.split(block):
        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            value = line[len("data:"):]
            if value.startswith(" "):
                value = value[1:]
            # The payload is a single logical JSON line, so no newline is inserted.
            data += value
    return SSEEvent(event=event_type or "message", data=data)


@dataclass
class SSEParser:
    """
    Parser state for one SSE stream.

    Feed decoded text chunks as they arrive; complete event blocks are returned
    and any trailing partial block is retained for the next chunk. A fresh
    parser must be used for each connection.
    """

    _buffer: str = field(default="")

    def feed(self, chunk: str) -> list[SSEEvent]:
        """Append a chunk and return every event it completes."""
        self._buffer += chunk
        events: list[SSEEvent] = []

        while True:
            match = _BLOCK_SEPARATOR.search(self._buffer)
            if match is None:
                break

            block = self._buffer[: match.start()]
            self._buffer = self._buffer[match.end():]

            # Keep-alive pings and stray blank lines.
            if not block.strip():
                continue

            events.append(parse_event_block(block))

        return events

    @property
    def pending(self) -> str:
        """Data received after the last complete block."""
        return self._buffer


async def aiter_sse_events(chunks: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    """Yield events from an async stream of decoded text chunks.

    When the stream ends any incomplete trailing block is discarded.
    """
    parser = SSEParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            logger.debug("Received SSE event: %s", event.event)
            yield event

    if parser.pending.strip():
        logger.debug("Discarding %d bytes of incomplete SSE data at end of stream", len(parser.pending))


def parse_message_data(data: str) -> Any:
    """Decode the JSON payload of a ``message`` event.

    Raises:
        json.JSONDecodeError: If the payload is not valid JSON.
    """
    return json.loads(data)
