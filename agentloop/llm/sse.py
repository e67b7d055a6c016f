"""
Server-Sent-Events framing over an httpx byte stream.

Each event has the form::

    event: name\\n
    data: {json}\\n
    \\n

Multi-line ``data`` fields are joined with newlines, ``:`` comment lines
are ignored, and a trailing event without a blank line is still delivered
when the stream closes.

This is the one place cancellation is observed while a turn streams: the
abort token is checked after every received chunk, and iteration stops
(leaving the caller to close the response) as soon as it is set.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from agentloop.abort import AbortToken


@dataclass
class SSEEvent:
    data: str
    event: str | None = None
    id: str | None = None


class _Decoder:
    """Accumulates field lines until a blank line completes an event."""

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None

    def feed_line(self, line: str) -> SSEEvent | None:
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "data":
            self._data.append(value)
        elif field_name == "event":
            self._event = value
        elif field_name == "id":
            self._id = value
        return None

    def flush(self) -> SSEEvent | None:
        if not self._data:
            self._event = None
            return None
        event = SSEEvent(data="\n".join(self._data), event=self._event, id=self._id)
        self._data = []
        self._event = None
        return event


async def iter_sse(
    response: httpx.Response, abort: AbortToken | None = None
) -> AsyncIterator[SSEEvent]:
    """Yield ``SSEEvent`` objects from a streaming response."""
    decoder = _Decoder()
    text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for raw_bytes in response.aiter_bytes():
        if abort is not None and abort.aborted:
            return
        buffer += text_decoder.decode(raw_bytes)

        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            event = decoder.feed_line(line.rstrip("\r"))
            if event is not None:
                if abort is not None and abort.aborted:
                    return
                yield event

    buffer += text_decoder.decode(b"", final=True)
    if buffer:
        event = decoder.feed_line(buffer.rstrip("\r"))
        if event is not None:
            yield event
    event = decoder.flush()
    if event is not None and not (abort is not None and abort.aborted):
        yield event

