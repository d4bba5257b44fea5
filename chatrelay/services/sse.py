"""Server-Sent-Events framing — decoding the upstream stream, encoding ours.

The decoder is fed raw text as it arrives from the network. Reads may split
a line (or a CRLF pair) anywhere, so incomplete lines are buffered until their
terminator shows up and events are only dispatched at a blank line.
"""

import json
from dataclasses import dataclass

DONE_MARKER = "[DONE]"
DONE_FRAME = f"data: {DONE_MARKER}\n\n"


@dataclass
class ServerSentEvent:
    data: str
    event: str = "message"
    id: str | None = None


class SSEDecoder:
    """Incremental SSE parser (data / event / id fields, comments ignored)."""

    def __init__(self) -> None:
        self._buffer = ""
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None

    def feed(self, chunk: str) -> list[ServerSentEvent]:
        """Consume a chunk of text, return every event completed by it."""
        text = self._buffer + chunk
        # A trailing CR may be the first half of a CRLF split across reads
        held = ""
        if text.endswith("\r"):
            text, held = text[:-1], "\r"
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        *lines, rest = text.split("\n")
        self._buffer = rest + held

        events = []
        for line in lines:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[ServerSentEvent]:
        """End of stream: process the buffered tail and dispatch any pending event."""
        events = self.feed("\n") if self._buffer else []
        pending = self._dispatch()
        if pending is not None:
            events.append(pending)
        return events

    def _process_line(self, line: str) -> ServerSentEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            # Comment / keep-alive (e.g. ": OPENROUTER PROCESSING")
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data:
            self._event = None
            return None
        event = ServerSentEvent(
            data="\n".join(self._data),
            event=self._event or "message",
            id=self._id,
        )
        self._data = []
        self._event = None
        return event


def format_sse(data: dict) -> str:
    """Format a single outbound data frame."""
    return f"data: {json.dumps(data)}\n\n"
