from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional

# Server-sent events framing. Every record line travels as one `data:` frame;
# the keepalive is a comment frame, which decoders never surface as data.

KEEPALIVE_FRAME = ": keepalive\n\n"


def encode_data(payload: str, event: Optional[str] = None) -> str:
    out = []
    if event:
        out.append(f"event: {event}\n")
    # a payload containing newlines must become several data: fields
    for part in payload.split("\n"):
        out.append(f"data: {part}\n")
    out.append("\n")
    return "".join(out)


def encode_event(event: str, obj: Any) -> str:
    return encode_data(json.dumps(obj, separators=(",", ":")), event=event)


@dataclass(frozen=True)
class Frame:
    data: str
    event: str = "message"


class SSEDecoder:
    """
    Incremental decoder for a text/event-stream body.

    Feed it lines (without the trailing newline) and it yields one Frame
    per blank-line-terminated block that carried at least one data field.
    """

    def __init__(self):
        self._data: List[str] = []
        self._event: Optional[str] = None

    def feed_line(self, line: str) -> Optional[Frame]:
        if line.endswith("\r"):
            line = line[:-1]

        if line == "":
            if not self._data:
                self._event = None
                return None
            frame = Frame(data="\n".join(self._data), event=self._event or "message")
            self._data = []
            self._event = None
            return frame

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        return None

    def feed(self, lines: Iterable[str]) -> Iterator[Frame]:
        for line in lines:
            frame = self.feed_line(line)
            if frame is not None:
                yield frame
