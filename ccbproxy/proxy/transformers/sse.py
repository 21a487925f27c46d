"""Incremental Server-Sent-Events framing shared by every strategy.

Upstream bytes arrive in arbitrary TCP-sized pieces. ``SSEDecoder`` keeps the
unfinished tail between calls and only hands out a frame once the blank line
that terminates it has been seen, so the frames produced never depend on where
the chunk boundaries fell.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSEFrame:
    event: Optional[str]
    data: str


@dataclass(frozen=True)
class SSEEvent:
    """A canonical (Claude Messages) stream event."""

    event: str
    data: Dict[str, Any]

    def encode(self) -> bytes:
        payload = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        return f"event: {self.event}\ndata: {payload}\n\n".encode("utf-8")


class SSEDecoder:
    def __init__(self) -> None:
        self._buffer = bytearray()
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, chunk: bytes) -> List[SSEFrame]:
        self._buffer.extend(chunk)
        frames: List[SSEFrame] = []
        while True:
            line = self._next_line()
            if line is None:
                break
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> List[SSEFrame]:
        """Flush whatever is left once the upstream has finished."""
        frames: List[SSEFrame] = []
        if self._buffer:
            tail = bytes(self._buffer).rstrip(b"\r")
            self._buffer.clear()
            frame = self._process_line(tail)
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _next_line(self) -> Optional[bytes]:
        lf = self._buffer.find(b"\n")
        cr = self._buffer.find(b"\r")
        if lf == -1 and cr == -1:
            return None
        if cr != -1 and (lf == -1 or cr < lf):
            if cr == len(self._buffer) - 1:
                # may be the first half of a CRLF pair
                return None
            end = cr
            consumed = cr + 2 if self._buffer[cr + 1:cr + 2] == b"\n" else cr + 1
        else:
            end = lf
            consumed = lf + 1
        line = bytes(self._buffer[:end])
        del self._buffer[:consumed]
        return line

    def _process_line(self, raw: bytes) -> Optional[SSEFrame]:
        if not raw:
            return self._dispatch()
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("dropping undecodable SSE line (%d bytes)", len(raw))
            return None
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> Optional[SSEFrame]:
        if not self._data:
            self._event = None
            return None
        frame = SSEFrame(event=self._event, data="\n".join(self._data))
        self._event = None
        self._data = []
        return frame
