"""Decoder for the engine's multiplexed log stream.

Each frame is an 8 byte header followed by a payload:

    [stream type: 1][reserved: 3][payload length: 4, big-endian][payload]

Stream type is 0 (stdin), 1 (stdout) or 2 (stderr). Chunks from the HTTP body
arrive at arbitrary boundaries, so the decoder buffers until whole frames are
available and queues decoded events in arrival order.
"""

from __future__ import annotations

import logging
import struct
from collections import deque

from py_test_containers.errors import LogProtocolError
from py_test_containers.types import LogEvent, StreamType

logger = logging.getLogger(__name__)

HEADER_SIZE = 8
_HEADER = struct.Struct(">B3xI")


def encode_frame(stream_type: StreamType | int, data: bytes) -> bytes:
    """Build one frame as the engine would send it."""
    return _HEADER.pack(int(stream_type), len(data)) + data


class LogFrameDemuxer:
    """Turns raw log bytes into LogEvents, one complete frame at a time."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._events: deque[LogEvent] = deque()

    def __len__(self) -> int:
        return len(self._events)

    @property
    def buffered_bytes(self) -> int:
        """Bytes received but not yet decoded into an event."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> int:
        """Append a chunk and decode every complete frame it finishes.

        Returns:
            Number of events decoded from this chunk.

        Raises:
            LogProtocolError: A frame header carries an unknown stream type.
        """
        self._buffer.extend(chunk)
        decoded = 0

        while len(self._buffer) >= HEADER_SIZE:
            type_byte, frame_size = _HEADER.unpack_from(self._buffer)
            try:
                stream_type = StreamType(type_byte)
            except ValueError:
                raise LogProtocolError(f"Unsupported stream type {type_byte}") from None

            if len(self._buffer) < HEADER_SIZE + frame_size:
                break

            payload = bytes(self._buffer[HEADER_SIZE : HEADER_SIZE + frame_size])
            del self._buffer[: HEADER_SIZE + frame_size]
            if payload.endswith(b"\n"):
                payload = payload[:-1]
            self._events.append(LogEvent(stream_type=stream_type, data=payload))
            decoded += 1

        if decoded:
            logger.debug("Decoded %d log frame(s), %d byte(s) buffered", decoded, len(self._buffer))
        return decoded

    def next_event(self) -> LogEvent | None:
        """Remove and return the oldest decoded event, or None if there is none."""
        if not self._events:
            return None
        return self._events.popleft()

    def drain(self) -> list[LogEvent]:
        """Remove and return all decoded events in arrival order."""
        events = list(self._events)
        self._events.clear()
        return events
