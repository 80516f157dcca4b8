"""JSONL framing for every IPC hop.

One frame is one JSON object terminated by a single newline.

PUBLIC API:
  - FrameBuffer: Accumulate chunks and split complete frames
  - to_frame: Serialize an object to a frame
  - parse_frame: Deserialize one frame
  - MAX_FRAME_BUFFER_SIZE: Largest unterminated frame accepted
"""

import codecs
import json
from typing import Any

from ..errors import BufferOverflowError, FrameParseError

__all__ = ["FrameBuffer", "to_frame", "parse_frame", "MAX_FRAME_BUFFER_SIZE"]

MAX_FRAME_BUFFER_SIZE = 10 * 1024 * 1024


class FrameBuffer:
    """Buffer for partial JSONL frames.

    Enforces a hard cap on the unterminated tail so a peer that never sends a
    newline cannot grow memory without bound.

    Attributes:
        max_size: Largest unterminated tail, in UTF-8 bytes.
    """

    def __init__(self, max_size: int = MAX_FRAME_BUFFER_SIZE):
        self.max_size = max_size
        self._buffer = ""
        self._buffer_bytes = 0
        # Invalid bytes become U+FFFD and the line fails in parse_frame
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Unterminated data waiting for its newline."""
        return self._buffer

    def process(self, chunk: str | bytes) -> list[str]:
        """Add a chunk and return every complete, non-blank line.

        Args:
            chunk: Raw text or bytes. Bytes may split multi-byte characters.

        Returns:
            Complete lines without their terminating newline.

        Raises:
            BufferOverflowError: If the unterminated tail would exceed max_size.
                Nothing from the offending chunk is retained.
        """
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
            chunk_bytes = len(chunk)
        else:
            text = chunk
            chunk_bytes = len(chunk.encode("utf-8"))

        if "\n" not in text:
            size = self._buffer_bytes + chunk_bytes
            if size > self.max_size:
                raise BufferOverflowError(size, self.max_size)
            self._buffer += text
            self._buffer_bytes = size
            return []

        *lines, rest = (self._buffer + text).split("\n")
        rest_bytes = len(rest.encode("utf-8"))
        if rest_bytes > self.max_size:
            self._buffer = ""
            self._buffer_bytes = 0
            raise BufferOverflowError(rest_bytes, self.max_size)

        self._buffer = rest
        self._buffer_bytes = rest_bytes
        return [line for line in lines if line.strip()]

    def clear(self) -> None:
        """Drop any partial frame."""
        self._buffer = ""
        self._buffer_bytes = 0
        self._decoder.reset()


def to_frame(obj: Any) -> str:
    """Serialize to compact JSON followed by a single newline."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False) + "\n"


def parse_frame(line: str | bytes) -> Any:
    """Parse one frame.

    Raises:
        FrameParseError: If the line is not valid JSON.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        raise FrameParseError(line, e.msg) from e
