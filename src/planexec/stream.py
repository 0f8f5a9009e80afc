"""Line splitting for chunked subprocess output."""

from __future__ import annotations

import codecs


class LineSplitter:
    """Splits arbitrary output chunks into complete lines.

    A trailing partial line is held back and prefixed to the next chunk, so
    the sequence of lines produced is the same no matter where the chunk
    boundaries fall. Carriage returns ending a line are dropped.
    """

    def __init__(self) -> None:
        self._fragment = ""

    def split(self, chunk: str) -> list[str]:
        """Return the complete lines made available by ``chunk``."""
        if not chunk:
            return []
        parts = (self._fragment + chunk).split("\n")
        self._fragment = parts.pop()
        return [part.rstrip("\r") for part in parts]

    def flush(self) -> list[str]:
        """Return the buffered partial line (if any) and reset."""
        fragment, self._fragment = self._fragment.rstrip("\r"), ""
        return [fragment] if fragment else []

    @property
    def pending(self) -> str:
        """The partial line currently buffered."""
        return self._fragment


class ChunkDecoder:
    """Incremental UTF-8 decoder for raw pipe reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, data: bytes) -> str:
        return self._decoder.decode(data)

    def finish(self) -> str:
        return self._decoder.decode(b"", final=True)
