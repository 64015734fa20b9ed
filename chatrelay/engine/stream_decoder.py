"""Incremental newline-delimited JSON decoder.

The agent CLI writes one JSON object per line on stdout, but the pipe
hands us arbitrary chunks. StreamDecoder buffers the trailing fragment
between feeds so that a record is only produced once its line is
complete, and flush() handles a final line with no newline.
"""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodedLine:
    """One complete line: either a parsed value or the raw malformed text."""
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StreamDecoder:
    """Stateful NDJSON decoder.

    feed() accepts text or bytes; bytes go through an incremental UTF-8
    decoder so a multi-byte character split across chunks survives.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.lines_decoded = 0
        self.lines_failed = 0

    @property
    def pending(self) -> str:
        """Text buffered after the last newline."""
        return self._buffer

    def feed(self, chunk: str | bytes) -> list[DecodedLine]:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._bytes.decode(bytes(chunk))
        if not chunk:
            return []
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split("\n")
        return [r for r in map(self._decode_line, complete) if r is not None]

    def flush(self) -> list[DecodedLine]:
        """Decode whatever is left at end of stream and reset."""
        tail = self._bytes.decode(b"", final=True)
        residual = self._buffer + tail
        self._buffer = ""
        self._bytes.reset()
        results = [r for r in map(self._decode_line, residual.split("\n")) if r is not None]
        return results

    def reset(self) -> None:
        self._buffer = ""
        self._bytes.reset()

    def _decode_line(self, line: str) -> DecodedLine | None:
        stripped = line.strip()
        if not stripped:
            return None
        try:
            value = json.loads(stripped)
        except ValueError:
            self.lines_failed += 1
            logger.debug("Malformed stream line (%d chars): %.200s", len(stripped), stripped)
            return DecodedLine(error=stripped)
        self.lines_decoded += 1
        return DecodedLine(value=value)
