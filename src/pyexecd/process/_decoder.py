"""Decode raw process output into text."""

from __future__ import annotations

import codecs
from collections.abc import Iterable

DEFAULT_ENCODING = "utf-8"


class BufferDecoder:
    def decode(self, buffers: Iterable[bytes], encoding: str = DEFAULT_ENCODING) -> str:
        """Concatenate *buffers* and decode them. Undecodable bytes are replaced."""
        return b"".join(buffers).decode(encoding, errors="replace")

    def incremental(self, encoding: str = DEFAULT_ENCODING) -> codecs.IncrementalDecoder:
        """Decoder for chunked streams — keeps split multi-byte sequences intact."""
        return codecs.getincrementaldecoder(encoding)(errors="replace")
