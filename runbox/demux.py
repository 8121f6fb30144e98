"""Parser for Docker's multiplexed (stdcopy) attach stream.

A non-TTY attach delivers stdout and stderr over one connection as frames::

    [1 byte stream type][3 reserved bytes][4-byte big-endian length][payload]

Frames arrive in arbitrary chunks: one chunk may carry several frames and a
frame may be split across chunks. ``StreamDemuxer`` buffers across chunk
boundaries and only emits complete frames.
"""

import codecs
import struct
from typing import Callable, Optional

STDIN = 0
STDOUT = 1
STDERR = 2

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")


class StreamDemuxer:
    """Incremental stdcopy frame parser."""

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Bytes buffered waiting for the rest of a frame."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[tuple[int, bytes]]:
        """Add ``chunk`` and return every frame it completed, in order."""
        self._buffer.extend(chunk)
        frames = []
        offset = 0
        while len(self._buffer) - offset >= HEADER_SIZE:
            stream_type, length = _HEADER.unpack_from(self._buffer, offset)
            end = offset + HEADER_SIZE + length
            if end > len(self._buffer):
                break
            frames.append((stream_type, bytes(self._buffer[offset + HEADER_SIZE:end])))
            offset = end
        del self._buffer[:offset]
        return frames


class OutputCollector:
    """Demultiplexes an attach stream into stdout and stderr text.

    Bytes are decoded incrementally so multi-byte characters split across
    frames come out intact. Frames with an unknown stream type are dropped.
    """

    def __init__(self, on_output: Optional[Callable[[str, str], None]] = None):
        self._demuxer = StreamDemuxer()
        self._decoders = {
            STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        self._parts: dict[int, list[str]] = {STDOUT: [], STDERR: []}
        self._on_output = on_output

    def feed(self, chunk: bytes) -> None:
        for stream_type, payload in self._demuxer.feed(chunk):
            self._emit(stream_type, self._decode(stream_type, payload, final=False))

    def finish(self) -> None:
        """Flush any partially decoded characters."""
        for stream_type in (STDOUT, STDERR):
            self._emit(stream_type, self._decode(stream_type, b"", final=True))

    def _decode(self, stream_type: int, payload: bytes, final: bool) -> str:
        decoder = self._decoders.get(stream_type)
        if decoder is None:
            return ""
        return decoder.decode(payload, final)

    def _emit(self, stream_type: int, text: str) -> None:
        if not text:
            return
        self._parts[stream_type].append(text)
        if self._on_output:
            self._on_output("stdout" if stream_type == STDOUT else "stderr", text)

    @property
    def stdout(self) -> str:
        return "".join(self._parts[STDOUT])

    @property
    def stderr(self) -> str:
        return "".join(self._parts[STDERR])
