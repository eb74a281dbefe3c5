"""Demultiplexing of Docker's attached exec output stream.

A non-TTY exec multiplexes stdout and stderr onto one connection. Every frame
is an 8-byte header followed by the payload::

    [stream_type:1][0x00 0x00 0x00][size:4, big-endian][payload:size]

``stream_type`` is 0 (stdin, written to stdout), 1 (stdout) or 2 (stderr).
Frames arrive in arbitrary chunks: one chunk may carry several frames, and a
header or payload may be split across chunks.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable

HEADER_SIZE = 8
STDOUT = 1
STDERR = 2

_HEADER = struct.Struct(">BxxxL")


class FrameDemuxer:
    """
    Incremental frame parser. Feed raw chunks, then read the decoded streams.

    Example::

        demuxer = FrameDemuxer()
        for chunk in chunks:
            demuxer.feed(chunk)
        stdout, stderr = demuxer.result()
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._stdout = bytearray()
        self._stderr = bytearray()

    def feed(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        while len(self._buffer) >= HEADER_SIZE:
            stream_type, size = _HEADER.unpack_from(self._buffer)
            end = HEADER_SIZE + size
            if len(self._buffer) < end:
                return
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            if stream_type == STDERR:
                self._stderr.extend(payload)
            else:
                self._stdout.extend(payload)

    @property
    def pending(self) -> int:
        """Bytes of an incomplete trailing frame still buffered."""
        return len(self._buffer)

    def result(self) -> tuple[str, str]:
        """Decoded ``(stdout, stderr)``. An incomplete trailing frame is dropped."""
        return (
            self._stdout.decode("utf-8", errors="replace"),
            self._stderr.decode("utf-8", errors="replace"),
        )


def demux_stream(chunks: Iterable[bytes]) -> tuple[str, str]:
    """Split a multiplexed exec stream into ``(stdout, stderr)`` text."""
    demuxer = FrameDemuxer()
    for chunk in chunks:
        demuxer.feed(chunk)
    return demuxer.result()


def encode_frame(stream_type: int, payload: bytes) -> bytes:
    """Build one frame. Used to fabricate streams for fakes and tests."""
    return _HEADER.pack(stream_type, len(payload)) + payload
