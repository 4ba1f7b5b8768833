from __future__ import annotations

import struct
from typing import NamedTuple

HEADER_SIZE = 8
STDOUT = 1
STDERR = 2

_HEADER = struct.Struct(">BxxxL")


class DemuxedOutput(NamedTuple):
    stdout: str
    stderr: str


def demux_logs(raw: bytes) -> DemuxedOutput:
    """Split the engine's multiplexed log stream into stdout and stderr.

    Each frame is an 8-byte header (stream type in byte 0, big-endian payload
    length in bytes 4-7) followed by the payload. Frames for unknown stream
    types are skipped; a trailing partial header ends the stream.
    """
    buffers = {STDOUT: bytearray(), STDERR: bytearray()}
    view = memoryview(raw)
    offset = 0
    while len(view) - offset >= HEADER_SIZE:
        stream, size = _HEADER.unpack_from(view, offset)
        start = offset + HEADER_SIZE
        payload = view[start : start + size]
        target = buffers.get(stream)
        if target is not None:
            target += payload
        offset = start + size

    return DemuxedOutput(
        stdout=buffers[STDOUT].decode("utf-8", errors="replace").strip(),
        stderr=buffers[STDERR].decode("utf-8", errors="replace").strip(),
    )
