"""Named Docker sandbox: lazy creation, command execution, crash recovery."""

from runledger.sandbox.manager import SandboxManager, SandboxState
from runledger.sandbox.stream import FrameDemuxer, demux_stream, encode_frame

__all__ = [
    "FrameDemuxer",
    "SandboxManager",
    "SandboxState",
    "demux_stream",
    "encode_frame",
]
