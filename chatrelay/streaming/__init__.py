"""Upstream stream decoding."""

from chatrelay.streaming.reassembler import TERMINAL_MARKER, ChunkReassembler, iter_frames

__all__ = [
    "TERMINAL_MARKER",
    "ChunkReassembler",
    "iter_frames",
]
