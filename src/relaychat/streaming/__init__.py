"""Incremental stream decoding."""

from .frames import Frame, FrameDecoder, iter_frames

__all__ = ["Frame", "FrameDecoder", "iter_frames"]
